from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from ib_toolbox.exceptions import UnsupportedResolutionError, ValidationError

from .lean_schema import BarRecord, Resolution

SUPPORTED_RESOLUTIONS: Tuple[str, ...] = tuple(member.value for member in Resolution)


@dataclass(frozen=True)
class DownloadRequest:
    """
    Parameters of one download invocation.

    ``start`` is inclusive and ``end`` exclusive. The symbol keeps its casing
    for the data source; the path layout lowercases it.
    """

    symbol: str
    security_type: str
    resolution: Resolution
    start: date
    end: date
    data_dir: Path
    exchange: str = "SMART"
    currency: str = "USD"

    def __post_init__(self) -> None:
        errors: List[str] = []

        symbol = (self.symbol or "").strip()
        if not symbol:
            errors.append("Symbol is required.")
        object.__setattr__(self, "symbol", symbol)

        security_type = (self.security_type or "").strip()
        if not security_type:
            errors.append("SecurityType is required.")
        object.__setattr__(self, "security_type", security_type)

        try:
            object.__setattr__(self, "resolution", Resolution.parse(self.resolution))
        except UnsupportedResolutionError as exc:
            errors.extend(exc.errors)

        if not self.data_dir or not str(self.data_dir).strip():
            errors.append("DataDirectory is required.")
        else:
            object.__setattr__(self, "data_dir", Path(self.data_dir))

        if self.start is None or self.end is None:
            errors.append("Both start and end dates are required.")
        elif self.start >= self.end:
            errors.append("Start date must be before end date.")

        if errors:
            raise ValidationError(errors)

    def to_dict(self) -> Dict[str, str]:
        return {
            "symbol": self.symbol,
            "security_type": self.security_type,
            "resolution": self.resolution.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "data_dir": str(self.data_dir),
            "exchange": self.exchange,
            "currency": self.currency,
        }


def _default_start_date() -> date:
    return datetime.now(timezone.utc).date() - timedelta(days=7)


def _default_end_date() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class SnapshotRequest:
    """User request to load Lean-formatted data back from disk."""

    symbol: str = ""
    resolution: str = "minute"
    security_type: str = "equity"
    data_directory: Union[str, Path] = ""
    start_date: Optional[date] = field(default_factory=_default_start_date)
    end_date: Optional[date] = field(default_factory=_default_end_date)
    page_number: int = 1
    page_size: int = 100

    def validate(self) -> List[str]:
        """Return human-readable validation errors; empty when valid."""

        errors: List[str] = []

        if not self.symbol or not self.symbol.strip():
            errors.append("Symbol is required.")

        resolution = str(self.resolution or "").strip()
        if not resolution:
            errors.append("Resolution is required.")
        elif resolution.lower() not in SUPPORTED_RESOLUTIONS:
            errors.append(
                f"Resolution '{resolution}' is not supported. "
                f"Supported values: {', '.join(SUPPORTED_RESOLUTIONS)}."
            )

        if not self.security_type or not self.security_type.strip():
            errors.append("SecurityType is required.")

        if not self.data_directory or not str(self.data_directory).strip():
            errors.append("DataDirectory is required.")

        if self.start_date is None:
            errors.append("StartDate must be specified.")

        if self.end_date is None:
            errors.append("EndDate must be specified.")

        if self.start_date is not None and self.end_date is not None and self.start_date > self.end_date:
            errors.append("StartDate must be on or before EndDate.")

        if self.page_number < 1:
            errors.append("PageNumber must be at least 1.")

        if self.page_size < 1:
            errors.append("PageSize must be at least 1.")

        return errors


@dataclass(frozen=True)
class LeanDataSnapshot:
    """Full or paged materialization of on-disk bars for one request."""

    symbol: str
    resolution: str
    start_date: date
    end_date: date
    records: Tuple[BarRecord, ...] = ()
    source_files: FrozenSet[str] = frozenset()
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ValidationError("StartDate must be on or before EndDate.")
        object.__setattr__(self, "records", tuple(self.records))
        object.__setattr__(self, "source_files", frozenset(self.source_files))

    @property
    def record_count(self) -> int:
        return len(self.records)

    def page(self, page_number: int, page_size: int) -> "LeanDataSnapshot":
        """Return a new snapshot holding only the requested 1-based page."""

        if page_number < 1:
            raise ValueError("page_number must be at least 1")
        if page_size < 1:
            raise ValueError("page_size must be at least 1")

        skip = (page_number - 1) * page_size
        return replace(self, records=self.records[skip : skip + page_size])

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "resolution": self.resolution,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "source_files": sorted(self.source_files),
            "loaded_at": self.loaded_at.isoformat(),
            "record_count": self.record_count,
            "records": [record.to_dict() for record in self.records],
        }


@dataclass(frozen=True)
class SnapshotPage:
    snapshot: LeanDataSnapshot
    page_number: int
    page_size: int
    total_records: int

    @property
    def total_pages(self) -> int:
        if self.total_records == 0:
            return 0
        return math.ceil(self.total_records / self.page_size)

    def to_dict(self) -> Dict[str, object]:
        payload = self.snapshot.to_dict()
        payload.update(
            {
                "page_number": self.page_number,
                "page_size": self.page_size,
                "total_records": self.total_records,
                "total_pages": self.total_pages,
            }
        )
        return payload
