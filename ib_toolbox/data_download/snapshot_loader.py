"""
Read Lean trade archives back into paginated snapshots.

The loader never lists directories. It walks every calendar day of the
requested range, derives the archive name the writer would have produced for
that day and reads the archives that exist. Daily data maps every day to the
same ``<symbol>.zip`` so candidates are de-duplicated by path. When a day has
no archive, a plain ``.csv`` file with the entry name is read instead.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Iterator, List, Optional, Set

from ib_toolbox.exceptions import (
    MalformedRowError,
    MissingZipEntryError,
    OperationCancelledError,
    ValidationError,
)

from .data_store import LeanDataStore
from .lean_schema import (
    BarRecord,
    Resolution,
    build_directory,
    build_trade_csv_filename,
    build_trade_zip_filename,
    parse_bar_row,
)
from .models import LeanDataSnapshot, SnapshotPage, SnapshotRequest


@dataclass(frozen=True)
class _FileCandidate:
    path: Path
    entry_name: str

    @property
    def is_zip(self) -> bool:
        return self.path.suffix.lower() == ".zip"


def iter_dates(start: date, end: date) -> Iterator[date]:
    """Yield every calendar day from ``start`` to ``end`` inclusive."""

    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


class LeanDataSnapshotLoader:
    """Loads Lean-formatted bars from disk for display."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger("ib_toolbox.snapshot")

    def load(
        self,
        request: SnapshotRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> SnapshotPage:
        errors = request.validate()
        if errors:
            raise ValidationError(errors)

        resolution = Resolution.parse(request.resolution)
        store = LeanDataStore(Path(request.data_directory))
        base_directory = build_directory(
            store.root,
            request.symbol,
            request.security_type,
            resolution,
        )

        if not base_directory.is_dir():
            self._logger.warning(
                "Snapshot directory '%s' does not exist. Returning empty snapshot.",
                base_directory,
            )
            return self._empty_page(request)

        records: List[BarRecord] = []
        source_files: Set[str] = set()
        seen_sources: Set[str] = set()

        for candidate in self._existing_files(request, resolution, base_directory, cancel_event):
            self._check_cancelled(cancel_event)

            relative = store.relative_path(candidate.path)
            if relative.lower() not in seen_sources:
                seen_sources.add(relative.lower())
                source_files.add(relative)

            if candidate.is_zip:
                try:
                    entry, lines = store.read_archive_lines(candidate.path, candidate.entry_name)
                except MissingZipEntryError as exc:
                    self._logger.warning("%s. Skipping file.", exc)
                    continue
                source_id = f"{relative}/{entry}"
            else:
                lines = store.read_text_lines(candidate.path)
                source_id = relative

            records.extend(self._parse_lines(lines, source_id, request, cancel_event))

        # sorted() is stable: ties keep file date order, then row order.
        records = sorted(records, key=lambda record: record.timestamp)

        snapshot = LeanDataSnapshot(
            symbol=request.symbol,
            resolution=request.resolution,
            start_date=request.start_date,
            end_date=request.end_date,
            records=tuple(records),
            source_files=frozenset(source_files),
        )

        self._logger.info(
            {
                "event": "snapshot_loaded",
                "phase": "snapshot",
                "symbol": request.symbol,
                "resolution": resolution.value,
                "files": len(source_files),
                "records": snapshot.record_count,
            }
        )

        return SnapshotPage(
            snapshot=snapshot.page(request.page_number, request.page_size),
            page_number=request.page_number,
            page_size=request.page_size,
            total_records=snapshot.record_count,
        )

    # ----------------------------------------------------------------- helpers
    def _existing_files(
        self,
        request: SnapshotRequest,
        resolution: Resolution,
        base_directory: Path,
        cancel_event: Optional[threading.Event],
    ) -> Iterator[_FileCandidate]:
        """Yield the archive for each day, or an uncompressed ``.csv`` when no archive exists."""

        seen: Set[str] = set()
        for day in iter_dates(request.start_date, request.end_date):
            self._check_cancelled(cancel_event)

            entry_name = build_trade_csv_filename(request.symbol, resolution, day)
            for path in (
                base_directory / build_trade_zip_filename(request.symbol, resolution, day),
                base_directory / entry_name,
            ):
                if not path.is_file():
                    continue
                key = str(path).lower()
                if key not in seen:
                    seen.add(key)
                    yield _FileCandidate(path=path, entry_name=entry_name)
                break

    def _parse_lines(
        self,
        lines: List[str],
        source_id: str,
        request: SnapshotRequest,
        cancel_event: Optional[threading.Event],
    ) -> List[BarRecord]:
        parsed: List[BarRecord] = []
        for line in lines:
            self._check_cancelled(cancel_event)
            if not line.strip():
                continue

            try:
                record = parse_bar_row(line, source_id)
            except (MalformedRowError, ValueError) as exc:
                self._logger.warning("Skipped malformed row in '%s': %s", source_id, exc)
                continue

            if not request.start_date <= record.timestamp.date() <= request.end_date:
                continue
            parsed.append(record)

        return parsed

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Snapshot load cancelled")

    @staticmethod
    def _empty_page(request: SnapshotRequest) -> SnapshotPage:
        snapshot = LeanDataSnapshot(
            symbol=request.symbol,
            resolution=request.resolution,
            start_date=request.start_date,
            end_date=request.end_date,
        )
        return SnapshotPage(
            snapshot=snapshot,
            page_number=request.page_number,
            page_size=request.page_size,
            total_records=0,
        )
