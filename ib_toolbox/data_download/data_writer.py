from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional

from ib_toolbox.exceptions import OperationCancelledError

from .data_store import LeanDataStore
from .lean_schema import Bar, build_directory, build_trade_zip_filename, serialize_bars
from .models import DownloadRequest


@dataclass
class WriteResult:
    success: bool
    files: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "files": list(self.files),
            "warnings": list(self.warnings),
            "error": self.error,
        }


class LeanDataWriter:
    """Writes downloaded bars to disk using the Lean trade layout."""

    def __init__(
        self,
        *,
        data_store_factory: Optional[Callable[[DownloadRequest], LeanDataStore]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._data_store_factory = data_store_factory or (lambda request: LeanDataStore(request.data_dir))
        self._logger = logger or logging.getLogger("ib_toolbox.jobs")

    def write_bars(
        self,
        request: DownloadRequest,
        bars: Iterable[Bar],
        cancel_event: Optional[threading.Event] = None,
    ) -> WriteResult:
        """
        Group ``bars`` by calendar date and write one archive per date.

        Date groups are written in ascending order. For daily resolution every
        group targets ``<symbol>.zip``, so the latest date group is what remains
        on disk. A failure stops the remaining groups; archives already written
        stay in place and the failure is reported on the returned result.
        Cancellation is raised as :class:`OperationCancelledError`.
        """

        store = self._data_store_factory(request)
        directory = build_directory(
            store.root,
            request.symbol,
            request.security_type,
            request.resolution,
        )

        groups: Dict[date, List[Bar]] = defaultdict(list)
        for bar in bars:
            groups[bar.time.date()].append(bar)

        result = WriteResult(success=True)
        if not groups:
            result.warnings.append(f"No bars to write for {request.symbol}")
            self._log("empty", request, None, {"message": "No bars supplied"})
            return result

        try:
            for trading_day in sorted(groups):
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelledError(
                        f"Write cancelled before {trading_day.isoformat()}"
                    )

                day_bars = sorted(groups[trading_day], key=lambda item: item.time)
                filename = build_trade_zip_filename(request.symbol, request.resolution, trading_day)
                relative = store.write_file(
                    directory,
                    filename,
                    serialize_bars(day_bars),
                    as_zip=True,
                )
                if relative not in result.files:
                    result.files.append(relative)

                self._log(
                    "written",
                    request,
                    trading_day,
                    {"bars": len(day_bars), "file": relative},
                )
        except OperationCancelledError:
            raise
        except Exception as exc:
            result.success = False
            result.error = str(exc) or exc.__class__.__name__
            self._logger.error(
                "Failed to write %s %s data: %s",
                request.symbol,
                request.resolution.value,
                result.error,
                exc_info=True,
            )

        return result

    def _log(
        self,
        event_type: str,
        request: DownloadRequest,
        trading_day: Optional[date],
        extra: Dict[str, object],
    ) -> None:
        payload = {
            "event": event_type,
            "phase": "data_write",
            "symbol": request.symbol,
            "resolution": request.resolution.value,
        }
        if trading_day:
            payload["trading_day"] = trading_day.isoformat()
        payload.update(extra)

        self._logger.info(payload)
