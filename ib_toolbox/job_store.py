"""
Download job records and their on-disk persistence.

The whole job table is stored as one JSON list and rewritten on every change.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional

DEFAULT_JOB_STORE_PATH = Path.home() / ".ib_toolbox" / "jobs.json"


class JobStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    STOPPED = "Stopped"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


@dataclass(frozen=True)
class JobInfo:
    job_id: str
    symbol: str
    resolution: str
    status: JobStatus
    start_time: datetime
    end_time: Optional[datetime] = None

    def transition(self, status: JobStatus, end_time: Optional[datetime] = None) -> "JobInfo":
        """Return a copy in ``status``; terminal states get an end time."""

        if status.is_terminal and end_time is None:
            end_time = datetime.now(timezone.utc)
        return replace(self, status=status, end_time=end_time)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "job_id": self.job_id,
            "symbol": self.symbol,
            "resolution": self.resolution,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Optional[str]]) -> "JobInfo":
        end_time = payload.get("end_time")
        return cls(
            job_id=str(payload["job_id"]),
            symbol=str(payload["symbol"]),
            resolution=str(payload["resolution"]),
            status=JobStatus(payload["status"]),
            start_time=datetime.fromisoformat(str(payload["start_time"])),
            end_time=datetime.fromisoformat(end_time) if end_time else None,
        )


class JobStore:
    """JSON file holding the persisted job table."""

    def __init__(self, store_path: Optional[Path] = None, logger: Optional[logging.Logger] = None) -> None:
        self._store_path = Path(store_path) if store_path else DEFAULT_JOB_STORE_PATH
        self._logger = logger or logging.getLogger("ib_toolbox.jobs")

    @property
    def path(self) -> Path:
        return self._store_path

    def save_jobs(self, jobs: Iterable[JobInfo]) -> None:
        self._store_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([job.to_dict() for job in jobs], indent=2)

        fd, temp_path = tempfile.mkstemp(
            dir=self._store_path.parent,
            suffix=".json",
            prefix=".tmp-jobs-",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(temp_path, self._store_path)
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)

    def load_jobs(self) -> List[JobInfo]:
        if not self._store_path.exists():
            return []

        try:
            raw = json.loads(self._store_path.read_text(encoding="utf-8") or "[]")
            return [JobInfo.from_dict(item) for item in raw]
        except (ValueError, KeyError, TypeError) as exc:
            self._logger.warning("Ignoring unreadable job store %s: %s", self._store_path, exc)
            return []
