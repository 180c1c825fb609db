from __future__ import annotations

import logging
import queue
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ib_toolbox.data_download.models import DownloadRequest
from ib_toolbox.job_store import JobInfo, JobStatus, JobStore


class JobSubscription:
    """
    Queue-backed handle receiving :class:`JobInfo` updates.

    Updates for one job arrive in transition order. Call :meth:`close` (or use
    the handle as a context manager) to stop receiving updates.
    """

    def __init__(self, manager: "JobManager") -> None:
        self._manager = manager
        self._queue: "queue.Queue[JobInfo]" = queue.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, timeout: Optional[float] = None) -> JobInfo:
        """Block until the next update; raises :class:`queue.Empty` on timeout."""

        return self._queue.get(timeout=timeout)

    def drain(self) -> List[JobInfo]:
        updates: List[JobInfo] = []
        while True:
            try:
                updates.append(self._queue.get_nowait())
            except queue.Empty:
                return updates

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._manager._unsubscribe(self)

    def _put(self, job: JobInfo) -> None:
        self._queue.put(job)

    def __enter__(self) -> "JobSubscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class JobManager:
    """
    In-memory job table with persistence and update notifications.

    The manager only records state. Running the download is the caller's job;
    it reports back through :meth:`complete`, :meth:`fail` or :meth:`stop`.
    Completed, Failed and Stopped are terminal: later transitions are ignored.
    """

    def __init__(self, store: Optional[JobStore] = None, logger: Optional[logging.Logger] = None) -> None:
        self._store = store or JobStore()
        self._logger = logger or logging.getLogger("ib_toolbox.jobs")
        self._jobs: Dict[str, JobInfo] = {}
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._subscribers: List[JobSubscription] = []

        self._restore()

    # ------------------------------------------------------------------ reads
    def get(self, job_id: str) -> Optional[JobInfo]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> List[JobInfo]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda job: job.start_time)

    def subscribe(self, replay: bool = True) -> JobSubscription:
        """Register a subscriber; with ``replay`` it first receives every known job."""

        subscription = JobSubscription(self)
        with self._persist_lock, self._lock:
            self._subscribers.append(subscription)
            if replay:
                for job in sorted(self._jobs.values(), key=lambda item: item.start_time):
                    subscription._put(job)
        return subscription

    # ------------------------------------------------------------------ writes
    def start(self, request: DownloadRequest) -> JobInfo:
        job = JobInfo(
            job_id=uuid.uuid4().hex,
            symbol=request.symbol,
            resolution=request.resolution.value,
            status=JobStatus.RUNNING,
            start_time=datetime.now(timezone.utc),
        )
        # Insert and publish under one lock so a concurrent stop() is seen after Running.
        with self._persist_lock:
            with self._lock:
                self._jobs[job.job_id] = job

            self._logger.info(
                {
                    "event": "job_started",
                    "phase": "jobs",
                    "job_id": job.job_id,
                    "symbol": job.symbol,
                    "resolution": job.resolution,
                }
            )
            self._commit(job)
        return job

    def stop(self, job_id: str) -> Optional[JobInfo]:
        return self._transition(job_id, JobStatus.STOPPED)

    def complete(self, job_id: str) -> Optional[JobInfo]:
        return self._transition(job_id, JobStatus.COMPLETED)

    def fail(self, job_id: str) -> Optional[JobInfo]:
        return self._transition(job_id, JobStatus.FAILED)

    # ----------------------------------------------------------------- helpers
    def _transition(self, job_id: str, status: JobStatus) -> Optional[JobInfo]:
        with self._persist_lock:
            with self._lock:
                current = self._jobs.get(job_id)
                if current is None:
                    return None
                if current.status.is_terminal:
                    return current
                updated = current.transition(status)
                self._jobs[job_id] = updated

            self._logger.info(
                {
                    "event": "job_" + status.value.lower(),
                    "phase": "jobs",
                    "job_id": job_id,
                    "symbol": updated.symbol,
                    "resolution": updated.resolution,
                }
            )
            self._commit(updated)
        return updated

    def _commit(self, job: JobInfo) -> None:
        """Publish and persist ``job``; callers hold ``_persist_lock``."""

        with self._lock:
            snapshot = list(self._jobs.values())
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber._put(job)
        try:
            self._store.save_jobs(snapshot)
        except OSError as exc:
            self._logger.error("Failed to persist job table to %s: %s", self._store.path, exc)

    def _restore(self) -> None:
        restored = self._store.load_jobs()
        if not restored:
            return

        interrupted = []
        with self._lock:
            for job in restored:
                # Nothing drives a job that was running when the process exited.
                if job.status is JobStatus.RUNNING:
                    job = job.transition(JobStatus.FAILED)
                    interrupted.append(job.job_id)
                self._jobs[job.job_id] = job

        if interrupted:
            self._logger.warning("Marked %d interrupted job(s) as Failed", len(interrupted))
            with self._persist_lock:
                self._store.save_jobs(list(self._jobs.values()))

        self._logger.info("Restored %d job(s) from %s", len(restored), self._store.path)

    def _unsubscribe(self, subscription: JobSubscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
