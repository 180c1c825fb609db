from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from ib_toolbox.data_download.backoff import BackoffPolicy
from ib_toolbox.data_download.data_writer import LeanDataWriter, WriteResult
from ib_toolbox.data_download.ib_client import HistoricalDataSource
from ib_toolbox.data_download.models import DownloadRequest, SnapshotPage, SnapshotRequest
from ib_toolbox.data_download.snapshot_loader import LeanDataSnapshotLoader
from ib_toolbox.exceptions import OperationCancelledError, ToolboxError
from ib_toolbox.job_manager import JobManager
from ib_toolbox.job_store import JobInfo


class DownloadService:
    """
    Facade used by the CLI and the HTTP server.

    Jobs started here run fetch (with backoff) and write on a daemon thread
    and report their outcome to the job manager. Without a job manager only
    the synchronous :meth:`run_download` and :meth:`load_snapshot` are usable.
    """

    def __init__(
        self,
        job_manager: Optional[JobManager],
        data_source: HistoricalDataSource,
        *,
        data_writer: Optional[LeanDataWriter] = None,
        snapshot_loader: Optional[LeanDataSnapshotLoader] = None,
        backoff_policy: Optional[BackoffPolicy] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._job_manager = job_manager
        self._data_source = data_source
        self._logger = logger or logging.getLogger("ib_toolbox.jobs")
        self._data_writer = data_writer or LeanDataWriter(logger=self._logger)
        self._snapshot_loader = snapshot_loader or LeanDataSnapshotLoader()
        self._backoff_policy = backoff_policy or BackoffPolicy(logger=self._logger)

        self._lock = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._threads: Dict[str, threading.Thread] = {}

    @property
    def job_manager(self) -> JobManager:
        if self._job_manager is None:
            raise ToolboxError("Job tracking is not configured for this service")
        return self._job_manager

    # ------------------------------------------------------------------ jobs
    def start_download_job(self, request: DownloadRequest) -> JobInfo:
        job = self.job_manager.start(request)
        cancel_event = threading.Event()
        thread = threading.Thread(
            target=self._run_job,
            args=(job.job_id, request, cancel_event),
            name=f"download-{job.job_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._cancel_events[job.job_id] = cancel_event
            self._threads[job.job_id] = thread
        thread.start()
        return job

    def stop_download_job(self, job_id: str) -> Optional[JobInfo]:
        with self._lock:
            cancel_event = self._cancel_events.get(job_id)
        if cancel_event is not None:
            cancel_event.set()
        return self.job_manager.stop(job_id)

    def list_jobs(self) -> List[JobInfo]:
        return self.job_manager.list_jobs()

    def get_job(self, job_id: str) -> Optional[JobInfo]:
        return self.job_manager.get(job_id)

    def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> Optional[JobInfo]:
        """Join the job's worker thread and return its final record."""

        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.job_manager.get(job_id)

    # -------------------------------------------------------------- pipeline
    def run_download(
        self,
        request: DownloadRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> WriteResult:
        """Fetch bars with retries and write them; used directly by the CLI."""

        bars = self._backoff_policy.execute(
            lambda: self._data_source.fetch_bars(request, cancel_event),
            cancel_event=cancel_event,
        )
        return self._data_writer.write_bars(request, bars, cancel_event)

    def load_snapshot(self, request: SnapshotRequest) -> SnapshotPage:
        return self._snapshot_loader.load(request)

    def _run_job(self, job_id: str, request: DownloadRequest, cancel_event: threading.Event) -> None:
        try:
            result = self.run_download(request, cancel_event)
        except OperationCancelledError:
            self._logger.info("Download job %s cancelled", job_id)
            self.job_manager.stop(job_id)
        except Exception as exc:
            self._logger.error("Download job %s failed: %s", job_id, exc, exc_info=True)
            self.job_manager.fail(job_id)
        else:
            if result.success:
                self._logger.info("Download job %s wrote %d file(s)", job_id, len(result.files))
                self.job_manager.complete(job_id)
            else:
                self._logger.error("Download job %s failed: %s", job_id, result.error)
                self.job_manager.fail(job_id)
        finally:
            with self._lock:
                self._cancel_events.pop(job_id, None)
                self._threads.pop(job_id, None)
