import sys
import threading
import zipfile
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ib_toolbox.data_download.backoff import BackoffPolicy
from ib_toolbox.data_download.lean_schema import Bar
from ib_toolbox.data_download.models import DownloadRequest, SnapshotRequest
from ib_toolbox.download_service import DownloadService
from ib_toolbox.exceptions import DataSourceError, OperationCancelledError, ToolboxError, TransientSourceError
from ib_toolbox.job_manager import JobManager
from ib_toolbox.job_store import JobStatus, JobStore


class StubDataSource:
    def __init__(self, bars=None, failures=None):
        self._bars = bars or []
        self._failures = list(failures or [])
        self.calls = 0

    def fetch_bars(self, request, cancel_event=None):
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return list(self._bars)

    def test_connection(self):
        return True


class BlockingDataSource(StubDataSource):
    def __init__(self):
        super().__init__()
        self.entered = threading.Event()

    def fetch_bars(self, request, cancel_event=None):
        self.entered.set()
        cancel_event.wait(5)
        raise OperationCancelledError("Download cancelled")


def _bars():
    moments = [datetime(2024, 1, 2, 9, 30), datetime(2024, 1, 2, 9, 31), datetime(2024, 1, 3, 9, 30)]
    return [Bar(moment, Decimal("10.5"), Decimal("11"), Decimal("10"), Decimal("10.75"), 500) for moment in moments]


def _request(tmp_path):
    return DownloadRequest("AAPL", "equity", "minute", date(2024, 1, 2), date(2024, 1, 4), tmp_path / "data")


def _service(tmp_path, source):
    return DownloadService(
        JobManager(JobStore(tmp_path / "jobs.json")),
        source,
        backoff_policy=BackoffPolicy(max_retries=3, sleep=lambda delay: None),
    )


def test_job_completes_and_data_can_be_loaded_back(tmp_path) -> None:
    service = _service(tmp_path, StubDataSource(_bars()))

    job = service.start_download_job(_request(tmp_path))
    finished = service.wait_for_job(job.job_id, timeout=5)

    assert finished.status is JobStatus.COMPLETED
    assert finished.end_time is not None

    page = service.load_snapshot(
        SnapshotRequest(
            symbol="AAPL",
            resolution="minute",
            data_directory=tmp_path / "data",
            start_date=date(2024, 1, 2),
            end_date=date(2024, 1, 3),
        )
    )
    assert page.total_records == 3
    assert [record.close for record in page.snapshot.records] == [Decimal("10.75")] * 3


def test_finished_jobs_release_their_worker_threads(tmp_path) -> None:
    service = _service(tmp_path, StubDataSource(_bars()))

    job_ids = []
    for _ in range(3):
        job = service.start_download_job(_request(tmp_path))
        service.wait_for_job(job.job_id, timeout=5)
        job_ids.append(job.job_id)

    assert service._threads == {}
    assert service._cancel_events == {}
    assert service.wait_for_job(job_ids[0]).status is JobStatus.COMPLETED


def test_transient_failures_are_retried(tmp_path) -> None:
    source = StubDataSource(_bars(), failures=[TransientSourceError("pacing violation")])

    result = _service(tmp_path, source).run_download(_request(tmp_path))

    assert result.success
    assert source.calls == 2
    assert result.files == [
        "equity/usa/minute/aapl/20240102_trade.zip",
        "equity/usa/minute/aapl/20240103_trade.zip",
    ]
    with zipfile.ZipFile(tmp_path / "data" / result.files[0]) as archive:
        assert archive.read("20240102_trade.csv").decode("utf-8").splitlines()[0] == "20240102 09:30:00,10.5,11,10,10.75,500"


def test_permanent_failure_marks_job_failed(tmp_path) -> None:
    service = _service(tmp_path, StubDataSource(failures=[DataSourceError("No security definition")]))

    job = service.start_download_job(_request(tmp_path))

    assert service.wait_for_job(job.job_id, timeout=5).status is JobStatus.FAILED


def test_write_failure_marks_job_failed(tmp_path) -> None:
    (tmp_path / "data").write_text("not a directory", encoding="utf-8")
    service = _service(tmp_path, StubDataSource(_bars()))

    job = service.start_download_job(_request(tmp_path))

    assert service.wait_for_job(job.job_id, timeout=5).status is JobStatus.FAILED


def test_stop_cancels_running_job(tmp_path) -> None:
    source = BlockingDataSource()
    service = _service(tmp_path, source)

    job = service.start_download_job(_request(tmp_path))
    assert source.entered.wait(5)
    stopped = service.stop_download_job(job.job_id)
    finished = service.wait_for_job(job.job_id, timeout=5)

    assert stopped.status is JobStatus.STOPPED
    assert finished.status is JobStatus.STOPPED
    assert [item.job_id for item in service.list_jobs()] == [job.job_id]


def test_service_without_job_manager_only_runs_synchronously(tmp_path) -> None:
    service = DownloadService(None, StubDataSource(_bars()))

    assert service.run_download(_request(tmp_path)).success
    with pytest.raises(ToolboxError):
        service.start_download_job(_request(tmp_path))
