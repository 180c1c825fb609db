import sys
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
from ib_toolbox.download_service import DownloadService
from ib_toolbox.job_manager import JobManager
from ib_toolbox.job_store import JobStore
from ib_toolbox.toolbox_server import build_default_service, create_app


class StubDataSource:
    def fetch_bars(self, request, cancel_event=None):
        return [Bar(datetime(2024, 1, 2, 9, 30), Decimal("1.25"), Decimal("1.5"), Decimal("1"), Decimal("1.25"), 42)]

    def test_connection(self):
        return True


@pytest.fixture
def service(tmp_path):
    return DownloadService(
        JobManager(JobStore(tmp_path / "jobs.json")),
        StubDataSource(),
        backoff_policy=BackoffPolicy(sleep=lambda delay: None),
    )


@pytest.fixture
def client(service):
    app = create_app(service)
    app.config["TESTING"] = True
    return app.test_client()


def _seed_minute_archive(root, rows):
    directory = root / "equity" / "usa" / "minute" / "spy"
    directory.mkdir(parents=True)
    with zipfile.ZipFile(directory / "20240102_trade.zip", "w") as archive:
        archive.writestr("20240102_trade.csv", "\n".join(rows))


def test_health(client) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "healthy"


def test_start_job_and_poll(client, service, tmp_path) -> None:
    response = client.post(
        "/api/jobs",
        json={
            "symbol": "AAPL",
            "security_type": "equity",
            "resolution": "minute",
            "from": "2024-01-02",
            "to": "2024-01-03",
            "data_dir": str(tmp_path / "data"),
        },
    )

    assert response.status_code == 202
    job = response.get_json()
    assert job["status"] == "Running"
    assert job["symbol"] == "AAPL"

    service.wait_for_job(job["job_id"], timeout=5)

    detail = client.get(f"/api/jobs/{job['job_id']}")
    assert detail.status_code == 200
    assert detail.get_json()["status"] == "Completed"

    listing = client.get("/api/jobs").get_json()
    assert [item["job_id"] for item in listing["jobs"]] == [job["job_id"]]


def test_start_job_validation_errors(client) -> None:
    response = client.post(
        "/api/jobs",
        json={"symbol": "", "resolution": "weekly", "from": "2024-01-05", "to": "2024-01-02", "data_dir": "/tmp/x"},
    )

    assert response.status_code == 400
    assert response.get_json()["errors"] == [
        "Symbol is required.",
        "Unsupported resolution: weekly",
        "Start date must be before end date.",
    ]


def test_start_job_rejects_bad_dates(client) -> None:
    response = client.post("/api/jobs", json={"symbol": "AAPL", "from": "01/02/2024"})

    assert response.status_code == 400
    assert response.get_json()["errors"] == [
        "from must be an ISO date (YYYY-MM-DD), got '01/02/2024'.",
        "to is required.",
    ]


def test_unknown_job_returns_404(client) -> None:
    assert client.get("/api/jobs/missing").status_code == 404
    assert client.post("/api/jobs/missing/stop").status_code == 404


def test_stop_finished_job_keeps_terminal_status(client, service, tmp_path) -> None:
    job = client.post(
        "/api/jobs",
        json={"symbol": "AAPL", "resolution": "daily", "from": "2024-01-02", "to": "2024-01-03", "data_dir": str(tmp_path / "d")},
    ).get_json()
    service.wait_for_job(job["job_id"], timeout=5)

    response = client.post(f"/api/jobs/{job['job_id']}/stop")

    assert response.status_code == 200
    assert response.get_json()["status"] == "Completed"


def test_snapshot_page(client, tmp_path) -> None:
    rows = [f"20240102 09:{minute:02d}:00,1.5,1.5,1.5,1.5,{minute}" for minute in range(30, 35)]
    _seed_minute_archive(tmp_path, rows)

    response = client.get(
        "/api/snapshot",
        query_string={
            "symbol": "SPY",
            "resolution": "minute",
            "data_dir": str(tmp_path),
            "start": "2024-01-02",
            "end": "2024-01-02",
            "page": "2",
            "page_size": "2",
        },
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["total_records"] == 5
    assert payload["total_pages"] == 3
    assert payload["page_number"] == 2
    assert [record["volume"] for record in payload["records"]] == [32, 33]
    assert payload["records"][0]["close"] == "1.5"
    assert payload["source_files"] == ["equity/usa/minute/spy/20240102_trade.zip"]


def test_snapshot_validation_errors(client) -> None:
    response = client.get("/api/snapshot", query_string={"resolution": "weekly", "page": "0"})

    assert response.status_code == 400
    assert response.get_json()["errors"] == [
        "Symbol is required.",
        "Resolution 'weekly' is not supported. Supported values: tick, second, minute, hour, daily.",
        "DataDirectory is required.",
        "PageNumber must be at least 1.",
    ]


def test_snapshot_bad_page_number(client, tmp_path) -> None:
    response = client.get("/api/snapshot", query_string={"symbol": "SPY", "data_dir": str(tmp_path), "page": "two"})

    assert response.status_code == 400
    assert response.get_json()["errors"] == ["page must be an integer, got 'two'."]


def test_cors_headers_present(client) -> None:
    response = client.get("/api/health", headers={"Origin": "http://localhost:3000"})
    assert response.headers.get("Access-Control-Allow-Origin") in ("*", "http://localhost:3000")


def test_default_service_uses_brokerage_configuration(tmp_path, caplog) -> None:
    environ = {
        "IB_USERNAME": "trader",
        "GATEWAY_HOST": "10.0.0.5",
        "GATEWAY_PORT": "4002",
        "DATA_DIR": str(tmp_path / "data"),
        "IB_TOOLBOX_JOBS": str(tmp_path / "jobs.json"),
    }

    with caplog.at_level("WARNING", logger="ib_toolbox.toolbox_server"):
        default_service = build_default_service(environ)

    assert default_service._data_source._host == "10.0.0.5"
    assert default_service._data_source._port == 4002
    assert default_service.list_jobs() == []
    assert any("Account (IB_ACCOUNT) is required." in message for message in caplog.messages)
    assert not any("Username" in message for message in caplog.messages)
