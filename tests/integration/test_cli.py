import logging
import sys
import zipfile
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ib_toolbox import cli
from ib_toolbox.cli import CliOptions, parse_options, run
from ib_toolbox.data_download.lean_schema import Bar
from ib_toolbox.exceptions import DataSourceError
from ib_toolbox.logging_setup import JOBS_LOGGER_NAME, REQUEST_LOGGER_NAME

ENVIRONMENT = {"IB_USERNAME": "alice", "IB_PASSWORD": "hunter2", "IB_ACCOUNT": "DU123"}


@pytest.fixture(autouse=True)
def restore_logging():
    names = (None, REQUEST_LOGGER_NAME, JOBS_LOGGER_NAME)
    saved = {name: (logging.getLogger(name).handlers[:], logging.getLogger(name).level) for name in names}
    yield
    for name, (handlers, level) in saved.items():
        target = logging.getLogger(name)
        for handler in target.handlers[:]:
            if handler not in handlers:
                target.removeHandler(handler)
                handler.close()
        for handler in handlers:
            if handler not in target.handlers:
                target.addHandler(handler)
        target.setLevel(level)
    logging.getLogger(REQUEST_LOGGER_NAME).propagate = True


class StubDataSource:
    def __init__(self, bars=None, error=None, reachable=True):
        self.bars = bars or []
        self.error = error
        self.reachable = reachable
        self.fetched = False

    def test_connection(self):
        if not self.reachable:
            raise DataSourceError("Cannot reach IB Gateway at 127.0.0.1:7497")
        return True

    def fetch_bars(self, request, cancel_event=None):
        self.fetched = True
        if self.error:
            raise self.error
        return self.bars


def _options(tmp_path, **overrides):
    values = dict(
        symbol="SPY",
        security_type="equity",
        resolution="minute",
        start=date(2024, 1, 2),
        end=date(2024, 1, 3),
        data_dir=tmp_path / "data",
    )
    values.update(overrides)
    return CliOptions(**values)


def _run(tmp_path, options, source=None, environ=ENVIRONMENT):
    return run(
        options,
        environ=environ,
        data_source_factory=(lambda opts: source) if source else None,
        log_dir=tmp_path / "logs",
    )


def test_parse_options_accepts_short_aliases(tmp_path) -> None:
    options = parse_options(
        ["-s", "AAPL", "-t", "equity", "-r", "Minute", "-f", "2024-01-02", "--to", "20240105", "-d", str(tmp_path), "-e", "NASDAQ", "--dry-run", "--gateway-port", "4002", "--log-level", "TRACE"]
    )

    assert options.symbol == "AAPL"
    assert options.start == date(2024, 1, 2)
    assert options.end == date(2024, 1, 5)
    assert options.data_dir == tmp_path
    assert options.exchange == "NASDAQ"
    assert options.dry_run is True
    assert options.gateway_port == 4002
    assert options.gateway_host is None
    assert options.log_level == "trace"


def test_missing_required_flags_exit_non_zero(capsys) -> None:
    assert cli.main(["-s", "AAPL"]) == 1
    assert "required" in capsys.readouterr().err


def test_help_exits_zero(capsys) -> None:
    assert cli.main(["--help"]) == 0
    assert "--use-ib-automater" in capsys.readouterr().out


def test_dry_run_validates_without_touching_disk_or_network(tmp_path) -> None:
    source = StubDataSource()

    assert _run(tmp_path, _options(tmp_path, dry_run=True), source) == 0

    assert not (tmp_path / "data").exists()
    assert not (tmp_path / "logs").exists()
    assert not source.fetched


def test_dry_run_with_missing_credentials_fails(tmp_path) -> None:
    assert _run(tmp_path, _options(tmp_path, dry_run=True), environ={"IB_USERNAME": "alice", "IB_PASSWORD": "x"}) == 1


def test_invalid_request_fails_before_logging(tmp_path, capsys) -> None:
    assert _run(tmp_path, _options(tmp_path, resolution="weekly")) == 1

    assert "Unsupported resolution: weekly" in capsys.readouterr().out
    assert not (tmp_path / "logs").exists()


def test_successful_download_writes_archives(tmp_path) -> None:
    bars = [Bar(datetime(2024, 1, 2, 9, 30), Decimal("470.5"), Decimal("471"), Decimal("470"), Decimal("470.75"), 1200)]
    source = StubDataSource(bars)

    assert _run(tmp_path, _options(tmp_path), source) == 0

    archive_path = tmp_path / "data" / "equity" / "usa" / "minute" / "spy" / "20240102_trade.zip"
    with zipfile.ZipFile(archive_path) as archive:
        assert archive.read("20240102_trade.csv").decode("utf-8") == "20240102 09:30:00,470.5,471,470,470.75,1200"
    assert (tmp_path / "logs" / "ib_toolbox.log").exists()


def test_download_failure_exits_non_zero(tmp_path) -> None:
    source = StubDataSource(error=DataSourceError("No security definition has been found"))
    assert _run(tmp_path, _options(tmp_path), source) == 1
    assert source.fetched


def test_unreachable_gateway_exits_non_zero(tmp_path) -> None:
    source = StubDataSource(reachable=False)
    assert _run(tmp_path, _options(tmp_path), source) == 1
    assert not source.fetched


def test_future_start_date_is_rejected(tmp_path) -> None:
    start = date.today() + timedelta(days=10)
    source = StubDataSource()

    assert _run(tmp_path, _options(tmp_path, start=start, end=start + timedelta(days=2)), source) == 1
    assert not source.fetched


def test_gateway_settings_come_from_config(tmp_path) -> None:
    seen = {}

    def factory(options):
        seen["host"], seen["port"] = options.gateway_host, options.gateway_port
        return StubDataSource()

    environment = dict(ENVIRONMENT, GATEWAY_HOST="localhost", GATEWAY_PORT="4002")
    assert run(_options(tmp_path), environ=environment, data_source_factory=factory, log_dir=tmp_path / "logs") == 0
    assert seen == {"host": "localhost", "port": 4002}
