import queue
import sys
import threading
from pathlib import Path
from types import SimpleNamespace

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ib_toolbox.exceptions import GatewayError, OperationCancelledError
from ib_toolbox.gateway import GatewayHelper, GatewayStatusEvent, is_local_host


class FakeController:
    def __init__(self, settings, on_start=None):
        self.settings = settings
        self.events = queue.Queue()
        self.started = False
        self.stopped = False
        self._on_start = on_start

    def start(self):
        self.started = True
        self.events.put(GatewayStatusEvent("output", "IBC: starting"))
        if self._on_start:
            self._on_start()

    def stop(self):
        self.stopped = True

    def is_running(self):
        return self.started and not self.stopped


class PortState:
    def __init__(self, open_=False):
        self.open = open_
        self.probes = 0

    def __call__(self, host, port):
        self.probes += 1
        return self.open


def _config(tmp_path, **overrides):
    values = {
        "IB_USERNAME": "user",
        "IB_PASSWORD": "secret",
        "IB_GATEWAY_DIR": str(tmp_path),
        "IB_TRADING_MODE": "paper",
    }
    values.update(overrides)
    return values


def _options(use=True, host="127.0.0.1", port=4002):
    return SimpleNamespace(use_ib_automater=use, gateway_host=host, gateway_port=port)


def _helper(tmp_path, port_state, controllers, environ=None, on_start=None, **config):
    def factory(settings):
        controller = FakeController(settings, on_start=on_start)
        controllers.append(controller)
        return controller

    return GatewayHelper(
        _config(tmp_path, **config),
        environ=environ or {},
        controller_factory=factory,
        port_probe=port_state,
        poll_interval=0.01,
        ready_timeout=0.5,
    )


def test_not_requested_returns_false(tmp_path) -> None:
    controllers = []
    helper = _helper(tmp_path, PortState(), controllers)

    assert helper.start_gateway_if_needed(_options(use=False)) is False
    assert controllers == []


def test_ci_environment_disables_automation(tmp_path) -> None:
    controllers = []
    helper = _helper(tmp_path, PortState(), controllers, environ={"GITHUB_ACTIONS": "true"})

    assert helper.start_gateway_if_needed(_options()) is False
    assert controllers == []


def test_remote_host_is_not_managed(tmp_path) -> None:
    controllers = []
    helper = _helper(tmp_path, PortState(), controllers)

    assert helper.start_gateway_if_needed(_options(host="203.0.113.5")) is False
    assert controllers == []


def test_port_already_open_skips_start(tmp_path) -> None:
    controllers = []
    helper = _helper(tmp_path, PortState(open_=True), controllers)

    assert helper.start_gateway_if_needed(_options()) is False
    assert controllers == []


def test_starts_and_stops_gateway(tmp_path) -> None:
    controllers = []
    port_state = PortState()
    helper = _helper(tmp_path, port_state, controllers, on_start=lambda: setattr(port_state, "open", True))

    assert helper.start_gateway_if_needed(_options()) is True

    (controller,) = controllers
    assert controller.started
    assert controller.settings.port == 4002
    assert controller.settings.trading_mode == "paper"
    assert controller.settings.gateway_directory == tmp_path

    helper.stop_gateway_if_started()
    assert controller.stopped

    helper.stop_gateway_if_started()


def test_timeout_cleans_up_and_raises(tmp_path) -> None:
    controllers = []
    helper = _helper(tmp_path, PortState(), controllers)

    with pytest.raises(GatewayError, match="Timed out"):
        helper.start_gateway_if_needed(_options())

    assert controllers[0].stopped


def test_cancel_while_waiting(tmp_path) -> None:
    controllers = []
    cancel_event = threading.Event()
    helper = _helper(tmp_path, PortState(), controllers, on_start=cancel_event.set)

    with pytest.raises(OperationCancelledError):
        helper.start_gateway_if_needed(_options(), cancel_event)

    assert controllers[0].stopped


def test_build_settings_requires_credentials_and_directory(tmp_path) -> None:
    with pytest.raises(GatewayError, match="IB_PASSWORD"):
        _helper(tmp_path, PortState(), [], IB_PASSWORD="").build_settings(4002)

    with pytest.raises(GatewayError, match="directory not found"):
        _helper(tmp_path, PortState(), [], IB_GATEWAY_DIR=str(tmp_path / "missing")).build_settings(4002)


def test_unknown_trading_mode_defaults_to_paper(tmp_path) -> None:
    settings = _helper(tmp_path, PortState(), [], IB_TRADING_MODE="demo").build_settings(4002)

    assert settings.trading_mode == "paper"
    assert settings.version == "latest"
    assert "secret" not in repr(settings)


def test_is_local_host() -> None:
    assert is_local_host("localhost")
    assert is_local_host("127.0.0.1")
    assert not is_local_host("")
