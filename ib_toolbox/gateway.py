"""
IB Gateway process management.

``GatewayHelper`` decides whether a local gateway should be started for a run,
starts it through a :class:`GatewayController` and waits until the API port
accepts connections. The controller is a small capability interface so tests
can swap in a fake; :class:`ProcessGatewayController` launches the real
gateway with ``subprocess`` and pumps its output into an event queue.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import queue
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Protocol

from ib_toolbox.exceptions import GatewayError, OperationCancelledError

CI_ENVIRONMENT_VARIABLES = (
    "CI",
    "CONTINUOUS_INTEGRATION",
    "BUILD_NUMBER",
    "BUILD_ID",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "JENKINS_URL",
    "TEAMCITY_VERSION",
    "TF_BUILD",
    "APPVEYOR",
    "CIRCLECI",
    "TRAVIS",
    "DRONE",
)

GATEWAY_CONFIG_KEYS = ("IB_GATEWAY_DIR", "IB_VERSION", "IB_TRADING_MODE", "IB_AUTOMATER_EXPORT_LOGS")

READY_POLL_INTERVAL = 2.0
READY_TIMEOUT = 120.0
PROBE_TIMEOUT = 3.0


@dataclass(frozen=True)
class GatewayStatusEvent:
    kind: str  # output, error, exited, restarted
    message: str = ""
    exit_code: Optional[int] = None


@dataclass(frozen=True)
class GatewaySettings:
    gateway_directory: Path
    version: str
    username: str
    password: str = field(repr=False)
    trading_mode: str
    port: int
    export_logs: bool = False


class GatewayController(Protocol):
    events: "queue.Queue[GatewayStatusEvent]"

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def is_running(self) -> bool:
        ...


def is_port_open(host: str, port: int, timeout: float = PROBE_TIMEOUT) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def is_local_host(host: str) -> bool:
    if not host or not host.strip():
        return False
    host = host.strip()
    if host.lower() in ("localhost", "127.0.0.1", "::1"):
        return True
    try:
        infos = socket.getaddrinfo(host, None)
    except socket.gaierror:
        return False
    return any(ipaddress.ip_address(info[4][0].split("%", 1)[0]).is_loopback for info in infos)


class ProcessGatewayController:
    """Runs the IB Gateway launcher script as a child process."""

    def __init__(self, settings: GatewaySettings, logger: Optional[logging.Logger] = None) -> None:
        self._settings = settings
        self._logger = logger or logging.getLogger(__name__)
        self._process: Optional[subprocess.Popen] = None
        self.events: "queue.Queue[GatewayStatusEvent]" = queue.Queue()

    def start(self) -> None:
        command = self._build_command()
        env = dict(os.environ)
        env.update(
            {
                "IB_USERNAME": self._settings.username,
                "IB_PASSWORD": self._settings.password,
                "IB_TRADING_MODE": self._settings.trading_mode,
                "IB_PORT": str(self._settings.port),
                "IB_AUTOMATER_EXPORT_LOGS": "true" if self._settings.export_logs else "false",
            }
        )

        try:
            self._process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                cwd=str(self._settings.gateway_directory),
                env=env,
            )
        except OSError as exc:
            raise GatewayError(
                f"Failed to launch IB Gateway ({exc}). "
                "Ensure IB_GATEWAY_DIR points to a valid IB Gateway installation."
            ) from exc

        threading.Thread(target=self._monitor_output, daemon=True).start()
        self._logger.info("IB Gateway process started (PID: %s)", self._process.pid)

    def stop(self) -> None:
        if not self.is_running():
            return
        self._process.terminate()
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._process.kill()
            self._process.wait()

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def _build_command(self) -> List[str]:
        base = self._settings.gateway_directory / "ibgateway"
        version = self._settings.version
        if version == "latest":
            installed = sorted(
                (entry for entry in base.iterdir() if entry.is_dir()),
                key=lambda entry: entry.name,
            ) if base.is_dir() else []
            if not installed:
                raise GatewayError(
                    f"No IB Gateway installation found under '{base}'. "
                    "Install IB Gateway or set IB_VERSION to an installed build."
                )
            version_dir = installed[-1]
        else:
            version_dir = base / version

        launcher = version_dir / "ibgateway"
        if not launcher.exists():
            raise GatewayError(
                f"IB Gateway launcher not found at '{launcher}'. "
                "Install the requested IB Gateway version or set IB_VERSION to an installed build."
            )
        return [str(launcher), f"-mode={self._settings.trading_mode}"]

    def _monitor_output(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        for line in iter(process.stdout.readline, ""):
            if line.strip():
                self.events.put(GatewayStatusEvent("output", line.strip()))
        exit_code = process.wait()
        self.events.put(GatewayStatusEvent("exited", f"IB Gateway exited with code {exit_code}", exit_code))


class GatewayHelper:
    """Starts and stops a local IB Gateway on behalf of a download run."""

    def __init__(
        self,
        config: Mapping[str, str],
        *,
        logger: Optional[logging.Logger] = None,
        environ: Optional[Mapping[str, str]] = None,
        controller_factory: Optional[Callable[[GatewaySettings], GatewayController]] = None,
        port_probe: Callable[[str, int], bool] = is_port_open,
        poll_interval: float = READY_POLL_INTERVAL,
        ready_timeout: float = READY_TIMEOUT,
    ) -> None:
        self._config = dict(config)
        self._logger = logger or logging.getLogger(__name__)
        self._environ = environ if environ is not None else os.environ
        self._controller_factory = controller_factory or (
            lambda settings: ProcessGatewayController(settings, self._logger)
        )
        self._port_probe = port_probe
        self._poll_interval = poll_interval
        self._ready_timeout = ready_timeout

        self._lock = threading.Lock()
        self._controller: Optional[GatewayController] = None
        self._started = False
        self._pump_stop = threading.Event()

    def should_use_gateway(self, requested: bool) -> bool:
        if not requested:
            return False
        for name in CI_ENVIRONMENT_VARIABLES:
            if self._environ.get(name):
                self._logger.warning("Detected CI environment (%s), disabling gateway automation", name)
                return False
        return True

    def start_gateway_if_needed(self, options, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Start a local gateway for ``options`` when it is requested and needed.

        ``options`` provides ``use_ib_automater``, ``gateway_host`` and
        ``gateway_port``. Returns ``True`` only when this helper started a
        gateway that is now accepting connections.
        """

        if not options.use_ib_automater:
            self._logger.debug("Gateway automation not requested")
            return False
        if not self.should_use_gateway(True):
            return False

        host, port = options.gateway_host, int(options.gateway_port)
        if not is_local_host(host):
            self._logger.warning("Gateway automation only manages local gateways. Host '%s' is not local.", host)
            return False

        if self._port_probe(host, port):
            self._logger.info("Detected IB Gateway already listening on %s:%s. Skipping gateway start.", host, port)
            return False

        settings = self.build_settings(port)
        self._logger.info(
            "Starting IB Gateway (mode: %s, version: %s)", settings.trading_mode, settings.version
        )

        controller = self._controller_factory(settings)
        self._pump_stop.clear()
        threading.Thread(target=self._pump_events, args=(controller,), daemon=True).start()

        try:
            controller.start()
            self._logger.info("Waiting for IB Gateway to accept connections...")
            self._wait_for_ready(host, port, cancel_event)
        except Exception as exc:
            self._cleanup(controller)
            if isinstance(exc, (GatewayError, OperationCancelledError)):
                raise
            raise GatewayError(f"Failed to launch IB Gateway: {exc}") from exc

        with self._lock:
            self._controller = controller
            self._started = True

        self._logger.info("IB Gateway is ready for connections.")
        return True

    def stop_gateway_if_started(self) -> None:
        with self._lock:
            controller, started = self._controller, self._started
            self._controller, self._started = None, False

        if controller is None:
            self._logger.debug("No gateway instance to stop")
            return

        if started:
            self._logger.info("Stopping IB Gateway...")
        self._cleanup(controller, stop=started)

    def build_settings(self, port: int) -> GatewaySettings:
        values = {key.upper(): value for key, value in self._config.items() if key.upper().startswith("IB_")}
        for key in GATEWAY_CONFIG_KEYS:
            if key not in values and self._environ.get(key):
                values[key] = self._environ[key]

        gateway_dir = Path(values.get("IB_GATEWAY_DIR") or Path.home() / "Jts").expanduser()
        if not gateway_dir.is_dir():
            raise GatewayError(
                f"IB Gateway directory not found: '{gateway_dir}'. "
                "Set IB_GATEWAY_DIR to your IB Gateway installation path."
            )

        for key in ("IB_USERNAME", "IB_PASSWORD"):
            if not (values.get(key) or "").strip():
                raise GatewayError(f"Missing required configuration value '{key}'.")

        trading_mode = (values.get("IB_TRADING_MODE") or "paper").strip().lower()
        if trading_mode not in ("paper", "live"):
            self._logger.warning("Unrecognized IB_TRADING_MODE '%s'. Defaulting to 'paper'.", trading_mode)
            trading_mode = "paper"

        return GatewaySettings(
            gateway_directory=gateway_dir,
            version=(values.get("IB_VERSION") or "latest").strip(),
            username=values["IB_USERNAME"],
            password=values["IB_PASSWORD"],
            trading_mode=trading_mode,
            port=port,
            export_logs=(values.get("IB_AUTOMATER_EXPORT_LOGS") or "").strip().lower() == "true",
        )

    # ----------------------------------------------------------------- helpers
    def _wait_for_ready(self, host: str, port: int, cancel_event: Optional[threading.Event]) -> None:
        deadline = time.monotonic() + self._ready_timeout
        while time.monotonic() < deadline:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Cancelled while waiting for IB Gateway")
            if self._port_probe(host, port):
                return
            if cancel_event is not None:
                cancel_event.wait(self._poll_interval)
            else:
                time.sleep(self._poll_interval)
        raise GatewayError(f"Timed out waiting for IB Gateway to accept connections on {host}:{port}.")

    def _pump_events(self, controller: GatewayController) -> None:
        while not self._pump_stop.is_set():
            try:
                event = controller.events.get(timeout=0.5)
            except queue.Empty:
                continue
            if event.kind == "output":
                self._logger.debug("IB Gateway: %s", event.message)
            elif event.kind == "error":
                self._logger.warning("IB Gateway error: %s", event.message)
            elif event.kind == "exited":
                self._logger.info("IB Gateway exited with code %s", event.exit_code)
            elif event.kind == "restarted":
                self._logger.info("IB Gateway triggered an automatic restart")

    def _cleanup(self, controller: GatewayController, stop: bool = True) -> None:
        try:
            if stop and controller.is_running():
                controller.stop()
        except (OSError, GatewayError) as exc:
            self._logger.warning("Error while stopping IB Gateway: %s", exc)
        finally:
            self._pump_stop.set()
