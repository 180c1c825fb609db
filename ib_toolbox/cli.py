"""
Command-line entry point: download IB history into the Lean data layout.

    ib-toolbox -s AAPL -t equity -r minute -f 2024-01-02 --to 2024-01-05 -d ./data
"""

from __future__ import annotations

import argparse
import logging
import os
import threading
from dataclasses import dataclass, replace
from datetime import date, datetime
from pathlib import Path
from typing import Callable, List, Mapping, Optional

from ib_toolbox.config import ConfigLoader
from ib_toolbox.credential_store import CredentialStore
from ib_toolbox.data_download.ib_client import HistoricalDataSource, InteractiveBrokersDataSource
from ib_toolbox.data_download.models import SUPPORTED_RESOLUTIONS, DownloadRequest
from ib_toolbox.download_service import DownloadService
from ib_toolbox.exceptions import ToolboxError, ValidationError
from ib_toolbox.gateway import GatewayHelper
from ib_toolbox.logging_setup import LOG_LEVELS, new_correlation_id, setup_logging
from ib_toolbox.trading_calendar import MarketSessionHelper

DEFAULT_GATEWAY_HOST = "127.0.0.1"
DEFAULT_GATEWAY_PORT = 7497

logger = logging.getLogger("ib_toolbox.cli")


@dataclass(frozen=True)
class CliOptions:
    """Parsed command line, built once per invocation."""

    symbol: str
    security_type: str
    resolution: str
    start: date
    end: date
    data_dir: Path
    exchange: str = "SMART"
    currency: str = "USD"
    config: Optional[Path] = None
    log_level: str = "info"
    dry_run: bool = False
    use_ib_automater: bool = False
    gateway_host: Optional[str] = None
    gateway_port: Optional[int] = None

    def to_request(self) -> DownloadRequest:
        return DownloadRequest(
            symbol=self.symbol,
            security_type=self.security_type,
            resolution=self.resolution,
            start=self.start,
            end=self.end,
            data_dir=self.data_dir,
            exchange=self.exchange,
            currency=self.currency,
        )


def _parse_date(value: str) -> date:
    for fmt in ("%Y-%m-%d", "%Y%m%d"):
        try:
            return datetime.strptime(value.strip(), fmt).date()
        except ValueError:
            continue
    raise argparse.ArgumentTypeError(f"invalid date '{value}' (expected YYYY-MM-DD)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ib-toolbox",
        description="Download Interactive Brokers historical data in Lean format.",
    )
    parser.add_argument("-s", "--symbol", required=True, help="Ticker symbol, e.g. AAPL.")
    parser.add_argument("-t", "--security-type", required=True, help="equity, forex, future, index or crypto.")
    parser.add_argument(
        "-r",
        "--resolution",
        required=True,
        help=f"Bar resolution: {', '.join(SUPPORTED_RESOLUTIONS)}.",
    )
    parser.add_argument("-f", "--from", dest="start", type=_parse_date, required=True, help="Start date (inclusive).")
    parser.add_argument("--to", dest="end", type=_parse_date, required=True, help="End date (exclusive).")
    parser.add_argument("-d", "--data-dir", type=Path, required=True, help="Lean data root directory.")
    parser.add_argument("-e", "--exchange", default="SMART", help="IB exchange code (default: SMART).")
    parser.add_argument("--currency", default="USD", help="Contract currency (default: USD).")
    parser.add_argument("-c", "--config", type=Path, default=None, help="JSON configuration file.")
    parser.add_argument(
        "--log-level",
        default="info",
        type=str.lower,
        choices=sorted(LOG_LEVELS),
        help="Console log level (default: info).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate arguments and configuration only; no downloads and no files written.",
    )
    parser.add_argument(
        "--use-ib-automater",
        action="store_true",
        help="Start a local IB Gateway when none is listening.",
    )
    parser.add_argument("--gateway-host", default=None, help="IB Gateway host (default: GATEWAY_HOST or 127.0.0.1).")
    parser.add_argument("--gateway-port", type=int, default=None, help="IB Gateway port (default: GATEWAY_PORT or 7497).")
    return parser


def parse_options(argv: Optional[List[str]] = None) -> CliOptions:
    args = build_parser().parse_args(argv)
    return CliOptions(
        symbol=args.symbol,
        security_type=args.security_type,
        resolution=args.resolution,
        start=args.start,
        end=args.end,
        data_dir=args.data_dir,
        exchange=args.exchange,
        currency=args.currency,
        config=args.config,
        log_level=args.log_level,
        dry_run=args.dry_run,
        use_ib_automater=args.use_ib_automater,
        gateway_host=args.gateway_host,
        gateway_port=args.gateway_port,
    )


def _resolve_gateway(options: CliOptions, config: Mapping[str, str]) -> CliOptions:
    host = options.gateway_host or config.get("GATEWAY_HOST") or DEFAULT_GATEWAY_HOST
    port = options.gateway_port
    if port is None:
        raw_port = config.get("GATEWAY_PORT")
        try:
            port = int(raw_port) if raw_port else DEFAULT_GATEWAY_PORT
        except ValueError as exc:
            raise ValidationError(f"GATEWAY_PORT must be an integer, got '{raw_port}'.") from exc
    return replace(options, gateway_host=host, gateway_port=port)


def run(
    options: CliOptions,
    *,
    environ: Optional[Mapping[str, str]] = None,
    data_source_factory: Optional[Callable[[CliOptions], HistoricalDataSource]] = None,
    session_helper: Optional[MarketSessionHelper] = None,
    gateway_helper_factory: Optional[Callable[[Mapping[str, str]], GatewayHelper]] = None,
    log_dir: Optional[Path] = None,
) -> int:
    """Execute one CLI invocation and return its exit code."""

    environ = environ if environ is not None else os.environ

    try:
        request = options.to_request()
    except ValidationError as exc:
        for message in exc.errors:
            print(f"❌ {message}")
        return 1

    correlation_id = new_correlation_id()
    setup_logging(
        log_dir or Path.cwd() / "logs",
        options.log_level,
        correlation_id,
        files=not options.dry_run,
    )
    logger.info(
        {
            "event": "cli_start",
            "correlation_id": correlation_id,
            "dry_run": options.dry_run,
            **request.to_dict(),
        }
    )

    try:
        config = ConfigLoader(environ=environ, credential_store=CredentialStore()).load_config(options.config)
        options = _resolve_gateway(options, config)
    except ToolboxError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    if options.dry_run:
        logger.info("Dry run complete: arguments and configuration are valid")
        return 0

    gateway_helper: Optional[GatewayHelper] = None
    cancel_event = threading.Event()
    try:
        request.data_dir.mkdir(parents=True, exist_ok=True)

        validation = (session_helper or MarketSessionHelper()).validate_date_range(
            request.start, request.end, request.resolution
        )
        for warning in validation.warnings:
            logger.warning(warning)
        if not validation.is_valid:
            for error in validation.errors:
                logger.error(error)
            return 1

        gateway_helper = (gateway_helper_factory or (lambda cfg: GatewayHelper(cfg, environ=environ)))(config)
        gateway_helper.start_gateway_if_needed(options, cancel_event)

        if data_source_factory is not None:
            data_source = data_source_factory(options)
        else:
            data_source = InteractiveBrokersDataSource(
                options.gateway_host,
                options.gateway_port,
                session_helper=session_helper,
            )
        data_source.test_connection()

        service = DownloadService(None, data_source)
        result = service.run_download(request, cancel_event)
    except KeyboardInterrupt:
        cancel_event.set()
        logger.warning("Download interrupted")
        return 1
    except (ToolboxError, OSError) as exc:
        logger.error("Download failed: %s", exc)
        return 1
    finally:
        if gateway_helper is not None:
            gateway_helper.stop_gateway_if_started()

    for warning in result.warnings:
        logger.warning(warning)
    if not result.success:
        logger.error("Download failed: %s", result.error)
        return 1

    logger.info("✅ Wrote %d file(s) for %s", len(result.files), request.symbol)
    for path in result.files:
        logger.info("  %s", path)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    try:
        options = parse_options(argv)
    except SystemExit as exc:
        return 0 if exc.code in (0, None) else 1
    return run(options)


if __name__ == "__main__":
    raise SystemExit(main())
