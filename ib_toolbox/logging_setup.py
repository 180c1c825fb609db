"""
Logging configuration for the toolbox CLI and HTTP server.

Mirrors a classic server layout: a rotating main log, a separate request log
that does not propagate, a job execution log and a short console format.
Every handler redacts secrets and stamps the run's correlation id.
"""

from __future__ import annotations

import logging
import logging.handlers
import re
import sys
import uuid
from pathlib import Path
from typing import Any, Optional, Union

LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

REDACTED = "[REDACTED]"

SENSITIVE_KEY_PATTERN = re.compile(
    r"password|passwd|pwd|secret|token|auth|credential|api[_-]?key|private|"
    r"username|login|account|cert",
    re.IGNORECASE,
)

_KEY_VALUE_PATTERN = re.compile(
    r"(?P<key>\b[\w.-]*(?:password|passwd|pwd|secret|token|credential|api[_-]?key|username|account)[\w.-]*)"
    r"(?P<sep>\s*[=:]\s*)"
    r"(?P<value>\"[^\"]*\"|'[^']*'|[^\s,;&]+)",
    re.IGNORECASE,
)

REQUEST_LOGGER_NAME = "ib_toolbox.requests"
JOBS_LOGGER_NAME = "ib_toolbox.jobs"


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def parse_log_level(name: Optional[str]) -> int:
    """Map a CLI/config level name to a :mod:`logging` level (unknown -> INFO)."""

    return LOG_LEVELS.get((name or "info").strip().lower(), logging.INFO)


def is_sensitive_key(key: str) -> bool:
    return bool(SENSITIVE_KEY_PATTERN.search(str(key)))


def redact_value(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive mapping entries redacted."""

    if isinstance(value, dict):
        return {
            key: REDACTED if is_sensitive_key(key) else redact_value(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact_value(item) for item in value)
    if isinstance(value, str):
        return redact_text(value)
    return value


def redact_text(text: str) -> str:
    """Redact ``key=value`` / ``key: value`` pairs whose key looks sensitive."""

    return _KEY_VALUE_PATTERN.sub(lambda match: f"{match.group('key')}{match.group('sep')}{REDACTED}", text)


class RedactingFilter(logging.Filter):
    """Rewrites records so secrets never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, dict):
            record.msg = redact_value(record.msg)
            return True

        message = record.getMessage()
        redacted = redact_text(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class CorrelationIdFilter(logging.Filter):
    def __init__(self, correlation_id: str) -> None:
        super().__init__()
        self.correlation_id = correlation_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = self.correlation_id
        return True


def _decorate(handler: logging.Handler, correlation_id: str) -> logging.Handler:
    handler.addFilter(CorrelationIdFilter(correlation_id))
    handler.addFilter(RedactingFilter())
    return handler


def setup_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: Union[str, int] = "info",
    correlation_id: Optional[str] = None,
    *,
    console: bool = True,
    files: bool = True,
) -> Path:
    """Setup logging for toolbox operations and return the log directory.

    With ``files=False`` only the console handler is installed and nothing is
    written to disk.
    """

    log_dir = Path(log_dir) if log_dir else Path.cwd() / "logs"
    if files:
        log_dir.mkdir(parents=True, exist_ok=True)
    correlation_id = correlation_id or new_correlation_id()
    console_level = level if isinstance(level, int) else parse_log_level(level)

    detailed_formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(correlation_id)s | %(name)-20s | %(funcName)-20s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    simple_formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(correlation_id)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    request_logger = logging.getLogger(REQUEST_LOGGER_NAME)
    jobs_logger = logging.getLogger(JOBS_LOGGER_NAME)
    for target in (root_logger, request_logger, jobs_logger):
        for handler in target.handlers[:]:
            target.removeHandler(handler)
            handler.close()

    request_logger.setLevel(logging.INFO)
    request_logger.propagate = False
    jobs_logger.setLevel(logging.DEBUG)

    if files:
        # 1. Main toolbox log file (rotating)
        main_handler = logging.handlers.RotatingFileHandler(
            log_dir / "ib_toolbox.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        main_handler.setLevel(logging.DEBUG)
        main_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(_decorate(main_handler, correlation_id))

        # 2. HTTP request log (separate file)
        request_handler = logging.handlers.RotatingFileHandler(
            log_dir / "requests.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        request_handler.setLevel(logging.INFO)
        request_handler.setFormatter(detailed_formatter)
        request_logger.addHandler(_decorate(request_handler, correlation_id))

        # 3. Job execution log (separate file, also reaches the main log)
        jobs_handler = logging.handlers.RotatingFileHandler(
            log_dir / "jobs.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        jobs_handler.setLevel(logging.DEBUG)
        jobs_handler.setFormatter(detailed_formatter)
        jobs_logger.addHandler(_decorate(jobs_handler, correlation_id))

    # 4. Console output
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(console_level)
        console_handler.setFormatter(simple_formatter)
        root_logger.addHandler(_decorate(console_handler, correlation_id))

    return log_dir
