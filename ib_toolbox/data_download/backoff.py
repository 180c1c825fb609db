from __future__ import annotations

import asyncio
import logging
import random
import socket
import threading
import time
from typing import Callable, Optional, TypeVar

from ib_toolbox.exceptions import OperationCancelledError, TransientSourceError

T = TypeVar("T")

_RETRYABLE_MESSAGE_TOKENS = (
    "pacing",
    "rate limit",
    "too many requests",
    "throttle",
    "timeout",
)


def is_retryable_exception(exc: BaseException) -> bool:
    """Return ``True`` for pacing, rate limit, timeout and network failures."""

    if isinstance(exc, OperationCancelledError):
        return False

    message = str(exc).lower()
    if any(token in message for token in _RETRYABLE_MESSAGE_TOKENS):
        return True

    return isinstance(
        exc,
        (
            TransientSourceError,
            ConnectionError,
            TimeoutError,
            socket.timeout,
            asyncio.TimeoutError,
        ),
    )


class BackoffPolicy:
    """
    Exponential backoff with jitter around data source calls.

    The delay for retry ``attempt`` (0-based) is ``base_delay * 2 ** attempt``
    capped at ``max_delay``, then jittered by +/-25% and never shorter than
    ``base_delay``. At most ``max_retries`` retries are made after the first
    call.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_retries: int = 5,
        *,
        logger: Optional[logging.Logger] = None,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if base_delay < 0 or max_delay < 0:
            raise ValueError("Delays must be non-negative")
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_retries = max_retries
        self._logger = logger or logging.getLogger("ib_toolbox.jobs")
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def execute(
        self,
        operation: Callable[[], T],
        should_retry: Callable[[BaseException], bool] = is_retryable_exception,
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Operation cancelled before attempt")
            try:
                result = operation()
            except Exception as exc:
                if attempt >= self._max_retries or not should_retry(exc):
                    self._logger.error(
                        "Operation failed after %d attempts: %s", attempt + 1, exc
                    )
                    raise

                delay = self.calculate_delay(attempt)
                self._logger.info(
                    "Operation failed (attempt %d/%d), retrying in %.2fs: %s",
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                    exc,
                )
                self._wait(delay, cancel_event)
                attempt += 1
                continue

            if attempt > 0:
                self._logger.info("Operation succeeded after %d retries", attempt)
            return result

    def calculate_delay(self, attempt: int) -> float:
        capped = min(self._base_delay * (2 ** attempt), self._max_delay)
        jitter = (self._rng.random() - 0.5) * 2 * capped * 0.25
        return max(capped + jitter, self._base_delay)

    def _wait(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)

        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Operation cancelled during backoff")
