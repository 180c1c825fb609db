"""Exception hierarchy for the toolbox.

All toolbox-specific exceptions derive from :class:`ToolboxError` so callers
can catch every failure raised by the download, storage and job layers
uniformly. Filesystem failures are left as the built-in :class:`OSError`
family.
"""

from __future__ import annotations

from typing import Iterable, List


class ToolboxError(Exception):
    """Base class for toolbox exceptions."""


class ValidationError(ToolboxError, ValueError):
    """Raised when a request or configuration fails validation.

    The individual human-readable messages are kept on :attr:`errors`.
    """

    def __init__(self, errors: Iterable[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__(" ".join(self.errors))


class UnsupportedResolutionError(ValidationError):
    """Raised when a resolution outside the supported set is requested."""

    def __init__(self, resolution: object) -> None:
        self.resolution = resolution
        super().__init__(f"Unsupported resolution: {resolution}")


class MalformedRowError(ToolboxError, ValueError):
    """Raised when a single Lean CSV row cannot be parsed."""


class MissingZipEntryError(ToolboxError, KeyError):
    """Raised when an archive does not contain the expected CSV entry."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class DataSourceError(ToolboxError):
    """Raised when the brokerage data source fails permanently."""


class TransientSourceError(DataSourceError):
    """Raised for data source failures that are worth retrying (pacing, timeouts)."""


class OperationCancelledError(ToolboxError):
    """Raised when a cancellation signal is observed mid-operation."""


class GatewayError(ToolboxError):
    """Raised when the brokerage gateway process cannot be managed."""


class CredentialError(ToolboxError):
    """Raised when a stored secret cannot be decrypted."""


__all__ = [
    "ToolboxError",
    "ValidationError",
    "UnsupportedResolutionError",
    "MalformedRowError",
    "MissingZipEntryError",
    "DataSourceError",
    "TransientSourceError",
    "OperationCancelledError",
    "GatewayError",
    "CredentialError",
]
