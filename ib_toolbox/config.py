"""
Configuration loading for the toolbox.

Values come from an optional JSON file, are overridden by environment
variables, and may have the gateway password filled from the encrypted
credential store.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Union

from ib_toolbox.exceptions import ValidationError

if TYPE_CHECKING:  # pragma: no cover
    from ib_toolbox.credential_store import CredentialStore

REQUIRED_KEYS = ("IB_USERNAME", "IB_PASSWORD", "IB_ACCOUNT")
SECRET_KEYS = ("IB_PASSWORD",)
ENV_OVERRIDE_KEYS = REQUIRED_KEYS + ("GATEWAY_HOST", "GATEWAY_PORT", "DATA_DIR", "LOG_LEVEL")

# Credential store key holding the gateway password.
PASSWORD_CREDENTIAL_KEY = "ib_password"


def _stringify(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


class ConfigLoader:
    """Loads and validates brokerage configuration."""

    def __init__(
        self,
        *,
        environ: Optional[Mapping[str, str]] = None,
        credential_store: Optional["CredentialStore"] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._environ = environ if environ is not None else os.environ
        self._credential_store = credential_store
        self._logger = logger or logging.getLogger(__name__)

    def load_config(self, config_path: Optional[Union[str, Path]] = None) -> Dict[str, str]:
        config: Dict[str, str] = {}

        if config_path:
            path = Path(config_path)
            if not path.is_file():
                raise ValidationError(f"Config file not found: {path}")
            config.update(self.parse_json_config(path.read_text(encoding="utf-8")))
            self._logger.debug("Loaded configuration from file: %s", path)

        config = self.merge_environment(config)

        if not config.get("IB_PASSWORD") and self._credential_store is not None:
            stored = self._credential_store.load(PASSWORD_CREDENTIAL_KEY)
            if stored:
                config["IB_PASSWORD"] = stored
                self._logger.debug("Filled IB_PASSWORD from the credential store")

        self.validate_config(config)

        self._logger.info("Configuration loaded and validated successfully")
        self._logger.debug(self.redacted(config))
        return config

    @staticmethod
    def parse_json_config(content: str) -> Dict[str, str]:
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON configuration: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON configuration: expected an object")
        return {str(key): _stringify(value) for key, value in payload.items()}

    def merge_environment(self, file_config: Mapping[str, str]) -> Dict[str, str]:
        """Return ``file_config`` with non-empty environment values taking precedence."""

        merged = dict(file_config)
        for key in ENV_OVERRIDE_KEYS:
            value = self._environ.get(key)
            if value:
                merged[key] = value
        return merged

    @staticmethod
    def validate_config(config: Mapping[str, str]) -> None:
        missing = [key for key in REQUIRED_KEYS if not config.get(key)]
        if missing:
            raise ValidationError(f"Missing required configuration keys: {', '.join(missing)}")

    @staticmethod
    def redacted(config: Mapping[str, str]) -> str:
        """Render ``config`` as ``key=value`` pairs with secrets masked."""

        return ", ".join(
            f"{key}={'***' if key in SECRET_KEYS else value}" for key, value in config.items()
        )


def _parse_bool(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class BrokerageConfiguration:
    """Persisted Interactive Brokers settings used by the CLI and server."""

    username: str = ""
    password: str = field(default="", repr=False)
    account: str = ""
    gateway_host: str = "127.0.0.1"
    gateway_port: int = 7497
    gateway_directory: str = ""
    gateway_version: str = "latest"
    trading_mode: str = "paper"
    automater_export_logs: bool = False
    data_directory: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.updated_at is None:
            self.updated_at = self.created_at

    def validate(self) -> List[str]:
        errors: List[str] = []
        if not self.username.strip():
            errors.append("Username (IB_USERNAME) is required.")
        if not self.account.strip():
            errors.append("Account (IB_ACCOUNT) is required.")
        if not self.data_directory.strip():
            errors.append("DataDirectory (DATA_DIR) is required.")
        if not 1 <= self.gateway_port <= 65535:
            errors.append("GatewayPort must be between 1 and 65535.")
        return errors

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    def to_environment_variables(self) -> Dict[str, str]:
        return {
            "IB_USERNAME": self.username,
            "IB_PASSWORD": self.password,
            "IB_ACCOUNT": self.account,
            "GATEWAY_HOST": self.gateway_host,
            "GATEWAY_PORT": str(self.gateway_port),
            "IB_GATEWAY_DIR": self.gateway_directory,
            "IB_VERSION": self.gateway_version,
            "IB_TRADING_MODE": self.trading_mode,
            "IB_AUTOMATER_EXPORT_LOGS": "true" if self.automater_export_logs else "false",
            "DATA_DIR": self.data_directory,
        }

    @classmethod
    def from_environment(cls, environment: Mapping[str, str]) -> "BrokerageConfiguration":
        try:
            port = int(environment.get("GATEWAY_PORT", "7497"))
        except ValueError:
            port = 7497

        configuration = cls(
            username=environment.get("IB_USERNAME", ""),
            password=environment.get("IB_PASSWORD", ""),
            account=environment.get("IB_ACCOUNT", ""),
            gateway_host=environment.get("GATEWAY_HOST") or "127.0.0.1",
            gateway_port=port,
            gateway_directory=environment.get("IB_GATEWAY_DIR", ""),
            gateway_version=environment.get("IB_VERSION") or "latest",
            trading_mode=environment.get("IB_TRADING_MODE") or "paper",
            automater_export_logs=_parse_bool(environment.get("IB_AUTOMATER_EXPORT_LOGS")),
            data_directory=environment.get("DATA_DIR", ""),
        )
        configuration.touch()
        return configuration
