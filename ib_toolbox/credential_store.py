from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from ib_toolbox.exceptions import CredentialError

DEFAULT_STORE_DIRECTORY = Path.home() / ".quantconnect" / "interactivebrokers" / "credentials"
KEY_FILENAME = "secret.key"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class SecretProtector(Protocol):
    def protect(self, plaintext: bytes) -> bytes:
        ...

    def unprotect(self, protected: bytes) -> bytes:
        ...


class FernetSecretProtector:
    """
    Symmetric encryption with a per-store key file.

    The key is generated on first use and written with owner-only permissions.
    """

    def __init__(self, key_path: Path) -> None:
        self._key_path = Path(key_path)
        self._fernet: Optional[Fernet] = None

    def protect(self, plaintext: bytes) -> bytes:
        return self._get_fernet().encrypt(plaintext)

    def unprotect(self, protected: bytes) -> bytes:
        try:
            return self._get_fernet().decrypt(protected)
        except InvalidToken as exc:
            raise CredentialError("Stored secret could not be decrypted with the current key") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            if self._key_path.exists():
                key = self._key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                self._key_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self._key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "wb") as handle:
                    handle.write(key)
                os.chmod(self._key_path, 0o600)
            self._fernet = Fernet(key)
        return self._fernet


class CredentialStore:
    """Encrypted-at-rest secret storage, one file per key."""

    def __init__(
        self,
        store_directory: Optional[Path] = None,
        protector: Optional[SecretProtector] = None,
    ) -> None:
        self._store_directory = Path(store_directory) if store_directory else DEFAULT_STORE_DIRECTORY
        self._protector = protector or FernetSecretProtector(self._store_directory / KEY_FILENAME)

    @property
    def store_directory(self) -> Path:
        return self._store_directory

    def save(self, key: str, secret: str) -> None:
        if secret is None:
            raise ValueError("secret must not be None")
        path = self.path_for(key)
        self._store_directory.mkdir(parents=True, exist_ok=True)
        payload = self._protector.protect(secret.encode("utf-8"))

        fd, temp_path = tempfile.mkstemp(dir=self._store_directory, suffix=".bin", prefix=".tmp-cred-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.replace(temp_path, path)
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)

    def load(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return self._protector.unprotect(path.read_bytes()).decode("utf-8")

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        if path.exists():
            path.unlink()

    def path_for(self, key: str) -> Path:
        """Map ``key`` to its file, replacing characters unsafe in file names."""

        if not key or not key.strip():
            raise ValueError("key must not be empty")
        sanitized = _UNSAFE_KEY_CHARS.sub("_", key.strip()).strip("_.")
        if not sanitized:
            raise ValueError(f"key {key!r} has no usable characters")
        return self._store_directory / f"{sanitized}.bin"
