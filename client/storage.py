"""
client/storage.py -- Secure at-rest storage for the persisted session record.

Two implementations of the SecureStorage protocol:
  EncryptedFileStorage -- one Fernet-encrypted file per key under a private
                          directory. Used by the CLI.
  MemorySecureStorage  -- process-local dict. Used by tests and by callers
                          that do not want a session to outlive the process.

Fernet (cryptography) gives authenticated encryption: a tampered or foreign
file fails to decrypt instead of yielding garbage. Such a record is treated
as absent, which is the definition of "logged out".

Key management: ClientSettings.session_encryption_key when set; otherwise a
key generated once into <dir>/session.key, mode 0600.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("stagepass.storage")

_KEY_FILE = "session.key"
_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class SecureStorage(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemorySecureStorage:
    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def has_item(self, key: str) -> bool:
        return key in self._items


class EncryptedFileStorage:
    """Fernet-encrypted records, one file per key.

    Usage:
        storage = EncryptedFileStorage(Path.home() / ".stagepass")
        storage.set_item("stagepass.session", json_text)
        storage.get_item("stagepass.session")
    """

    def __init__(self, directory: Path, encryption_key: str = "") -> None:
        self.directory = Path(directory)
        self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        self._fernet = Fernet(encryption_key.encode() if encryption_key else self._load_or_create_key())

    def _load_or_create_key(self) -> bytes:
        key_path = self.directory / _KEY_FILE
        if key_path.is_file():
            return key_path.read_bytes().strip()
        key = Fernet.generate_key()
        self._write_private(key_path, key)
        logger.warning("Generated new session encryption key at %s", key_path)
        return key

    def _path_for(self, key: str) -> Path:
        if not _SAFE_KEY_RE.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.enc"

    @staticmethod
    def _write_private(path: Path, data: bytes) -> None:
        """Write via a 0600 temp file + rename so readers never see a partial record."""
        tmp = path.with_suffix(path.suffix + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)

    def get_item(self, key: str) -> str | None:
        path = self._path_for(key)
        if not path.is_file():
            return None
        try:
            return self._fernet.decrypt(path.read_bytes()).decode("utf-8")
        except InvalidToken:
            logger.warning("Discarding unreadable record %s (tampered or wrong key)", path.name)
            path.unlink(missing_ok=True)
            return None

    def set_item(self, key: str, value: str) -> None:
        self._write_private(self._path_for(key), self._fernet.encrypt(value.encode("utf-8")))

    def remove_item(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def has_item(self, key: str) -> bool:
        return self._path_for(key).is_file()
