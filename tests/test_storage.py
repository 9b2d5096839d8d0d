"""
tests/test_storage.py -- Tests for client/storage.py.

Covers:
  - EncryptedFileStorage round-trip; nothing readable on disk
  - Generated key file is private (0600) and reused across instances
  - Explicit key: records written with one key are unreadable with another,
    and the unreadable record is dropped
  - Tampered record is treated as absent
  - Storage keys are restricted to a safe charset
  - SessionState persists across processes through the encrypted file
"""

from __future__ import annotations

import os
import stat
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from auth.models import Identity, Session, TokenPair
from client.session import STORAGE_KEY, SessionState
from client.storage import EncryptedFileStorage, MemorySecureStorage


def _session() -> Session:
    identity = Identity(email="a@x.com", username="ax", display_name="Ax", id=7)
    tokens = TokenPair("access-token", "refresh-token", datetime.now(timezone.utc) + timedelta(minutes=15))
    return Session(identity=identity, tokens=tokens)


class TestEncryptedFileStorage:
    def test_round_trip(self, tmp_path) -> None:
        storage = EncryptedFileStorage(tmp_path)
        storage.set_item("stagepass.session", '{"secret": "refresh-token"}')
        assert storage.get_item("stagepass.session") == '{"secret": "refresh-token"}'
        assert storage.has_item("stagepass.session")

    def test_ciphertext_on_disk(self, tmp_path) -> None:
        storage = EncryptedFileStorage(tmp_path)
        storage.set_item("stagepass.session", "refresh-token-value")
        raw = (tmp_path / "stagepass.session.enc").read_bytes()
        assert b"refresh-token-value" not in raw

    def test_record_file_is_private(self, tmp_path) -> None:
        storage = EncryptedFileStorage(tmp_path)
        storage.set_item("stagepass.session", "value")
        mode = stat.S_IMODE(os.stat(tmp_path / "stagepass.session.enc").st_mode)
        assert mode == 0o600

    def test_generated_key_is_private_and_reused(self, tmp_path) -> None:
        EncryptedFileStorage(tmp_path).set_item("k", "value")
        key_file = tmp_path / "session.key"
        assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o600
        assert EncryptedFileStorage(tmp_path).get_item("k") == "value"

    def test_missing_item(self, tmp_path) -> None:
        storage = EncryptedFileStorage(tmp_path)
        assert storage.get_item("absent") is None
        storage.remove_item("absent")

    def test_remove(self, tmp_path) -> None:
        storage = EncryptedFileStorage(tmp_path)
        storage.set_item("k", "value")
        storage.remove_item("k")
        assert storage.get_item("k") is None
        assert not storage.has_item("k")

    def test_explicit_key(self, tmp_path) -> None:
        key = Fernet.generate_key().decode()
        EncryptedFileStorage(tmp_path, key).set_item("k", "value")
        assert not (tmp_path / "session.key").exists()
        assert EncryptedFileStorage(tmp_path, key).get_item("k") == "value"

    def test_wrong_key_reads_as_absent(self, tmp_path) -> None:
        EncryptedFileStorage(tmp_path, Fernet.generate_key().decode()).set_item("k", "value")
        other = EncryptedFileStorage(tmp_path, Fernet.generate_key().decode())
        assert other.get_item("k") is None
        assert not (tmp_path / "k.enc").exists()

    def test_tampered_record_reads_as_absent(self, tmp_path) -> None:
        storage = EncryptedFileStorage(tmp_path)
        storage.set_item("k", "value")
        path = tmp_path / "k.enc"
        data = bytearray(path.read_bytes())
        data[-5] = ord("A") if data[-5] != ord("A") else ord("B")
        path.write_bytes(bytes(data))
        assert storage.get_item("k") is None

    @pytest.mark.parametrize("key", ["../escape", "a/b", "", "spaced key"])
    def test_rejects_unsafe_keys(self, tmp_path, key: str) -> None:
        storage = EncryptedFileStorage(tmp_path)
        with pytest.raises(ValueError):
            storage.set_item(key, "value")


class TestSessionPersistence:
    def test_session_survives_restart(self, tmp_path) -> None:
        session = _session()
        SessionState(EncryptedFileStorage(tmp_path)).replace(session)
        restored = SessionState(EncryptedFileStorage(tmp_path))
        assert restored.session == session
        assert restored.is_authenticated

    def test_clear_removes_record(self, tmp_path) -> None:
        storage = EncryptedFileStorage(tmp_path)
        state = SessionState(storage)
        state.replace(_session())
        state.clear()
        assert not storage.has_item(STORAGE_KEY)
        assert SessionState(EncryptedFileStorage(tmp_path)).session is None

    def test_replace_bumps_generation(self) -> None:
        state = SessionState(MemorySecureStorage())
        first = state.replace(_session())
        second = state.replace(_session())
        assert second == first + 1
        state.clear()
        assert state.generation == second + 1
