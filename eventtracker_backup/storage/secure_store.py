"""
Encrypted key-value store for OAuth tokens and backup keys.

Stands in for the platform key store on the desktop:
- A 256-bit master key kept in a private key file (mode 600)
- Preferences stored as one Fernet-encrypted JSON document
- Sub-keys for preferences and archives derived from the master key with HKDF
- Atomic writes (temp file + rename) so a crash never leaves half a document
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

MASTER_KEY_FILE = "master.key"
PREFS_FILE = "secure_prefs.enc"
MASTER_KEY_SIZE = 32

# HKDF context strings; changing them invalidates stored data
PREFS_KEY_INFO = b"eventtracker-backup prefs"
ARCHIVE_KEY_INFO = b"eventtracker-backup archive"


class SecureStoreError(Exception):
    """Raised when the key file or encrypted preferences cannot be used."""

    pass


class SecureCredentialStore:
    """
    Encrypted preference store keyed by a locally managed master key.

    All reads and writes go through an in-process lock. ``refresh_lock`` is a
    separate lock that token refreshes hold so that concurrent callers sharing
    this store issue at most one refresh request.

    Usage:
        store = SecureCredentialStore(Path("~/.eventtracker-backup"))
        store.put("dropbox_refresh_token", token)
        token = store.get("dropbox_refresh_token")
        key = store.archive_key()
    """

    def __init__(self, directory: Path | str):
        """
        Initialize the store.

        Args:
            directory: Directory holding the master key and preference file
        """
        self.directory = Path(directory).expanduser()
        self.key_path = self.directory / MASTER_KEY_FILE
        self.prefs_path = self.directory / PREFS_FILE
        self.refresh_lock = threading.Lock()
        self._lock = threading.RLock()
        self._master_key: bytes | None = None

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _ensure_directory(self) -> None:
        if not self.directory.exists():
            self.directory.mkdir(parents=True, mode=0o700)
            logger.debug(f"Created secure store directory: {self.directory}")

    def _load_or_create_master_key(self) -> bytes:
        if self._master_key is not None:
            return self._master_key

        if self.key_path.exists():
            key = self.key_path.read_bytes()
            if len(key) != MASTER_KEY_SIZE:
                raise SecureStoreError(
                    f"Master key file {self.key_path} is corrupt "
                    f"(expected {MASTER_KEY_SIZE} bytes, got {len(key)})"
                )
        else:
            self._ensure_directory()
            key = secrets.token_bytes(MASTER_KEY_SIZE)
            fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(key)
            logger.info(f"Generated new master key: {self.key_path}")

        self._master_key = key
        return key

    def _derive_key(self, info: bytes) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=info,
        )
        return hkdf.derive(self._load_or_create_master_key())

    def archive_key(self) -> bytes:
        """
        Get the 256-bit key used to encrypt backup archives.

        The key is derived from the master key, so it is stable for the
        lifetime of the key file and never written anywhere else.
        """
        with self._lock:
            return self._derive_key(ARCHIVE_KEY_INFO)

    def _fernet(self) -> Fernet:
        return Fernet(base64.urlsafe_b64encode(self._derive_key(PREFS_KEY_INFO)))

    # ------------------------------------------------------------------
    # Preference document
    # ------------------------------------------------------------------

    def _read_all(self) -> dict[str, str]:
        if not self.prefs_path.exists():
            return {}

        try:
            token = self.prefs_path.read_bytes()
            data = json.loads(self._fernet().decrypt(token).decode("utf-8"))
        except InvalidToken as e:
            raise SecureStoreError(
                f"Cannot decrypt {self.prefs_path}; the master key does not match"
            ) from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SecureStoreError(f"Corrupt preference file {self.prefs_path}") from e

        if not isinstance(data, dict):
            raise SecureStoreError(f"Corrupt preference file {self.prefs_path}")
        return data

    def _write_all(self, data: Mapping[str, str]) -> None:
        self._ensure_directory()
        token = self._fernet().encrypt(json.dumps(dict(data)).encode("utf-8"))

        tmp_path = self.prefs_path.with_name(self.prefs_path.name + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(token)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.prefs_path)

    def get(self, key: str) -> str | None:
        """Return the stored value for key, or None if absent."""
        with self._lock:
            return self._read_all().get(key)

    def put(self, key: str, value: str) -> None:
        """Store a single value."""
        self.put_all({key: value})

    def delete(self, key: str) -> None:
        """Remove a value; missing keys are ignored."""
        self.put_all({}, remove=(key,))

    def put_all(self, values: Mapping[str, str], remove: Iterable[str] = ()) -> None:
        """
        Store several values and remove keys in one atomic write.

        Args:
            values: Key/value pairs to store
            remove: Keys to delete in the same write
        """
        with self._lock:
            data = self._read_all()
            data.update(values)
            for key in remove:
                data.pop(key, None)
            self._write_all(data)

    def clear(self) -> None:
        """Remove every stored preference (the master key is kept)."""
        with self._lock:
            if self.prefs_path.exists():
                self.prefs_path.unlink()
