"""
Encrypted backup archives of the event store.

An archive is a zip file holding the SQLite database and its write-ahead
log / shared-memory side files, encrypted as a stream of authenticated
segments:

    header   = b"ETBK" | version (1 byte) | salt (32 bytes) | nonce prefix (7 bytes)
    segments = AES-256-GCM(plaintext[i*4096:(i+1)*4096]) each with a 16-byte tag

Segment ``i`` uses the nonce ``prefix | i (4 bytes, big endian) | last flag``
and the header as associated data, so reordering, truncation and header
tampering are all detected. The segment key is derived per archive with
HKDF from the credential store's archive key and the header salt; no key
material is stored in the archive itself.
"""

from __future__ import annotations

import logging
import os
import shutil
import struct
import tempfile
import time
import zipfile
from pathlib import Path
from typing import BinaryIO

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from eventtracker_backup.storage.db import EventStore
from eventtracker_backup.storage.secure_store import SecureCredentialStore

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "eventtracker-"
ARCHIVE_SUFFIX = ".etbak"

MAGIC = b"ETBK"
FORMAT_VERSION = 1
SALT_SIZE = 32
NONCE_PREFIX_SIZE = 7
HEADER_SIZE = len(MAGIC) + 1 + SALT_SIZE + NONCE_PREFIX_SIZE

SEGMENT_SIZE = 4096
TAG_SIZE = 16
MAX_SEGMENTS = 2**32

SEGMENT_KEY_INFO = b"eventtracker-backup segment key"


class ArchiveError(Exception):
    """Raised when an archive cannot be created, decrypted or applied."""

    pass


def is_archive_name(name: str) -> bool:
    """True for file names produced by create_encrypted_backup."""
    return name.startswith(ARCHIVE_PREFIX) and name.endswith(ARCHIVE_SUFFIX)


def _segment_key(archive_key: bytes, salt: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        info=SEGMENT_KEY_INFO,
    ).derive(archive_key)


def _segment_nonce(prefix: bytes, counter: int, last: bool) -> bytes:
    return prefix + struct.pack(">IB", counter, 1 if last else 0)


def encrypt_stream(source: BinaryIO, target: BinaryIO, archive_key: bytes) -> None:
    """
    Encrypt ``source`` into ``target`` using the segmented archive format.

    Args:
        source: Readable binary stream with the plaintext
        target: Writable binary stream for header and segments
        archive_key: 32-byte key material from the credential store
    """
    salt = os.urandom(SALT_SIZE)
    prefix = os.urandom(NONCE_PREFIX_SIZE)
    header = MAGIC + bytes([FORMAT_VERSION]) + salt + prefix
    aead = AESGCM(_segment_key(archive_key, salt))

    target.write(header)
    counter = 0
    chunk = source.read(SEGMENT_SIZE)
    while True:
        following = source.read(SEGMENT_SIZE)
        last = not following
        if counter >= MAX_SEGMENTS:
            raise ArchiveError("Archive too large for the segment counter")
        target.write(aead.encrypt(_segment_nonce(prefix, counter, last), chunk, header))
        if last:
            break
        chunk = following
        counter += 1


def decrypt_stream(source: BinaryIO, target: BinaryIO, archive_key: bytes) -> None:
    """
    Decrypt an archive stream written by encrypt_stream.

    Raises:
        ArchiveError: On a bad header, a failed tag check or truncation
    """
    header = source.read(HEADER_SIZE)
    if len(header) < HEADER_SIZE or not header.startswith(MAGIC):
        raise ArchiveError("Not a backup archive (bad header)")
    version = header[len(MAGIC)]
    if version != FORMAT_VERSION:
        raise ArchiveError(f"Unsupported archive version: {version}")

    salt = header[len(MAGIC) + 1 : len(MAGIC) + 1 + SALT_SIZE]
    prefix = header[-NONCE_PREFIX_SIZE:]
    aead = AESGCM(_segment_key(archive_key, salt))

    segment_length = SEGMENT_SIZE + TAG_SIZE
    counter = 0
    segment = source.read(segment_length)
    if not segment:
        raise ArchiveError("Archive is truncated (no data segments)")

    while True:
        following = source.read(segment_length)
        last = not following
        try:
            plaintext = aead.decrypt(
                _segment_nonce(prefix, counter, last), segment, header
            )
        except InvalidTag as e:
            raise ArchiveError(
                f"Archive failed authentication at segment {counter} "
                "(corrupted, truncated or encrypted with another key)"
            ) from e
        target.write(plaintext)
        if last:
            break
        segment = following
        counter += 1


class BackupArchiveCodec:
    """
    Creates and restores encrypted archives of an EventStore.

    Attributes:
        store: The live event store
        key_store: Credential store providing the archive key
        backup_dir: Scratch directory for archives (``<cache>/backups``)

    Usage:
        codec = BackupArchiveCodec(store, secure_store, settings.cache_dir)

        archive = codec.create_encrypted_backup()
        codec.restore_from_encrypted_backup(archive)
    """

    def __init__(
        self,
        store: EventStore,
        key_store: SecureCredentialStore,
        cache_dir: Path,
    ):
        """
        Initialize the codec.

        Args:
            store: Event store to snapshot and restore
            key_store: Source of the archive key
            cache_dir: Cache directory; archives are written below ``backups/``
        """
        self.store = store
        self.key_store = key_store
        self.backup_dir = Path(cache_dir).expanduser() / "backups"

    def _new_archive_path(self) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        millis = int(time.time() * 1000)
        while True:
            path = self.backup_dir / f"{ARCHIVE_PREFIX}{millis}{ARCHIVE_SUFFIX}"
            if not path.exists():
                return path
            millis += 1

    def _temp_path(self, suffix: str) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(
            prefix=ARCHIVE_PREFIX, suffix=suffix, dir=self.backup_dir
        )
        os.close(fd)
        return Path(name)

    def create_encrypted_backup(self) -> Path:
        """
        Snapshot the store files into a new encrypted archive.

        The live database is only read. Side files that do not exist are
        skipped.

        Returns:
            Path of the new ``eventtracker-<ms>.etbak`` file

        Raises:
            ArchiveError: If the database file does not exist
            OSError: On read/write failures
        """
        zip_path = self._temp_path(".zip")
        archive_path: Path | None = None
        try:
            with self.store.snapshot() as members:
                if self.store.database_name not in members:
                    raise ArchiveError(
                        f"Database file not found: {self.store.primary_file_path}"
                    )
                with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zf:
                    for name, path in members.items():
                        zf.write(path, arcname=name)
                        logger.debug(f"Added {name} ({path.stat().st_size} bytes)")

            archive_path = self._new_archive_path()
            with open(zip_path, "rb") as src, open(archive_path, "wb") as dst:
                encrypt_stream(src, dst, self.key_store.archive_key())
        except Exception:
            if archive_path is not None:
                archive_path.unlink(missing_ok=True)
            raise
        finally:
            zip_path.unlink(missing_ok=True)

        logger.info(f"Created encrypted backup {archive_path.name}")
        return archive_path

    def restore_from_encrypted_backup(self, archive_file: Path) -> None:
        """
        Replace the store files with the contents of an archive.

        The archive is decrypted and checked before the store is touched.
        Files are then replaced inside the store's exclusive window: every
        recognised member is written to a sibling temp file and renamed into
        place, and local side files the archive does not carry are removed
        so a stale write-ahead log cannot be replayed over the restored data.

        Args:
            archive_file: Path of a ``.etbak`` archive

        Raises:
            ArchiveError: If the archive is invalid or lacks the database
            StoreBusyError: If the store could not be acquired
            OSError: On read/write failures
        """
        archive_file = Path(archive_file)
        zip_path = self._temp_path(".zip")
        try:
            with open(archive_file, "rb") as src, open(zip_path, "wb") as dst:
                decrypt_stream(src, dst, self.key_store.archive_key())

            try:
                with zipfile.ZipFile(zip_path) as zf:
                    self._apply_members(zf)
            except zipfile.BadZipFile as e:
                raise ArchiveError(f"Archive content is not a valid zip: {e}") from e
        finally:
            zip_path.unlink(missing_ok=True)

        logger.info(f"Restored event store from {archive_file.name}")

    def _apply_members(self, zf: zipfile.ZipFile) -> None:
        bad_member = zf.testzip()
        if bad_member is not None:
            raise ArchiveError(f"Archive member is corrupt: {bad_member}")

        names = set(zf.namelist())
        if self.store.database_name not in names:
            raise ArchiveError("Archive does not contain the event database")

        with self.store.exclusive() as members:
            recognised = {name: path for name, path in members.items() if name in names}
            ignored = names - recognised.keys()
            if ignored:
                logger.debug(f"Ignoring unknown archive members: {sorted(ignored)}")

            staged: dict[Path, Path] = {}
            try:
                for name, target in recognised.items():
                    temp = target.with_name(target.name + ".restore-tmp")
                    staged[temp] = target
                    with zf.open(name) as src, open(temp, "wb") as dst:
                        shutil.copyfileobj(src, dst)
                        dst.flush()
                        os.fsync(dst.fileno())

                for name, path in members.items():
                    if name not in recognised and path.exists():
                        path.unlink()
                        logger.debug(f"Removed stale {name}")

                for temp, target in staged.items():
                    os.replace(temp, target)
            finally:
                for temp in staged:
                    temp.unlink(missing_ok=True)
