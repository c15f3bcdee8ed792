"""
Tests for encrypted backup archives.
"""

import io
import os
import zipfile

import pytest

from eventtracker_backup.backup.archive import (
    ARCHIVE_SUFFIX,
    HEADER_SIZE,
    SEGMENT_SIZE,
    TAG_SIZE,
    ArchiveError,
    BackupArchiveCodec,
    decrypt_stream,
    encrypt_stream,
    is_archive_name,
)
from eventtracker_backup.storage.db import EventStore
from eventtracker_backup.storage.secure_store import SecureCredentialStore

KEY = b"k" * 32


@pytest.fixture
def key_store(tmp_path):
    """Credential store providing the archive key."""
    return SecureCredentialStore(tmp_path / "secure")


@pytest.fixture
def file_store(tmp_path):
    """Closed store whose files are written directly by the test."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return EventStore(data_dir / "eventtracker.db")


@pytest.fixture
def codec(file_store, key_store, tmp_path):
    """Codec over the closed file store."""
    return BackupArchiveCodec(file_store, key_store, tmp_path / "cache")


def encrypt_bytes(data: bytes, key: bytes = KEY) -> bytes:
    out = io.BytesIO()
    encrypt_stream(io.BytesIO(data), out, key)
    return out.getvalue()


def decrypt_bytes(data: bytes, key: bytes = KEY) -> bytes:
    out = io.BytesIO()
    decrypt_stream(io.BytesIO(data), out, key)
    return out.getvalue()


class TestStreamFormat:
    """Tests for the segmented stream cipher."""

    @pytest.mark.parametrize("size", [0, 1, SEGMENT_SIZE, SEGMENT_SIZE * 3 + 17])
    def test_round_trip(self, size):
        """Test that decrypting returns the original bytes."""
        data = os.urandom(size)
        assert decrypt_bytes(encrypt_bytes(data)) == data

    def test_ciphertext_layout(self):
        """Test header plus one tagged segment per 4096 bytes."""
        encrypted = encrypt_bytes(b"x" * (SEGMENT_SIZE + 1))
        assert encrypted[:4] == b"ETBK"
        assert len(encrypted) == HEADER_SIZE + SEGMENT_SIZE + 1 + 2 * TAG_SIZE

    def test_same_input_encrypts_differently(self):
        """Test that every archive uses a fresh salt and nonce prefix."""
        assert encrypt_bytes(b"data") != encrypt_bytes(b"data")

    def test_wrong_key_rejected(self):
        """Test that another key fails authentication."""
        with pytest.raises(ArchiveError):
            decrypt_bytes(encrypt_bytes(b"data"), key=b"o" * 32)

    def test_flipped_byte_rejected(self):
        """Test that modified ciphertext fails authentication."""
        encrypted = bytearray(encrypt_bytes(os.urandom(SEGMENT_SIZE * 2)))
        encrypted[HEADER_SIZE + 10] ^= 0x01
        with pytest.raises(ArchiveError):
            decrypt_bytes(bytes(encrypted))

    def test_header_tampering_rejected(self):
        """Test that the header is authenticated."""
        encrypted = bytearray(encrypt_bytes(b"data"))
        encrypted[HEADER_SIZE - 1] ^= 0x01
        with pytest.raises(ArchiveError):
            decrypt_bytes(bytes(encrypted))

    def test_dropped_segment_rejected(self):
        """Test that cutting off trailing segments is detected."""
        encrypted = encrypt_bytes(os.urandom(SEGMENT_SIZE * 3))
        truncated = encrypted[: HEADER_SIZE + SEGMENT_SIZE + TAG_SIZE]
        with pytest.raises(ArchiveError):
            decrypt_bytes(truncated)

    def test_header_only_rejected(self):
        """Test that an archive without segments is rejected."""
        with pytest.raises(ArchiveError, match="truncated"):
            decrypt_bytes(encrypt_bytes(b"data")[:HEADER_SIZE])

    def test_bad_magic_rejected(self):
        """Test that arbitrary files are rejected."""
        with pytest.raises(ArchiveError, match="bad header"):
            decrypt_bytes(b"PK\x03\x04" + b"\x00" * 100)

    def test_unknown_version_rejected(self):
        """Test that a future format version is rejected."""
        encrypted = bytearray(encrypt_bytes(b"data"))
        encrypted[4] = 9
        with pytest.raises(ArchiveError, match="version"):
            decrypt_bytes(bytes(encrypted))


class TestCreateBackup:
    """Tests for create_encrypted_backup."""

    def test_creates_named_archive(self, codec, file_store):
        """Test that the archive lands in the cache backup directory."""
        file_store.primary_file_path.write_bytes(b"db")

        archive = codec.create_encrypted_backup()

        assert archive.parent == codec.backup_dir
        assert is_archive_name(archive.name)
        assert archive.name.endswith(ARCHIVE_SUFFIX)
        assert list(codec.backup_dir.iterdir()) == [archive]

    def test_names_are_unique(self, codec, file_store):
        """Test that back-to-back archives never share a name."""
        file_store.primary_file_path.write_bytes(b"db")
        first = codec.create_encrypted_backup()
        second = codec.create_encrypted_backup()
        assert first != second

    def test_missing_database_raises(self, codec):
        """Test that a missing database file is an ArchiveError."""
        with pytest.raises(ArchiveError, match="Database file not found"):
            codec.create_encrypted_backup()
        assert list(codec.backup_dir.iterdir()) == []

    def test_archive_contains_existing_members(self, codec, file_store, key_store):
        """Test that only existing store files are archived."""
        file_store.primary_file_path.write_bytes(b"db")
        file_store.side_file_paths()[0].write_bytes(b"wal")

        archive = codec.create_encrypted_backup()

        plain = decrypt_bytes(archive.read_bytes(), key=key_store.archive_key())
        with zipfile.ZipFile(io.BytesIO(plain)) as zf:
            assert sorted(zf.namelist()) == ["eventtracker.db", "eventtracker.db-wal"]


class TestRestoreBackup:
    """Tests for restore_from_encrypted_backup."""

    def test_restores_identical_bytes(self, codec, file_store):
        """Test that restored files equal the backed up files."""
        db_bytes = os.urandom(10_000)
        wal_bytes = os.urandom(3_000)
        db, wal, _ = [file_store.primary_file_path, *file_store.side_file_paths()]
        db.write_bytes(db_bytes)
        wal.write_bytes(wal_bytes)
        archive = codec.create_encrypted_backup()

        db.write_bytes(b"changed")
        wal.write_bytes(b"changed")
        codec.restore_from_encrypted_backup(archive)

        assert db.read_bytes() == db_bytes
        assert wal.read_bytes() == wal_bytes

    def test_stale_side_files_removed(self, codec, file_store):
        """Test that side files missing from the archive are deleted."""
        file_store.primary_file_path.write_bytes(b"db")
        archive = codec.create_encrypted_backup()

        wal, shm = file_store.side_file_paths()
        wal.write_bytes(b"stale")
        shm.write_bytes(b"stale")
        codec.restore_from_encrypted_backup(archive)

        assert not wal.exists()
        assert not shm.exists()
        assert file_store.primary_file_path.read_bytes() == b"db"

    def test_no_temp_files_left(self, codec, file_store):
        """Test that staging files and scratch zips are cleaned up."""
        file_store.primary_file_path.write_bytes(b"db")
        archive = codec.create_encrypted_backup()
        codec.restore_from_encrypted_backup(archive)

        data_files = sorted(p.name for p in file_store.db_path.parent.iterdir())
        assert data_files == ["eventtracker.db"]
        assert list(codec.backup_dir.iterdir()) == [archive]

    def test_wrong_key_leaves_store_untouched(self, codec, file_store, tmp_path):
        """Test that an archive from another installation is rejected."""
        file_store.primary_file_path.write_bytes(b"db")
        archive = codec.create_encrypted_backup()
        file_store.primary_file_path.write_bytes(b"current")

        other = BackupArchiveCodec(
            file_store, SecureCredentialStore(tmp_path / "other"), tmp_path / "c2"
        )
        with pytest.raises(ArchiveError):
            other.restore_from_encrypted_backup(archive)

        assert file_store.primary_file_path.read_bytes() == b"current"

    def test_corrupted_archive_leaves_store_untouched(self, codec, file_store):
        """Test that a damaged archive does not modify the store."""
        file_store.primary_file_path.write_bytes(os.urandom(10_000))
        archive = codec.create_encrypted_backup()
        data = bytearray(archive.read_bytes())
        data[-1] ^= 0xFF
        archive.write_bytes(bytes(data))
        file_store.primary_file_path.write_bytes(b"current")

        with pytest.raises(ArchiveError):
            codec.restore_from_encrypted_backup(archive)

        assert file_store.primary_file_path.read_bytes() == b"current"

    def test_archive_without_database_rejected(self, codec, file_store, key_store):
        """Test that an archive lacking the database member is rejected."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr("eventtracker.db-wal", b"wal")
        archive = codec.backup_dir / "eventtracker-1.etbak"
        codec.backup_dir.mkdir(parents=True)
        archive.write_bytes(encrypt_bytes(buffer.getvalue(), key_store.archive_key()))
        file_store.primary_file_path.write_bytes(b"current")

        with pytest.raises(ArchiveError, match="does not contain"):
            codec.restore_from_encrypted_backup(archive)

        assert file_store.primary_file_path.read_bytes() == b"current"

    def test_non_zip_payload_rejected(self, codec, key_store):
        """Test that a decryptable archive with non-zip content is rejected."""
        archive = codec.backup_dir / "eventtracker-2.etbak"
        codec.backup_dir.mkdir(parents=True)
        archive.write_bytes(encrypt_bytes(b"not a zip", key_store.archive_key()))

        with pytest.raises(ArchiveError, match="not a valid zip"):
            codec.restore_from_encrypted_backup(archive)


class TestLiveStore:
    """Backup and restore against an open SQLite store."""

    def test_restore_rolls_back_changes(self, tmp_path, key_store):
        """Test that a restore brings back the data at backup time."""
        store = EventStore(tmp_path / "data" / "eventtracker.db")
        store.open()
        try:
            codec = BackupArchiveCodec(store, key_store, tmp_path / "cache")
            store.add_event_type("Gym")
            archive = codec.create_encrypted_backup()

            store.add_event_type("Read")
            assert len(store.list_event_types()) == 2

            codec.restore_from_encrypted_backup(archive)

            assert store.is_open
            assert [t["name"] for t in store.list_event_types()] == ["Gym"]
        finally:
            store.close()
