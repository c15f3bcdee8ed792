"""
Tests for the encrypted credential store.
"""

import stat

import pytest

from eventtracker_backup.storage.secure_store import (
    MASTER_KEY_FILE,
    PREFS_FILE,
    SecureCredentialStore,
    SecureStoreError,
)


@pytest.fixture
def store(tmp_path):
    """Credential store in a temp directory."""
    return SecureCredentialStore(tmp_path / "secure")


class TestBasicOperations:
    """Tests for get/put/delete."""

    def test_get_missing_returns_none(self, store):
        """Test that an unknown key is absent."""
        assert store.get("missing") is None

    def test_put_then_get(self, store):
        """Test a stored value can be read back."""
        store.put("token", "value")
        assert store.get("token") == "value"

    def test_delete(self, store):
        """Test that delete removes a key and ignores missing ones."""
        store.put("token", "value")
        store.delete("token")
        store.delete("never-stored")
        assert store.get("token") is None

    def test_put_all_with_remove_is_one_write(self, store):
        """Test that put_all stores and removes in one document."""
        store.put("verifier", "v")
        store.put_all({"a": "1", "b": "2"}, remove=("verifier",))
        assert store.get("a") == "1"
        assert store.get("b") == "2"
        assert store.get("verifier") is None

    def test_clear(self, store):
        """Test that clear removes every preference."""
        store.put("a", "1")
        store.clear()
        assert store.get("a") is None


class TestPersistence:
    """Tests for the on-disk format."""

    def test_values_survive_new_instance(self, tmp_path):
        """Test that another instance on the same directory reads values."""
        SecureCredentialStore(tmp_path).put("token", "value")
        assert SecureCredentialStore(tmp_path).get("token") == "value"

    def test_preferences_are_encrypted(self, tmp_path):
        """Test that the plaintext value is not on disk."""
        SecureCredentialStore(tmp_path).put("token", "very-secret-value")
        assert b"very-secret-value" not in (tmp_path / PREFS_FILE).read_bytes()

    def test_master_key_is_private(self, tmp_path):
        """Test that the master key file is readable by the owner only."""
        SecureCredentialStore(tmp_path).put("a", "1")
        mode = stat.S_IMODE((tmp_path / MASTER_KEY_FILE).stat().st_mode)
        assert mode == 0o600

    def test_corrupt_preferences_raise(self, tmp_path):
        """Test that an undecryptable document raises SecureStoreError."""
        SecureCredentialStore(tmp_path).put("a", "1")
        (tmp_path / PREFS_FILE).write_bytes(b"garbage")
        with pytest.raises(SecureStoreError):
            SecureCredentialStore(tmp_path).get("a")

    def test_foreign_master_key_raises(self, tmp_path):
        """Test that a replaced master key cannot read old preferences."""
        SecureCredentialStore(tmp_path).put("a", "1")
        (tmp_path / MASTER_KEY_FILE).write_bytes(b"\x01" * 32)
        with pytest.raises(SecureStoreError):
            SecureCredentialStore(tmp_path).get("a")

    def test_truncated_master_key_raises(self, tmp_path):
        """Test that a master key of the wrong size is rejected."""
        (tmp_path / MASTER_KEY_FILE).write_bytes(b"short")
        with pytest.raises(SecureStoreError):
            SecureCredentialStore(tmp_path).archive_key()


class TestArchiveKey:
    """Tests for the archive key."""

    def test_archive_key_is_stable(self, tmp_path):
        """Test that the archive key is the same across instances."""
        first = SecureCredentialStore(tmp_path).archive_key()
        second = SecureCredentialStore(tmp_path).archive_key()
        assert first == second
        assert len(first) == 32

    def test_archive_key_differs_per_master_key(self, tmp_path):
        """Test that two stores have different archive keys."""
        a = SecureCredentialStore(tmp_path / "a").archive_key()
        b = SecureCredentialStore(tmp_path / "b").archive_key()
        assert a != b

    def test_refresh_lock_is_per_instance(self, tmp_path):
        """Test that refresh_lock is a lock owned by the store."""
        store = SecureCredentialStore(tmp_path)
        assert store.refresh_lock.acquire(blocking=False)
        store.refresh_lock.release()
