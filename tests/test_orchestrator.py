"""
Tests for the backup orchestrator.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from eventtracker_backup.auth.dropbox_auth import DropboxAuth, OAuthTokenSet
from eventtracker_backup.backup.archive import ArchiveError
from eventtracker_backup.backup.orchestrator import (
    NOT_CONFIGURED_MESSAGE,
    NOT_LINKED_MESSAGE,
    BackupOrchestrator,
    OperationState,
)
from eventtracker_backup.backup.remote import NO_BACKUPS_MESSAGE, RemoteBackupStore
from eventtracker_backup.backup.result import (
    BackupError,
    BackupSuccess,
    ErrorKind,
    RestoreFailure,
    WorkVerdict,
)
from eventtracker_backup.config.settings import BackupSettings
from eventtracker_backup.daemon import BackupScheduler
from eventtracker_backup.storage.secure_store import SecureCredentialStore


@pytest.fixture
def archive(tmp_path):
    """Scratch archive produced by the codec."""
    path = tmp_path / "eventtracker-1.etbak"
    path.write_bytes(b"archive")
    return path


@pytest.fixture
def auth():
    """Configured and linked auth manager."""
    auth = MagicMock()
    auth.is_configured.return_value = True
    auth.is_linked.return_value = True
    return auth


@pytest.fixture
def codec(archive):
    """Codec that produces the scratch archive."""
    codec = MagicMock()
    codec.create_encrypted_backup.return_value = archive
    return codec


@pytest.fixture
def remote(archive):
    """Remote store that accepts uploads and serves the archive."""
    remote = MagicMock()
    remote.upload_backup.side_effect = lambda file, count: BackupSuccess(file)
    remote.download_latest_backup.return_value = BackupSuccess(archive)
    return remote


@pytest.fixture
def orchestrator(auth, codec, remote):
    """Orchestrator over mocks with retention 3."""
    return BackupOrchestrator(auth, codec, remote, retention_count=3)


class TestBackupNow:
    """Tests for backup_now."""

    def test_success(self, orchestrator, remote, archive):
        """Test a full backup cycle."""
        outcome = orchestrator.backup_now()

        assert outcome == BackupSuccess(archive)
        remote.upload_backup.assert_called_once_with(archive, 3)
        assert orchestrator.state is OperationState.COMPLETED

    def test_scratch_archive_removed(self, orchestrator, archive):
        """Test that the local archive is deleted after upload."""
        orchestrator.backup_now()
        assert not archive.exists()

    def test_scratch_archive_removed_on_upload_failure(
        self, orchestrator, remote, archive
    ):
        """Test that the local archive is deleted when upload fails."""
        remote.upload_backup.side_effect = None
        remote.upload_backup.return_value = BackupError("offline", ErrorKind.NETWORK)

        outcome = orchestrator.backup_now()

        assert outcome.kind is ErrorKind.NETWORK
        assert not archive.exists()
        assert orchestrator.state is OperationState.FAILED

    def test_not_configured(self, orchestrator, auth, codec):
        """Test that a missing app key fails before any I/O."""
        auth.is_configured.return_value = False

        outcome = orchestrator.backup_now()

        assert outcome == BackupError(NOT_CONFIGURED_MESSAGE, ErrorKind.AUTH)
        codec.create_encrypted_backup.assert_not_called()

    def test_not_linked(self, orchestrator, auth, codec, remote):
        """Test that an unlinked account fails before any I/O."""
        auth.is_linked.return_value = False

        outcome = orchestrator.backup_now()

        assert outcome == BackupError(NOT_LINKED_MESSAGE, ErrorKind.AUTH)
        codec.create_encrypted_backup.assert_not_called()
        remote.upload_backup.assert_not_called()

    @pytest.mark.parametrize(
        "error", [ArchiveError("no db"), FileNotFoundError("gone")]
    )
    def test_encoding_file_errors(self, orchestrator, codec, remote, error):
        """Test that archive creation failures are FILE errors."""
        codec.create_encrypted_backup.side_effect = error

        outcome = orchestrator.backup_now()

        assert outcome.kind is ErrorKind.FILE
        remote.upload_backup.assert_not_called()

    def test_encoding_unknown_error(self, orchestrator, codec):
        """Test that unexpected encoder errors are UNKNOWN."""
        codec.create_encrypted_backup.side_effect = RuntimeError("odd")
        assert orchestrator.backup_now().kind is ErrorKind.UNKNOWN

    def test_cycles_do_not_overlap(self, orchestrator, codec, archive):
        """Test that concurrent calls run one at a time."""
        active = []
        overlaps = []

        def slow_create():
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.05)
            active.pop()
            archive.write_bytes(b"archive")
            return archive

        codec.create_encrypted_backup.side_effect = slow_create
        threads = [threading.Thread(target=orchestrator.backup_now) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        assert codec.create_encrypted_backup.call_count == 3


class TestScheduledBackup:
    """Tests for the scheduler verdicts."""

    def test_success(self, orchestrator):
        """Test that a successful backup is SUCCESS."""
        assert orchestrator.run_scheduled_backup() is WorkVerdict.SUCCESS

    def test_auth_failure_is_terminal(self, orchestrator, auth):
        """Test that auth problems are FAILURE."""
        auth.is_linked.return_value = False
        assert orchestrator.run_scheduled_backup() is WorkVerdict.FAILURE

    @pytest.mark.parametrize(
        "kind", [ErrorKind.NETWORK, ErrorKind.FILE, ErrorKind.UNKNOWN]
    )
    def test_other_failures_retry(self, orchestrator, remote, kind):
        """Test that non-auth failures are RETRY."""
        remote.upload_backup.side_effect = None
        remote.upload_backup.return_value = BackupError("x", kind)
        assert orchestrator.run_scheduled_backup() is WorkVerdict.RETRY

    def test_revoked_token_during_upload_is_terminal(self, orchestrator, remote):
        """Test that an AUTH error from upload is FAILURE."""
        remote.upload_backup.side_effect = None
        remote.upload_backup.return_value = BackupError("revoked", ErrorKind.AUTH)
        assert orchestrator.run_scheduled_backup() is WorkVerdict.FAILURE


class TestRestoreLatest:
    """Tests for restore_latest."""

    def test_success(self, orchestrator, codec, archive):
        """Test that the downloaded archive is applied and removed."""
        outcome = orchestrator.restore_latest()

        assert outcome == BackupSuccess()
        codec.restore_from_encrypted_backup.assert_called_once_with(archive)
        assert not archive.exists()
        assert orchestrator.state is OperationState.COMPLETED

    def test_no_backups(self, orchestrator, remote, codec):
        """Test that an empty remote is passed through."""
        remote.download_latest_backup.return_value = BackupError(
            NO_BACKUPS_MESSAGE, ErrorKind.FILE
        )

        outcome = orchestrator.restore_latest()

        assert outcome == BackupError(NO_BACKUPS_MESSAGE, ErrorKind.FILE)
        codec.restore_from_encrypted_backup.assert_not_called()

    def test_not_linked(self, orchestrator, auth, remote):
        """Test that restore requires a linked account."""
        auth.is_linked.return_value = False

        outcome = orchestrator.restore_latest()

        assert outcome.kind is ErrorKind.AUTH
        remote.download_latest_backup.assert_not_called()

    def test_decode_failure(self, orchestrator, codec, archive):
        """Test that an undecryptable archive is a RestoreFailure."""
        codec.restore_from_encrypted_backup.side_effect = ArchiveError("bad tag")

        outcome = orchestrator.restore_latest()

        assert outcome == RestoreFailure("bad tag", ErrorKind.FILE)
        assert not archive.exists()
        assert orchestrator.state is OperationState.FAILED

    def test_unexpected_failure(self, orchestrator, codec):
        """Test that unexpected errors are UNKNOWN restore failures."""
        codec.restore_from_encrypted_backup.side_effect = RuntimeError("odd")
        outcome = orchestrator.restore_latest()
        assert isinstance(outcome, RestoreFailure)
        assert outcome.kind is ErrorKind.UNKNOWN


class TestScheduledRefreshFailure:
    """Tests for scheduled backups when the token refresh cannot complete."""

    @pytest.fixture
    def expired_auth(self, tmp_path):
        """Linked DropboxAuth with an expired access token."""
        settings = BackupSettings(config_dir=tmp_path / "config", app_key="app-key")
        store = SecureCredentialStore(settings.config_dir)
        store.put_all(OAuthTokenSet("stale", "refresh-1", 0).to_prefs())
        return DropboxAuth(settings, store, session=MagicMock())

    @pytest.fixture
    def wired(self, expired_auth, codec, tmp_path):
        """Orchestrator over the real auth and remote store."""
        api_factory = MagicMock()
        remote = RemoteBackupStore(
            expired_auth, "/backups", tmp_path / "cache", api_factory=api_factory
        )
        orchestrator = BackupOrchestrator(expired_auth, codec, remote, 3)
        return orchestrator, api_factory

    @pytest.mark.parametrize(
        "error", [requests.ConnectionError("offline"), requests.Timeout("slow")]
    )
    def test_offline_refresh_is_retried(self, expired_auth, wired, error):
        """Test that an unreachable token endpoint yields RETRY."""
        orchestrator, api_factory = wired
        expired_auth._http.post.side_effect = error

        assert orchestrator.run_scheduled_backup() is WorkVerdict.RETRY
        api_factory.assert_not_called()
        assert expired_auth.is_linked()

    def test_rejected_refresh_is_failure(self, expired_auth, wired):
        """Test that a refused refresh token yields FAILURE."""
        orchestrator, _ = wired
        expired_auth._http.post.return_value = MagicMock(status_code=400)

        assert orchestrator.run_scheduled_backup() is WorkVerdict.FAILURE

    def test_periodic_job_survives_offline_refresh(
        self, expired_auth, wired, tmp_path
    ):
        """Test that the daily job stays scheduled after an offline refresh."""
        orchestrator, _ = wired
        expired_auth._http.post.side_effect = requests.ConnectionError("offline")
        start = 1_700_000_000.0
        scheduler = BackupScheduler(
            orchestrator.run_scheduled_backup,
            pid_file=tmp_path / "daemon.pid",
            clock=lambda: start,
        )
        scheduler.set_periodic(86400)

        assert scheduler.step(start + 86400) is WorkVerdict.RETRY
        assert scheduler.periodic_interval == 86400
        assert scheduler.next_due() == start + 86400 + 30
