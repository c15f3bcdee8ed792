"""
Backup and restore cycles.

Ties together authorization checks, archive encoding and remote transfer,
tracking the current step so the CLI and the daemon can report progress.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path

from eventtracker_backup.auth.dropbox_auth import DropboxAuth
from eventtracker_backup.backup.archive import ArchiveError, BackupArchiveCodec
from eventtracker_backup.backup.remote import RemoteBackupStore, classify_error
from eventtracker_backup.backup.result import (
    BackupError,
    BackupOutcome,
    BackupSuccess,
    ErrorKind,
    RestoreFailure,
    WorkVerdict,
)

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "Dropbox app key is not configured"
NOT_LINKED_MESSAGE = "Dropbox account is not linked"


class OperationState(Enum):
    """Step a backup or restore cycle is in."""

    IDLE = "idle"
    AUTH_CHECK = "auth_check"
    ENCODING = "encoding"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    DECODING = "decoding"
    COMPLETED = "completed"
    FAILED = "failed"


class BackupOrchestrator:
    """
    Runs backup and restore cycles.

    Only one cycle runs at a time; a second caller waits for the first.

    Usage:
        orchestrator = BackupOrchestrator(auth, codec, remote, retention_count=30)

        outcome = orchestrator.backup_now()
        verdict = orchestrator.run_scheduled_backup()
        outcome = orchestrator.restore_latest()
    """

    def __init__(
        self,
        auth: DropboxAuth,
        codec: BackupArchiveCodec,
        remote: RemoteBackupStore,
        retention_count: int,
    ):
        self.auth = auth
        self.codec = codec
        self.remote = remote
        self.retention_count = retention_count
        self._state = OperationState.IDLE
        self._run_lock = threading.Lock()

    @property
    def state(self) -> OperationState:
        """The latest state reached."""
        return self._state

    def _transition(self, state: OperationState) -> None:
        logger.debug(f"Backup state: {self._state.value} -> {state.value}")
        self._state = state

    def _check_auth(self) -> BackupError | None:
        self._transition(OperationState.AUTH_CHECK)
        if not self.auth.is_configured():
            return BackupError(NOT_CONFIGURED_MESSAGE, ErrorKind.AUTH)
        if not self.auth.is_linked():
            return BackupError(NOT_LINKED_MESSAGE, ErrorKind.AUTH)
        return None

    def _finish(self, outcome: BackupOutcome) -> BackupOutcome:
        if isinstance(outcome, BackupSuccess):
            self._transition(OperationState.COMPLETED)
        else:
            self._transition(OperationState.FAILED)
        return outcome

    @staticmethod
    def _remove_scratch(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove scratch archive {path}: {e}")

    # =========================================================================
    # Backup
    # =========================================================================

    def backup_now(self) -> BackupOutcome:
        """
        Create an archive and upload it.

        Returns:
            BackupSuccess with the uploaded archive (local copy removed) or
            BackupError; an unlinked account fails with AUTH before any I/O
        """
        with self._run_lock:
            auth_error = self._check_auth()
            if auth_error is not None:
                logger.warning(f"Backup skipped: {auth_error.message}")
                return self._finish(auth_error)

            self._transition(OperationState.ENCODING)
            try:
                archive = self.codec.create_encrypted_backup()
            except (ArchiveError, OSError) as e:
                logger.error(f"Failed to create backup archive: {e}")
                return self._finish(BackupError(str(e), ErrorKind.FILE))
            except Exception as e:
                logger.error(f"Failed to create backup archive: {e}")
                return self._finish(BackupError(str(e), classify_error(e)))

            self._transition(OperationState.UPLOADING)
            try:
                outcome = self.remote.upload_backup(archive, self.retention_count)
            finally:
                self._remove_scratch(archive)

            if isinstance(outcome, BackupSuccess):
                logger.info(f"Backup completed: {archive.name}")
            return self._finish(outcome)

    def run_scheduled_backup(self) -> WorkVerdict:
        """
        Run a backup for the scheduler.

        Returns:
            SUCCESS, FAILURE for authorization problems (retrying cannot
            help until the account is relinked), RETRY otherwise
        """
        outcome = self.backup_now()
        if isinstance(outcome, BackupSuccess):
            return WorkVerdict.SUCCESS
        if outcome.kind is ErrorKind.AUTH:
            logger.error(f"Scheduled backup failed, relink required: {outcome.message}")
            return WorkVerdict.FAILURE
        logger.warning(f"Scheduled backup failed ({outcome.kind.value}), will retry")
        return WorkVerdict.RETRY

    # =========================================================================
    # Restore
    # =========================================================================

    def restore_latest(self) -> BackupOutcome:
        """
        Download the newest backup and replace the local store with it.

        Returns:
            BackupSuccess() once applied (the downloaded archive is removed),
            BackupError for auth and download problems (FILE with "No backups
            found" when there is nothing to restore), RestoreFailure if
            decoding or applying failed
        """
        with self._run_lock:
            auth_error = self._check_auth()
            if auth_error is not None:
                logger.warning(f"Restore skipped: {auth_error.message}")
                return self._finish(auth_error)

            self._transition(OperationState.DOWNLOADING)
            outcome = self.remote.download_latest_backup()
            if not isinstance(outcome, BackupSuccess) or outcome.file is None:
                return self._finish(outcome)

            archive = outcome.file
            self._transition(OperationState.DECODING)
            try:
                self.codec.restore_from_encrypted_backup(archive)
            except (ArchiveError, OSError) as e:
                logger.error(f"Failed to restore {archive.name}: {e}")
                return self._finish(RestoreFailure(str(e), ErrorKind.FILE))
            except Exception as e:
                logger.error(f"Failed to restore {archive.name}: {e}")
                return self._finish(RestoreFailure(str(e), ErrorKind.UNKNOWN))
            finally:
                self._remove_scratch(archive)

            logger.info(f"Restore completed from {archive.name}")
            return self._finish(BackupSuccess())
