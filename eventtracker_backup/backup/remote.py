"""
Remote backup storage in the linked Dropbox account.

Uploads archives into the backup folder, enforces the retention policy
after each upload, and fetches the newest archive for restore. Failures are
classified into an ErrorKind and returned as outcomes, never raised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import requests

from eventtracker_backup.api.dropbox_api import (
    DropboxAPIError,
    DropboxAuthError,
    DropboxConflictError,
    DropboxFilesAPI,
    DropboxNetworkError,
    DropboxNotFoundError,
    RateLimitError,
)
from eventtracker_backup.auth.dropbox_auth import (
    AuthenticationError,
    DropboxAuth,
    TokenFailure,
)
from eventtracker_backup.backup.archive import ARCHIVE_SUFFIX
from eventtracker_backup.backup.result import (
    BackupError,
    BackupOutcome,
    BackupSuccess,
    ErrorKind,
    RemoteBackupEntry,
)

logger = logging.getLogger(__name__)

NO_BACKUPS_MESSAGE = "No backups found"
NOT_LINKED_MESSAGE = "Dropbox is not linked (or the refresh token was rejected)"
TOKEN_NETWORK_MESSAGE = "Could not reach Dropbox to refresh the access token"
TOKEN_SERVER_MESSAGE = "Dropbox token endpoint failed to refresh the access token"


def classify_error(error: BaseException) -> ErrorKind:
    """
    Map an exception to the failure category used for retry decisions.

    Args:
        error: Exception raised by an upload, download or archive step

    Returns:
        AUTH for rejected credentials, NETWORK for connectivity problems,
        FILE for local I/O and missing remote files, UNKNOWN otherwise
    """
    if isinstance(error, (DropboxAuthError, AuthenticationError)):
        return ErrorKind.AUTH
    if isinstance(
        error,
        (
            DropboxNetworkError,
            RateLimitError,
            requests.ConnectionError,
            requests.Timeout,
        ),
    ):
        return ErrorKind.NETWORK
    if isinstance(error, DropboxNotFoundError):
        return ErrorKind.FILE
    # requests exceptions derive from OSError, so they are handled above
    if isinstance(error, OSError):
        return ErrorKind.FILE
    return ErrorKind.UNKNOWN


class RemoteBackupStore:
    """
    Backup folder operations on top of the Dropbox files API.

    A new API client is built for every operation from a freshly validated
    access token, so no token outlives the operation that fetched it.

    Attributes:
        auth: Token manager for the linked account
        remote_dir: Remote folder holding the archives
        download_dir: Local directory for downloaded archives

    Usage:
        remote = RemoteBackupStore(auth, "/backups", settings.cache_dir)

        outcome = remote.upload_backup(archive, retention_count=30)
        outcome = remote.download_latest_backup()
    """

    def __init__(
        self,
        auth: DropboxAuth,
        remote_dir: str,
        cache_dir: Path,
        timeout: float = 30.0,
        max_retries: int = 3,
        api_factory: Callable[..., DropboxFilesAPI] = DropboxFilesAPI,
    ):
        """
        Initialize the remote store.

        Args:
            auth: Token manager used to obtain access tokens
            remote_dir: Remote backup folder (e.g. ``/backups``)
            cache_dir: Cache directory; downloads land in ``backups/``
            timeout: HTTP timeout for each call
            max_retries: Attempts for rate-limited or 5xx calls
            api_factory: Builds the API client from an access token
        """
        self.auth = auth
        self.remote_dir = remote_dir.rstrip("/") or "/backups"
        self.download_dir = Path(cache_dir).expanduser() / "backups"
        self.timeout = timeout
        self.max_retries = max_retries
        self.api_factory = api_factory

    def _remote_path(self, name: str) -> str:
        return f"{self.remote_dir}/{name}"

    def _open_api(self) -> DropboxFilesAPI | BackupError:
        token = self.auth.get_valid_access_token()
        if token is None:
            return self._token_error()
        return self.api_factory(
            token, timeout=self.timeout, max_retries=self.max_retries
        )

    def _token_error(self) -> BackupError:
        """Build the outcome for a missing access token."""
        failure = self.auth.token_failure()
        if failure is TokenFailure.NETWORK:
            return BackupError(TOKEN_NETWORK_MESSAGE, ErrorKind.NETWORK)
        if failure is TokenFailure.SERVER:
            return BackupError(TOKEN_SERVER_MESSAGE, ErrorKind.UNKNOWN)
        return BackupError(NOT_LINKED_MESSAGE, ErrorKind.AUTH)

    def _list_entries(self, api: DropboxFilesAPI) -> list[RemoteBackupEntry]:
        """List archives in the backup folder, newest first."""
        entries = [
            RemoteBackupEntry(
                name=entry.name,
                path=entry.path or self._remote_path(entry.name),
                server_modified=entry.server_modified,
            )
            for entry in api.list_all(self.remote_dir)
            if entry.name.endswith(ARCHIVE_SUFFIX)
        ]
        entries.sort(key=lambda e: e.server_modified, reverse=True)
        return entries

    # =========================================================================
    # Upload
    # =========================================================================

    def upload_backup(self, file: Path, retention_count: int) -> BackupOutcome:
        """
        Upload an archive and prune old backups.

        Args:
            file: Local archive to upload
            retention_count: Number of newest backups to keep (<= 0 keeps all)

        Returns:
            BackupSuccess(file) or BackupError with the failure category
        """
        file = Path(file)
        api = self._open_api()
        if isinstance(api, BackupError):
            logger.error(f"Upload of {file.name} skipped: {api.message}")
            return api

        try:
            try:
                api.create_folder(self.remote_dir)
                logger.info(f"Created remote folder {self.remote_dir}")
            except DropboxConflictError:
                logger.debug(f"Remote folder {self.remote_dir} already exists")

            api.upload(file, self._remote_path(file.name))
            logger.info(f"Uploaded {file.name} to {self.remote_dir}")
        except Exception as e:
            kind = classify_error(e)
            logger.error(f"Upload of {file.name} failed ({kind.value}): {e}")
            return BackupError(str(e), kind)

        failures = self.apply_retention(api, retention_count)
        if failures:
            logger.warning(
                f"Retention left {len(failures)} old backup(s) in place: "
                f"{', '.join(failures)}"
            )
        return BackupSuccess(file)

    def apply_retention(self, api: DropboxFilesAPI, retention_count: int) -> list[str]:
        """
        Delete every backup beyond the ``retention_count`` newest.

        Best effort: a failing list or delete is logged and skipped.

        Returns:
            Names of backups that should have been deleted but were not
        """
        if retention_count <= 0:
            return []

        try:
            entries = self._list_entries(api)
        except Exception as e:
            logger.warning(f"Could not list backups for retention: {e}")
            return []

        failures: list[str] = []
        for entry in entries[retention_count:]:
            try:
                api.delete(entry.path)
                logger.info(f"Deleted old backup {entry.name}")
            except Exception as e:
                logger.warning(f"Failed to delete old backup {entry.name}: {e}")
                failures.append(entry.name)
        return failures

    # =========================================================================
    # Download
    # =========================================================================

    def download_latest_backup(self) -> BackupOutcome:
        """
        Download the most recently uploaded backup.

        Returns:
            BackupSuccess(local_file), BackupError("No backups found", FILE)
            when the folder is missing or empty, or another BackupError
        """
        api = self._open_api()
        if isinstance(api, BackupError):
            logger.error(f"Download skipped: {api.message}")
            return api

        try:
            try:
                entries = self._list_entries(api)
            except DropboxNotFoundError:
                logger.info(f"Remote folder {self.remote_dir} does not exist")
                entries = []

            if not entries:
                return BackupError(NO_BACKUPS_MESSAGE, ErrorKind.FILE)

            latest = entries[0]
            local_file = api.download(latest.path, self.download_dir / latest.name)
            logger.info(f"Downloaded {latest.name}")
            return BackupSuccess(local_file)
        except Exception as e:
            kind = classify_error(e)
            logger.error(f"Download failed ({kind.value}): {e}")
            return BackupError(str(e), kind)

    def list_backups(self) -> list[RemoteBackupEntry]:
        """
        List remote backups, newest first.

        Returns:
            Backup entries (empty if the folder does not exist)

        Raises:
            AuthenticationError: If the account is unlinked or the refresh
                token was rejected
            DropboxNetworkError: If the token endpoint could not be reached
            DropboxAPIError: On other API failures
        """
        api = self._open_api()
        if isinstance(api, BackupError):
            if api.kind is ErrorKind.AUTH:
                raise AuthenticationError(api.message)
            if api.kind is ErrorKind.NETWORK:
                raise DropboxNetworkError(api.message)
            raise DropboxAPIError(api.message)
        try:
            return self._list_entries(api)
        except DropboxNotFoundError:
            return []
