"""
Dropbox files API wrapper for backup storage.

Provides a small interface to the Dropbox v2 HTTP API for:
- Creating the backup folder
- Uploading an archive in a single request
- Listing a folder with pagination
- Downloading and deleting files
- Exponential backoff retry logic for rate limits and server errors

Every response error is translated into a typed exception so callers can
tell authentication failures, missing paths, conflicts and connectivity
problems apart without parsing messages.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import requests

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"

# Retry configuration defaults
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 30.0  # seconds

DEFAULT_TIMEOUT = 30.0  # seconds

# Chunk size when streaming downloads to disk
DOWNLOAD_CHUNK_SIZE = 64 * 1024

logger = logging.getLogger(__name__)


class DropboxAPIError(Exception):
    """Raised when a Dropbox API operation fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DropboxAuthError(DropboxAPIError):
    """Raised for 401/403 responses (token invalid, expired or revoked)."""

    pass


class DropboxNotFoundError(DropboxAPIError):
    """Raised when the requested path does not exist."""

    pass


class DropboxConflictError(DropboxAPIError):
    """Raised when the target path already exists."""

    pass


class DropboxNetworkError(DropboxAPIError):
    """Raised for connectivity failures and timeouts."""

    pass


class RateLimitError(DropboxAPIError):
    """Raised when rate limiting persists after all retries."""

    pass


@dataclass(frozen=True)
class FileEntry:
    """
    File metadata from a folder listing.

    Attributes:
        name: File name
        path: Lower-cased path used for API calls
        server_modified: Time the file was last written on the server
    """

    name: str
    path: str
    server_modified: datetime

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> FileEntry:
        """Build from a ``.tag == "file"`` listing entry."""
        return cls(
            name=data["name"],
            path=data.get("path_lower") or data.get("path_display") or "",
            server_modified=parse_timestamp(data["server_modified"]),
        )


@dataclass(frozen=True)
class ListFolderPage:
    """One page of a folder listing."""

    entries: list[FileEntry]
    cursor: str
    has_more: bool


def parse_timestamp(value: str) -> datetime:
    """Parse a Dropbox ISO 8601 timestamp (``2024-01-20T10:30:00Z``)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DropboxFilesAPI:
    """
    Dropbox files API client bound to one access token.

    Attributes:
        access_token: Bearer token for every request
        timeout: Timeout in seconds for each HTTP call

    Usage:
        api = DropboxFilesAPI(token)

        api.create_folder("/backups")
        api.upload(Path("eventtracker-1700000000000.etbak"), "/backups/...")
        entries = api.list_all("/backups")
        api.download(entries[0].path, Path("restore.etbak"))
        api.delete(entries[-1].path)
    """

    def __init__(
        self,
        access_token: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        session: requests.Session | None = None,
    ):
        """
        Initialize the API client.

        Args:
            access_token: Valid Dropbox access token
            timeout: Timeout in seconds for each HTTP call (default 30)
            max_retries: Attempts for rate-limited or 5xx calls (default 3)
            initial_retry_delay: Initial backoff delay in seconds (default 1.0)
            max_retry_delay: Maximum backoff delay in seconds (default 30.0)
            session: Optional requests session
        """
        self.access_token = access_token
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.session = session or requests.Session()

    # =========================================================================
    # Request plumbing
    # =========================================================================

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if extra:
            headers.update(extra)
        return headers

    def _raise_for_response(
        self, response: requests.Response, operation_name: str
    ) -> None:
        """Translate an error response into a typed exception."""
        status = response.status_code
        if status < 400:
            return

        summary = ""
        try:
            body = response.json()
            if isinstance(body, dict):
                summary = str(body.get("error_summary", ""))
        except ValueError:
            summary = response.text[:200] if response.text else ""

        message = f"{operation_name} failed with status {status}"
        if summary:
            message += f": {summary}"

        if status in (401, 403):
            raise DropboxAuthError(message, status)
        if status == 404 or (status == 409 and "not_found" in summary):
            raise DropboxNotFoundError(message, status)
        if status == 409 and "conflict" in summary:
            raise DropboxConflictError(message, status)
        if status == 429:
            raise RateLimitError(message, status)
        raise DropboxAPIError(message, status)

    def _retry_with_backoff(
        self, operation: Callable[[], requests.Response], operation_name: str
    ) -> requests.Response:
        """
        Execute a request with exponential backoff retry.

        Retries 429 and 5xx responses; everything else is returned or raised
        immediately. Connection errors and timeouts are not retried here.

        Raises:
            DropboxNetworkError: On connection failure or timeout
            RateLimitError: If rate limiting persists after all retries
            DropboxAPIError: For other API errors
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            try:
                response = operation()
            except (requests.ConnectionError, requests.Timeout) as e:
                logger.warning(f"{operation_name} network error: {e}")
                raise DropboxNetworkError(f"{operation_name} failed: {e}") from e
            except requests.RequestException as e:
                raise DropboxAPIError(f"{operation_name} failed: {e}") from e

            status = response.status_code
            retryable = status == 429 or status >= 500
            if retryable and attempt < self.max_retries - 1:
                logger.warning(
                    f"{operation_name} got status {status}, retrying in "
                    f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                )
                time.sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)
                continue

            self._raise_for_response(response, operation_name)
            return response

        # Should not reach here, but just in case
        raise DropboxAPIError(f"{operation_name} failed after all retries")

    def _rpc(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Call a JSON-in/JSON-out endpoint."""

        def execute() -> requests.Response:
            return self.session.post(
                f"{API_URL}/{endpoint}",
                headers=self._headers({"Content-Type": "application/json"}),
                data=json.dumps(payload),
                timeout=self.timeout,
            )

        response = self._retry_with_backoff(execute, endpoint)
        try:
            result: dict[str, Any] = response.json()
        except ValueError as e:
            raise DropboxAPIError(f"{endpoint} returned invalid JSON") from e
        return result

    # =========================================================================
    # Operations
    # =========================================================================

    def create_folder(self, path: str) -> None:
        """
        Create a folder.

        Raises:
            DropboxConflictError: If the folder (or a file) already exists
        """
        logger.debug(f"Creating folder {path}")
        self._rpc("files/create_folder_v2", {"path": path, "autorename": False})

    def upload(self, local_path: Path, remote_path: str) -> FileEntry:
        """
        Upload a file in one request (files up to 150 MB).

        The upload uses ``add`` mode without autorename, so an existing file
        with the same name is reported as a conflict rather than replaced.

        Returns:
            Metadata of the uploaded file
        """
        arg = {
            "path": remote_path,
            "mode": "add",
            "autorename": False,
            "mute": True,
        }
        data = Path(local_path).read_bytes()
        logger.debug(f"Uploading {len(data)} bytes to {remote_path}")

        def execute() -> requests.Response:
            return self.session.post(
                f"{CONTENT_URL}/files/upload",
                headers=self._headers(
                    {
                        "Dropbox-API-Arg": json.dumps(arg),
                        "Content-Type": "application/octet-stream",
                    }
                ),
                data=data,
                timeout=self.timeout,
            )

        response = self._retry_with_backoff(execute, "files/upload")
        return FileEntry.from_api_response(response.json())

    def list_folder(self, path: str) -> ListFolderPage:
        """List the first page of a folder."""
        return self._parse_page(self._rpc("files/list_folder", {"path": path}))

    def list_folder_continue(self, cursor: str) -> ListFolderPage:
        """Fetch the next page of a listing."""
        return self._parse_page(
            self._rpc("files/list_folder/continue", {"cursor": cursor})
        )

    def list_all(self, path: str) -> list[FileEntry]:
        """
        List every file in a folder, following pagination.

        Raises:
            DropboxNotFoundError: If the folder does not exist
        """
        page = self.list_folder(path)
        entries = list(page.entries)
        while page.has_more:
            page = self.list_folder_continue(page.cursor)
            entries.extend(page.entries)
        logger.debug(f"Listed {len(entries)} files in {path}")
        return entries

    def download(self, remote_path: str, local_path: Path) -> Path:
        """
        Download a file to a local path.

        Returns:
            The local path written
        """
        arg = {"path": remote_path}

        def execute() -> requests.Response:
            return self.session.post(
                f"{CONTENT_URL}/files/download",
                headers=self._headers({"Dropbox-API-Arg": json.dumps(arg)}),
                stream=True,
                timeout=self.timeout,
            )

        response = self._retry_with_backoff(execute, "files/download")
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(local_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        except (requests.ConnectionError, requests.Timeout) as e:
            local_path.unlink(missing_ok=True)
            raise DropboxNetworkError(f"files/download interrupted: {e}") from e
        except BaseException:
            local_path.unlink(missing_ok=True)
            raise
        finally:
            response.close()

        logger.debug(f"Downloaded {remote_path} to {local_path}")
        return local_path

    def delete(self, remote_path: str) -> None:
        """Delete a file or folder."""
        logger.debug(f"Deleting {remote_path}")
        self._rpc("files/delete_v2", {"path": remote_path})

    @staticmethod
    def _parse_page(data: dict[str, Any]) -> ListFolderPage:
        entries = [
            FileEntry.from_api_response(entry)
            for entry in data.get("entries", [])
            if entry.get(".tag") == "file"
        ]
        return ListFolderPage(
            entries=entries,
            cursor=data.get("cursor", ""),
            has_more=bool(data.get("has_more", False)),
        )
