"""
eventtracker_backup.api - Dropbox HTTP API client
"""

from eventtracker_backup.api.dropbox_api import (
    DropboxAPIError,
    DropboxAuthError,
    DropboxConflictError,
    DropboxFilesAPI,
    DropboxNetworkError,
    DropboxNotFoundError,
    FileEntry,
    ListFolderPage,
    RateLimitError,
)

__all__ = [
    "DropboxAPIError",
    "DropboxAuthError",
    "DropboxConflictError",
    "DropboxFilesAPI",
    "DropboxNetworkError",
    "DropboxNotFoundError",
    "FileEntry",
    "ListFolderPage",
    "RateLimitError",
]
