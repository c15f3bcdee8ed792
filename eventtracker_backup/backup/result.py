"""
Outcome types shared by the backup pipeline.

Remote and orchestrator operations never raise for expected failures; they
return one of these values so callers (CLI, daemon) can decide what to show
and whether to retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Union

from eventtracker_backup.daemon.scheduler import WorkVerdict


class ErrorKind(Enum):
    """Coarse failure category used for retry decisions."""

    NETWORK = "network"
    AUTH = "auth"
    FILE = "file"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class BackupSuccess:
    """A backup or restore step completed; ``file`` is the archive involved."""

    file: Path | None = None


@dataclass(frozen=True)
class BackupError:
    """A backup, upload or download step failed."""

    message: str
    kind: ErrorKind


@dataclass(frozen=True)
class RestoreFailure:
    """Decoding or applying a downloaded archive failed."""

    message: str
    kind: ErrorKind


BackupOutcome = Union[BackupSuccess, BackupError, RestoreFailure]


@dataclass(frozen=True)
class RemoteBackupEntry:
    """
    A backup archive stored in the remote folder.

    Attributes:
        name: File name (``eventtracker-<ms>.etbak``)
        path: Remote path used for download and delete
        server_modified: Upload time reported by the provider
    """

    name: str
    path: str
    server_modified: datetime


__all__ = [
    "BackupError",
    "BackupOutcome",
    "BackupSuccess",
    "ErrorKind",
    "RemoteBackupEntry",
    "RestoreFailure",
    "WorkVerdict",
]
