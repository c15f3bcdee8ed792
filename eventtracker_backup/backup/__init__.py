"""
eventtracker_backup.backup - Encrypted backup and restore

Archive encoding, remote storage with retention, and the orchestrator that
runs backup and restore cycles.
"""

from eventtracker_backup.backup.archive import ArchiveError, BackupArchiveCodec
from eventtracker_backup.backup.orchestrator import BackupOrchestrator, OperationState
from eventtracker_backup.backup.remote import RemoteBackupStore, classify_error
from eventtracker_backup.backup.result import (
    BackupError,
    BackupOutcome,
    BackupSuccess,
    ErrorKind,
    RemoteBackupEntry,
    RestoreFailure,
    WorkVerdict,
)

__all__ = [
    "ArchiveError",
    "BackupArchiveCodec",
    "BackupError",
    "BackupOrchestrator",
    "BackupOutcome",
    "BackupSuccess",
    "ErrorKind",
    "OperationState",
    "RemoteBackupEntry",
    "RemoteBackupStore",
    "RestoreFailure",
    "WorkVerdict",
    "classify_error",
]
