"""
eventtracker_backup.storage - Local persistence

The SQLite event store and the encrypted credential store.
"""

from eventtracker_backup.storage.db import (
    EventStore,
    StoreBusyError,
    StoreClosedError,
    StoreError,
)
from eventtracker_backup.storage.secure_store import (
    SecureCredentialStore,
    SecureStoreError,
)

__all__ = [
    "EventStore",
    "SecureCredentialStore",
    "SecureStoreError",
    "StoreBusyError",
    "StoreClosedError",
    "StoreError",
]
