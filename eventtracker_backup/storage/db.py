"""
SQLite event store for the habit/event tracker.

Provides persistent storage for event types, per-day event toggles and
free-text custom events, plus the file-level hooks the backup subsystem
needs: primary/side file paths, explicit close and reopen, a short
snapshot window for backups and an exclusive window for restores.
"""

import logging
import sqlite3
import threading
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Side files SQLite keeps next to the database in WAL mode
SIDE_FILE_SUFFIXES = ("-wal", "-shm")

# Default wait for the exclusive restore window (seconds)
DEFAULT_EXCLUSIVE_TIMEOUT = 30.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS event_types (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    color_argb INTEGER NOT NULL DEFAULT 0,
    emoji TEXT,
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_archived BOOLEAN NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_event_types_name ON event_types(name);
CREATE INDEX IF NOT EXISTS idx_event_types_sort ON event_types(sort_order);

CREATE TABLE IF NOT EXISTS day_events (
    date_epoch_day INTEGER NOT NULL,
    event_type_id TEXT NOT NULL,
    PRIMARY KEY (date_epoch_day, event_type_id)
);

CREATE INDEX IF NOT EXISTS idx_day_events_date ON day_events(date_epoch_day);
CREATE INDEX IF NOT EXISTS idx_day_events_type ON day_events(event_type_id);

CREATE TABLE IF NOT EXISTS custom_events (
    id TEXT PRIMARY KEY,
    date_epoch_day INTEGER NOT NULL,
    text TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_custom_events_date ON custom_events(date_epoch_day);
"""


class StoreError(Exception):
    """Base exception for event store errors."""

    pass


class StoreClosedError(StoreError):
    """Raised when the store is used while closed (e.g. during a restore)."""

    pass


class StoreBusyError(StoreError):
    """Raised when exclusive access cannot be acquired in time."""

    pass


class EventStore:
    """
    Owned handle to the SQLite event store.

    One EventStore owns one open connection. It is passed explicitly to the
    backup code instead of living in a process-wide singleton; restore asks
    for exclusive ownership through ``exclusive()``, which closes the
    connection, keeps every other user out, and reopens when done.

    Usage:
        store = EventStore(Path("~/.eventtracker-backup/eventtracker.db"))
        store.open()

        type_id = store.add_event_type("Gym")
        store.toggle_day_event(19800, type_id)

        with store.exclusive():
            ...  # files may be replaced here

        store.close()
    """

    def __init__(self, db_path: Path | str):
        """
        Initialize the store handle (does not open the database).

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # =========================================================================
    # File layout
    # =========================================================================

    @property
    def database_name(self) -> str:
        """File name of the primary database file."""
        return self.db_path.name

    @property
    def primary_file_path(self) -> Path:
        """Path of the primary database file."""
        return self.db_path

    def side_file_paths(self) -> list[Path]:
        """Paths of the write-ahead log and shared-memory files (may not exist)."""
        return [
            self.db_path.with_name(self.db_path.name + suffix)
            for suffix in SIDE_FILE_SUFFIXES
        ]

    def member_paths(self) -> dict[str, Path]:
        """Map of archive member name to canonical path for every store file."""
        paths = [self.primary_file_path, *self.side_file_paths()]
        return {path.name: path for path in paths}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_open(self) -> bool:
        """True while the store holds an open connection."""
        return self._conn is not None

    def open(self) -> None:
        """Open the database and make sure the schema exists."""
        with self._lock:
            if self._conn is not None:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            conn.commit()
            self._conn = conn
            logger.debug(f"Opened event store: {self.db_path}")

    def close(self) -> None:
        """Close the connection. Safe to call when already closed."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            logger.debug(f"Closed event store: {self.db_path}")

    def reopen(self) -> None:
        """Close (if needed) and open the database again."""
        with self._lock:
            self.close()
            self.open()

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database access.

        Commits on success and rolls back on error.

        Raises:
            StoreClosedError: If the store is closed
        """
        with self._lock:
            if self._conn is None:
                raise StoreClosedError(f"Event store is closed: {self.db_path}")
            conn = self._conn
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def snapshot(self) -> Generator[dict[str, Path], None, None]:
        """
        Hold the store still while its files are copied.

        Checkpoints the write-ahead log first so the primary file is as
        complete as possible; the WAL is still included by the caller.

        Yields:
            Map of member name to path for the files that currently exist
        """
        with self._lock:
            if self._conn is not None:
                self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            yield {
                name: path
                for name, path in self.member_paths().items()
                if path.exists()
            }

    @contextmanager
    def exclusive(
        self, timeout: float = DEFAULT_EXCLUSIVE_TIMEOUT
    ) -> Generator[dict[str, Path], None, None]:
        """
        Take exclusive ownership of the store files.

        Closes the connection, keeps every other caller out for the whole
        window, and reopens the database on exit (also on error).

        Args:
            timeout: Seconds to wait for in-flight users to finish

        Yields:
            Map of member name to canonical path

        Raises:
            StoreBusyError: If the store could not be acquired within timeout
        """
        if not self._lock.acquire(timeout=timeout):
            raise StoreBusyError(
                f"Could not acquire exclusive access to {self.db_path} "
                f"within {timeout:.0f}s"
            )
        try:
            was_open = self.is_open
            self.close()
            logger.info("Event store closed for exclusive access")
            try:
                yield self.member_paths()
            finally:
                if was_open:
                    self.open()
                    logger.info("Event store reopened")
        finally:
            self._lock.release()

    # =========================================================================
    # Event Type Operations
    # =========================================================================

    def add_event_type(
        self,
        name: str,
        color_argb: int = 0,
        emoji: Optional[str] = None,
        sort_order: Optional[int] = None,
    ) -> str:
        """
        Create an event type.

        Args:
            name: Display name
            color_argb: Color as a signed 32-bit ARGB integer
            emoji: Optional emoji shown next to the name
            sort_order: Position in lists (defaults to the end)

        Returns:
            Identifier of the new event type
        """
        type_id = uuid.uuid4().hex
        with self.connection() as conn:
            if sort_order is None:
                row = conn.execute(
                    "SELECT COALESCE(MAX(sort_order) + 1, 0) AS next FROM event_types"
                ).fetchone()
                sort_order = row["next"]
            conn.execute(
                """
                INSERT INTO event_types (id, name, color_argb, emoji, sort_order)
                VALUES (?, ?, ?, ?, ?)
                """,
                (type_id, name, color_argb, emoji, sort_order),
            )
        return type_id

    def list_event_types(self, include_archived: bool = False) -> list[dict[str, Any]]:
        """List event types in display order."""
        query = "SELECT * FROM event_types"
        if not include_archived:
            query += " WHERE is_archived = 0"
        query += " ORDER BY sort_order, name"
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(query).fetchall()]

    def archive_event_type(self, type_id: str) -> bool:
        """Hide an event type from lists without deleting its history."""
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE event_types SET is_archived = 1 WHERE id = ?", (type_id,)
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Day Event Operations
    # =========================================================================

    def toggle_day_event(self, date_epoch_day: int, event_type_id: str) -> bool:
        """
        Toggle an event type on a day.

        Returns:
            True if the event is now set, False if it was cleared
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM day_events WHERE date_epoch_day = ? AND event_type_id = ?",
                (date_epoch_day, event_type_id),
            )
            if cursor.rowcount > 0:
                return False
            conn.execute(
                "INSERT INTO day_events (date_epoch_day, event_type_id) VALUES (?, ?)",
                (date_epoch_day, event_type_id),
            )
            return True

    def events_on(self, date_epoch_day: int) -> list[str]:
        """Event type ids set on a day."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT event_type_id FROM day_events WHERE date_epoch_day = ? "
                "ORDER BY event_type_id",
                (date_epoch_day,),
            ).fetchall()
            return [row["event_type_id"] for row in rows]

    # =========================================================================
    # Custom Event Operations
    # =========================================================================

    def add_custom_event(self, date_epoch_day: int, text: str) -> str:
        """Add a free-text event to a day and return its id."""
        event_id = uuid.uuid4().hex
        with self.connection() as conn:
            conn.execute(
                "INSERT INTO custom_events (id, date_epoch_day, text) VALUES (?, ?, ?)",
                (event_id, date_epoch_day, text),
            )
        return event_id

    def custom_events_on(self, date_epoch_day: int) -> list[str]:
        """Texts of the custom events on a day."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT text FROM custom_events WHERE date_epoch_day = ? ORDER BY text",
                (date_epoch_day,),
            ).fetchall()
            return [row["text"] for row in rows]

    # =========================================================================
    # Statistics
    # =========================================================================

    def counts(self) -> dict[str, int]:
        """Row counts per table, for status output."""
        with self.connection() as conn:
            result = {}
            for table in ("event_types", "day_events", "custom_events"):
                query = f"SELECT COUNT(*) FROM {table}"  # nosec B608
                result[table] = conn.execute(query).fetchone()[0]
            return result
