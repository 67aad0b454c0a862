"""SQLite key/value storage backing the learning tracker state."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the durable medium cannot be read or written."""

    pass


class SqliteStorage:
    """Durable string storage keyed by name, shared between processes.

    Several SqliteStorage instances (in one or more processes) may open the
    same database file; the last write to a key wins.

    Not thread-safe. Callers serialize access (the Store holds a lock).
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._init_schema()
        self._data_version = self._read_data_version()

    def __enter__(self) -> "SqliteStorage":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> SqliteStorage:
        """Open or create a database at the given path."""
        path.parent.mkdir(parents=True, exist_ok=True)
        # Writers from other threads only happen under the Store's lock
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> SqliteStorage:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    def get_item(self, key: str) -> str | None:
        """Return the stored value for key, or None if absent.

        Raises:
            StorageError: If the database cannot be read.
        """
        try:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key!r}: {e}") from e
        return row["value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value.

        Raises:
            StorageError: If the write cannot be committed.
        """
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        try:
            with self._conn:  # Commits on success, rolls back on error
                self._conn.execute(
                    """
                    INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                   updated_at = excluded.updated_at
                    """,
                    (key, value, now),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write {key!r}: {e}") from e
        logger.debug("Wrote %d bytes to %r", len(value), key)

    def remove_item(self, key: str) -> bool:
        """Delete key. Returns True if it existed.

        Raises:
            StorageError: If the delete cannot be committed.
        """
        try:
            with self._conn:
                cursor = self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to remove {key!r}: {e}") from e
        return cursor.rowcount > 0

    def keys(self) -> list[str]:
        """List stored keys in sorted order."""
        cursor = self._conn.execute("SELECT key FROM kv ORDER BY key")
        return [row["key"] for row in cursor.fetchall()]

    def _read_data_version(self) -> int:
        return self._conn.execute("PRAGMA data_version").fetchone()[0]

    def changed_externally(self) -> bool:
        """Check whether another connection committed since the last check.

        Uses SQLite's data_version, which changes only for commits made
        through other connections to the same database file. Always False
        for in-memory databases.
        """
        try:
            version = self._read_data_version()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to poll for changes: {e}") from e
        changed = version != self._data_version
        self._data_version = version
        return changed
