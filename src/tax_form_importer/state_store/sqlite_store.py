"""
SQLite-based state store implementation.

A durable JSON key/value store shared by every process that works on the
same database file (the long-lived coordinator and any page-automation
workers).

Tables:
- kv_store: JSON values addressed by key (queue state, lock token, page flags)
- import_history: One row per imported CSV file
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Returned by an update function to leave the stored value untouched
KEEP = object()
# Returned by an update function to delete the key
DELETE = object()


class StateStoreError(Exception):
    """Persistence layer failed (I/O, locking, corrupt value)."""

    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ImportHistoryRecord:
    """Record of one imported CSV file."""

    id: int
    source_name: str
    file_hash: str
    record_count: int
    new_count: int
    imported_at: str  # ISO timestamp

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ImportHistoryRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            source_name=row["source_name"],
            file_hash=row["file_hash"],
            record_count=row["record_count"],
            new_count=row["new_count"],
            imported_at=row["imported_at"],
        )


class StateStore:
    """
    SQLite-based key/value state store.

    Every read-modify-write goes through :meth:`update`, which runs inside a
    ``BEGIN IMMEDIATE`` transaction so that concurrent processes are
    serialized by SQLite's write lock.
    """

    BUSY_TIMEOUT_SECONDS = 10.0

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory (autocommit mode)."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for write transactions (takes the write lock up front)."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot open state database {self.db_path}: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    @staticmethod
    def _decode(key: str, raw: str | None) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Stored value for '{key}' is not valid JSON: {e}") from e

    # Key/value methods

    def get(self, key: str, default: Any = None) -> Any:
        """
        Read a value.

        Raises:
            StateStoreError: If the database cannot be read or the value is corrupt
        """
        try:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to read '{key}': {e}") from e

        if row is None:
            return default
        return self._decode(key, row["value"])

    def set(self, key: str, value: Any) -> None:
        """Write a value (replaces any previous one)."""
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, json.dumps(value), _now_iso()),
                )
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to write '{key}': {e}") from e

    def remove(self, key: str) -> bool:
        """Delete a value. Returns True if it existed."""
        try:
            with self._transaction() as conn:
                cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to remove '{key}': {e}") from e

    def keys(self) -> list[str]:
        """List stored keys."""
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to list keys: {e}") from e
        return [row["key"] for row in rows]

    def update(self, key: str, fn: Callable[[Any], tuple[Any, T]]) -> T:
        """
        Atomically read, transform and write one value.

        ``fn`` receives the current value (None if absent) and returns
        ``(new_value, result)``. ``new_value`` may be :data:`KEEP` to leave
        the row untouched or :data:`DELETE` to remove it. ``result`` is
        returned to the caller.

        Raises:
            StateStoreError: On database errors or a corrupt stored value
        """
        try:
            with self._transaction() as conn:
                row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
                current = self._decode(key, row["value"] if row else None)
                new_value, result = fn(current)

                if new_value is DELETE:
                    conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                elif new_value is not KEEP:
                    conn.execute(
                        """
                        INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            value = excluded.value,
                            updated_at = excluded.updated_at
                        """,
                        (key, json.dumps(new_value), _now_iso()),
                    )
                return result
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to update '{key}': {e}") from e

    # Import history methods

    def record_import(
        self,
        source_name: str,
        file_hash: str,
        record_count: int,
        new_count: int,
    ) -> int:
        """Record an imported file. Returns the history row id."""
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO import_history
                        (source_name, file_hash, record_count, new_count, imported_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (source_name, file_hash, record_count, new_count, _now_iso()),
                )
                return cursor.lastrowid or 0
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to record import: {e}") from e

    def get_import_history(self, limit: int = 20) -> list[ImportHistoryRecord]:
        """Most recent imports first."""
        try:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM import_history ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to read import history: {e}") from e
        return [ImportHistoryRecord.from_row(row) for row in rows]


class MemoryStateStore:
    """
    In-process stand-in for :class:`StateStore`.

    Same interface and the same JSON round-trip, so callers see copies and
    never share mutable objects with the store.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._history: list[ImportHistoryRecord] = []
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            raw = self._data.get(key)
        if raw is None:
            return default
        return StateStore._decode(key, raw)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = json.dumps(value)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)

    def update(self, key: str, fn: Callable[[Any], tuple[Any, T]]) -> T:
        with self._lock:
            current = StateStore._decode(key, self._data.get(key))
            new_value, result = fn(current)
            if new_value is DELETE:
                self._data.pop(key, None)
            elif new_value is not KEEP:
                self._data[key] = json.dumps(new_value)
            return result

    def record_import(
        self,
        source_name: str,
        file_hash: str,
        record_count: int,
        new_count: int,
    ) -> int:
        with self._lock:
            entry = ImportHistoryRecord(
                id=len(self._history) + 1,
                source_name=source_name,
                file_hash=file_hash,
                record_count=record_count,
                new_count=new_count,
                imported_at=_now_iso(),
            )
            self._history.append(entry)
            return entry.id

    def get_import_history(self, limit: int = 20) -> list[ImportHistoryRecord]:
        with self._lock:
            return list(reversed(self._history))[:limit]
