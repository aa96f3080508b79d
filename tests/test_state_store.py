"""Tests for state store."""

import sqlite3
import threading

import pytest

from tax_form_importer.state_store import (
    DELETE,
    KEEP,
    MemoryStateStore,
    StateStore,
    StateStoreError,
)
from tax_form_importer.state_store.migrations import MigrationRunner, get_all_migrations


class TestStateStore:
    """Tests for SQLite state store."""

    @pytest.fixture
    def store(self, temp_db):
        """Create a fresh state store."""
        return StateStore(temp_db)

    def test_init_creates_db(self, temp_db):
        """Initializing creates database file."""
        StateStore(temp_db)
        assert temp_db.exists()

    def test_init_creates_parent_dirs(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "state.db"
        StateStore(db_path)
        assert db_path.exists()

    def test_init_creates_tables(self, store):
        """All required tables are created."""
        conn = store._get_connection()
        try:
            tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = [t[0] for t in tables]

            assert "kv_store" in table_names
            assert "import_history" in table_names
            assert "migrations" in table_names
        finally:
            conn.close()

    def test_reopen_keeps_data(self, temp_db):
        StateStore(temp_db).set("queue_state", {"status": "IDLE"})

        assert StateStore(temp_db).get("queue_state") == {"status": "IDLE"}


class TestKeyValueOperations:
    """Tests for get/set/remove/keys."""

    @pytest.fixture(params=["sqlite", "memory"])
    def store(self, request, temp_db):
        if request.param == "sqlite":
            return StateStore(temp_db)
        return MemoryStateStore()

    def test_get_missing_returns_default(self, store):
        assert store.get("nope") is None
        assert store.get("nope", {"a": 1}) == {"a": 1}

    def test_set_and_get(self, store):
        value = {"queue": [{"id": "t1"}], "status": "PROCESSING"}
        store.set("queue_state", value)

        assert store.get("queue_state") == value

    def test_set_replaces(self, store):
        store.set("k", 1)
        store.set("k", 2)
        assert store.get("k") == 2

    def test_values_are_copies(self, store):
        """Mutating a read value never changes the stored one."""
        store.set("k", {"items": [1]})
        store.get("k")["items"].append(2)

        assert store.get("k") == {"items": [1]}

    def test_remove(self, store):
        store.set("k", "v")

        assert store.remove("k") is True
        assert store.remove("k") is False
        assert store.get("k") is None

    def test_keys(self, store):
        store.set("b", 1)
        store.set("a", 2)
        assert store.keys() == ["a", "b"]


class TestAtomicUpdate:
    """Tests for update(key, fn)."""

    @pytest.fixture(params=["sqlite", "memory"])
    def store(self, request, temp_db):
        if request.param == "sqlite":
            return StateStore(temp_db)
        return MemoryStateStore()

    def test_update_writes_new_value(self, store):
        store.set("counter", 1)

        result = store.update("counter", lambda current: (current + 1, "done"))

        assert result == "done"
        assert store.get("counter") == 2

    def test_update_missing_key_sees_none(self, store):
        seen = []
        store.update("k", lambda current: (seen.append(current) or "new", None))

        assert seen == [None]
        assert store.get("k") == "new"

    def test_keep_leaves_value(self, store):
        store.set("k", "old")
        store.update("k", lambda current: (KEEP, None))
        assert store.get("k") == "old"

    def test_keep_on_missing_key_writes_nothing(self, store):
        store.update("k", lambda current: (KEEP, None))
        assert store.keys() == []

    def test_delete_removes_value(self, store):
        store.set("k", "old")
        store.update("k", lambda current: (DELETE, None))
        assert store.get("k") is None

    def test_exception_in_fn_leaves_value(self, store):
        store.set("k", "old")

        def boom(current):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.update("k", boom)

        assert store.get("k") == "old"

    def test_concurrent_increments_not_lost(self, temp_db):
        """Read-modify-write from many connections never loses an update."""
        StateStore(temp_db).set("counter", 0)

        def worker():
            store = StateStore(temp_db, run_migrations=False)
            for _ in range(20):
                store.update("counter", lambda current: (current + 1, None))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert StateStore(temp_db).get("counter") == 80


class TestCorruptValues:
    """Tests for unreadable stored values."""

    def test_invalid_json_raises(self, temp_db):
        store = StateStore(temp_db)
        conn = sqlite3.connect(str(temp_db))
        conn.execute(
            "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
            ("queue_state", "{not json", "2024-01-01T00:00:00Z"),
        )
        conn.commit()
        conn.close()

        with pytest.raises(StateStoreError):
            store.get("queue_state")

    def test_unreadable_database_raises(self, tmp_path):
        db_path = tmp_path / "state.db"
        store = StateStore(db_path)
        db_path.write_bytes(b"this is not a database" * 100)

        with pytest.raises(StateStoreError):
            store.get("queue_state")


class TestImportHistory:
    """Tests for import history."""

    @pytest.fixture(params=["sqlite", "memory"])
    def store(self, request, temp_db):
        if request.param == "sqlite":
            return StateStore(temp_db)
        return MemoryStateStore()

    def test_record_and_list(self, store):
        store.record_import("first.csv", "a" * 64, 3, 3)
        store.record_import("second.csv", "b" * 64, 5, 2)

        history = store.get_import_history()

        assert [h.source_name for h in history] == ["second.csv", "first.csv"]
        assert history[0].record_count == 5
        assert history[0].new_count == 2
        assert history[0].imported_at.endswith("Z")

    def test_limit(self, store):
        for i in range(5):
            store.record_import(f"{i}.csv", str(i) * 64, 1, 1)

        assert len(store.get_import_history(limit=2)) == 2


class TestMigrations:
    """Tests for the migration runner."""

    def test_migrations_discovered_in_order(self):
        versions = [m.version for m in get_all_migrations()]
        assert versions == sorted(versions)
        assert versions[:2] == [1, 2]

    def test_all_applied_on_init(self, temp_db):
        StateStore(temp_db)
        conn = sqlite3.connect(str(temp_db), isolation_level=None)
        try:
            runner = MigrationRunner(conn)
            assert runner.get_current_version() == max(m.version for m in get_all_migrations())
        finally:
            conn.close()

    def test_rerun_is_noop(self, temp_db):
        StateStore(temp_db)
        conn = sqlite3.connect(str(temp_db), isolation_level=None)
        try:
            assert MigrationRunner(conn).run_pending() == []
        finally:
            conn.close()

    def test_fresh_database_version_zero(self, temp_db):
        conn = sqlite3.connect(str(temp_db), isolation_level=None)
        try:
            runner = MigrationRunner(conn)
            assert runner.get_current_version() == 0
            assert runner.get_applied_versions() == set()
        finally:
            conn.close()
