"""
Migration runner for the state database.

Migrations live next to this file as ``{version:03d}_{name}.py`` and define:
- VERSION: int
- NAME: str
- upgrade(conn: Connection) -> None

Each pending migration runs in its own transaction together with the row
that records it, so a crash never leaves a half-applied version behind.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    """A single schema migration."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]


def get_all_migrations() -> list[Migration]:
    """Load all migration modules, sorted by version."""
    migrations = []
    migrations_dir = Path(__file__).parent

    for py_file in sorted(migrations_dir.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{__package__}.{py_file.stem}")
        migrations.append(
            Migration(version=module.VERSION, name=module.NAME, upgrade=module.upgrade)
        )

    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Applies pending migrations in version order.

    Applied versions are tracked in the ``migrations`` table. The connection
    is expected in autocommit mode (``isolation_level=None``).
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )

    def get_applied_versions(self) -> set[int]:
        """Versions already recorded in the migrations table."""
        cursor = self.conn.execute("SELECT version FROM migrations")
        return {row[0] for row in cursor.fetchall()}

    def get_current_version(self) -> int:
        """Highest applied version (0 for a fresh database)."""
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result if result is not None else 0

    def apply_migration(self, migration: Migration) -> None:
        """Apply one migration atomically."""
        logger.info(f"Applying migration {migration.version}: {migration.name}")

        self.conn.execute("BEGIN IMMEDIATE")
        try:
            # Another process may have applied it while we waited for the lock
            already = self.conn.execute(
                "SELECT 1 FROM migrations WHERE version = ?", (migration.version,)
            ).fetchone()
            if already:
                self.conn.execute("COMMIT")
                return

            migration.upgrade(self.conn)
            now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, now),
            )
            self.conn.execute("COMMIT")
        except Exception as e:
            if self.conn.in_transaction:
                self.conn.rollback()
            logger.error(f"Migration {migration.version} failed: {e}")
            raise

    def run_pending(self) -> list[int]:
        """Apply every migration not yet recorded. Returns applied versions."""
        applied = self.get_applied_versions()
        pending = [m for m in get_all_migrations() if m.version not in applied]

        for migration in pending:
            self.apply_migration(migration)

        if pending:
            logger.info(f"Applied {len(pending)} migrations: {[m.version for m in pending]}")
        else:
            logger.debug("No pending migrations")

        return [m.version for m in pending]
