"""
Migration 002: Add import_history table.

One row per CSV file handed to the importer, keyed by the SHA256 of its bytes
so repeated imports of the same file are visible in the status output.
"""

import sqlite3

VERSION = 2
NAME = "import_history"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create import_history table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS import_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_name TEXT NOT NULL,
            file_hash TEXT NOT NULL,
            record_count INTEGER NOT NULL,
            new_count INTEGER NOT NULL,  -- records actually added to the queue
            imported_at TEXT NOT NULL
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_import_history_hash ON import_history(file_hash)"
    )
