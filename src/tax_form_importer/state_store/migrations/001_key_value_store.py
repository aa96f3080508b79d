"""
Migration 001: Create the key/value table.

Holds the queue state blob, the processing lock token and the page flags,
each as one JSON value.
"""

import sqlite3

VERSION = 1
NAME = "key_value_store"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create kv_store table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,  -- JSON
            updated_at TEXT NOT NULL
        )
    """
    )
