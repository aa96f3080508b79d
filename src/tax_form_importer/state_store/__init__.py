"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- The transaction queue and failed transactions
- The cross-process processing lock
- In-flight submission markers
- Imported CSV files

The queue never holds two records with the same fingerprint.
"""

from .queue_store import (
    PageFlags,
    ProcessingStatus,
    QueueState,
    QueueStore,
)
from .sqlite_store import (
    DELETE,
    KEEP,
    ImportHistoryRecord,
    MemoryStateStore,
    StateStore,
    StateStoreError,
)

__all__ = [
    "StateStore",
    "MemoryStateStore",
    "StateStoreError",
    "ImportHistoryRecord",
    "KEEP",
    "DELETE",
    "QueueStore",
    "QueueState",
    "ProcessingStatus",
    "PageFlags",
]
