"""
SSOT (Single Source of Truth) schemas for the importer.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .dedupe import (
    FINGERPRINT_SEPARATOR,
    compute_file_hash,
    compute_fingerprint,
    dedupe_records,
)
from .transaction import (
    TransactionRecord,
    TransactionTerm,
    TransactionType,
    new_transaction_id,
)

__all__ = [
    # Canonical record
    "TransactionRecord",
    "TransactionTerm",
    "TransactionType",
    "new_transaction_id",
    # Dedupe
    "FINGERPRINT_SEPARATOR",
    "compute_fingerprint",
    "dedupe_records",
    "compute_file_hash",
]
