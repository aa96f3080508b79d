"""
CSV Interpreter.

Turns the raw text of a brokerage CSV export into deduplicated canonical
transaction records, reporting unusable rows as diagnostics instead of
failing the file.
"""

from .interpreter import (
    LAYOUT_GENERIC,
    LAYOUT_TAX_DOCUMENT,
    InterpretationResult,
    RowFields,
    interpret,
)
from .normalizers import classify_transaction_type, normalize_date, parse_amount

__all__ = [
    "interpret",
    "InterpretationResult",
    "RowFields",
    "LAYOUT_TAX_DOCUMENT",
    "LAYOUT_GENERIC",
    "classify_transaction_type",
    "normalize_date",
    "parse_amount",
]
