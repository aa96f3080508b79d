"""
Fingerprint and deduplication (CRITICAL).

This module defines THE duplicate test for transaction records.
This is the ONLY way to decide whether two records are the same sale.

Fingerprint format:
    {description}|{sale_date}|{sales_price:.2f}|{cost_basis:.2f}

- description and sale_date are compared exactly (no case folding)
- amounts are rounded half-up to 2 decimal places so that precision noise
  beyond the cent never produces a false "different transaction"
- the generated record id is NOT part of the fingerprint

The fingerprint must be:
- Stable: Same inputs always produce same output
- Source-independent: A sale imported from the 1099-B section and the same
  sale imported through the generic layout collapse to one record
"""

import hashlib
import logging
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, localcontext

from .transaction import TransactionRecord

logger = logging.getLogger(__name__)

# Separator between fingerprint components
FINGERPRINT_SEPARATOR = "|"

CENT = Decimal("0.01")


def _round_amount(amount: Decimal) -> str:
    """Round an amount to cents for fingerprinting."""
    if not amount.is_finite():
        return str(amount)
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, amount.adjusted() + 3)
        rounded = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    # -0.00 and 0.00 are the same amount
    if rounded.is_zero():
        rounded = abs(rounded)
    return str(rounded)


def compute_fingerprint(record: TransactionRecord) -> str:
    """
    Compute the duplicate-detection key for a record.

    Args:
        record: Transaction record

    Returns:
        Fingerprint string

    Examples:
        >>> compute_fingerprint(TransactionRecord("AAPL", "2024-01-15", Decimal("100.004"), Decimal("90")))
        'AAPL|2024-01-15|100.00|90.00'
    """
    return FINGERPRINT_SEPARATOR.join(
        [
            record.description,
            record.sale_date,
            _round_amount(record.sales_price),
            _round_amount(record.cost_basis),
        ]
    )


def dedupe_records(records: Iterable[TransactionRecord]) -> list[TransactionRecord]:
    """
    Collapse records to one per fingerprint.

    Stable: the first occurrence in input order wins, and survivors keep
    first-occurrence order. Pure function, the input is not modified.

    Args:
        records: Records in priority order

    Returns:
        Deduplicated list
    """
    seen: set[str] = set()
    unique: list[TransactionRecord] = []
    total = 0

    for record in records:
        total += 1
        fingerprint = compute_fingerprint(record)
        if fingerprint in seen:
            logger.debug(f"Duplicate transaction dropped: {fingerprint}")
            continue
        seen.add(fingerprint)
        unique.append(record)

    if total != len(unique):
        logger.info(f"Deduplicated {total} transactions down to {len(unique)}")

    return unique


def compute_file_hash(file_bytes: bytes) -> str:
    """
    Compute SHA256 hash of file bytes.

    Args:
        file_bytes: Raw file content

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(file_bytes).hexdigest()
