"""
Canonical transaction record (SSOT).

This is THE single source of truth for an imported sale. The CSV interpreter
produces it, the queue persists it and the submission channel consumes it.
No other module may invent another record shape.

Wire format:
    Records are persisted and exchanged as JSON objects with camelCase keys
    (``saleDate``, ``costBasis``, ...), the shape the page-automation side
    reads. Amounts travel as strings to keep decimal precision.
"""

import random
import string
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class TransactionTerm(str, Enum):
    """Holding period of a sale."""

    SHORT = "SHORT"
    LONG = "LONG"


class TransactionType(str, Enum):
    """Asset class derived from the description text."""

    STOCK = "STOCK"
    OPTION = "OPTION"
    CRYPTO = "CRYPTO"
    OTHER = "OTHER"


REQUIRED_WIRE_KEYS = ("description", "saleDate", "salesPrice", "costBasis")


def new_transaction_id() -> str:
    """Generate an opaque record id (``transaction_<ms>_<9 random chars>``)."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"transaction_{int(time.time() * 1000)}_{suffix}"


def _to_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"{field_name} is not a decimal amount: {value!r}") from e


def _to_bool(value: Any, field_name: str) -> bool:
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "y"):
        return True
    if text in ("false", "0", "no", "n", ""):
        return False
    raise ValueError(f"{field_name} is not a boolean: {value!r}")


@dataclass
class TransactionRecord:
    """
    A single sale, normalized independently of the CSV layout it came from.

    Identity for deduplication is the fingerprint, never ``id``.
    Only ``processing_attempts`` and ``last_attempt_timestamp`` change after
    creation, and only through :meth:`with_retry`.
    """

    description: str
    sale_date: str  # ISO YYYY-MM-DD
    sales_price: Decimal
    cost_basis: Decimal
    id: str = ""
    date_acquired: str | None = None  # ISO YYYY-MM-DD
    shares: Decimal | None = None
    term: TransactionTerm = TransactionTerm.SHORT
    transaction_type: TransactionType = TransactionType.OTHER
    non_covered: bool = False
    ordinary_income: bool = False
    account_number: str | None = None
    tax_year: str | None = None
    processing_attempts: int = 0
    last_attempt_timestamp: str | None = None  # ISO timestamp, UTC

    @property
    def fingerprint(self) -> str:
        """Duplicate-detection key, see :func:`schemas.dedupe.compute_fingerprint`."""
        from .dedupe import compute_fingerprint

        return compute_fingerprint(self)

    def with_retry(self, now: datetime | None = None) -> "TransactionRecord":
        """Return a copy with one more attempt recorded."""
        now = now or datetime.now(timezone.utc)
        return replace(
            self,
            processing_attempts=self.processing_attempts + 1,
            last_attempt_timestamp=now.isoformat().replace("+00:00", "Z"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON wire shape."""
        return {
            "id": self.id,
            "description": self.description,
            "saleDate": self.sale_date,
            "dateAcquired": self.date_acquired,
            "salesPrice": str(self.sales_price),
            "costBasis": str(self.cost_basis),
            "shares": str(self.shares) if self.shares is not None else None,
            "term": self.term.value,
            "transactionType": self.transaction_type.value,
            "nonCovered": self.non_covered,
            "ordinaryIncome": self.ordinary_income,
            "accountNumber": self.account_number,
            "taxYear": self.tax_year,
            "processingAttempts": self.processing_attempts,
            "lastAttemptTimestamp": self.last_attempt_timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionRecord":
        """
        Build a record from its wire shape.

        Unknown keys are ignored, missing optional keys take their defaults.

        Raises:
            ValueError: If a required key is missing or a value is malformed
        """
        missing = [k for k in REQUIRED_WIRE_KEYS if data.get(k) is None]
        if missing:
            raise ValueError(f"Transaction is missing required fields: {', '.join(missing)}")

        shares = data.get("shares")
        term = str(data.get("term") or TransactionTerm.SHORT.value).upper()
        transaction_type = str(
            data.get("transactionType") or TransactionType.OTHER.value
        ).upper()

        try:
            term_value = TransactionTerm(term)
        except ValueError:
            term_value = TransactionTerm.SHORT
        try:
            type_value = TransactionType(transaction_type)
        except ValueError:
            type_value = TransactionType.OTHER

        return cls(
            id=str(data.get("id") or ""),
            description=str(data["description"]),
            sale_date=str(data["saleDate"]),
            date_acquired=data.get("dateAcquired") or None,
            sales_price=_to_decimal(data["salesPrice"], "salesPrice"),
            cost_basis=_to_decimal(data["costBasis"], "costBasis"),
            shares=_to_decimal(shares, "shares") if shares not in (None, "") else None,
            term=term_value,
            transaction_type=type_value,
            non_covered=_to_bool(data.get("nonCovered"), "nonCovered"),
            ordinary_income=_to_bool(data.get("ordinaryIncome"), "ordinaryIncome"),
            account_number=data.get("accountNumber") or None,
            tax_year=str(data["taxYear"]) if data.get("taxYear") else None,
            processing_attempts=int(data.get("processingAttempts") or 0),
            last_attempt_timestamp=data.get("lastAttemptTimestamp") or None,
        )
