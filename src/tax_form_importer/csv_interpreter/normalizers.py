"""
Cell-level normalizers shared by every CSV layout.

Dates, amounts, flags and the transaction-type classifier live here so that
both layouts produce identical canonical values for identical input cells.
"""

import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation

from dateutil import parser as date_parser

from ..schemas.transaction import TransactionTerm, TransactionType

logger = logging.getLogger(__name__)

COMPACT_DATE_RE = re.compile(r"^\d{8}$")
US_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
CRYPTO_ACCOUNT_SUFFIX_RE = re.compile(r"\dC$")

OPTION_TOKENS = (" CALL ", " PUT ")

# Substring match against the uppercased description, checked in order.
CRYPTO_KEYWORDS = (
    "BITCOIN", "BTC", "ETHEREUM", "ETH", "LITECOIN", "LTC",
    "DOGECOIN", "DOGE", "COMPOUND", "CHAINLINK", "CRYPTO",
    "COIN", "USDC", "USDT", "XRP", "SOL", "SOLANA",
    "BINANCE", "BNB", "RIPPLE", "STELLAR", "XLM", "ADA",
    "CARDANO", "DOT", "POLKADOT", "SHIB", "MATIC", "POLYGON",
)

TRUE_FLAGS = {"1", "Y", "YES", "TRUE", "X"}

CENT = Decimal("0.01")


def normalize_date(value: object, today: date | None = None) -> str:
    """
    Normalize a date cell to ISO ``YYYY-MM-DD``.

    Accepted shapes:
    - ``YYYYMMDD`` → ``YYYY-MM-DD``
    - ``MM/DD/YYYY`` (1 or 2 digit month/day) → ``YYYY-MM-DD``, zero-padded
    - anything else is handed to dateutil; if that fails the current date is
      substituted so the record survives

    Args:
        value: Raw cell value
        today: Substitute date (defaults to ``date.today()``)

    Returns:
        ISO date string
    """
    fallback = (today or date.today()).isoformat()

    if value is None:
        return fallback
    text = str(value).strip()
    if not text:
        return fallback

    if COMPACT_DATE_RE.match(text):
        return f"{text[0:4]}-{text[4:6]}-{text[6:8]}"

    match = US_DATE_RE.match(text)
    if match:
        month, day, year = match.groups()
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"

    try:
        return date_parser.parse(text).date().isoformat()
    except (ValueError, OverflowError):
        logger.warning(f"Could not parse date: {text}, using current date instead")
        return fallback


def parse_amount(value: object) -> Decimal | None:
    """
    Parse a numeric cell without locale assumptions.

    Currency symbols, thousands separators and surrounding whitespace are
    ignored; ``(12.50)`` is read as ``-12.50``.

    Returns:
        Decimal value, or None if the cell is empty, not a number, or too
        large to round to cents
    """
    if value is None:
        return None
    text = str(value).strip().replace("$", "").replace(",", "").replace(" ", "")
    if not text:
        return None

    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]

    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    try:
        # Anything that cannot be held to the cent is not a currency amount
        amount.quantize(CENT)
    except InvalidOperation:
        logger.debug(f"Amount out of range: {text!r}")
        return None
    return -amount if negative else amount


def amount_or_zero(value: object) -> Decimal:
    """Parse an amount cell, reading anything invalid as 0."""
    amount = parse_amount(value)
    return amount if amount is not None else Decimal("0")


def classify_transaction_type(description: str | None) -> TransactionType:
    """
    Derive the transaction type from description text.

    Rules (case-insensitive, first match wins):
    1. contains `` CALL `` or `` PUT `` → OPTION
    2. contains a cryptocurrency keyword → CRYPTO
    3. ends with a digit followed by a single ``C`` → CRYPTO
    4. otherwise → STOCK

    Empty or missing descriptions are OTHER.
    """
    if not description:
        return TransactionType.OTHER

    upper = description.upper()

    if any(token in upper for token in OPTION_TOKENS):
        return TransactionType.OPTION

    for keyword in CRYPTO_KEYWORDS:
        if keyword in upper:
            return TransactionType.CRYPTO

    if CRYPTO_ACCOUNT_SUFFIX_RE.search(upper):
        return TransactionType.CRYPTO

    return TransactionType.STOCK


def parse_term(value: object) -> TransactionTerm:
    """Read a TERM cell (``SHORT``/``LONG``/``S``/``L``), defaulting to SHORT."""
    if value is None:
        return TransactionTerm.SHORT
    text = str(value).strip().upper()
    if text.startswith("L"):
        return TransactionTerm.LONG
    return TransactionTerm.SHORT


def parse_flag(value: object) -> bool:
    """Read a yes/no style cell (``1``, ``Y``, ``TRUE``, ``X``)."""
    if value is None:
        return False
    return str(value).strip().upper() in TRUE_FLAGS


def clean_text(value: object) -> str | None:
    """Strip a text cell, returning None when nothing is left."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None
