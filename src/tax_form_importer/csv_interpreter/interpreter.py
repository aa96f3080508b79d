"""
CSV interpreter: heterogeneous spreadsheet text → canonical records.

Two layouts are recognized, tried in order:

1. Tax document layout (e.g. a consolidated 1099 export). The file contains
   several sections; the one we want starts with a header row whose first two
   cells are ``<layout tag>, ACCOUNT NUMBER``. Data rows begin with the layout
   tag, and the section ends at the next row whose second cell is
   ``ACCOUNT NUMBER``.
2. Generic layout. First row is the header; canonical fields are resolved
   through synonym lists (``SOLD``, ``DATE SOLD``, ``PROCEEDS``, ...).

Malformed input never raises. Rows that cannot be used are skipped and
described in ``InterpretationResult.processing_errors``.
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date

from ..config import CSVConfig
from ..schemas.dedupe import dedupe_records
from ..schemas.transaction import TransactionRecord, new_transaction_id
from .normalizers import (
    amount_or_zero,
    classify_transaction_type,
    clean_text,
    normalize_date,
    parse_amount,
    parse_flag,
    parse_term,
)

logger = logging.getLogger(__name__)

LAYOUT_TAX_DOCUMENT = "tax_document"
LAYOUT_GENERIC = "generic"

ACCOUNT_NUMBER_HEADER = "ACCOUNT NUMBER"

# Canonical field → column name in the tax document layout
TAX_DOCUMENT_COLUMNS = {
    "description": "DESCRIPTION",
    "sale_date": "SALE DATE",
    "date_acquired": "DATE ACQUIRED",
    "sales_price": "SALES PRICE",
    "cost_basis": "COST BASIS",
    "shares": "SHARES",
    "term": "TERM",
    "non_covered": "NON COVERED",
    "ordinary_income": "ORDINARY",
    "account_number": "ACCOUNT NUMBER",
    "tax_year": "TAX YEAR",
}

# Canonical field → accepted header names in the generic layout, by priority
GENERIC_SYNONYMS = {
    "description": ["DESCRIPTION", "NAME", "SECURITY", "STOCK", "SYMBOL", "SECURITY NAME"],
    "sale_date": ["SALE DATE", "SOLD", "DATE SOLD", "SOLD DATE", "SETTLEMENT DATE"],
    "date_acquired": [
        "DATE ACQUIRED", "ACQUIRED", "PURCHASE DATE", "DATE PURCHASED", "ACQUIRED DATE",
    ],
    "sales_price": [
        "SALES PRICE", "PROCEEDS", "GROSS PROCEEDS", "AMOUNT", "SALE AMOUNT", "SOLD AMOUNT",
    ],
    "cost_basis": ["COST BASIS", "COST", "BASIS", "PURCHASE PRICE", "AMOUNT PAID"],
    "shares": ["SHARES", "QUANTITY", "QTY", "NUMBER OF SHARES"],
    "term": ["TERM", "HOLDING PERIOD"],
    "account_number": ["ACCOUNT NUMBER", "ACCOUNT"],
    "tax_year": ["TAX YEAR"],
}


@dataclass
class RowFields:
    """
    One CSV row reduced to the canonical field set.

    Every layout maps into this; anything not listed here is dropped.
    Values are the raw cell text (None when the column is absent or empty).
    """

    description: str | None = None
    sale_date: str | None = None
    date_acquired: str | None = None
    sales_price: str | None = None
    cost_basis: str | None = None
    shares: str | None = None
    term: str | None = None
    non_covered: str | None = None
    ordinary_income: str | None = None
    account_number: str | None = None
    tax_year: str | None = None

    @classmethod
    def from_columns(
        cls, row: dict[str, str], columns: dict[str, str]
    ) -> "RowFields":
        """Pick canonical fields out of a header→cell mapping."""
        values = {}
        for field_name, column in columns.items():
            values[field_name] = clean_text(row.get(column))
        return cls(**values)

    def rejection_reason(self) -> str | None:
        """Why this row cannot become a record, or None if it can."""
        if not self.description:
            return "missing description"
        if not self.sale_date:
            return "missing sale date"
        if parse_amount(self.sales_price) is None and parse_amount(self.cost_basis) is None:
            return "no numeric sales price or cost basis"
        return None


@dataclass
class InterpretationResult:
    """Outcome of interpreting one CSV file."""

    records: list[TransactionRecord] = field(default_factory=list)
    processing_errors: list[str] = field(default_factory=list)
    layout: str | None = None

    @property
    def total_processed(self) -> int:
        return len(self.records)


def _read_rows(text: str) -> list[list[str]]:
    """Parse CSV text into rows, dropping blank lines."""
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(io.StringIO(text))
    return [row for row in reader if any(cell.strip() for cell in row)]


def build_record(fields: RowFields, today: date | None = None) -> TransactionRecord:
    """
    Convert a validated row into a canonical record.

    Raises:
        ValueError: If a cell cannot be converted
    """
    description = fields.description or ""
    shares = parse_amount(fields.shares)

    return TransactionRecord(
        id=new_transaction_id(),
        description=description,
        sale_date=normalize_date(fields.sale_date, today=today),
        date_acquired=(
            normalize_date(fields.date_acquired, today=today) if fields.date_acquired else None
        ),
        sales_price=amount_or_zero(fields.sales_price),
        cost_basis=amount_or_zero(fields.cost_basis),
        shares=shares,
        term=parse_term(fields.term),
        transaction_type=classify_transaction_type(description),
        non_covered=parse_flag(fields.non_covered),
        ordinary_income=parse_flag(fields.ordinary_income),
        account_number=fields.account_number,
        tax_year=fields.tax_year,
        processing_attempts=0,
    )


def _convert_rows(
    rows: list[tuple[int, RowFields]],
    result: InterpretationResult,
    today: date | None,
    skip_zero_amounts: bool = False,
) -> list[TransactionRecord]:
    records = []
    for line_no, fields in rows:
        reason = fields.rejection_reason()
        if reason is None and skip_zero_amounts:
            if amount_or_zero(fields.sales_price) == 0 and amount_or_zero(fields.cost_basis) == 0:
                reason = "sales price and cost basis are both zero"
        if reason:
            logger.debug(f"Skipping row {line_no}: {reason}")
            result.processing_errors.append(f"Row {line_no} skipped: {reason}")
            continue

        try:
            records.append(build_record(fields, today=today))
        except (ValueError, ArithmeticError) as e:
            logger.warning(f"Error processing row {line_no}: {e}")
            result.processing_errors.append(f"Error processing row {line_no}: {e}")
    return records


def interpret_tax_document(
    rows: list[list[str]],
    result: InterpretationResult,
    layout_tag: str = "1099-B",
    today: date | None = None,
) -> list[TransactionRecord]:
    """
    Extract records from the tax document section of already-parsed rows.

    Returns an empty list when no section header is present.
    """
    header_index = None
    for i, row in enumerate(rows):
        if len(row) > 1 and row[0].strip() == layout_tag and row[1].strip() == ACCOUNT_NUMBER_HEADER:
            header_index = i
            break

    if header_index is None:
        logger.debug(f"No {layout_tag} header row found")
        return []

    logger.debug(f"Found {layout_tag} header at row {header_index + 1}")
    headers = [cell.strip() for cell in rows[header_index]]

    candidates: list[tuple[int, RowFields]] = []
    for i in range(header_index + 1, len(rows)):
        row = rows[i]
        if len(row) > 1 and row[1].strip() == ACCOUNT_NUMBER_HEADER:
            # Start of the next section
            break
        if not row[0].strip().startswith(layout_tag):
            continue
        mapped = {header: row[j] for j, header in enumerate(headers) if header and j < len(row)}
        candidates.append((i + 1, RowFields.from_columns(mapped, TAX_DOCUMENT_COLUMNS)))

    logger.info(f"Found {len(candidates)} {layout_tag} transaction rows")
    return _convert_rows(candidates, result, today)


def resolve_generic_columns(
    headers: list[str], extra_synonyms: dict[str, list[str]] | None = None
) -> dict[str, str]:
    """
    Resolve canonical fields to the header names present in a generic file.

    Extra synonyms (from configuration) take priority over built-in ones.
    """
    available = set(headers)
    resolved: dict[str, str] = {}
    for field_name, names in GENERIC_SYNONYMS.items():
        extra = [n.strip().upper() for n in (extra_synonyms or {}).get(field_name, [])]
        for name in extra + names:
            if name in available:
                resolved[field_name] = name
                break
    return resolved


def interpret_generic(
    rows: list[list[str]],
    result: InterpretationResult,
    extra_synonyms: dict[str, list[str]] | None = None,
    today: date | None = None,
) -> list[TransactionRecord]:
    """
    Extract records treating the first row as a header.

    Requires description, sale date and at least one of sales price or cost
    basis to resolve; otherwise no records are produced.
    """
    if not rows:
        return []

    headers = [cell.strip().upper() for cell in rows[0]]
    columns = resolve_generic_columns(headers, extra_synonyms)
    logger.debug(f"Generic field mapping: {columns}")

    if (
        "description" not in columns
        or "sale_date" not in columns
        or ("sales_price" not in columns and "cost_basis" not in columns)
    ):
        logger.info("Missing required fields in generic CSV")
        result.processing_errors.append(
            "Generic layout requires description, sale date and sales price or cost basis columns"
        )
        return []

    candidates: list[tuple[int, RowFields]] = []
    for i, row in enumerate(rows[1:], start=2):
        mapped = dict(zip(headers, row))
        candidates.append((i, RowFields.from_columns(mapped, columns)))

    return _convert_rows(candidates, result, today, skip_zero_amounts=True)


def interpret(
    text: str,
    csv_config: CSVConfig | None = None,
    today: date | None = None,
) -> InterpretationResult:
    """
    Interpret raw CSV text into deduplicated canonical records.

    Args:
        text: Raw file content
        csv_config: Layout tag and extra column synonyms
        today: Substitute for unparseable dates (defaults to today)

    Returns:
        InterpretationResult with records (already deduplicated) and
        human-readable diagnostics
    """
    csv_config = csv_config or CSVConfig()
    result = InterpretationResult()

    try:
        rows = _read_rows(text)
    except csv.Error as e:
        logger.error(f"Failed to parse CSV: {e}")
        result.processing_errors.append(f"Failed to parse CSV: {e}")
        return result

    records = interpret_tax_document(rows, result, csv_config.layout_tag, today)
    if records:
        result.layout = LAYOUT_TAX_DOCUMENT
    else:
        records = interpret_generic(rows, result, csv_config.column_synonyms, today)
        if records:
            result.layout = LAYOUT_GENERIC

    if not records:
        logger.warning("No valid transactions found in the CSV file")
        result.processing_errors.append("No valid transactions found in the CSV")

    result.records = dedupe_records(records)
    logger.info(
        f"Interpreted {len(result.records)} transactions "
        f"(layout={result.layout}, diagnostics={len(result.processing_errors)})"
    )
    return result
