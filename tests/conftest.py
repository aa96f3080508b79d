"""Test fixtures and utilities."""

from decimal import Decimal
from pathlib import Path

import pytest

from tax_form_importer.schemas.transaction import TransactionRecord
from tax_form_importer.state_store import MemoryStateStore, QueueStore

# Consolidated brokerage export: a summary section, the 1099-B section, and a
# trailing 1099-DIV section that must not be read as sales.
SAMPLE_TAX_DOCUMENT_CSV = """\
1099-SUMMARY,ACCOUNT NUMBER,TAX YEAR,TOTAL PROCEEDS
1099-SUMMARY,XXXX1234,2024,350.00

1099-B,ACCOUNT NUMBER,TAX YEAR,DESCRIPTION,SHARES,DATE ACQUIRED,SALE DATE,SALES PRICE,COST BASIS,TERM,NON COVERED
1099-B,XXXX1234,2024,AAPL,10,20230301,20240115,100.00,90.00,SHORT,
1099-B,XXXX1234,2024,TESLA INC CALL $200,1,20230601,20240220,150.00,175.50,SHORT,
1099-B,XXXX1234,2024,BITCOIN,0.01,20220110,20240305,"1,000.00",800.00,LONG,Y
1099-B-TOTAL,XXXX1234,2024,,,,,1250.00,1065.50,,

1099-DIV,ACCOUNT NUMBER,TAX YEAR,DESCRIPTION,ORDINARY DIVIDENDS
1099-DIV,XXXX1234,2024,VTI,42.10
"""

# Plain export with generic headers
SAMPLE_GENERIC_CSV = """\
Symbol,Quantity,Date Acquired,Date Sold,Proceeds,Cost Basis
AAPL,10,03/01/2023,01/15/2024,100.00,90.00
MSFT,5,3/2/2023,2/1/2024,"$2,000.50","1,500.25"
"""


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def sample_tax_document_csv() -> str:
    """Consolidated 1099 export with several sections."""
    return SAMPLE_TAX_DOCUMENT_CSV


@pytest.fixture
def sample_generic_csv() -> str:
    """Generic CSV export with synonym headers."""
    return SAMPLE_GENERIC_CSV


def make_record(
    description: str = "AAPL",
    sale_date: str = "2024-01-15",
    sales_price: str = "100.00",
    cost_basis: str = "90.00",
    id: str = "",
    **kwargs,
) -> TransactionRecord:
    """Build a record with sensible defaults."""
    return TransactionRecord(
        id=id or f"transaction_test_{description.lower().replace(' ', '_')}_{sale_date}",
        description=description,
        sale_date=sale_date,
        sales_price=Decimal(sales_price),
        cost_basis=Decimal(cost_basis),
        **kwargs,
    )


@pytest.fixture
def memory_queue() -> QueueStore:
    """Queue store over an in-memory backend."""
    return QueueStore(MemoryStateStore())


class FakeClock:
    """Controllable time source in epoch seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
