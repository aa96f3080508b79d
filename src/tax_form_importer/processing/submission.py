"""
External submission channel.

The processor hands one record at a time to a :class:`SubmissionChannel` and
gets back SUCCESS, RETRY or FAILED. Delivery is at-least-once: the same
record may be submitted twice after a crash, so the receiving side must
tolerate duplicates (an HTTP 409 is therefore treated as success).
"""

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import date
from enum import Enum
from typing import Any

import httpx
from dateutil.parser import parse as parse_date

from ..schemas.transaction import TransactionRecord

logger = logging.getLogger(__name__)

ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
COMPACT_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
US_DATE_RE = re.compile(r"^\d{1,2}/\d{1,2}/\d{4}$")

# Status codes worth another attempt later
RETRYABLE_STATUS_CODES = {408, 425, 429}


class SubmissionResult(str, Enum):
    """Outcome of one submission attempt."""

    SUCCESS = "SUCCESS"
    RETRY = "RETRY"
    FAILED = "FAILED"


class SubmissionError(Exception):
    """Base exception for submission channel errors."""

    pass


class SubmissionConnectionError(SubmissionError):
    """Failed to reach the form endpoint."""

    pass


class SubmissionChannel(ABC):
    """Delivers one record to the target form."""

    @abstractmethod
    async def submit(self, record: TransactionRecord) -> SubmissionResult:
        """Submit ``record`` and report the outcome."""

    async def aclose(self) -> None:
        """Release any resources held by the channel."""
        return None


def format_date_for_form(value: str | None, today: date | None = None) -> str:
    """
    Render a date the way the form expects it (``MM/DD/YYYY``).

    ``MM/DD/YYYY`` input is passed through unchanged. Anything that cannot
    be read as a date becomes today's date.
    """
    today = today or date.today()
    text = (value or "").strip()
    if not text:
        return today.strftime("%m/%d/%Y")

    match = ISO_DATE_RE.match(text) or COMPACT_DATE_RE.match(text)
    if match:
        year, month, day = match.groups()
        return f"{month}/{day}/{year}"

    if US_DATE_RE.match(text):
        return text

    try:
        return parse_date(text).strftime("%m/%d/%Y")
    except (ValueError, OverflowError):
        logger.warning(f"Could not parse date '{text}', using today")
        return today.strftime("%m/%d/%Y")


def build_form_fields(
    record: TransactionRecord,
    payor_id: str | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    """Map a record onto the stock transaction form fields."""
    fields: dict[str, Any] = {
        "Name": record.description,
        "SoldDateString": format_date_for_form(record.sale_date, today),
        "SalesPrice": str(record.sales_price),
        "PurchasePrice": str(record.cost_basis),
        "Term": record.term.value,
        "TransactionType": record.transaction_type.value,
        "NonCovered": record.non_covered,
        "OrdinaryIncome": record.ordinary_income,
        "TransactionId": record.id,
    }
    if record.date_acquired:
        fields["PurchaseDateString"] = format_date_for_form(record.date_acquired, today)
    if record.shares is not None:
        fields["Shares"] = str(record.shares)
    if record.account_number:
        fields["AccountNumber"] = record.account_number
    if record.tax_year:
        fields["TaxYear"] = record.tax_year
    if payor_id:
        fields["PayorId"] = payor_id
    return fields


def classify_status(status_code: int) -> SubmissionResult:
    """Map an HTTP status to a submission outcome."""
    if 200 <= status_code < 300 or status_code == 409:
        return SubmissionResult.SUCCESS
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return SubmissionResult.RETRY
    return SubmissionResult.FAILED


class HttpFormChannel(SubmissionChannel):
    """
    Posts records to a form endpoint over HTTP.

    Transport problems never escape: timeouts and connection errors are
    reported as RETRY so the record stays queued.
    """

    def __init__(
        self,
        submit_url: str,
        token: str | None = None,
        payor_id: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the channel.

        Args:
            submit_url: Endpoint accepting one record per POST
            token: Optional bearer token
            payor_id: Payor EIN sent with every record
            timeout: Read timeout in seconds
            transport: Custom transport (tests use httpx.MockTransport)
        """
        self.submit_url = submit_url
        self.payor_id = payor_id

        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10.0, read=float(timeout), write=30.0, pool=10.0),
            headers=headers,
            transport=transport,
        )

    async def _post(self, fields: dict[str, Any]) -> httpx.Response:
        try:
            return await self._client.post(self.submit_url, json=fields)
        except httpx.TimeoutException as e:
            raise SubmissionConnectionError(f"Form submission timed out: {e}") from e
        except httpx.RequestError as e:
            raise SubmissionConnectionError(f"Cannot reach {self.submit_url}: {e}") from e

    async def submit(self, record: TransactionRecord) -> SubmissionResult:
        fields = build_form_fields(record, payor_id=self.payor_id)
        try:
            response = await self._post(fields)
        except SubmissionError as e:
            logger.warning(f"Submission of {record.id} will be retried: {e}")
            return SubmissionResult.RETRY

        result = classify_status(response.status_code)
        if response.status_code == 409:
            logger.info(f"Transaction {record.id} already exists on the form, treating as done")
        elif result == SubmissionResult.RETRY:
            logger.warning(f"Form returned {response.status_code} for {record.id}, will retry")
        elif result == SubmissionResult.FAILED:
            logger.error(
                f"Form rejected {record.id} with {response.status_code}: {response.text[:200]}"
            )
        else:
            logger.debug(f"Submitted {record.id} ({response.status_code})")
        return result

    async def aclose(self) -> None:
        await self._client.aclose()


class CallbackChannel(SubmissionChannel):
    """Adapts an async callable ``fn(record) -> SubmissionResult``."""

    def __init__(self, fn: Callable[[TransactionRecord], Awaitable[SubmissionResult]]):
        self._fn = fn

    async def submit(self, record: TransactionRecord) -> SubmissionResult:
        return SubmissionResult(await self._fn(record))
