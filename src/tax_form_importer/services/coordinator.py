"""
Request/response coordinator between the importer and page automation.

Each request message gets exactly one :class:`MessageResponse`. Failures are
reported in the response, never raised to the caller.

Wire form of a message::

    {"type": "PROCESS_CSV", "content": "..."}
    {"type": "TRANSACTION_PROCESSED", "transactionId": "...", "success": true}
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from ..config import CSVConfig
from ..csv_interpreter import interpret
from ..processing.processor import TransactionProcessor
from ..schemas.transaction import TransactionRecord, new_transaction_id
from ..state_store.queue_store import QueueStore

logger = logging.getLogger(__name__)


@dataclass
class MessageResponse:
    """Reply to one request."""

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "data": self.data, "error": self.error}


@dataclass
class ProcessCsv:
    """Interpret CSV text and queue the resulting records."""

    content: str
    type = "PROCESS_CSV"


@dataclass
class ProcessTransaction:
    """Queue a single record given in wire form."""

    transaction: dict[str, Any]
    type = "PROCESS_TRANSACTION"


@dataclass
class TransactionProcessed:
    """Page automation reports the outcome of a submission it performed."""

    transaction_id: str
    success: bool
    type = "TRANSACTION_PROCESSED"


@dataclass
class GetProcessingStatus:
    type = "GET_PROCESSING_STATUS"


@dataclass
class ProcessNextTransaction:
    type = "PROCESS_NEXT_TRANSACTION"


@dataclass
class ClearState:
    type = "CLEAR_STATE"


Message = (
    ProcessCsv
    | ProcessTransaction
    | TransactionProcessed
    | GetProcessingStatus
    | ProcessNextTransaction
    | ClearState
)


def message_from_dict(data: dict[str, Any]) -> Message:
    """
    Parse the wire form of a message.

    Accepts the payload either at the top level or under ``payload``.

    Raises:
        ValueError: For an unknown type or missing fields
    """
    message_type = data.get("type")
    payload = data.get("payload") or data

    if message_type == ProcessCsv.type:
        if "content" not in payload:
            raise ValueError("PROCESS_CSV requires content")
        return ProcessCsv(content=str(payload["content"]))
    if message_type == ProcessTransaction.type:
        transaction = payload.get("transaction")
        if not isinstance(transaction, dict):
            raise ValueError("PROCESS_TRANSACTION requires a transaction object")
        return ProcessTransaction(transaction=transaction)
    if message_type == TransactionProcessed.type:
        if "transactionId" not in payload:
            raise ValueError("TRANSACTION_PROCESSED requires transactionId")
        return TransactionProcessed(
            transaction_id=str(payload["transactionId"]),
            success=bool(payload.get("success", False)),
        )
    if message_type == GetProcessingStatus.type:
        return GetProcessingStatus()
    if message_type == ProcessNextTransaction.type:
        return ProcessNextTransaction()
    if message_type == ClearState.type:
        return ClearState()

    raise ValueError(f"Unknown message type: {message_type}")


class Coordinator:
    """Long-lived side of the messaging boundary."""

    def __init__(
        self,
        store: QueueStore,
        processor: TransactionProcessor,
        csv_config: CSVConfig | None = None,
    ):
        self.store = store
        self.processor = processor
        self.csv_config = csv_config or CSVConfig()

    async def handle(self, message: Message | dict[str, Any]) -> MessageResponse:
        """
        Answer one request.

        Store access runs in worker threads so a busy database never stalls
        the loop serving other requests.
        """
        try:
            if isinstance(message, dict):
                message = message_from_dict(message)
        except ValueError as e:
            logger.warning(f"Rejected message: {e}")
            return MessageResponse(success=False, error=str(e))

        logger.debug(f"Handling {message.type}")
        try:
            if isinstance(message, ProcessCsv):
                return await self._process_csv(message)
            if isinstance(message, ProcessTransaction):
                return await asyncio.to_thread(self._process_transaction, message)
            if isinstance(message, TransactionProcessed):
                return await asyncio.to_thread(self._transaction_processed, message)
            if isinstance(message, GetProcessingStatus):
                return await asyncio.to_thread(self._processing_status)
            if isinstance(message, ProcessNextTransaction):
                result = await self.processor.process_next()
                return MessageResponse(success=True, data={"result": result.value})
            if isinstance(message, ClearState):
                await asyncio.to_thread(self.store.clear_state)
                return MessageResponse(success=True)
        except Exception as e:
            logger.exception(f"Error handling {message.type}: {e}")
            return MessageResponse(success=False, error=str(e))

        return MessageResponse(success=False, error=f"Unsupported message: {message!r}")

    async def _process_csv(self, message: ProcessCsv) -> MessageResponse:
        result = interpret(message.content, self.csv_config)
        if not result.records:
            logger.info("No transactions found in CSV")
            return MessageResponse(
                success=False,
                data={"count": 0, "errors": result.processing_errors},
                error="No transactions found in CSV",
            )

        added = await self.processor.queue_transactions(result.records, start=False)
        logger.info(f"Processed {result.total_processed} transactions, {added} new")
        return MessageResponse(
            success=True,
            data={
                "count": result.total_processed,
                "added": added,
                "transactions": [r.to_dict() for r in result.records],
                "errors": result.processing_errors,
            },
        )

    def _process_transaction(self, message: ProcessTransaction) -> MessageResponse:
        try:
            record = TransactionRecord.from_dict(message.transaction)
        except ValueError as e:
            return MessageResponse(success=False, error=str(e))

        if not record.id:
            record = replace(record, id=new_transaction_id())
        added = self.store.add_transaction(record)
        return MessageResponse(success=True, data={"added": added, "id": record.id})

    def _transaction_processed(self, message: TransactionProcessed) -> MessageResponse:
        if message.success:
            found = self.store.remove_by_id(message.transaction_id)
        else:
            found = self.store.fail_by_id(message.transaction_id)

        if not found:
            return MessageResponse(
                success=False, error=f"Transaction {message.transaction_id} not in queue"
            )
        return MessageResponse(success=True, data={"transactionId": message.transaction_id})

    def _processing_status(self) -> MessageResponse:
        status = self.store.get_processing_status()
        return MessageResponse(
            success=True,
            data={
                "queueLength": status["queue_length"],
                "failedTransactions": [r.to_dict() for r in status["failed_transactions"]],
                "status": status["status"].value,
            },
        )
