"""Services layered over the queue and processor."""

from .coordinator import (
    ClearState,
    Coordinator,
    GetProcessingStatus,
    MessageResponse,
    ProcessCsv,
    ProcessNextTransaction,
    ProcessTransaction,
    TransactionProcessed,
    message_from_dict,
)

__all__ = [
    "Coordinator",
    "MessageResponse",
    "message_from_dict",
    "ProcessCsv",
    "ProcessTransaction",
    "TransactionProcessed",
    "GetProcessingStatus",
    "ProcessNextTransaction",
    "ClearState",
]
