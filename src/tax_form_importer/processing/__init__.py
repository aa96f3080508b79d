"""
Queue processing.

The processor drains the persisted queue through a submission channel,
one record per step, under the cross-process processing lock.
"""

from .processor import TRANSITIONS, TransactionProcessor
from .submission import (
    CallbackChannel,
    HttpFormChannel,
    SubmissionChannel,
    SubmissionConnectionError,
    SubmissionError,
    SubmissionResult,
    build_form_fields,
    format_date_for_form,
)

__all__ = [
    "TransactionProcessor",
    "TRANSITIONS",
    "SubmissionChannel",
    "SubmissionResult",
    "SubmissionError",
    "SubmissionConnectionError",
    "HttpFormChannel",
    "CallbackChannel",
    "build_form_fields",
    "format_date_for_form",
]
