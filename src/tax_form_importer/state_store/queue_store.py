"""
Persistent transaction queue.

The queue state ({status, queue, failedTransactions}), the processing lock
and the page flags are three JSON values in a key/value backend
(:class:`StateStore` or :class:`MemoryStateStore`). All mutation goes
through this class so that two invariants are enforced in one place:

- the queue never holds two records with the same fingerprint
  (deduplication runs on every write of ``queue``)
- at most one processing step runs at a time across all processes
  (timestamped lock with stale-lock takeover)
"""

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol, TypeVar

from ..schemas.dedupe import compute_fingerprint, dedupe_records
from ..schemas.transaction import TransactionRecord
from .sqlite_store import DELETE, KEEP, ImportHistoryRecord, StateStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_KEY = "queue_state"
LOCK_KEY = "processing_lock"
PAGE_FLAGS_KEY = "page_flags"

DEFAULT_LOCK_TIMEOUT_SECONDS = 30.0


class KeyValueBackend(Protocol):
    """What the queue needs from a persistence backend."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> bool: ...

    def update(self, key: str, fn: Callable[[Any], tuple[Any, T]]) -> T: ...

    def record_import(
        self, source_name: str, file_hash: str, record_count: int, new_count: int
    ) -> int: ...

    def get_import_history(self, limit: int = 20) -> list[ImportHistoryRecord]: ...


class ProcessingStatus(str, Enum):
    """Status of the queue as a whole."""

    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    WAITING_CONFIRMATION = "WAITING_CONFIRMATION"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


@dataclass
class QueueState:
    """Snapshot of the persisted queue."""

    status: ProcessingStatus = ProcessingStatus.IDLE
    queue: list[TransactionRecord] = field(default_factory=list)
    failed_transactions: list[TransactionRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "queue": [r.to_dict() for r in self.queue],
            "failedTransactions": [r.to_dict() for r in self.failed_transactions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "QueueState":
        """
        Rebuild a snapshot from its stored form.

        Raises:
            ValueError: If the stored value does not describe a queue state
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError(f"Queue state must be an object, got {type(data).__name__}")
        return cls(
            status=ProcessingStatus(data.get("status", ProcessingStatus.IDLE.value)),
            queue=[TransactionRecord.from_dict(r) for r in data.get("queue") or []],
            failed_transactions=[
                TransactionRecord.from_dict(r) for r in data.get("failedTransactions") or []
            ],
        )


@dataclass
class PageFlags:
    """
    Transient markers maintained around a submission.

    ``currently_processing`` with ``current_transaction`` set means a record
    was handed to the form and the process went away before the outcome was
    recorded.
    """

    currently_processing: bool = False
    current_transaction: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentlyProcessing": self.currently_processing,
            "currentTransaction": self.current_transaction,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PageFlags":
        if not isinstance(data, dict):
            return cls()
        return cls(
            currently_processing=bool(data.get("currentlyProcessing", False)),
            current_transaction=data.get("currentTransaction") or None,
        )


_UNSET: Any = object()


class QueueStore:
    """
    Durable queue with a cross-process processing lock.

    Reads never raise: an unreadable state is reported as the default state.
    Writes are best-effort: a failed write is logged and reported as False,
    and callers re-read instead of trusting a local copy.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the queue store.

        Args:
            backend: Key/value persistence backend
            lock_timeout_seconds: Default age after which a lock is stale
            clock: Time source in epoch seconds
        """
        self.backend = backend
        self.lock_timeout_seconds = lock_timeout_seconds
        self._clock = clock
        self._owner = uuid.uuid4().hex

    # State

    def get_state(self) -> QueueState:
        """Current state, or the IDLE/empty default if none is readable."""
        try:
            return QueueState.from_dict(self.backend.get(STATE_KEY))
        except (StateStoreError, ValueError, TypeError, KeyError) as e:
            logger.error(f"Could not read queue state, using defaults: {e}")
            return QueueState()

    def modify_state(self, fn: Callable[[QueueState], T]) -> T:
        """
        Atomically apply ``fn`` to the stored state.

        ``fn`` mutates the snapshot it receives and returns a result. The
        queue is deduplicated before the snapshot is written back.

        Raises:
            StateStoreError: If the state cannot be read or written
        """

        def apply(current: Any) -> tuple[Any, T]:
            try:
                state = QueueState.from_dict(current)
            except (ValueError, TypeError, KeyError) as e:
                raise StateStoreError(f"Stored queue state is invalid: {e}") from e
            result = fn(state)
            state.queue = dedupe_records(state.queue)
            return state.to_dict(), result

        return self.backend.update(STATE_KEY, apply)

    def update_state(
        self,
        status: ProcessingStatus | None = _UNSET,
        queue: list[TransactionRecord] = _UNSET,
        failed_transactions: list[TransactionRecord] = _UNSET,
    ) -> bool:
        """
        Merge the given fields into the persisted state.

        A new ``queue`` is deduplicated before it is written.

        Returns:
            True if the write took effect, False if it failed (logged)
        """

        def merge(state: QueueState) -> None:
            if status is not _UNSET:
                if status != state.status:
                    logger.info(f"Queue status: {state.status.value} -> {status.value}")
                state.status = status
            if queue is not _UNSET:
                logger.debug(f"Updating queue: {len(state.queue)} -> {len(queue)}")
                state.queue = list(queue)
            if failed_transactions is not _UNSET:
                state.failed_transactions = list(failed_transactions)

        try:
            self.modify_state(merge)
            return True
        except StateStoreError as e:
            logger.error(f"Error updating state: {e}")
            return False

    def clear_state(self) -> None:
        """Reset status, queue and failed transactions, and drop page flags."""
        for key in (STATE_KEY, PAGE_FLAGS_KEY):
            try:
                self.backend.remove(key)
            except StateStoreError as e:
                logger.error(f"Error clearing '{key}': {e}")
        logger.info("State cleared")

    def check_integrity(self) -> bool:
        """
        Verify the persisted state can be read.

        Unreadable state cannot be recovered, so it is cleared.

        Returns:
            True if the state was intact, False if it had to be reset
        """
        try:
            QueueState.from_dict(self.backend.get(STATE_KEY))
            return True
        except (StateStoreError, ValueError, TypeError, KeyError) as e:
            logger.error(f"Persisted queue state is unrecoverable, resetting: {e}")
            self.clear_state()
            return False

    # Lock

    def acquire_lock(self, timeout_seconds: float | None = None) -> bool:
        """
        Take the processing lock.

        Succeeds when no lock is held or the held lock is older than
        ``timeout_seconds`` (stale-lock takeover). A denied acquisition does
        not write anything.

        Returns:
            True if this caller now holds the lock
        """
        timeout = self.lock_timeout_seconds if timeout_seconds is None else timeout_seconds
        now = self._clock()

        def take(current: Any) -> tuple[Any, bool]:
            token = {"acquiredAt": now, "owner": self._owner}
            if current is None:
                return token, True
            try:
                age = now - float(current["acquiredAt"])
            except (TypeError, ValueError, KeyError) as e:
                logger.warning(f"Found unreadable lock token ({e}), taking it over")
                return token, True
            if age <= timeout:
                return KEEP, False
            logger.warning(f"Found stale lock ({age:.1f}s old), taking it over")
            return token, True

        try:
            acquired = self.backend.update(LOCK_KEY, take)
        except StateStoreError as e:
            logger.error(f"Error acquiring lock: {e}")
            return False

        if acquired:
            logger.debug("Lock acquired")
        else:
            logger.debug("Could not acquire lock, already held")
        return acquired

    def release_lock(self) -> None:
        """Remove the processing lock. Safe to call when no lock is held."""

        def drop(current: Any) -> tuple[Any, None]:
            if current is None:
                return KEEP, None
            if isinstance(current, dict) and current.get("owner") != self._owner:
                logger.warning("Releasing a lock taken by another owner")
            return DELETE, None

        try:
            self.backend.update(LOCK_KEY, drop)
            logger.debug("Lock released")
        except StateStoreError as e:
            logger.error(f"Error releasing lock: {e}")

    # Point operations

    def get_by_id(self, transaction_id: str) -> TransactionRecord | None:
        """Find a queued record by id."""
        for record in self.get_state().queue:
            if record.id == transaction_id:
                return record
        return None

    def remove_by_id(self, transaction_id: str) -> bool:
        """
        Remove a queued record by id.

        Status becomes IDLE when the queue empties, otherwise it is kept.
        """

        def remove(state: QueueState) -> bool:
            remaining = [r for r in state.queue if r.id != transaction_id]
            if len(remaining) == len(state.queue):
                return False
            state.queue = remaining
            if not remaining:
                state.status = ProcessingStatus.IDLE
            return True

        try:
            removed = self.modify_state(remove)
        except StateStoreError as e:
            logger.error(f"Error removing transaction {transaction_id}: {e}")
            return False

        if removed:
            logger.info(f"Removed transaction {transaction_id}")
        else:
            logger.info(f"Transaction {transaction_id} not found in queue")
        return removed

    def fail_by_id(self, transaction_id: str) -> bool:
        """Move a queued record to failed transactions."""

        def fail(state: QueueState) -> bool:
            for i, record in enumerate(state.queue):
                if record.id == transaction_id:
                    state.failed_transactions.append(state.queue.pop(i))
                    if not state.queue:
                        state.status = ProcessingStatus.ERROR
                    return True
            return False

        try:
            return self.modify_state(fail)
        except StateStoreError as e:
            logger.error(f"Error failing transaction {transaction_id}: {e}")
            return False

    def add_transaction(self, record: TransactionRecord) -> bool:
        """
        Append one record unless an equal fingerprint is already queued.

        Returns:
            True if the record was added
        """
        fingerprint = compute_fingerprint(record)

        def add(state: QueueState) -> bool:
            if any(compute_fingerprint(r) == fingerprint for r in state.queue):
                return False
            state.queue.append(record)
            state.status = ProcessingStatus.PROCESSING
            return True

        try:
            added = self.modify_state(add)
        except StateStoreError as e:
            logger.error(f"Error adding transaction {record.id}: {e}")
            return False

        if not added:
            logger.info(f"Transaction {record.id} appears to be a duplicate, not adding")
        return added

    def append_transactions(
        self,
        records: list[TransactionRecord],
        status: ProcessingStatus | None = None,
    ) -> int:
        """
        Append records to the queue tail (deduplicated against the queue).

        Returns:
            Number of records that were actually added, -1 if the write failed
        """

        def append(state: QueueState) -> int:
            before = len(dedupe_records(state.queue))
            state.queue = dedupe_records(state.queue + list(records))
            if status is not None:
                state.status = status
            return len(state.queue) - before

        try:
            added = self.modify_state(append)
        except StateStoreError as e:
            logger.error(f"Error queueing transactions: {e}")
            return -1

        logger.info(f"Queued {added} of {len(records)} transactions")
        return added

    def deduplicate_queue(self) -> int:
        """Re-run deduplication over the stored queue. Returns removed count."""

        def count(state: QueueState) -> int:
            return len(state.queue) - len(dedupe_records(state.queue))

        try:
            removed = self.modify_state(count)
        except StateStoreError as e:
            logger.error(f"Error deduplicating queue: {e}")
            return 0

        if removed:
            logger.info(f"Deduplicated queue, removed {removed} duplicates")
        return removed

    def requeue_failed(self) -> int:
        """Move every failed record back to the queue tail with attempts reset."""

        def requeue(state: QueueState) -> int:
            moved = [
                replace(r, processing_attempts=0, last_attempt_timestamp=None)
                for r in state.failed_transactions
            ]
            state.failed_transactions = []
            if moved:
                state.queue = state.queue + moved
                state.status = ProcessingStatus.PROCESSING
            return len(moved)

        try:
            return self.modify_state(requeue)
        except StateStoreError as e:
            logger.error(f"Error requeueing failed transactions: {e}")
            return 0

    def get_processing_status(self) -> dict[str, Any]:
        """Summary for status displays."""
        state = self.get_state()
        return {
            "queue_length": len(state.queue),
            "failed_transactions": state.failed_transactions,
            "status": state.status,
        }

    # Page flags

    def get_page_flags(self) -> PageFlags:
        try:
            return PageFlags.from_dict(self.backend.get(PAGE_FLAGS_KEY))
        except StateStoreError as e:
            logger.error(f"Could not read page flags: {e}")
            return PageFlags()

    def mark_in_flight(self, transaction_id: str) -> bool:
        """Persist that ``transaction_id`` is being submitted right now."""
        flags = PageFlags(currently_processing=True, current_transaction=transaction_id)
        try:
            self.backend.set(PAGE_FLAGS_KEY, flags.to_dict())
            return True
        except StateStoreError as e:
            logger.error(f"Could not persist in-flight marker: {e}")
            return False

    def clear_in_flight(self) -> None:
        try:
            self.backend.set(PAGE_FLAGS_KEY, PageFlags().to_dict())
        except StateStoreError as e:
            logger.error(f"Could not clear in-flight marker: {e}")

    # Import history

    def record_import(
        self, source_name: str, file_hash: str, record_count: int, new_count: int
    ) -> None:
        try:
            self.backend.record_import(source_name, file_hash, record_count, new_count)
        except StateStoreError as e:
            logger.error(f"Could not record import of {source_name}: {e}")

    def get_import_history(self, limit: int = 20) -> list[ImportHistoryRecord]:
        try:
            return self.backend.get_import_history(limit)
        except StateStoreError as e:
            logger.error(f"Could not read import history: {e}")
            return []
