"""
Transaction processor: drains the queue one record at a time.

State machine (queue status):

    IDLE -> PROCESSING -> {WAITING_CONFIRMATION, COMPLETED, ERROR}

WAITING_CONFIRMATION loops back into PROCESSING on the next attempt.
COMPLETED and ERROR hold until a new import moves the queue back to
PROCESSING.

Every outcome is persisted through the queue store before control returns,
so a host reload right after a successful submission finds the queue
already advanced (or finds the in-flight marker, see
:meth:`TransactionProcessor.recover_interrupted`).
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import Any, TypeVar

from ..config import QueueConfig
from ..schemas.dedupe import compute_fingerprint
from ..schemas.transaction import TransactionRecord, new_transaction_id
from ..state_store.queue_store import ProcessingStatus, QueueState, QueueStore
from ..state_store.sqlite_store import StateStoreError
from .submission import SubmissionChannel, SubmissionResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _take(state: QueueState, record: TransactionRecord) -> bool:
    """Pop ``record`` out of the queue. False if it is no longer queued."""
    fingerprint = compute_fingerprint(record)
    for i, queued in enumerate(state.queue):
        if (record.id and queued.id == record.id) or (
            not record.id and compute_fingerprint(queued) == fingerprint
        ):
            state.queue.pop(i)
            return True
    return False


def _on_success(state: QueueState, record: TransactionRecord) -> None:
    _take(state, record)
    state.status = ProcessingStatus.PROCESSING if state.queue else ProcessingStatus.COMPLETED


def _on_retry(state: QueueState, record: TransactionRecord) -> None:
    # Tail reinsertion gives the other pending records a turn first
    if _take(state, record):
        state.queue.append(record.with_retry())
    state.status = ProcessingStatus.WAITING_CONFIRMATION


def _on_failed(state: QueueState, record: TransactionRecord) -> None:
    if _take(state, record):
        state.failed_transactions.append(record)
    state.status = ProcessingStatus.PROCESSING if state.queue else ProcessingStatus.ERROR


# Submission outcome -> queue mutation
TRANSITIONS: dict[SubmissionResult, Callable[[QueueState, TransactionRecord], None]] = {
    SubmissionResult.SUCCESS: _on_success,
    SubmissionResult.RETRY: _on_retry,
    SubmissionResult.FAILED: _on_failed,
}


class TransactionProcessor:
    """Submits queued records through a channel under the processing lock."""

    def __init__(
        self,
        store: QueueStore,
        channel: SubmissionChannel,
        queue_config: QueueConfig | None = None,
    ):
        self.store = store
        self.channel = channel
        self.config = queue_config or QueueConfig()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def _store(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking queue-store call in a worker thread."""
        return await asyncio.to_thread(fn, *args)

    async def process_next(self) -> SubmissionResult:
        """
        Run one processing step on the head of the queue.

        Store reads, writes and the lock run in worker threads, so a busy
        database never stalls the event loop.

        Returns:
            RETRY if the lock is held elsewhere (nothing is touched), SUCCESS
            for an empty queue, otherwise the outcome for the head record
        """
        acquired = await self._store(self.store.acquire_lock, self.config.lock_timeout_seconds)
        if not acquired:
            logger.debug("Unable to acquire processing lock")
            return SubmissionResult.RETRY

        marked = False
        try:
            state = await self._store(self.store.get_state)
            if not state.queue:
                logger.debug("No transactions in queue")
                return SubmissionResult.SUCCESS

            record = state.queue[0]

            if record.processing_attempts >= self.config.max_retry_attempts:
                logger.error(
                    f"Max retry attempts reached for {record.id} "
                    f"({record.processing_attempts}), moving to failed transactions"
                )
                await self._store(self.store.modify_state, lambda s: _on_failed(s, record))
                return SubmissionResult.FAILED

            marked = await self._store(self.store.mark_in_flight, record.id)
            logger.info(f"Submitting {record.id}: {record.description} ({record.sale_date})")
            result = SubmissionResult(await self.channel.submit(record))

            await self._store(self.store.modify_state, lambda s: TRANSITIONS[result](s, record))
            logger.info(f"Transaction {record.id}: {result.value}")
            return result

        except Exception as e:
            logger.exception(f"Transaction processing error: {e}")
            await self._store(self.store.update_state, ProcessingStatus.ERROR)
            return SubmissionResult.FAILED

        finally:
            if marked:
                await self._store(self.store.clear_in_flight)
            await self._store(self.store.release_lock)

    async def start_processing(self) -> None:
        """
        Drain the queue until it is empty or a record fails.

        A FAILED outcome stops the loop; a later call resumes. Calling this
        while a drain is already running in this processor does nothing.
        """
        if self._running:
            logger.info("Processing already in progress")
            return

        self._running = True
        try:
            while True:
                state = await self._store(self.store.get_state)
                if not state.queue:
                    await self._store(self.store.update_state, ProcessingStatus.IDLE)
                    logger.info("Queue drained")
                    return

                result = await self.process_next()
                if result == SubmissionResult.FAILED:
                    logger.warning("Processing stopped after a failed transaction")
                    return

                await asyncio.sleep(self.config.inter_attempt_delay_seconds)
        finally:
            self._running = False

    async def queue_transactions(
        self, records: list[TransactionRecord], start: bool = True
    ) -> int:
        """
        Append records to the queue and (optionally) start draining it.

        Records without an id get one; attempt counters and timestamps that
        records already carry are kept.

        Returns:
            Number of records actually added after deduplication
        """
        prepared = [r if r.id else replace(r, id=new_transaction_id()) for r in records]
        added = await self._store(
            self.store.append_transactions, prepared, ProcessingStatus.PROCESSING
        )

        if start:
            await self.start_processing()
        return max(added, 0)

    def recover_interrupted(self) -> str | None:
        """
        Resolve a submission that was in flight when the process last stopped.

        A surviving in-flight marker is read as "the form accepted it and the
        host reloaded", so the record is dropped from the queue. A submission
        that failed silently right before the reload is indistinguishable and
        would be dropped too, hence the warning.

        Returns:
            The id of the dropped record, or None
        """
        self.store.check_integrity()

        flags = self.store.get_page_flags()
        if not flags.currently_processing:
            return None

        record_id = flags.current_transaction

        def drop(state: QueueState) -> bool:
            before = len(state.queue)
            state.queue = [r for r in state.queue if r.id != record_id]
            if len(state.queue) == before:
                return False
            state.status = (
                ProcessingStatus.PROCESSING if state.queue else ProcessingStatus.COMPLETED
            )
            return True

        dropped = False
        if record_id:
            try:
                dropped = self.store.modify_state(drop)
            except StateStoreError as e:
                logger.error(f"Could not resolve interrupted submission {record_id}: {e}")

        self.store.clear_in_flight()

        if dropped:
            logger.warning(
                f"Transaction {record_id} was in flight when the process stopped; "
                "assuming it was submitted and removing it from the queue"
            )
            return record_id

        logger.info("Cleared stale in-flight marker")
        return None
