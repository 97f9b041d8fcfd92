"""Durable queue of remote operations waiting for connectivity."""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Set

from pydantic import TypeAdapter, ValidationError

from ..events.broker import SyncEventBroker
from .clock import Clock
from .exceptions import NetworkError, RemotePermissionError, StorageQuotaError
from .interfaces import KeyValueStore
from .logging_config import get_logger, log_sync_event
from .models import (
    EventType, FlushResult, OperationState, OperationType, QueuedOperation,
    QUEUE_STORAGE_KEY, SyncEvent, SyncState
)


logger = get_logger(__name__)

_OPERATIONS_ADAPTER = TypeAdapter(List[QueuedOperation])

Sender = Callable[[QueuedOperation], Awaitable[None]]


class OfflineOperationQueue:
    """FIFO queue of set/remove operations replayed against the remote store.

    Each operation moves ``pending -> in_flight`` while it is sent and is
    then either removed (committed) or returned to ``pending`` with a
    backoff delay. The queue is written to the local store after every
    change so a restart resumes the remaining work.
    """

    def __init__(self, store: KeyValueStore, sender: Sender, broker: SyncEventBroker,
                 state: SyncState, clock: Clock, is_online: Callable[[], bool],
                 base_delay_seconds: float = 1.0, max_delay_seconds: float = 60.0,
                 storage_key: str = QUEUE_STORAGE_KEY):
        """Initialize the queue.

        Args:
            store: Local store the queue persists to
            sender: Coroutine function performing the remote call for one operation
            broker: Event broker for pending/committed/failure events
            state: Shared sync state (pending count, last successful sync)
            clock: Time source for backoff scheduling
            is_online: Callable reporting current connectivity
            base_delay_seconds: Backoff base delay
            max_delay_seconds: Backoff cap
            storage_key: Local key holding the serialized queue
        """
        self._store = store
        self._sender = sender
        self._broker = broker
        self._state = state
        self._clock = clock
        self._is_online = is_online
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._storage_key = storage_key

        self._ops: List[QueuedOperation] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._scheduler_task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._persist_failed = False
        self._metrics = {
            "enqueued": 0,
            "coalesced": 0,
            "committed": 0,
            "retried": 0,
            "dropped": 0,
            "superseded": 0,
            "flushes": 0,
        }

    # Persistence

    def load(self) -> int:
        """Load persisted operations, resetting interrupted ones to pending.

        Returns:
            Number of operations loaded
        """
        raw = self._store.get(self._storage_key)
        if raw is None:
            self._ops = []
            self._update_state()
            return 0

        try:
            ops = _OPERATIONS_ADAPTER.validate_json(raw)
        except ValidationError as e:
            logger.error(f"Persisted queue is unreadable, keeping a copy aside: {e}")
            try:
                self._store.set(f"{self._storage_key}.corrupt", raw)
            except StorageQuotaError:
                logger.warning("No room to keep a copy of the unreadable queue")
            ops = []

        interrupted = 0
        for op in ops:
            if op.state == OperationState.IN_FLIGHT:
                op.state = OperationState.PENDING
                interrupted += 1

        self._ops = ops
        self._update_state()
        if interrupted:
            logger.info(f"Resuming {interrupted} operations interrupted mid-flight")
            self._persist()
        logger.info(f"Loaded {len(ops)} queued operations")
        return len(ops)

    def _persist(self) -> None:
        payload = json.dumps(
            [op.model_dump(mode="json") for op in self._ops], separators=(',', ':')
        )
        try:
            self._store.set(self._storage_key, payload)
            if self._persist_failed:
                logger.info("Queue persisted again after earlier storage failure")
            self._persist_failed = False
        except StorageQuotaError as e:
            # Keep working from memory; the next successful write catches up
            self._persist_failed = True
            logger.warning(f"Could not persist offline queue: {e}")
            self._broker.publish(SyncEvent(
                EventType.STORAGE_WARNING, None, self._clock.now(),
                reason="queue_not_persisted", details=e.details
            ))
        self._update_state()

    def _update_state(self) -> None:
        self._state.pending_count = len(self._ops)

    # Queue operations

    def enqueue(self, op_type: OperationType, key: str, value: Any = None,
                failed_with: Optional[str] = None) -> QueuedOperation:
        """Append an operation, replacing any older pending operation on the key.

        Args:
            op_type: Set or remove
            key: Application key
            value: Value for set operations
            failed_with: Error of a direct attempt that already failed; the
                operation then starts with one attempt and its backoff delay
        """
        now = self._clock.now()
        op = QueuedOperation(op_type=op_type, key=key, value=value, enqueued_at=now)
        if failed_with is not None:
            op.attempts = 1
            op.last_error = failed_with
            op.next_attempt_at = now + timedelta(seconds=self.compute_backoff(op.attempts))

        before = len(self._ops)
        self._ops = [
            existing for existing in self._ops
            if not (existing.key == key and existing.state == OperationState.PENDING)
        ]
        coalesced = before - len(self._ops)
        self._ops.append(op)

        self._metrics["enqueued"] += 1
        self._metrics["coalesced"] += coalesced
        self._persist()
        self._wake.set()

        log_sync_event(
            logger, "operation_enqueued", key,
            f"Queued remote {op_type.value} for {key}"
            + (f" (replaced {coalesced} older)" if coalesced else ""),
            level=logging.DEBUG, operation_id=op.id
        )
        return op

    def has_pending(self, key: str) -> bool:
        """Check whether any operation for a key is queued or in flight."""
        return any(op.key == key for op in self._ops)

    def pending_count(self) -> int:
        return len(self._ops)

    def operations(self) -> List[QueuedOperation]:
        return [op.model_copy() for op in self._ops]

    def clear(self) -> int:
        """Drop every queued operation.

        Returns:
            Number of operations dropped
        """
        count = len(self._ops)
        self._ops = []
        self._persist()
        logger.info(f"Cleared {count} queued operations")
        return count

    def compute_backoff(self, attempts: int) -> float:
        """Delay before the next attempt: base * 2^attempts, capped."""
        return min(self._base_delay * (2 ** attempts), self._max_delay)

    def _index_of(self, op: QueuedOperation) -> Optional[int]:
        return next((i for i, existing in enumerate(self._ops) if existing.id == op.id), None)

    def _has_newer(self, op: QueuedOperation) -> bool:
        index = self._index_of(op)
        if index is None:
            return False
        return any(later.key == op.key for later in self._ops[index + 1:])

    def _discard(self, op: QueuedOperation) -> None:
        self._ops = [existing for existing in self._ops if existing.id != op.id]

    # Draining

    @property
    def flush_in_progress(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    async def flush(self, ignore_backoff: bool = False) -> FlushResult:
        """Send ready operations in FIFO order.

        Concurrent calls join the drain already in progress.

        Args:
            ignore_backoff: Send pending operations even if their retry
                delay has not elapsed (used when connectivity returns)

        Returns:
            Counts of committed, retried, dropped and superseded operations
        """
        if not self.flush_in_progress:
            self._flush_task = asyncio.create_task(self._drain(ignore_backoff))
        else:
            logger.debug("Flush already in progress, joining it")
        return await asyncio.shield(self._flush_task)

    async def _drain(self, ignore_backoff: bool) -> FlushResult:
        result = FlushResult()
        if not self._is_online():
            result.skipped = True
            return result

        self._metrics["flushes"] += 1
        attempted: Set[str] = set()

        while True:
            now = self._clock.now()
            op = next((
                candidate for candidate in self._ops
                if candidate.id not in attempted
                and candidate.state == OperationState.PENDING
                and (ignore_backoff or candidate.is_ready(now))
            ), None)
            if op is None:
                break
            if not self._is_online():
                logger.info("Connectivity lost during flush, stopping")
                break

            attempted.add(op.id)
            op.state = OperationState.IN_FLIGHT
            self._persist()

            try:
                await self._sender(op)
            except asyncio.CancelledError:
                op.state = OperationState.PENDING
                self._persist()
                raise
            except RemotePermissionError as e:
                self._discard(op)
                self._persist()
                result.dropped += 1
                self._metrics["dropped"] += 1
                log_sync_event(
                    logger, "sync_failure", op.key,
                    f"Dropping queued {op.op_type.value} for {op.key}: {e}",
                    level=logging.WARNING, operation_id=op.id, attempts=op.attempts
                )
                self._broker.publish(SyncEvent(
                    EventType.SYNC_FAILURE, op.key, self._clock.now(),
                    reason=e.error_code, details=e.details
                ))
            except Exception as e:
                if not isinstance(e, NetworkError):
                    logger.error(f"Unexpected error replaying {op.key}, will retry: {e}", exc_info=True)
                self._handle_retryable_failure(op, e, result)
            else:
                self._discard(op)
                self._persist()
                committed_at = self._clock.now()
                self._state.last_successful_sync = committed_at
                result.committed += 1
                self._metrics["committed"] += 1
                log_sync_event(
                    logger, "sync_committed", op.key,
                    f"Replayed queued {op.op_type.value} for {op.key}",
                    level=logging.DEBUG, operation_id=op.id, attempts=op.attempts
                )
                self._broker.publish(SyncEvent(EventType.SYNC_COMMITTED, op.key, committed_at))

        if result.attempted:
            logger.info(
                f"Flush finished: {result.committed} committed, {result.retried} retried, "
                f"{result.dropped} dropped, {result.superseded} superseded, "
                f"{len(self._ops)} remaining"
            )
        return result

    def _handle_retryable_failure(self, op: QueuedOperation, error: Exception,
                                  result: FlushResult) -> None:
        if self._index_of(op) is None:
            # Cleared while in flight
            return
        if self._has_newer(op):
            self._discard(op)
            result.superseded += 1
            self._metrics["superseded"] += 1
            logger.debug(f"Discarding failed operation {op.id}; a newer one exists for {op.key}")
        else:
            op.attempts += 1
            op.state = OperationState.PENDING
            op.last_error = str(error)
            delay = self.compute_backoff(op.attempts)
            op.next_attempt_at = self._clock.now() + timedelta(seconds=delay)
            result.retried += 1
            self._metrics["retried"] += 1
            log_sync_event(
                logger, "sync_pending", op.key,
                f"Remote {op.op_type.value} for {op.key} failed, retrying in {delay:.1f}s",
                level=logging.INFO, operation_id=op.id, attempts=op.attempts
            )
            self._broker.publish(SyncEvent(
                EventType.SYNC_PENDING, op.key, self._clock.now(),
                reason=str(error), details={"attempts": op.attempts, "retry_in_seconds": delay}
            ))
        self._persist()

    # Scheduling

    def next_due_at(self) -> Optional[datetime]:
        """Earliest time a pending operation becomes ready."""
        due = [
            op.next_attempt_at or op.enqueued_at
            for op in self._ops if op.state == OperationState.PENDING
        ]
        return min(due) if due else None

    def wake(self) -> None:
        """Wake the scheduler so it re-evaluates the queue."""
        self._wake.set()

    def start_scheduler(self) -> None:
        """Start the background loop that drains the queue as operations come due."""
        if self._scheduler_task is None:
            self._scheduler_task = asyncio.create_task(self._scheduler_loop())
            logger.info("Offline queue scheduler started")

    async def stop_scheduler(self) -> None:
        """Stop the scheduler and wait for an in-progress flush to finish."""
        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            self._scheduler_task = None
            logger.info("Offline queue scheduler stopped")
        if self.flush_in_progress:
            await asyncio.gather(self._flush_task, return_exceptions=True)

    async def _scheduler_loop(self) -> None:
        while True:
            self._wake.clear()
            timeout = self._seconds_until_due()
            if timeout is None:
                await self._wake.wait()
            elif timeout > 0:
                await self._wait_for_wake(timeout)

            now = self._clock.now()
            if self._is_online() and any(op.is_ready(now) for op in self._ops):
                try:
                    await self.flush()
                except Exception as e:
                    logger.error(f"Scheduled flush failed: {e}", exc_info=True)

    async def _wait_for_wake(self, seconds: float) -> None:
        """Wait until woken or until the clock says the next operation is due."""
        wake = asyncio.ensure_future(self._wake.wait())
        timer = asyncio.ensure_future(self._clock.sleep(seconds))
        try:
            await asyncio.wait({wake, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            wake.cancel()
            timer.cancel()

    def _seconds_until_due(self) -> Optional[float]:
        if not self._is_online():
            return None
        due = self.next_due_at()
        if due is None:
            return None
        return max(0.0, (due - self._clock.now()).total_seconds())

    def get_metrics(self) -> dict:
        return {
            **self._metrics,
            "pending": len(self._ops),
            "persist_failed": self._persist_failed,
            "flush_in_progress": self.flush_in_progress,
        }
