"""
Batched, crash-safe analytics queue.

Telemetry is low value per event and loss tolerant, but sending one
request per tap would be wasteful. Events are buffered in memory and
sent in batches:
- immediately once batch_size events are waiting
- otherwise flush_interval_seconds after the most recent enqueue

Every change to the in-memory queue is mirrored to a durable key-value
store, so a crash loses nothing that was already queued. The next
process seeds its queue from the mirror and sends it.

The queue runs on a single asyncio event loop. Timers are loop
callbacks and flushes are tasks on that loop; there is no locking.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Optional, Protocol

from .models import AnalyticsEvent

logger = logging.getLogger(__name__)

QUEUE_KEY = "analytics_queue"


class LocalStorageError(Exception):
    """Raised when a local key-value store can't be read or written."""
    pass


class StorageQuotaExceededError(LocalStorageError):
    """Raised when a write doesn't fit in the store's quota."""
    pass


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class EventSink(Protocol):
    """
    Bulk ingestion endpoint for events.

    A batch either lands completely or not at all; there is no partial
    success. Implementations raise on failure.
    """

    async def insert_events(self, records: list[dict]) -> None:
        ...


class KeyValueStore(Protocol):
    """
    Synchronous string key-value storage.

    set() may raise StorageQuotaExceededError.
    """

    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...
    def remove(self, key: str) -> None: ...


class QueueState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class AnalyticsQueue:
    """
    Ordered event buffer with size- and time-triggered batch flushes.

    A failed batch goes back to the front of the queue, ahead of anything
    enqueued while it was in flight, and is retried by the next timer.
    Consecutive failures back off exponentially up to
    max_retry_delay_seconds; while backing off, new events don't trigger
    early retries.
    """

    def __init__(
        self,
        sink: EventSink,
        store: KeyValueStore,
        batch_size: int = 10,
        flush_interval_seconds: float = 30.0,
        max_retry_delay_seconds: float = 300.0,
        max_queue_size: int = 1000,
        storage_key: str = QUEUE_KEY,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        if flush_interval_seconds <= 0:
            raise ValueError("flush_interval_seconds must be positive")
        if max_queue_size < batch_size:
            raise ValueError("max_queue_size must be at least batch_size")

        self._sink = sink
        self._store = store
        self._batch_size = batch_size
        self._flush_interval = flush_interval_seconds
        self._max_retry_delay = max(max_retry_delay_seconds, flush_interval_seconds)
        self._max_queue_size = max_queue_size
        self._storage_key = storage_key

        self._events: list[AnalyticsEvent] = self._load()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._flushing = False
        self._consecutive_failures = 0

        if self._events:
            logger.info(
                "Restored queued analytics events",
                extra={"count": len(self._events)}
            )

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> list[AnalyticsEvent]:
        """Snapshot of queued events in send order."""
        return list(self._events)

    @property
    def state(self) -> QueueState:
        if self._flushing:
            return QueueState.FLUSHING
        if self._events:
            return QueueState.ACCUMULATING
        return QueueState.IDLE

    @property
    def pending_timer(self) -> Optional[asyncio.TimerHandle]:
        """The scheduled deferred flush, if any."""
        return self._timer

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def enqueue(self, event: AnalyticsEvent) -> None:
        """
        Append an event and persist the queue.

        Flushes right away once batch_size events are waiting, otherwise
        re-arms the single deferred flush timer.
        """
        self._events.append(event)
        self._enforce_limit()
        self._persist()

        if self._consecutive_failures:
            # Backing off; the retry timer is already armed
            if self._timer is None and not self._flushing:
                self._schedule_flush(self._retry_delay())
            return

        if len(self._events) >= self._batch_size:
            self._cancel_timer()
            self._start_flush()
        else:
            self._schedule_flush(self._flush_interval)

    async def flush(self) -> bool:
        """
        Send everything queued as one batch.

        Returns True if a batch was delivered. Send failures don't raise:
        they are logged and the batch is requeued for the next timer. If the
        flush is cancelled mid-send the batch is requeued and the
        cancellation propagates.
        """
        if not self._events or self._flushing:
            return False

        self._cancel_timer()

        # Take the batch out before awaiting so events enqueued during the
        # send start a fresh queue
        batch = self._events
        self._events = []
        self._persist()
        self._flushing = True

        try:
            await self._sink.insert_events([event.to_record() for event in batch])
        except asyncio.CancelledError:
            self._requeue(batch)
            logger.warning(
                "Analytics send cancelled, batch requeued",
                extra={"batch_size": len(batch), "queued": len(self._events)}
            )
            raise
        except Exception as e:
            self._consecutive_failures += 1
            self._requeue(batch)
            delay = self._retry_delay()
            logger.error(
                "Failed to send analytics batch",
                extra={
                    "batch_size": len(batch),
                    "queued": len(self._events),
                    "consecutive_failures": self._consecutive_failures,
                    "retry_in_seconds": delay,
                    "error": str(e),
                }
            )
            self._schedule_flush(delay)
            return False
        finally:
            self._flushing = False

        self._consecutive_failures = 0
        logger.debug("Sent analytics batch", extra={"batch_size": len(batch)})

        if len(self._events) >= self._batch_size:
            self._start_flush()
        elif self._events and self._timer is None:
            self._schedule_flush(self._flush_interval)

        return True

    def resume(self) -> None:
        """
        Arm the flush timer for events restored from the durable mirror.

        Called once an event loop is running, e.g. at application startup.
        """
        if self._events and self._timer is None and not self._flushing:
            self._schedule_flush(self._flush_interval)

    def teardown(self, *final_events: Optional[AnalyticsEvent]) -> None:
        """
        Best-effort shutdown hook.

        Appends the final events (None entries are skipped) and writes the
        queue to durable storage without touching the network. Delivery
        happens whenever the next process loads the mirror and flushes it;
        nothing guarantees that.
        """
        self._cancel_timer()
        self._events.extend(event for event in final_events if event is not None)
        self._enforce_limit()
        self._persist()
        logger.info(
            "Persisted analytics queue for shutdown",
            extra={"queued": len(self._events)}
        )

    async def wait_idle(self) -> None:
        """
        Wait for in-flight flush tasks, including any they chain, to finish.

        Never raises, even if a flush task was cancelled.
        """
        while self._flush_task is not None and not self._flush_task.done():
            await asyncio.wait({self._flush_task})

    # -----------------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------------

    def _schedule_flush(self, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller); events stay persisted for a later flush
            logger.debug("No running event loop, flush not scheduled")
            return

        self._cancel_timer()
        self._timer = loop.call_later(delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._start_flush()

    def _start_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, flush deferred")
            return

        # An in-flight flush picks up leftover full batches when it succeeds
        task = self._flush_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            return
        self._flush_task = loop.create_task(self.flush())

    def _retry_delay(self) -> float:
        exponent = max(self._consecutive_failures - 1, 0)
        return min(self._flush_interval * (2 ** exponent), self._max_retry_delay)

    # -----------------------------------------------------------------------
    # Durable mirror
    # -----------------------------------------------------------------------

    def _requeue(self, batch: list[AnalyticsEvent]) -> None:
        """Put a batch that wasn't delivered back ahead of newer events."""
        self._events = batch + self._events
        self._enforce_limit()
        self._persist()

    def _enforce_limit(self) -> None:
        overflow = len(self._events) - self._max_queue_size
        if overflow > 0:
            self._events = self._events[overflow:]
            logger.warning(
                "Analytics queue full, dropped oldest events",
                extra={"dropped": overflow, "max_queue_size": self._max_queue_size}
            )

    def _persist(self) -> None:
        payload = json.dumps([event.to_record() for event in self._events])
        try:
            self._store.set(self._storage_key, payload)
        except LocalStorageError as e:
            logger.warning(
                "Could not persist analytics queue, clearing stored copy",
                extra={"queued": len(self._events), "error": str(e)}
            )
            try:
                self._store.remove(self._storage_key)
            except LocalStorageError as remove_error:
                logger.error(
                    "Could not clear stored analytics queue",
                    extra={"error": str(remove_error)}
                )

    def _load(self) -> list[AnalyticsEvent]:
        try:
            payload = self._store.get(self._storage_key)
        except LocalStorageError as e:
            logger.warning("Could not read stored analytics queue", extra={"error": str(e)})
            return []

        if not payload:
            return []

        try:
            records = json.loads(payload)
            if not isinstance(records, list):
                raise TypeError(f"expected a list, got {type(records).__name__}")
            return [AnalyticsEvent.from_record(record) for record in records]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(
                "Discarding unreadable stored analytics queue",
                extra={"error": str(e)}
            )
            return []
