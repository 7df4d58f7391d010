"""
Unit tests for the batched analytics queue.

Flushes run as tasks on the test's event loop; tests that trigger a
flush await queue.wait_idle() before asserting on the sink.
"""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from barkeeply.core.analytics import (
    QUEUE_KEY,
    AnalyticsEvent,
    AnalyticsQueue,
    QueueState,
    StorageQuotaExceededError,
)
from barkeeply.infrastructure.local_storage import MemoryKeyValueStore


def mirror(store) -> list[dict]:
    payload = store.get(QUEUE_KEY)
    return json.loads(payload) if payload else []


def seconds_until(timer) -> float:
    return timer.when() - asyncio.get_running_loop().time()


class QuotaStore(MemoryKeyValueStore):
    """Store whose writes fail once it is marked full."""

    def __init__(self) -> None:
        super().__init__()
        self.full = False

    def set(self, key: str, value: str) -> None:
        if self.full:
            raise StorageQuotaExceededError("quota exceeded")
        super().set(key, value)


@pytest.fixture
def queue(sink, store) -> AnalyticsQueue:
    return AnalyticsQueue(sink=sink, store=store)


# ---------------------------------------------------------------------------
# Batching Tests
# ---------------------------------------------------------------------------

class TestBatching:
    """Tests for size- and time-triggered flushes."""

    @pytest.mark.asyncio
    async def test_below_batch_size_waits_for_timer(self, queue, sink, make_event):
        for i in range(9):
            queue.enqueue(make_event(index=i))
        await asyncio.sleep(0)

        assert sink.attempts == 0
        assert len(queue) == 9
        assert queue.pending_timer is not None
        assert seconds_until(queue.pending_timer) == pytest.approx(30, abs=0.5)

    @pytest.mark.asyncio
    async def test_batch_size_triggers_immediate_send(self, queue, sink, make_event):
        for i in range(10):
            queue.enqueue(make_event(index=i))
        await queue.wait_idle()

        assert len(sink.batches) == 1
        assert [r["properties"]["index"] for r in sink.batches[0]] == list(range(10))
        assert len(queue) == 0
        assert queue.pending_timer is None
        assert queue.state == QueueState.IDLE

    @pytest.mark.asyncio
    async def test_each_enqueue_replaces_the_timer(self, queue, make_event):
        queue.enqueue(make_event())
        first = queue.pending_timer
        queue.enqueue(make_event())
        second = queue.pending_timer

        assert first is not second
        assert first.cancelled()
        assert not second.cancelled()

    @pytest.mark.asyncio
    async def test_timer_flushes_partial_batch(self, sink, store, make_event):
        queue = AnalyticsQueue(sink=sink, store=store, flush_interval_seconds=0.01)

        queue.enqueue(make_event("a"))
        queue.enqueue(make_event("b"))
        await asyncio.sleep(0.05)
        await queue.wait_idle()

        assert [[r["event_name"] for r in batch] for batch in sink.batches] == [["a", "b"]]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_manual_flush_sends_everything(self, queue, sink, make_event):
        queue.enqueue(make_event("a"))

        assert await queue.flush() is True
        assert len(sink.batches[0]) == 1
        assert queue.pending_timer is None

    @pytest.mark.asyncio
    async def test_flush_on_empty_queue_is_noop(self, queue, sink):
        assert await queue.flush() is False
        assert sink.attempts == 0

    @pytest.mark.asyncio
    async def test_concurrent_flush_is_noop(self, queue, sink, make_event):
        sink.gate = asyncio.Event()
        queue.enqueue(make_event())

        first = asyncio.create_task(queue.flush())
        await asyncio.sleep(0)
        queue.enqueue(make_event())

        assert queue.state == QueueState.FLUSHING
        assert await queue.flush() is False

        sink.gate.set()
        assert await first is True
        assert sink.attempts == 1

    @pytest.mark.asyncio
    async def test_leftover_full_batch_is_sent_after_success(self, sink, store, make_event):
        queue = AnalyticsQueue(sink=sink, store=store, batch_size=2)
        sink.gate = asyncio.Event()

        queue.enqueue(make_event("a"))
        queue.enqueue(make_event("b"))
        await asyncio.sleep(0)
        queue.enqueue(make_event("c"))
        queue.enqueue(make_event("d"))

        sink.gate.set()
        await queue.wait_idle()

        assert [[r["event_name"] for r in b] for b in sink.batches] == [["a", "b"], ["c", "d"]]


# ---------------------------------------------------------------------------
# Failure Handling Tests
# ---------------------------------------------------------------------------

class TestFailureHandling:
    """Tests for requeue and backoff."""

    @pytest.mark.asyncio
    async def test_failed_batch_is_requeued_in_order(self, queue, sink, make_event):
        sink.fail = True
        for i in range(10):
            queue.enqueue(make_event(index=i))
        await queue.wait_idle()

        assert sink.attempts == 1
        assert [e.properties["index"] for e in queue.events] == list(range(10))
        assert queue.consecutive_failures == 1
        assert queue.pending_timer is not None

    @pytest.mark.asyncio
    async def test_failed_batch_goes_ahead_of_newer_events(self, queue, sink, store, make_event):
        """Events enqueued during a failing send stay behind the batch."""
        sink.gate = asyncio.Event()
        sink.fail = True

        for i in range(10):
            queue.enqueue(make_event(index=i))
        await asyncio.sleep(0)
        assert len(queue) == 0

        queue.enqueue(make_event(index=10))
        sink.gate.set()
        await queue.wait_idle()

        assert [e.properties["index"] for e in queue.events] == list(range(11))
        assert mirror(store) == [e.to_record() for e in queue.events]

    @pytest.mark.asyncio
    async def test_cancelled_send_requeues_batch(self, queue, sink, store, make_event):
        """Cancelling a flush mid-send puts the batch back and re-raises."""
        sink.gate = asyncio.Event()
        queue.enqueue(make_event("a"))
        queue.enqueue(make_event("b"))

        task = asyncio.create_task(queue.flush())
        await asyncio.sleep(0)
        assert sink.attempts == 1
        assert len(queue) == 0

        queue.enqueue(make_event("c"))
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [e.event_name for e in queue.events] == ["a", "b", "c"]
        assert [r["event_name"] for r in mirror(store)] == ["a", "b", "c"]
        assert queue.state == QueueState.ACCUMULATING
        assert queue.consecutive_failures == 0

        sink.gate.set()
        assert await queue.flush() is True
        assert [r["event_name"] for r in sink.batches[0]] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_flush_returns_false_on_failure(self, queue, sink, make_event):
        sink.fail = True
        queue.enqueue(make_event())

        assert await queue.flush() is False
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_retry_delay_backs_off_to_cap(self, sink, store, make_event):
        queue = AnalyticsQueue(
            sink=sink,
            store=store,
            flush_interval_seconds=10,
            max_retry_delay_seconds=35,
        )
        sink.fail = True
        queue.enqueue(make_event())

        delays = []
        for _ in range(4):
            await queue.flush()
            delays.append(seconds_until(queue.pending_timer))

        assert delays == [
            pytest.approx(10, abs=0.5),
            pytest.approx(20, abs=0.5),
            pytest.approx(35, abs=0.5),
            pytest.approx(35, abs=0.5),
        ]

    @pytest.mark.asyncio
    async def test_backoff_ignores_size_trigger(self, queue, sink, make_event):
        sink.fail = True
        queue.enqueue(make_event())
        await queue.flush()
        retry_timer = queue.pending_timer

        for _ in range(12):
            queue.enqueue(make_event())
        await asyncio.sleep(0)

        assert sink.attempts == 1
        assert queue.pending_timer is retry_timer

    @pytest.mark.asyncio
    async def test_success_resets_backoff(self, queue, sink, make_event):
        sink.fail = True
        queue.enqueue(make_event())
        await queue.flush()

        sink.fail = False
        assert await queue.flush() is True
        assert queue.consecutive_failures == 0


# ---------------------------------------------------------------------------
# Durable Mirror Tests
# ---------------------------------------------------------------------------

class TestDurableMirror:
    """Tests for persistence to the key-value store."""

    @pytest.mark.asyncio
    async def test_mirror_tracks_every_change(self, queue, sink, store, make_event):
        queue.enqueue(make_event("a"))
        assert mirror(store) == [e.to_record() for e in queue.events]

        queue.enqueue(make_event("b"))
        assert [r["event_name"] for r in mirror(store)] == ["a", "b"]

        await queue.flush()
        assert mirror(store) == []

    @pytest.mark.asyncio
    async def test_mirror_is_cleared_when_batch_is_taken(self, queue, sink, store, make_event):
        sink.gate = asyncio.Event()
        queue.enqueue(make_event())

        task = asyncio.create_task(queue.flush())
        await asyncio.sleep(0)
        assert mirror(store) == []

        sink.gate.set()
        await task

    def test_restores_events_from_mirror(self, sink, store, make_event):
        events = [make_event("a"), make_event("b")]
        store.set(QUEUE_KEY, json.dumps([e.to_record() for e in events]))

        queue = AnalyticsQueue(sink=sink, store=store)

        assert queue.events == events

    def test_corrupt_mirror_starts_empty(self, sink, store):
        store.set(QUEUE_KEY, "{not json")
        assert len(AnalyticsQueue(sink=sink, store=store)) == 0

        store.set(QUEUE_KEY, json.dumps([{"event_name": "missing session"}]))
        assert len(AnalyticsQueue(sink=sink, store=store)) == 0

    @pytest.mark.parametrize("payload", [
        '{"a": 1}',
        '"abc"',
        "42",
        "[1, 2]",
        '[{"session_id": "s", "event_name": null, "event_category": "action"}]',
        '[{"session_id": "s", "event_name": "x", "event_category": "action", "properties": [1]}]',
        '[{"session_id": "s", "event_name": "x", "event_category": "action", "device_info": "phone"}]',
    ])
    def test_wrongly_shaped_mirror_starts_empty(self, sink, store, make_event, payload):
        store.set(QUEUE_KEY, payload)

        queue = AnalyticsQueue(sink=sink, store=store)

        assert len(queue) == 0
        queue.enqueue(make_event("fresh"))
        assert [r["event_name"] for r in mirror(store)] == ["fresh"]

    @pytest.mark.asyncio
    async def test_resume_arms_timer_for_restored_events(self, sink, store, make_event):
        store.set(QUEUE_KEY, json.dumps([make_event().to_record()]))
        queue = AnalyticsQueue(sink=sink, store=store)
        assert queue.pending_timer is None

        queue.resume()

        assert queue.pending_timer is not None

    @pytest.mark.asyncio
    async def test_quota_error_clears_mirror_but_keeps_memory(self, sink, make_event):
        store = QuotaStore()
        queue = AnalyticsQueue(sink=sink, store=store)
        queue.enqueue(make_event("a"))
        assert mirror(store) != []

        store.full = True
        queue.enqueue(make_event("b"))

        assert store.get(QUEUE_KEY) is None
        assert [e.event_name for e in queue.events] == ["a", "b"]

    def test_enqueue_without_loop_only_persists(self, queue, store, make_event):
        queue.enqueue(make_event())

        assert queue.pending_timer is None
        assert len(mirror(store)) == 1


# ---------------------------------------------------------------------------
# Limits and Teardown Tests
# ---------------------------------------------------------------------------

class TestLimitsAndTeardown:

    def test_max_queue_size_drops_oldest(self, sink, store, make_event):
        queue = AnalyticsQueue(sink=sink, store=store, batch_size=2, max_queue_size=3)

        for name in "abcde":
            queue.enqueue(make_event(name))

        assert [e.event_name for e in queue.events] == ["c", "d", "e"]
        assert len(mirror(store)) == 3

    @pytest.mark.asyncio
    async def test_teardown_persists_final_event_without_sending(self, queue, sink, store, make_event):
        queue.enqueue(make_event("a"))

        queue.teardown(make_event("session_end"))

        assert sink.attempts == 0
        assert queue.pending_timer is None
        assert [r["event_name"] for r in mirror(store)] == ["a", "session_end"]

    def test_invalid_configuration(self, sink, store):
        with pytest.raises(ValueError, match="batch_size"):
            AnalyticsQueue(sink=sink, store=store, batch_size=0)
        with pytest.raises(ValueError, match="max_queue_size"):
            AnalyticsQueue(sink=sink, store=store, batch_size=10, max_queue_size=5)


class TestAnalyticsEvent:

    def test_record_shape(self, make_event):
        record = make_event("click", element="save").to_record()

        assert record["event_category"] == "action"
        assert record["properties"] == {"element": "save"}
        assert record["device_info"]["userAgent"] == "tests"

    def test_record_round_trip(self, make_event):
        event = make_event("click", element="save")
        assert AnalyticsEvent.from_record(event.to_record()) == event

    def test_empty_name_is_rejected(self, make_event):
        with pytest.raises(ValueError, match="cannot be empty"):
            make_event("  ")

    def test_non_json_property_is_rejected(self, make_event):
        with pytest.raises(ValueError, match="JSON-serialisable"):
            make_event("click", when=datetime.now(timezone.utc))

    def test_wrong_field_types_are_rejected(self, make_event):
        record = make_event().to_record()

        with pytest.raises(ValueError):
            AnalyticsEvent.from_record({**record, "event_name": None})
        with pytest.raises(ValueError):
            AnalyticsEvent.from_record({**record, "properties": ["a"]})
        with pytest.raises(TypeError):
            AnalyticsEvent.from_record({**record, "device_info": "phone"})
        with pytest.raises(TypeError):
            AnalyticsEvent.from_record("not a record")
