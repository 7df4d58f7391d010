"""
Unit tests for the tracking helpers and session context.
"""

from datetime import datetime

import pytest

from barkeeply.core.analytics import (
    QUEUE_KEY,
    SESSION_KEY,
    AnalyticsQueue,
    AnalyticsSessions,
    AnalyticsTracker,
    DeviceInfo,
    EventCategory,
    LocalStorageError,
    SessionContext,
    device_info_from_headers,
)
from barkeeply.infrastructure.local_storage import MemoryKeyValueStore

DEVICE = DeviceInfo(platform="Linux", user_agent="tests", language="en_US")


class BrokenStore:
    """Session store that can't be read or written."""

    def get(self, key):
        raise LocalStorageError("unavailable")

    def set(self, key, value):
        raise LocalStorageError("unavailable")

    def remove(self, key):
        raise LocalStorageError("unavailable")


@pytest.fixture
def session_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def context(session_store, clock) -> SessionContext:
    return SessionContext(session_store, lambda: DEVICE, clock=clock)


@pytest.fixture
def queue(sink, store) -> AnalyticsQueue:
    return AnalyticsQueue(sink=sink, store=store)


@pytest.fixture
def tracker(queue, context, clock) -> AnalyticsTracker:
    return AnalyticsTracker(queue, context, user_id="user-1", clock=clock)


# ---------------------------------------------------------------------------
# Session Context Tests
# ---------------------------------------------------------------------------

class TestSessionContext:
    """Tests for session id and device info."""

    def test_session_id_is_created_once_and_stored(self, context, session_store):
        first = context.session_id

        assert first
        assert context.session_id == first
        assert session_store.get(SESSION_KEY) == first

    def test_existing_session_id_is_reused(self, session_store):
        session_store.set(SESSION_KEY, "existing-session")
        context = SessionContext(session_store, lambda: DEVICE)

        assert context.session_id == "existing-session"

    def test_new_store_means_new_session(self):
        a = SessionContext(MemoryKeyValueStore(), lambda: DEVICE)
        b = SessionContext(MemoryKeyValueStore(), lambda: DEVICE)

        assert a.session_id != b.session_id

    def test_broken_store_still_yields_session_id(self):
        context = SessionContext(BrokenStore(), lambda: DEVICE)
        assert context.session_id

    def test_device_info_is_computed_once(self):
        calls = []

        def factory():
            calls.append(1)
            return DEVICE

        context = SessionContext(MemoryKeyValueStore(), factory)
        context.device_info
        context.device_info

        assert len(calls) == 1

    def test_elapsed_seconds(self, context, clock):
        clock.advance(90.4)
        assert context.elapsed_seconds() == 90

    @pytest.mark.parametrize("user_agent, platform", [
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)", "iOS"),
        ("Mozilla/5.0 (Linux; Android 14; Pixel 8)", "Android"),
        ("Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)", "macOS"),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "Windows"),
        ("curl/8.4.0", "unknown"),
        (None, "unknown"),
    ])
    def test_device_info_platform_from_user_agent(self, user_agent, platform):
        info = device_info_from_headers(user_agent)

        assert info.platform == platform
        assert info.user_agent == (user_agent or "")

    def test_device_info_language_and_screen(self):
        info = device_info_from_headers(
            "Mozilla/5.0 (iPhone)",
            accept_language="de-DE,de;q=0.9,en;q=0.8",
            screen_width=390,
            screen_height=844,
        )

        assert info.language == "de-DE"
        assert (info.screen_width, info.screen_height) == (390, 844)
        assert device_info_from_headers("x", accept_language="*").language is None


# ---------------------------------------------------------------------------
# Tracker Tests
# ---------------------------------------------------------------------------

class TestAnalyticsTracker:
    """Tests for event stamping and helper events."""

    def test_track_event_stamps_context(self, tracker, queue, context):
        event = tracker.track_event("drink_added", EventCategory.ACTION, {"rating": 4})

        assert queue.events == [event]
        assert event.user_id == "user-1"
        assert event.session_id == context.session_id
        assert event.device_info == DEVICE
        assert event.properties == {"rating": 4}

    def test_track_event_copies_properties(self, tracker):
        properties = {"rating": 4}
        event = tracker.track_event("drink_added", EventCategory.ACTION, properties)
        properties["rating"] = 1

        assert event.properties == {"rating": 4}

    def test_set_user_affects_only_new_events(self, tracker, queue):
        tracker.track_event("before", EventCategory.ACTION)
        tracker.set_user(None)
        tracker.track_event("after", EventCategory.ACTION)

        assert [e.user_id for e in queue.events] == ["user-1", None]

    def test_invalid_event_is_swallowed(self, tracker, queue):
        assert tracker.track_event("", EventCategory.ACTION) is None
        assert len(queue) == 0

    def test_non_json_properties_do_not_block_later_events(self, tracker, queue, store):
        assert tracker.track_event("bad", EventCategory.ACTION, {"at": datetime(2024, 1, 1)}) is None
        assert tracker.track_event("good", EventCategory.ACTION) is not None

        assert [e.event_name for e in queue.events] == ["good"]
        assert '"good"' in store.get(QUEUE_KEY)
        assert '"bad"' not in store.get(QUEUE_KEY)

    def test_first_page_view_has_no_page_time(self, tracker, queue):
        tracker.track_page_view("home")

        assert [(e.event_name, e.properties) for e in queue.events] == [
            ("page_view", {"page": "home"}),
        ]

    def test_page_view_records_time_on_previous_page(self, tracker, queue, clock):
        tracker.track_page_view("home")
        clock.advance(42)
        tracker.track_page_view("drink_detail", {"drink_id": "d-1"})

        names = [e.event_name for e in queue.events]
        assert names == ["page_view", "page_time", "page_view"]

        page_time = queue.events[1]
        assert page_time.event_category == EventCategory.ENGAGEMENT
        assert page_time.properties == {"duration_seconds": 42, "drink_id": "d-1"}
        assert queue.events[2].properties == {"page": "drink_detail", "drink_id": "d-1"}

    def test_quick_navigation_skips_page_time(self, tracker, queue, clock):
        tracker.track_page_view("home")
        clock.advance(1)
        tracker.track_page_view("settings")

        assert [e.event_name for e in queue.events] == ["page_view", "page_view"]

    def test_track_error_and_click(self, tracker, queue):
        tracker.track_error("upload failed", {"code": 413})
        tracker.track_click("save_button")

        error, click = queue.events
        assert error.event_category == EventCategory.ERROR
        assert error.properties == {"message": "upload failed", "code": 413}
        assert click.event_name == "click"
        assert click.properties == {"element": "save_button"}

    @pytest.mark.asyncio
    async def test_flush_delegates_to_queue(self, tracker, sink):
        tracker.track_click("save_button")

        assert await tracker.flush() is True
        assert len(sink.batches) == 1

    def test_end_session_persists_session_end(self, tracker, queue, store, sink, clock):
        tracker.track_click("save_button")
        clock.advance(300)

        tracker.end_session()

        assert sink.attempts == 0
        assert queue.events[-1].event_name == "session_end"
        assert queue.events[-1].properties == {"duration_seconds": 300}
        assert '"session_end"' in store.get("analytics_queue")


# ---------------------------------------------------------------------------
# Session Registry Tests
# ---------------------------------------------------------------------------

def _device(platform: str):
    return lambda: DeviceInfo(platform=platform, user_agent=platform)


class TestAnalyticsSessions:
    """Tests for per-client trackers sharing one queue."""

    @pytest.fixture
    def sessions(self, queue, clock) -> AnalyticsSessions:
        return AnalyticsSessions(queue, MemoryKeyValueStore, clock=clock, max_sessions=3)

    def test_same_session_id_returns_same_tracker(self, sessions):
        first = sessions.tracker_for("client-a", _device("iOS"))
        again = sessions.tracker_for("client-a", _device("Android"))

        assert again is first
        assert first.session_id == "client-a"
        assert len(sessions) == 1

    def test_missing_session_id_starts_a_new_session(self, sessions):
        a = sessions.tracker_for(None, _device("iOS"))
        b = sessions.tracker_for(None, _device("iOS"))

        assert a.session_id != b.session_id
        assert a.session_id in sessions
        assert b.session_id in sessions

    def test_sessions_keep_their_own_device_and_page_clock(self, sessions, queue, clock):
        a = sessions.tracker_for("client-a", _device("iOS"))
        a.track_page_view("home")
        clock.advance(30)
        b = sessions.tracker_for("client-b", _device("Android"))
        b.track_page_view("home")
        clock.advance(5)
        a.track_page_view("settings")
        b.track_page_view("settings")

        page_times = {
            e.session_id: e.properties["duration_seconds"]
            for e in queue.events
            if e.event_name == "page_time"
        }
        assert page_times == {"client-a": 35, "client-b": 5}

        platforms = {e.session_id: e.device_info.platform for e in queue.events}
        assert platforms == {"client-a": "iOS", "client-b": "Android"}

    def test_least_recently_used_session_is_ended(self, sessions, queue):
        for name in ("a", "b", "c"):
            sessions.tracker_for(name, _device("iOS"))
        sessions.tracker_for("a", _device("iOS"))

        sessions.tracker_for("d", _device("iOS"))

        assert "b" not in sessions
        assert len(sessions) == 3
        assert [(e.event_name, e.session_id) for e in queue.events] == [("session_end", "b")]

    def test_end_all_persists_session_end_per_session(self, sessions, queue, store, sink, clock):
        sessions.tracker_for("a", _device("iOS")).track_click("save")
        sessions.tracker_for("b", _device("Android"))
        clock.advance(60)

        sessions.end_all()

        assert sink.attempts == 0
        assert len(sessions) == 0
        ends = [e for e in queue.events if e.event_name == "session_end"]
        assert {e.session_id for e in ends} == {"a", "b"}
        assert all(e.properties == {"duration_seconds": 60} for e in ends)
        assert store.get(QUEUE_KEY).count('"session_end"') == 2

    def test_invalid_max_sessions(self, queue):
        with pytest.raises(ValueError, match="max_sessions"):
            AnalyticsSessions(queue, MemoryKeyValueStore, max_sessions=0)
