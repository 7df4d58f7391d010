"""
Event tracking helpers.

The tracker is what the rest of the application talks to. It stamps
every event with the current user, the session id and the device info,
then hands it to the queue. Tracking must never break the flow that
triggered it, so the helpers swallow and log their own failures.

AnalyticsSessions keeps one tracker per client session for the HTTP
facade, where many clients share the process and its queue.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Optional
from uuid import uuid4

from .models import AnalyticsEvent, DeviceInfo, EventCategory
from .queue import AnalyticsQueue, KeyValueStore, LocalStorageError

logger = logging.getLogger(__name__)

SESSION_KEY = "analytics_session_id"

# Page visits shorter than this aren't worth a page_time event
MIN_PAGE_TIME_SECONDS = 1


class SessionContext:
    """
    Per-session metadata shared by every event.

    session_id lives in session-scoped storage: it survives for as long
    as that store does and is regenerated only when the store is empty.
    Device info is computed on first use and reused afterwards.
    """

    def __init__(
        self,
        session_store: KeyValueStore,
        device_info_factory: Callable[[], DeviceInfo],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_store = session_store
        self._device_info_factory = device_info_factory
        self._clock = clock
        self._session_id: Optional[str] = None
        self._device_info: Optional[DeviceInfo] = None
        self.started_at = clock()

    @property
    def session_id(self) -> str:
        if self._session_id is None:
            self._session_id = self._load_or_create_session_id()
        return self._session_id

    @property
    def device_info(self) -> DeviceInfo:
        if self._device_info is None:
            self._device_info = self._device_info_factory()
        return self._device_info

    def elapsed_seconds(self) -> int:
        return round(self._clock() - self.started_at)

    def _load_or_create_session_id(self) -> str:
        try:
            session_id = self._session_store.get(SESSION_KEY)
        except LocalStorageError as e:
            logger.warning("Could not read session id", extra={"error": str(e)})
            session_id = None

        if session_id:
            return session_id

        session_id = str(uuid4())
        try:
            self._session_store.set(SESSION_KEY, session_id)
        except LocalStorageError as e:
            logger.warning("Could not store session id", extra={"error": str(e)})

        logger.info("Started analytics session", extra={"session_id": session_id})
        return session_id


class AnalyticsTracker:
    """Public tracking API in front of an AnalyticsQueue."""

    def __init__(
        self,
        queue: AnalyticsQueue,
        context: SessionContext,
        user_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._queue = queue
        self._context = context
        self._user_id = user_id
        self._clock = clock
        self._page_started_at = clock()

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def session_id(self) -> str:
        return self._context.session_id

    def set_user(self, user_id: Optional[str]) -> None:
        """
        Switch the identity stamped on new events.

        Events already queued keep the user they were tracked with.
        """
        self._user_id = user_id

    def track_event(
        self,
        event_name: str,
        category: EventCategory,
        properties: Optional[dict[str, Any]] = None,
    ) -> Optional[AnalyticsEvent]:
        """
        Queue an event.

        Returns the queued event, or None if it couldn't be built.
        """
        try:
            event = self._build_event(event_name, category, properties)
            self._queue.enqueue(event)
        except Exception as e:
            logger.error(
                "Failed to track analytics event",
                extra={"event_name": event_name, "error": str(e)}
            )
            return None
        return event

    def track_page_view(
        self,
        page_name: str,
        properties: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Record a page view, preceded by time spent on the previous page.
        """
        properties = properties or {}
        now = self._clock()
        time_spent = round(now - self._page_started_at)

        if time_spent > MIN_PAGE_TIME_SECONDS:
            self.track_event(
                "page_time",
                EventCategory.ENGAGEMENT,
                {"duration_seconds": time_spent, **properties},
            )

        self._page_started_at = now
        self.track_event(
            "page_view",
            EventCategory.PAGE_VIEW,
            {"page": page_name, **properties},
        )

    def track_error(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        self.track_event("error", EventCategory.ERROR, {"message": message, **(context or {})})

    def track_click(self, element: str, context: Optional[dict[str, Any]] = None) -> None:
        self.track_event("click", EventCategory.ACTION, {"element": element, **(context or {})})

    async def flush(self) -> bool:
        return await self._queue.flush()

    def session_end_event(self) -> Optional[AnalyticsEvent]:
        """The session_end event for this session, or None if it can't be built."""
        try:
            return self._build_event(
                "session_end",
                EventCategory.ENGAGEMENT,
                {"duration_seconds": self._context.elapsed_seconds()},
            )
        except Exception as e:
            logger.error("Failed to build session_end event", extra={"error": str(e)})
            return None

    def end_session(self) -> None:
        """
        Process teardown hook.

        Adds a session_end event with the session's duration and persists
        the queue without waiting on the network.
        """
        self._queue.teardown(self.session_end_event())

    def _build_event(
        self,
        event_name: str,
        category: EventCategory,
        properties: Optional[dict[str, Any]],
    ) -> AnalyticsEvent:
        return AnalyticsEvent(
            user_id=self._user_id,
            session_id=self._context.session_id,
            event_name=event_name,
            event_category=category,
            properties=dict(properties or {}),
            device_info=self._context.device_info,
        )


class AnalyticsSessions:
    """
    One tracker per client session, all feeding the same queue.

    A server handles many clients at once, so the session id, device info
    and page clock can't be process-wide. Clients name their session with
    an id they keep between requests; a request without one starts a new
    session. Sessions that haven't been used for a while are evicted
    oldest first once max_sessions is reached, and their session_end
    event is queued at that point.
    """

    def __init__(
        self,
        queue: AnalyticsQueue,
        session_store_factory: Callable[[], KeyValueStore],
        clock: Callable[[], float] = time.time,
        max_sessions: int = 1000,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be positive")

        self._queue = queue
        self._session_store_factory = session_store_factory
        self._clock = clock
        self._max_sessions = max_sessions
        self._trackers: "OrderedDict[str, AnalyticsTracker]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._trackers)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._trackers

    def tracker_for(
        self,
        session_id: Optional[str],
        device_info_factory: Callable[[], DeviceInfo],
    ) -> AnalyticsTracker:
        """
        The tracker for a client session, created on first use.

        device_info_factory is only called for a new session; a known
        session keeps the device info it started with.
        """
        if session_id and session_id in self._trackers:
            self._trackers.move_to_end(session_id)
            return self._trackers[session_id]

        store = self._session_store_factory()
        if session_id:
            try:
                store.set(SESSION_KEY, session_id)
            except LocalStorageError as e:
                logger.warning("Could not store session id", extra={"error": str(e)})

        context = SessionContext(store, device_info_factory, clock=self._clock)
        tracker = AnalyticsTracker(self._queue, context, clock=self._clock)
        self._trackers[context.session_id] = tracker

        while len(self._trackers) > self._max_sessions:
            _, evicted = self._trackers.popitem(last=False)
            event = evicted.session_end_event()
            if event is not None:
                self._queue.enqueue(event)
            logger.debug("Evicted idle analytics session", extra={"session_id": evicted.session_id})

        return tracker

    def end_all(self) -> None:
        """
        Shutdown hook: queue a session_end for every open session and
        persist the queue without sending it.
        """
        events = [tracker.session_end_event() for tracker in self._trackers.values()]
        self._trackers.clear()
        self._queue.teardown(*events)
