"""
Telemetry collection.

Contains the event models, the batching queue and the tracker helpers
used by the rest of the application.
"""

from .models import AnalyticsEvent, DeviceInfo, EventCategory, device_info_from_headers
from .queue import (
    QUEUE_KEY,
    AnalyticsQueue,
    EventSink,
    KeyValueStore,
    LocalStorageError,
    QueueState,
    StorageQuotaExceededError,
)
from .tracker import SESSION_KEY, AnalyticsSessions, AnalyticsTracker, SessionContext

__all__ = [
    "QUEUE_KEY",
    "SESSION_KEY",
    "AnalyticsEvent",
    "AnalyticsQueue",
    "AnalyticsSessions",
    "AnalyticsTracker",
    "DeviceInfo",
    "EventCategory",
    "EventSink",
    "KeyValueStore",
    "LocalStorageError",
    "QueueState",
    "SessionContext",
    "StorageQuotaExceededError",
    "device_info_from_headers",
]
