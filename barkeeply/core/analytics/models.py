"""
Domain models for telemetry events.

These models mirror the rows of the analytics_events table, but they
have no dependency on how the rows are stored or transmitted.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EventCategory(Enum):
    """Coarse grouping used by the analytics dashboard."""
    ACTION = "action"
    PAGE_VIEW = "page_view"
    ERROR = "error"
    ENGAGEMENT = "engagement"


@dataclass(frozen=True)
class DeviceInfo:
    """
    What we know about the device that produced an event.

    Captured once per session and attached to every event, so the
    dashboard can split metrics by platform without a join.
    """
    platform: str = "unknown"
    user_agent: str = ""
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    language: Optional[str] = None
    timezone: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "userAgent": self.user_agent,
            "screenWidth": self.screen_width,
            "screenHeight": self.screen_height,
            "language": self.language,
            "timezone": self.timezone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceInfo":
        if not isinstance(data, dict):
            raise TypeError("device_info must be an object")
        return cls(
            platform=data.get("platform") or "unknown",
            user_agent=data.get("userAgent") or "",
            screen_width=data.get("screenWidth"),
            screen_height=data.get("screenHeight"),
            language=data.get("language"),
            timezone=data.get("timezone"),
        )


# Checked in order; iPad and iPhone user agents also contain "Mac OS X"
_PLATFORM_MARKERS = (
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Windows", "Windows"),
    ("Mac OS X", "macOS"),
    ("CrOS", "ChromeOS"),
    ("Linux", "Linux"),
)

_LANGUAGE_TAG = re.compile(r"^\s*([A-Za-z]{1,8}(?:-[A-Za-z0-9]{1,8})*)")


def device_info_from_headers(
    user_agent: Optional[str],
    accept_language: Optional[str] = None,
    screen_width: Optional[int] = None,
    screen_height: Optional[int] = None,
    timezone: Optional[str] = None,
) -> DeviceInfo:
    """
    Describe the client device from what its requests tell us.

    The platform is guessed from the User-Agent and the language is the
    first tag of Accept-Language. Screen size and timezone are only known
    if the client reports them.
    """
    user_agent = user_agent or ""
    platform = next(
        (name for marker, name in _PLATFORM_MARKERS if marker in user_agent),
        "unknown",
    )

    language = None
    if accept_language:
        match = _LANGUAGE_TAG.match(accept_language)
        if match:
            language = match.group(1)

    return DeviceInfo(
        platform=platform,
        user_agent=user_agent,
        screen_width=screen_width,
        screen_height=screen_height,
        language=language,
        timezone=timezone,
    )


@dataclass
class AnalyticsEvent:
    """
    A single tracked interaction.

    user_id is None for anonymous events (e.g. the sign-in screen).
    properties must be JSON-serialisable; events that aren't are rejected
    here, before they can reach the queue or its durable mirror.
    """
    session_id: str
    event_name: str
    event_category: EventCategory
    user_id: Optional[str] = None
    properties: dict[str, Any] = field(default_factory=dict)
    device_info: DeviceInfo = field(default_factory=DeviceInfo)

    def __post_init__(self) -> None:
        if not isinstance(self.event_name, str) or not self.event_name.strip():
            raise ValueError("Event name cannot be empty")
        if not isinstance(self.session_id, str) or not self.session_id:
            raise ValueError("Event must belong to a session")
        if self.user_id is not None and not isinstance(self.user_id, str):
            raise ValueError("user_id must be a string")
        if not isinstance(self.event_category, EventCategory):
            raise ValueError(f"Unknown event category: {self.event_category!r}")
        if not isinstance(self.properties, dict):
            raise ValueError("Event properties must be an object")
        if not isinstance(self.device_info, DeviceInfo):
            raise ValueError("device_info must be a DeviceInfo")

        try:
            json.dumps(self.properties)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Event properties must be JSON-serialisable: {e}")

    def to_record(self) -> dict[str, Any]:
        """Row shape expected by the ingestion backend."""
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "event_name": self.event_name,
            "event_category": self.event_category.value,
            "properties": dict(self.properties),
            "device_info": self.device_info.to_dict(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "AnalyticsEvent":
        """
        Rebuild an event from a stored record.

        Raises ValueError, KeyError or TypeError for records that don't
        have the expected shape.
        """
        if not isinstance(record, dict):
            raise TypeError("Event record must be an object")
        return cls(
            user_id=record.get("user_id"),
            session_id=record["session_id"],
            event_name=record["event_name"],
            event_category=EventCategory(record["event_category"]),
            properties=record.get("properties") or {},
            device_info=DeviceInfo.from_dict(record.get("device_info") or {}),
        )
