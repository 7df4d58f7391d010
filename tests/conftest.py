"""
Shared test fixtures.

Everything here is an in-memory stand-in for a backend: a signed URL
provider that counts calls, a controllable clock, and an event sink that
records batches or fails on demand. No test touches the network.
"""

import asyncio
from typing import Optional

import pytest

from barkeeply.core.analytics import AnalyticsEvent, DeviceInfo, EventCategory
from barkeeply.infrastructure.local_storage import MemoryKeyValueStore


STORAGE_HOST = "abc.supabase.co"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSignedUrlProvider:
    """Signs anything, counting calls. Set fail=True to simulate errors."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, int]] = []
        self.fail = False
        self.gate: Optional[asyncio.Event] = None

    async def create_signed_url(self, bucket: str, path: str, expiry_seconds: int = 3600) -> str:
        self.calls.append((bucket, path, expiry_seconds))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("storage unavailable")
        return f"https://{STORAGE_HOST}/storage/v1/object/sign/{bucket}/{path}?token=t{len(self.calls)}"

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"https://{STORAGE_HOST}/storage/v1/object/public/{bucket}/{path}"


class RecordingSink:
    """EventSink that records delivered batches."""

    def __init__(self) -> None:
        self.batches: list[list[dict]] = []
        self.attempts = 0
        self.fail = False
        self.gate: Optional[asyncio.Event] = None

    async def insert_events(self, records: list[dict]) -> None:
        self.attempts += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("ingestion rejected batch")
        self.batches.append(records)


def _make_event(name: str = "click", category: EventCategory = EventCategory.ACTION, **properties) -> AnalyticsEvent:
    return AnalyticsEvent(
        user_id="user-1",
        session_id="session-1",
        event_name=name,
        event_category=category,
        properties=properties,
        device_info=DeviceInfo(platform="Linux", user_agent="tests"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeSignedUrlProvider:
    return FakeSignedUrlProvider()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def make_event():
    """Factory for events with fixed user, session and device."""
    return _make_event
