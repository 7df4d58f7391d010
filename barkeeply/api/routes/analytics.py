"""
Telemetry endpoints.

Events are accepted immediately and queued; delivery to the warehouse
happens in batches in the background. A 202 means "queued", never
"stored".

Each response carries the session_id the event was recorded under.
Clients send it back as X-Session-Id so their events share one session.
"""

import logging
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Header, status
from pydantic import BaseModel, Field

from ...core.analytics import EventCategory
from ..dependencies import AnalyticsQueueDep, AuthenticatedUser, SessionTrackerDep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class TrackEventRequest(BaseModel):
    event_name: str = Field(description="Event name, e.g. 'drink_added'", min_length=1, max_length=100)
    category: EventCategory = Field(description="action, page_view, error or engagement")
    properties: dict[str, Any] = Field(default_factory=dict, description="Arbitrary JSON properties")


class PageViewRequest(BaseModel):
    page: str = Field(description="Page name", min_length=1, max_length=200)
    properties: dict[str, Any] = Field(default_factory=dict)


class TrackResponse(BaseModel):
    queued: int = Field(description="Events waiting to be sent")
    session_id: Optional[str] = Field(None, description="Session the event was recorded under")


class FlushResponse(BaseModel):
    flushed: bool = Field(description="Whether a batch was delivered")
    pending: int = Field(description="Events still queued")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/events",
    response_model=TrackResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Track an event",
)
async def track_event(
    request: TrackEventRequest,
    api_key: AuthenticatedUser,
    tracker: SessionTrackerDep,
    queue: AnalyticsQueueDep,
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> TrackResponse:
    # set_user and track_event run without an await in between, so
    # concurrent requests on one session can't interleave identities
    tracker.set_user(x_user_id)
    tracker.track_event(request.event_name, request.category, request.properties)

    return TrackResponse(queued=len(queue), session_id=tracker.session_id)


@router.post(
    "/page-views",
    response_model=TrackResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Track a page view",
)
async def track_page_view(
    request: PageViewRequest,
    api_key: AuthenticatedUser,
    tracker: SessionTrackerDep,
    queue: AnalyticsQueueDep,
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> TrackResponse:
    tracker.set_user(x_user_id)
    tracker.track_page_view(request.page, request.properties)

    return TrackResponse(queued=len(queue), session_id=tracker.session_id)


@router.post(
    "/flush",
    response_model=FlushResponse,
    status_code=status.HTTP_200_OK,
    summary="Send queued events now",
)
async def flush_events(
    api_key: AuthenticatedUser,
    queue: AnalyticsQueueDep,
) -> FlushResponse:
    await queue.wait_idle()
    flushed = await queue.flush()

    logger.info(
        "Manual analytics flush",
        extra={"flushed": flushed, "pending": len(queue)}
    )

    return FlushResponse(flushed=flushed, pending=len(queue))
