from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from newsletter_tracker.apps.api.deps import get_ingestion_service
from newsletter_tracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from newsletter_tracker.apps.api.response import CamelModel
from newsletter_tracker.services.ingestion import IngestionService


router = APIRouter(prefix="/api/track", tags=["tracking"], responses=DEFAULT_ERROR_RESPONSES)


class TrackEventRequest(CamelModel):
    email: str | None = None
    session_id: str | None = None
    event_type: str | None = None
    event_data: Any = None
    page_url: str | None = None
    page_title: str | None = None
    referrer: str | None = None
    timestamp: Any = None


class TrackPageViewRequest(CamelModel):
    email: str | None = None
    session_id: str | None = None
    page_url: str | None = None
    page_title: str | None = None
    # Milliseconds on the page before navigating away.
    time_spent: float | None = None
    referrer: str | None = None
    timestamp: Any = None


class TrackResponse(CamelModel):
    success: bool = True


@router.post("/event", response_model=TrackResponse)
async def track_event(
    payload: TrackEventRequest,
    service: IngestionService = Depends(get_ingestion_service),
) -> TrackResponse:
    await service.track_event(
        email=payload.email,
        event_type=payload.event_type,
        session_id=payload.session_id,
        event_data=payload.event_data,
        page_url=payload.page_url,
        page_title=payload.page_title,
        referrer=payload.referrer,
        timestamp=payload.timestamp,
    )
    return TrackResponse()


@router.post("/page-view", response_model=TrackResponse)
async def track_page_view(
    payload: TrackPageViewRequest,
    service: IngestionService = Depends(get_ingestion_service),
) -> TrackResponse:
    await service.track_page_view(
        email=payload.email,
        page_url=payload.page_url,
        session_id=payload.session_id,
        page_title=payload.page_title,
        time_spent=payload.time_spent,
        referrer=payload.referrer,
        timestamp=payload.timestamp,
    )
    return TrackResponse()
