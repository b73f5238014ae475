from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import Field

from newsletter_tracker.apps.api.deps import get_admin_service, require_admin
from newsletter_tracker.apps.api.openapi import ADMIN_ERROR_RESPONSES
from newsletter_tracker.apps.api.response import CamelModel
from newsletter_tracker.persistence.base import SubscriberDetail, SubscriberSummary
from newsletter_tracker.services.admin import AdminService, BulkAction, BulkResult


logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    responses=ADMIN_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class SubscriberOut(CamelModel):
    id: int
    email: str
    first_name: str | None = None
    external_customer_id: str | None = None
    subscription_status: str
    ip_address: str | None = None
    user_agent: str | None = None
    referrer: str | None = None
    source: str | None = None
    session_id: str | None = None
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SubscriberRowOut(SubscriberOut):
    country: str | None = None
    region: str | None = None
    city: str | None = None
    device_type: str | None = None
    browser: str | None = None
    behavioral_events_count: int = 0
    page_views_count: int = 0


class SnapshotOut(CamelModel):
    id: int
    device_type: str | None = None
    browser: str | None = None
    operating_system: str | None = None
    country: str | None = None
    region: str | None = None
    city: str | None = None
    device: dict[str, Any] = Field(default_factory=dict)
    location: dict[str, Any] = Field(default_factory=dict)
    page: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class EventOut(CamelModel):
    id: int
    session_id: str | None = None
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    page_url: str | None = None
    page_title: str | None = None
    referrer: str | None = None
    captured_at: datetime | None = None


class PageViewOut(CamelModel):
    id: int
    session_id: str | None = None
    page_url: str
    page_title: str | None = None
    time_spent_ms: int | None = None
    referrer: str | None = None
    viewed_at: datetime | None = None


class SubscriberDetailOut(CamelModel):
    subscriber: SubscriberOut
    device_location: SnapshotOut | None = None
    behavioral: list[EventOut]
    page_views: list[PageViewOut]


class SubscriberListResponse(CamelModel):
    success: bool = True
    count: int
    data: list[SubscriberRowOut]


class SubscriberDetailResponse(CamelModel):
    success: bool = True
    data: SubscriberDetailOut


class StatsOut(CamelModel):
    total_subscribers: int
    active_subscribers: int
    trashed_subscribers: int
    total_events: int


class StatsResponse(CamelModel):
    success: bool = True
    data: StatsOut


class MessageResponse(CamelModel):
    success: bool = True
    message: str


class BulkRequest(CamelModel):
    subscriber_ids: list[int] = Field(default_factory=list)


class ItemOutcomeOut(CamelModel):
    subscriber_id: int
    status: str
    error: str | None = None


class BulkCounts(CamelModel):
    requested: int
    applied: int
    skipped: int
    failed: int


class BulkResponse(CamelModel):
    success: bool = True
    message: str
    counts: BulkCounts
    outcomes: list[ItemOutcomeOut]


def _row(summary: SubscriberSummary) -> SubscriberRowOut:
    return SubscriberRowOut(
        **SubscriberOut.model_validate(summary.subscriber).model_dump(),
        country=summary.country,
        region=summary.region,
        city=summary.city,
        device_type=summary.device_type,
        browser=summary.browser,
        behavioral_events_count=summary.behavioral_events_count,
        page_views_count=summary.page_views_count,
    )


def _detail(detail: SubscriberDetail) -> SubscriberDetailOut:
    return SubscriberDetailOut(
        subscriber=SubscriberOut.model_validate(detail.subscriber),
        device_location=(
            SnapshotOut.model_validate(detail.device_location) if detail.device_location else None
        ),
        behavioral=[EventOut.model_validate(event) for event in detail.behavioral],
        page_views=[PageViewOut.model_validate(view) for view in detail.page_views],
    )


_BULK_MESSAGES: dict[str, str] = {
    "soft_delete": "{applied} subscribers moved to trash",
    "restore": "{applied} subscribers restored",
    "permanent_delete": "{applied} subscribers permanently deleted",
}


def _bulk_response(result: BulkResult) -> BulkResponse:
    return BulkResponse(
        message=_BULK_MESSAGES[result.action].format(applied=result.applied),
        counts=BulkCounts(
            requested=result.requested,
            applied=result.applied,
            skipped=result.skipped,
            failed=result.failed,
        ),
        outcomes=[
            ItemOutcomeOut(subscriber_id=o.subscriber_id, status=o.status, error=o.error)
            for o in result.outcomes
        ],
    )


@router.get("/subscribers", response_model=SubscriberListResponse)
async def list_subscribers(service: AdminService = Depends(get_admin_service)) -> SubscriberListResponse:
    rows = [_row(summary) for summary in await service.list_active()]
    return SubscriberListResponse(count=len(rows), data=rows)


@router.get("/subscribers/trash", response_model=SubscriberListResponse)
async def list_trash(service: AdminService = Depends(get_admin_service)) -> SubscriberListResponse:
    rows = [_row(summary) for summary in await service.list_trashed()]
    return SubscriberListResponse(count=len(rows), data=rows)


@router.get("/stats", response_model=StatsResponse)
async def stats(service: AdminService = Depends(get_admin_service)) -> StatsResponse:
    return StatsResponse(data=StatsOut.model_validate(await service.stats()))


@router.get("/subscriber/{subscriber_id}", response_model=SubscriberDetailResponse)
async def subscriber_detail(
    subscriber_id: int,
    service: AdminService = Depends(get_admin_service),
) -> SubscriberDetailResponse:
    return SubscriberDetailResponse(data=_detail(await service.detail(subscriber_id)))


@router.delete("/subscriber/{subscriber_id}", response_model=MessageResponse)
async def soft_delete_subscriber(
    subscriber_id: int,
    service: AdminService = Depends(get_admin_service),
) -> MessageResponse:
    await service.soft_delete(subscriber_id)
    return MessageResponse(message="Subscriber moved to trash successfully")


@router.post("/subscriber/{subscriber_id}/restore", response_model=MessageResponse)
async def restore_subscriber(
    subscriber_id: int,
    service: AdminService = Depends(get_admin_service),
) -> MessageResponse:
    await service.restore(subscriber_id)
    return MessageResponse(message="Subscriber restored successfully")


@router.delete("/subscriber/{subscriber_id}/permanent", response_model=MessageResponse)
async def purge_subscriber(
    subscriber_id: int,
    service: AdminService = Depends(get_admin_service),
) -> MessageResponse:
    await service.permanently_delete(subscriber_id)
    return MessageResponse(message="Subscriber permanently deleted")


async def _bulk(action: BulkAction, payload: BulkRequest, service: AdminService) -> BulkResponse:
    return _bulk_response(await service.bulk(action, payload.subscriber_ids))


@router.post("/subscribers/bulk-delete", response_model=BulkResponse)
async def bulk_soft_delete(
    payload: BulkRequest,
    service: AdminService = Depends(get_admin_service),
) -> BulkResponse:
    return await _bulk("soft_delete", payload, service)


@router.post("/subscribers/bulk-restore", response_model=BulkResponse)
async def bulk_restore(
    payload: BulkRequest,
    service: AdminService = Depends(get_admin_service),
) -> BulkResponse:
    return await _bulk("restore", payload, service)


@router.post("/subscribers/bulk-permanent-delete", response_model=BulkResponse)
async def bulk_permanent_delete(
    payload: BulkRequest,
    service: AdminService = Depends(get_admin_service),
) -> BulkResponse:
    return await _bulk("permanent_delete", payload, service)
