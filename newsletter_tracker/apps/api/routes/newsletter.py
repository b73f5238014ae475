from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import Field

from newsletter_tracker.apps.api.deps import get_ingestion_service
from newsletter_tracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES, DIRECTORY_ERROR_RESPONSES
from newsletter_tracker.apps.api.response import CamelModel
from newsletter_tracker.services.ingestion import BufferedEntry, IngestionService, SignupInput
from newsletter_tracker.services.request_context import request_origin


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["newsletter"], responses=DEFAULT_ERROR_RESPONSES)


class BufferedEventRequest(CamelModel):
    type: str | None = None
    data: Any = None
    page_url: str | None = None
    page_title: str | None = None
    timestamp: Any = None


class SignupRequest(CamelModel):
    email: str | None = None
    first_name: str | None = None
    captcha_token: str | None = None
    session_id: str | None = None
    behavioral_data: list[BufferedEventRequest] = Field(default_factory=list)
    device_data: dict[str, Any] | None = None
    location_data: dict[str, Any] | None = None
    page_data: dict[str, Any] | None = None


class SignupResponse(CamelModel):
    success: bool = True
    message: str
    already_subscribed: bool | None = None
    new_subscriber: bool | None = None


class StatusUpdateRequest(CamelModel):
    email: str | None = None
    status: str | None = None


class StatusUpdateResponse(CamelModel):
    success: bool = True
    message: str
    status: str


class DirectorySyncRequest(CamelModel):
    email: str | None = None


class DirectoryCustomer(CamelModel):
    id: Any = None
    email: str | None = None
    accepts_marketing: bool | None = None


class DirectorySyncResponse(CamelModel):
    success: bool
    message: str | None = None
    status: str | None = None
    updated: bool = False
    directory_customer: DirectoryCustomer | None = None


@router.post(
    "/newsletter/signup",
    response_model=SignupResponse,
    response_model_exclude_none=True,
)
async def signup(
    payload: SignupRequest,
    request: Request,
    service: IngestionService = Depends(get_ingestion_service),
) -> SignupResponse:
    result = await service.signup(
        SignupInput(
            email=payload.email,
            first_name=payload.first_name,
            captcha_token=payload.captcha_token,
            session_id=payload.session_id,
            behavioral_data=[
                BufferedEntry(
                    type=event.type,
                    data=event.data,
                    page_url=event.page_url,
                    page_title=event.page_title,
                    timestamp=event.timestamp,
                )
                for event in payload.behavioral_data
            ],
            device_data=payload.device_data,
            location_data=payload.location_data,
            page_data=payload.page_data,
        ),
        request_origin(request),
    )
    if result.already_subscribed:
        return SignupResponse(message=result.message, already_subscribed=True)
    return SignupResponse(message=result.message, new_subscriber=True)


@router.post("/update-subscription-status", response_model=StatusUpdateResponse)
async def update_subscription_status(
    payload: StatusUpdateRequest,
    service: IngestionService = Depends(get_ingestion_service),
) -> StatusUpdateResponse:
    await service.update_status_by_email(payload.email, payload.status)
    return StatusUpdateResponse(
        message="Status updated successfully",
        status=(payload.status or "").strip().lower(),
    )


@router.post(
    "/sync-directory-status",
    response_model=DirectorySyncResponse,
    response_model_exclude_none=True,
    responses=DIRECTORY_ERROR_RESPONSES,
)
async def sync_directory_status(
    payload: DirectorySyncRequest,
    service: IngestionService = Depends(get_ingestion_service),
) -> DirectorySyncResponse:
    result = await service.sync_directory_status(payload.email)
    if not result.found:
        return DirectorySyncResponse(success=False, message="Customer not found in directory")
    return DirectorySyncResponse(
        success=True,
        status=result.status.value if result.status else None,
        updated=result.updated,
        directory_customer=DirectoryCustomer(**(result.external or {})),
    )
