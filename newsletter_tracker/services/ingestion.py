from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from newsletter_tracker.core.config import Settings, get_settings
from newsletter_tracker.core.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from newsletter_tracker.domain.events import normalize_event_data, validate_event_type
from newsletter_tracker.domain.state import SubscriptionStatus, normalize_email, parse_status
from newsletter_tracker.persistence.base import (
    NewBehavioralEvent,
    NewDeviceLocationSnapshot,
    NewPageView,
    NewSubscriber,
    SubscriberRecord,
    SubscriberStore,
)
from newsletter_tracker.services.directory import DirectoryClient, DirectoryRecord
from newsletter_tracker.services.request_context import RequestOrigin, parse_user_agent


logger = logging.getLogger(__name__)

ALREADY_SUBSCRIBED_MESSAGE = "You're already subscribed to our newsletter."
NEW_SUBSCRIBER_MESSAGE = "Thank you for subscribing! Please check your email to confirm your subscription."


@dataclass(frozen=True)
class BufferedEntry:
    type: str | None
    data: Any = None
    page_url: str | None = None
    page_title: str | None = None
    timestamp: Any = None


@dataclass(frozen=True)
class SignupInput:
    email: str | None
    first_name: str | None
    captcha_token: str | None = None
    session_id: str | None = None
    behavioral_data: list[BufferedEntry] = field(default_factory=list)
    device_data: dict[str, Any] | None = None
    location_data: dict[str, Any] | None = None
    page_data: dict[str, Any] | None = None


@dataclass(frozen=True)
class SignupResult:
    already_subscribed: bool
    message: str
    subscriber_id: int | None = None
    events_recorded: int = 0

    @property
    def new_subscriber(self) -> bool:
        return not self.already_subscribed


@dataclass(frozen=True)
class SyncResult:
    found: bool
    status: SubscriptionStatus | None = None
    external: dict[str, Any] | None = None
    updated: bool = False


@dataclass(frozen=True)
class _ValidatedEvent:
    event_type: str
    event_data: dict[str, Any]
    page_url: str | None
    page_title: str | None
    captured_at: datetime | None


def _captured_at(value: Any) -> datetime | None:
    # Client timestamps are epoch milliseconds; ISO strings are accepted too.
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _external_id(record: DirectoryRecord | None) -> str | None:
    if not record or record.get("id") in (None, ""):
        return None
    return str(record["id"])


class IngestionService:
    """Signup, live tracking and directory status sync on top of a store."""

    def __init__(
        self,
        store: SubscriberStore,
        directory: DirectoryClient,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._settings = settings or get_settings()

    def _validate_buffered(self, entries: list[BufferedEntry]) -> list[_ValidatedEvent]:
        # Check every entry before any write so a bad batch leaves no partial state.
        if len(entries) > self._settings.signup_max_buffered_events:
            raise ValidationError(
                f"At most {self._settings.signup_max_buffered_events} buffered events per signup"
            )
        validated: list[_ValidatedEvent] = []
        for entry in entries:
            validated.append(
                _ValidatedEvent(
                    event_type=validate_event_type(entry.type),
                    event_data=normalize_event_data(
                        entry.data, max_bytes=self._settings.event_data_max_bytes
                    ),
                    page_url=entry.page_url,
                    page_title=entry.page_title,
                    captured_at=_captured_at(entry.timestamp),
                )
            )
        return validated

    async def _find_in_directory(self, email: str) -> DirectoryRecord | None:
        try:
            return await self._directory.find_by_email(email)
        except ExternalServiceError as exc:
            logger.warning("signup_directory_lookup_failed email=%s", email, exc_info=exc)
            return None

    async def _create_in_directory(self, email: str, name: str) -> DirectoryRecord | None:
        try:
            return await self._directory.create(email, name)
        except ExternalServiceError as exc:
            logger.warning("signup_directory_create_failed email=%s", email, exc_info=exc)
            return None

    async def _add_subscriber(self, subscriber: NewSubscriber) -> SubscriberRecord | None:
        # A concurrent signup for the same email wins the unique index; report it as existing.
        try:
            return await self._store.add_subscriber(subscriber)
        except ConflictError:
            logger.info("signup_conflict_already_subscribed email=%s", subscriber.email)
            return None

    async def signup(self, payload: SignupInput, origin: RequestOrigin) -> SignupResult:
        if not (payload.email or "").strip() or not (payload.first_name or "").strip():
            raise ValidationError("Email and first name are required")
        email = normalize_email(payload.email)
        first_name = (payload.first_name or "").strip()
        events = self._validate_buffered(list(payload.behavioral_data or []))
        bound = self._settings.event_data_max_bytes
        device = normalize_event_data(payload.device_data, max_bytes=bound)
        location = normalize_event_data(payload.location_data, max_bytes=bound)
        page = normalize_event_data(payload.page_data, max_bytes=bound)
        page.setdefault("referrer", origin.referrer)

        existing = await self._store.get_subscriber_by_email(email)
        if existing is not None:
            logger.info("signup_already_subscribed email=%s subscriber_id=%s", email, existing.id)
            return SignupResult(already_subscribed=True, message=ALREADY_SUBSCRIBED_MESSAGE, subscriber_id=existing.id)

        base = dict(
            email=email,
            first_name=first_name,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            referrer=origin.referrer,
            source=self._settings.default_subscriber_source,
            session_id=payload.session_id,
        )

        record = await self._find_in_directory(email)
        if record is not None and self._directory.is_confirmed_subscriber(record):
            subscriber = await self._add_subscriber(
                NewSubscriber(
                    external_customer_id=_external_id(record),
                    subscription_status=SubscriptionStatus.CONFIRMED,
                    **base,
                )
            )
            logger.info(
                "signup_directory_subscriber_imported email=%s subscriber_id=%s",
                email,
                subscriber.id if subscriber else None,
            )
            return SignupResult(
                already_subscribed=True,
                message=ALREADY_SUBSCRIBED_MESSAGE,
                subscriber_id=subscriber.id if subscriber else None,
            )

        created = await self._create_in_directory(email, first_name)
        external_id = _external_id(created) or _external_id(record)

        subscriber = await self._add_subscriber(NewSubscriber(external_customer_id=external_id, **base))
        if subscriber is None:
            return SignupResult(already_subscribed=True, message=ALREADY_SUBSCRIBED_MESSAGE)

        ua = parse_user_agent(origin.user_agent)
        await self._store.add_device_location_snapshot(
            NewDeviceLocationSnapshot(
                subscriber_id=subscriber.id,
                device_type=ua.device_type,
                browser=ua.browser,
                operating_system=ua.operating_system,
                device=device,
                location=location,
                page=page,
            )
        )
        for event in events:
            await self._store.add_behavioral_event(
                NewBehavioralEvent(
                    subscriber_id=subscriber.id,
                    session_id=payload.session_id,
                    event_type=event.event_type,
                    event_data=event.event_data,
                    page_url=event.page_url,
                    page_title=event.page_title,
                    captured_at=event.captured_at,
                )
            )
        logger.info(
            "signup_completed email=%s subscriber_id=%s external_id=%s events=%s",
            email,
            subscriber.id,
            external_id,
            len(events),
        )
        return SignupResult(
            already_subscribed=False,
            message=NEW_SUBSCRIBER_MESSAGE,
            subscriber_id=subscriber.id,
            events_recorded=len(events),
        )

    async def _require_subscriber(self, email: str) -> SubscriberRecord:
        subscriber = await self._store.get_subscriber_by_email(email)
        if subscriber is None:
            raise NotFoundError("Subscriber not found")
        return subscriber

    async def track_event(
        self,
        *,
        email: str | None,
        event_type: str | None,
        session_id: str | None = None,
        event_data: Any = None,
        page_url: str | None = None,
        page_title: str | None = None,
        referrer: str | None = None,
        timestamp: Any = None,
    ) -> int:
        if not (email or "").strip() or not (event_type or "").strip():
            raise ValidationError("Email and event type are required")
        subscriber = await self._require_subscriber(normalize_email(email))
        data = normalize_event_data(event_data, max_bytes=self._settings.event_data_max_bytes)
        # The store rejects types outside the closed set before writing.
        return await self._store.add_behavioral_event(
            NewBehavioralEvent(
                subscriber_id=subscriber.id,
                session_id=session_id,
                event_type=str(event_type).strip(),
                event_data=data,
                page_url=page_url,
                page_title=page_title,
                referrer=referrer,
                captured_at=_captured_at(timestamp),
            )
        )

    async def track_page_view(
        self,
        *,
        email: str | None,
        page_url: str | None,
        session_id: str | None = None,
        page_title: str | None = None,
        time_spent: int | float | None = None,
        referrer: str | None = None,
        timestamp: Any = None,
    ) -> int:
        if not (email or "").strip() or not (page_url or "").strip():
            raise ValidationError("Email and page URL are required")
        if time_spent is not None and (not math.isfinite(time_spent) or time_spent < 0):
            raise ValidationError("timeSpent must be a finite, non-negative number")
        subscriber = await self._require_subscriber(normalize_email(email))
        return await self._store.add_page_view(
            NewPageView(
                subscriber_id=subscriber.id,
                session_id=session_id,
                page_url=str(page_url),
                page_title=page_title,
                time_spent_ms=int(time_spent) if time_spent is not None else None,
                referrer=referrer,
                viewed_at=_captured_at(timestamp),
            )
        )

    async def update_status_by_email(self, email: str | None, status: str | None) -> SubscriberRecord:
        if not (email or "").strip() or not (status or "").strip():
            raise ValidationError("Email and status are required")
        resolved = parse_status(status)
        subscriber = await self._require_subscriber(normalize_email(email))
        if not await self._store.update_subscription_status(subscriber.id, resolved):
            raise NotFoundError("Subscriber not found")
        logger.info("subscription_status_updated subscriber_id=%s status=%s", subscriber.id, resolved.value)
        return subscriber

    async def sync_directory_status(self, email: str | None) -> SyncResult:
        if not (email or "").strip():
            raise ValidationError("Email is required")
        normalized = normalize_email(email)
        # Directory failures propagate here; the sync has no degraded mode.
        record = await self._directory.find_by_email(normalized)
        if record is None:
            return SyncResult(found=False)
        status = (
            SubscriptionStatus.CONFIRMED
            if self._directory.is_confirmed_subscriber(record)
            else SubscriptionStatus.PENDING
        )
        updated = False
        subscriber = await self._store.get_subscriber_by_email(normalized)
        if subscriber is not None:
            updated = await self._store.update_subscription_status(subscriber.id, status)
        logger.info(
            "directory_status_synced email=%s status=%s local_updated=%s", normalized, status.value, updated
        )
        return SyncResult(
            found=True,
            status=status,
            external={
                "id": record.get("id"),
                "email": record.get("email"),
                "accepts_marketing": record.get("accepts_marketing"),
            },
            updated=updated,
        )
