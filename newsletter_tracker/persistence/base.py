from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from newsletter_tracker.core.errors import ValidationError
from newsletter_tracker.domain.events import fits_int64, validate_event_type
from newsletter_tracker.domain.state import SubscriptionStatus, TrashState, parse_status, trash_state


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite and mongomock hand back naive datetimes; treat them as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NewSubscriber:
    email: str
    first_name: str | None = None
    external_customer_id: str | None = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.PENDING
    ip_address: str | None = None
    user_agent: str | None = None
    referrer: str | None = None
    source: str | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class SubscriberRecord:
    id: int
    email: str
    first_name: str | None
    external_customer_id: str | None
    subscription_status: str
    ip_address: str | None
    user_agent: str | None
    referrer: str | None
    source: str | None
    session_id: str | None
    deleted_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    @property
    def state(self) -> TrashState:
        return trash_state(self.deleted_at)

    @property
    def is_active(self) -> bool:
        return self.state is TrashState.ACTIVE


@dataclass(frozen=True)
class NewBehavioralEvent:
    subscriber_id: int
    event_type: str
    event_data: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    page_url: str | None = None
    page_title: str | None = None
    referrer: str | None = None
    captured_at: datetime | None = None


@dataclass(frozen=True)
class EventRecord:
    id: int
    subscriber_id: int
    session_id: str | None
    event_type: str
    event_data: dict[str, Any]
    page_url: str | None
    page_title: str | None
    referrer: str | None
    captured_at: datetime | None


@dataclass(frozen=True)
class NewDeviceLocationSnapshot:
    subscriber_id: int
    device_type: str | None = None
    browser: str | None = None
    operating_system: str | None = None
    device: dict[str, Any] = field(default_factory=dict)
    location: dict[str, Any] = field(default_factory=dict)
    page: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SnapshotRecord:
    id: int
    subscriber_id: int
    device_type: str | None
    browser: str | None
    operating_system: str | None
    country: str | None
    region: str | None
    city: str | None
    device: dict[str, Any]
    location: dict[str, Any]
    page: dict[str, Any]
    created_at: datetime | None


@dataclass(frozen=True)
class NewPageView:
    subscriber_id: int
    page_url: str
    session_id: str | None = None
    page_title: str | None = None
    time_spent_ms: int | None = None
    referrer: str | None = None
    viewed_at: datetime | None = None


@dataclass(frozen=True)
class PageViewRecord:
    id: int
    subscriber_id: int
    session_id: str | None
    page_url: str
    page_title: str | None
    time_spent_ms: int | None
    referrer: str | None
    viewed_at: datetime | None


@dataclass(frozen=True)
class SubscriberSummary:
    subscriber: SubscriberRecord
    country: str | None
    region: str | None
    city: str | None
    device_type: str | None
    browser: str | None
    behavioral_events_count: int
    page_views_count: int


@dataclass(frozen=True)
class SubscriberDetail:
    subscriber: SubscriberRecord
    device_location: SnapshotRecord | None
    behavioral: list[EventRecord]
    page_views: list[PageViewRecord]


@dataclass(frozen=True)
class StoreStats:
    total_subscribers: int
    active_subscribers: int
    trashed_subscribers: int
    total_events: int


def checked_event(event: NewBehavioralEvent) -> NewBehavioralEvent:
    # Both backends run this before writing so an unknown type never lands in storage.
    validate_event_type(event.event_type)
    if not fits_int64(event.event_data):
        raise ValidationError("Event data integers must fit in a signed 64-bit range")
    return event


def checked_snapshot(snapshot: NewDeviceLocationSnapshot) -> NewDeviceLocationSnapshot:
    if not all(fits_int64(part) for part in (snapshot.device, snapshot.location, snapshot.page)):
        raise ValidationError("Snapshot integers must fit in a signed 64-bit range")
    return snapshot


def checked_page_view(page_view: NewPageView) -> NewPageView:
    if page_view.time_spent_ms is not None and not fits_int64(page_view.time_spent_ms):
        raise ValidationError("timeSpent is out of range")
    return page_view


def checked_status(status: str | SubscriptionStatus) -> SubscriptionStatus:
    return parse_status(status)


def location_field(location: dict[str, Any], key: str) -> str | None:
    value = location.get(key) if isinstance(location, dict) else None
    return str(value) if value not in (None, "") else None


class SubscriberStore(Protocol):
    """Persistence capability shared by the relational and document backends.

    Implementations must agree on: lowercased unique emails (duplicates raise
    ``ConflictError``), monotonic integer ids that are never reused, the
    Active -> Trashed -> Purged lifecycle where illegal transitions return
    ``False``, and all-or-nothing purge of a subscriber with its owned rows.
    """

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def add_subscriber(self, subscriber: NewSubscriber) -> SubscriberRecord:
        ...

    async def get_subscriber_by_email(self, email: str) -> SubscriberRecord | None:
        ...

    async def add_behavioral_event(self, event: NewBehavioralEvent) -> int:
        ...

    async def add_device_location_snapshot(self, snapshot: NewDeviceLocationSnapshot) -> int:
        ...

    async def add_page_view(self, page_view: NewPageView) -> int:
        ...

    async def list_active_subscribers_with_counts(self) -> list[SubscriberSummary]:
        ...

    async def list_trashed_subscribers_with_counts(self) -> list[SubscriberSummary]:
        ...

    async def soft_delete(self, subscriber_id: int) -> bool:
        ...

    async def restore(self, subscriber_id: int) -> bool:
        ...

    async def permanently_delete(self, subscriber_id: int) -> bool:
        ...

    async def update_subscription_status(
        self, subscriber_id: int, status: str | SubscriptionStatus
    ) -> bool:
        ...

    async def get_subscriber_detail(self, subscriber_id: int) -> SubscriberDetail:
        ...

    async def get_stats(self) -> StoreStats:
        ...
