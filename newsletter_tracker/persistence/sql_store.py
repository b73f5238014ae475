from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from newsletter_tracker.core.errors import ConflictError, NotFoundError, StorageError
from newsletter_tracker.domain.models import (
    Base,
    BehavioralEvent,
    DeviceLocationSnapshot,
    PageView,
    Subscriber,
)
from newsletter_tracker.domain.state import SubscriptionStatus, normalize_email
from newsletter_tracker.persistence.base import (
    EventRecord,
    NewBehavioralEvent,
    NewDeviceLocationSnapshot,
    NewPageView,
    NewSubscriber,
    PageViewRecord,
    SnapshotRecord,
    StoreStats,
    SubscriberDetail,
    SubscriberRecord,
    SubscriberSummary,
    as_utc,
    checked_event,
    checked_page_view,
    checked_snapshot,
    checked_status,
    location_field,
    utc_now,
)
from newsletter_tracker.persistence.db import create_engine_for, create_sessionmaker, session_scope
from newsletter_tracker.persistence.repos import activity as activity_repo
from newsletter_tracker.persistence.repos import subscribers as subscribers_repo


logger = logging.getLogger(__name__)


class _PurgeAborted(Exception):
    pass


def _subscriber_record(row: Subscriber) -> SubscriberRecord:
    return SubscriberRecord(
        id=int(row.id),
        email=row.email,
        first_name=row.first_name,
        external_customer_id=row.external_customer_id,
        subscription_status=row.subscription_status,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        referrer=row.referrer,
        source=row.source,
        session_id=row.session_id,
        deleted_at=as_utc(row.deleted_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _event_record(row: BehavioralEvent) -> EventRecord:
    return EventRecord(
        id=int(row.id),
        subscriber_id=int(row.subscriber_id),
        session_id=row.session_id,
        event_type=row.event_type,
        event_data=dict(row.event_data or {}),
        page_url=row.page_url,
        page_title=row.page_title,
        referrer=row.referrer,
        captured_at=as_utc(row.captured_at),
    )


def _snapshot_record(row: DeviceLocationSnapshot) -> SnapshotRecord:
    return SnapshotRecord(
        id=int(row.id),
        subscriber_id=int(row.subscriber_id),
        device_type=row.device_type,
        browser=row.browser,
        operating_system=row.operating_system,
        country=row.country,
        region=row.region,
        city=row.city,
        device=dict(row.device_json or {}),
        location=dict(row.location_json or {}),
        page=dict(row.page_json or {}),
        created_at=as_utc(row.created_at),
    )


def _page_view_record(row: PageView) -> PageViewRecord:
    return PageViewRecord(
        id=int(row.id),
        subscriber_id=int(row.subscriber_id),
        session_id=row.session_id,
        page_url=row.page_url,
        page_title=row.page_title,
        time_spent_ms=row.time_spent_ms,
        referrer=row.referrer,
        viewed_at=as_utc(row.viewed_at),
    )


class SqlSubscriberStore:
    """Relational backend on async SQLAlchemy (SQLite locally, Postgres in production)."""

    def __init__(self, database_url: str, *, engine: AsyncEngine | None = None) -> None:
        self._engine = engine or create_engine_for(database_url)
        self._sessionmaker = create_sessionmaker(self._engine)
        # Serialize multi-statement purges within this process.
        self._purge_lock = asyncio.Lock()

    async def connect(self) -> None:
        # Create tables on first start; schema changes beyond that are additive.
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to initialize relational storage") from exc

    async def close(self) -> None:
        await self._engine.dispose()

    async def add_subscriber(self, subscriber: NewSubscriber) -> SubscriberRecord:
        email = normalize_email(subscriber.email)
        try:
            async with session_scope(self._sessionmaker) as session:
                row = await subscribers_repo.insert_subscriber(
                    session,
                    email=email,
                    first_name=subscriber.first_name,
                    external_customer_id=subscriber.external_customer_id,
                    subscription_status=checked_status(subscriber.subscription_status).value,
                    ip_address=subscriber.ip_address,
                    user_agent=subscriber.user_agent,
                    referrer=subscriber.referrer,
                    source=subscriber.source,
                    session_id=subscriber.session_id,
                )
                return _subscriber_record(row)
        except IntegrityError as exc:
            raise ConflictError(f"Email already exists: {email}") from exc
        except SQLAlchemyError as exc:
            raise StorageError("Failed to add subscriber") from exc

    async def get_subscriber_by_email(self, email: str) -> SubscriberRecord | None:
        normalized = normalize_email(email)
        try:
            async with self._sessionmaker() as session:
                row = await subscribers_repo.get_by_email(session, normalized)
                return _subscriber_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StorageError("Failed to look up subscriber") from exc

    async def add_behavioral_event(self, event: NewBehavioralEvent) -> int:
        event = checked_event(event)
        values = {
            "subscriber_id": event.subscriber_id,
            "session_id": event.session_id,
            "event_type": event.event_type,
            "event_data": dict(event.event_data or {}),
            "page_url": event.page_url,
            "page_title": event.page_title,
            "referrer": event.referrer,
        }
        if event.captured_at is not None:
            values["captured_at"] = event.captured_at
        return await self._insert_owned(activity_repo.insert_event, event.subscriber_id, values)

    async def add_device_location_snapshot(self, snapshot: NewDeviceLocationSnapshot) -> int:
        snapshot = checked_snapshot(snapshot)
        values = {
            "subscriber_id": snapshot.subscriber_id,
            "device_type": snapshot.device_type,
            "browser": snapshot.browser,
            "operating_system": snapshot.operating_system,
            "country": location_field(snapshot.location, "country"),
            "region": location_field(snapshot.location, "region"),
            "city": location_field(snapshot.location, "city"),
            "device_json": dict(snapshot.device or {}),
            "location_json": dict(snapshot.location or {}),
            "page_json": dict(snapshot.page or {}),
        }
        return await self._insert_owned(activity_repo.insert_snapshot, snapshot.subscriber_id, values)

    async def add_page_view(self, page_view: NewPageView) -> int:
        page_view = checked_page_view(page_view)
        values = {
            "subscriber_id": page_view.subscriber_id,
            "session_id": page_view.session_id,
            "page_url": page_view.page_url,
            "page_title": page_view.page_title,
            "time_spent_ms": page_view.time_spent_ms,
            "referrer": page_view.referrer,
        }
        if page_view.viewed_at is not None:
            values["viewed_at"] = page_view.viewed_at
        return await self._insert_owned(activity_repo.insert_page_view, page_view.subscriber_id, values)

    async def _insert_owned(self, insert, subscriber_id: int, values: dict) -> int:  # type: ignore[no-untyped-def]
        # Owned rows require an existing subscriber; report a missing one as not found.
        try:
            async with session_scope(self._sessionmaker) as session:
                if await subscribers_repo.get_by_id(session, subscriber_id) is None:
                    raise NotFoundError(f"Subscriber {subscriber_id} not found")
                return await insert(session, **values)
        except IntegrityError as exc:
            raise NotFoundError(f"Subscriber {subscriber_id} not found") from exc
        except SQLAlchemyError as exc:
            raise StorageError("Failed to write subscriber activity") from exc

    async def _list(self, *, trashed: bool) -> list[SubscriberSummary]:
        try:
            async with self._sessionmaker() as session:
                rows = await subscribers_repo.list_with_counts(session, trashed=trashed)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to list subscribers") from exc
        return [
            SubscriberSummary(
                subscriber=_subscriber_record(row[0]),
                country=row.country,
                region=row.region,
                city=row.city,
                device_type=row.device_type,
                browser=row.browser,
                behavioral_events_count=int(row.behavioral_events_count or 0),
                page_views_count=int(row.page_views_count or 0),
            )
            for row in rows
        ]

    async def list_active_subscribers_with_counts(self) -> list[SubscriberSummary]:
        return await self._list(trashed=False)

    async def list_trashed_subscribers_with_counts(self) -> list[SubscriberSummary]:
        return await self._list(trashed=True)

    async def soft_delete(self, subscriber_id: int) -> bool:
        try:
            async with session_scope(self._sessionmaker) as session:
                return await subscribers_repo.mark_trashed(session, subscriber_id, at=utc_now())
        except SQLAlchemyError as exc:
            raise StorageError("Failed to move subscriber to trash") from exc

    async def restore(self, subscriber_id: int) -> bool:
        try:
            async with session_scope(self._sessionmaker) as session:
                return await subscribers_repo.mark_restored(session, subscriber_id, at=utc_now())
        except SQLAlchemyError as exc:
            raise StorageError("Failed to restore subscriber") from exc

    async def permanently_delete(self, subscriber_id: int) -> bool:
        async with self._purge_lock:
            try:
                async with session_scope(self._sessionmaker) as session:
                    # Active records cannot be purged; nothing is touched in that case.
                    if not await subscribers_repo.is_trashed(session, subscriber_id):
                        raise _PurgeAborted()
                    deleted = await activity_repo.delete_owned(session, subscriber_id)
                    if not await subscribers_repo.delete_trashed(session, subscriber_id):
                        # Restored between check and delete: roll the children back too.
                        raise _PurgeAborted()
            except _PurgeAborted:
                return False
            except SQLAlchemyError as exc:
                logger.error("subscriber_purge_rolled_back subscriber_id=%s", subscriber_id, exc_info=exc)
                raise StorageError("Failed to permanently delete subscriber") from exc
        logger.info("subscriber_purged subscriber_id=%s deleted=%s", subscriber_id, deleted)
        return True

    async def update_subscription_status(
        self, subscriber_id: int, status: str | SubscriptionStatus
    ) -> bool:
        resolved = checked_status(status)
        try:
            async with session_scope(self._sessionmaker) as session:
                return await subscribers_repo.set_status(
                    session, subscriber_id, resolved.value, at=utc_now()
                )
        except SQLAlchemyError as exc:
            raise StorageError("Failed to update subscription status") from exc

    async def get_subscriber_detail(self, subscriber_id: int) -> SubscriberDetail:
        try:
            async with self._sessionmaker() as session:
                row = await subscribers_repo.get_by_id(session, subscriber_id)
                if row is None:
                    raise NotFoundError(f"Subscriber {subscriber_id} not found")
                snapshot = await activity_repo.first_snapshot(session, subscriber_id)
                events = await activity_repo.list_events(session, subscriber_id)
                page_views = await activity_repo.list_page_views(session, subscriber_id)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to load subscriber detail") from exc
        return SubscriberDetail(
            subscriber=_subscriber_record(row),
            device_location=_snapshot_record(snapshot) if snapshot is not None else None,
            behavioral=[_event_record(event) for event in events],
            page_views=[_page_view_record(view) for view in page_views],
        )

    async def get_stats(self) -> StoreStats:
        try:
            async with self._sessionmaker() as session:
                total = await subscribers_repo.count_subscribers(session)
                active = await subscribers_repo.count_subscribers(session, trashed=False)
                trashed = await subscribers_repo.count_subscribers(session, trashed=True)
                events = await activity_repo.count_events(session)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to compute storage stats") from exc
        return StoreStats(
            total_subscribers=total,
            active_subscribers=active,
            trashed_subscribers=trashed,
            total_events=events,
        )
