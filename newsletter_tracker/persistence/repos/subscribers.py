from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Row, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_tracker.domain.models import (
    BehavioralEvent,
    DeviceLocationSnapshot,
    PageView,
    Subscriber,
)


async def insert_subscriber(session: AsyncSession, **values: Any) -> Subscriber:
    # Flush immediately so unique-email violations surface inside the caller's transaction.
    subscriber = Subscriber(**values)
    session.add(subscriber)
    await session.flush()
    await session.refresh(subscriber)
    return subscriber


async def get_by_email(session: AsyncSession, email: str) -> Subscriber | None:
    # Callers pass normalized emails; lower() also covers rows written by older clients.
    result = await session.execute(select(Subscriber).where(func.lower(Subscriber.email) == email))
    return result.scalar_one_or_none()


async def get_by_id(session: AsyncSession, subscriber_id: int) -> Subscriber | None:
    result = await session.execute(select(Subscriber).where(Subscriber.id == subscriber_id))
    return result.scalar_one_or_none()


async def mark_trashed(session: AsyncSession, subscriber_id: int, *, at: datetime) -> bool:
    # Guarded update: only active rows move to the trash.
    result = await session.execute(
        update(Subscriber)
        .where(Subscriber.id == subscriber_id, Subscriber.deleted_at.is_(None))
        .values(deleted_at=at, updated_at=at)
    )
    return (result.rowcount or 0) > 0


async def mark_restored(session: AsyncSession, subscriber_id: int, *, at: datetime) -> bool:
    result = await session.execute(
        update(Subscriber)
        .where(Subscriber.id == subscriber_id, Subscriber.deleted_at.is_not(None))
        .values(deleted_at=None, updated_at=at)
    )
    return (result.rowcount or 0) > 0


async def set_status(session: AsyncSession, subscriber_id: int, status: str, *, at: datetime) -> bool:
    result = await session.execute(
        update(Subscriber)
        .where(Subscriber.id == subscriber_id)
        .values(subscription_status=status, updated_at=at)
    )
    return (result.rowcount or 0) > 0


async def is_trashed(session: AsyncSession, subscriber_id: int) -> bool:
    result = await session.execute(
        select(Subscriber.id).where(
            Subscriber.id == subscriber_id, Subscriber.deleted_at.is_not(None)
        )
    )
    return result.scalar_one_or_none() is not None


async def delete_trashed(session: AsyncSession, subscriber_id: int) -> bool:
    result = await session.execute(
        delete(Subscriber).where(
            Subscriber.id == subscriber_id, Subscriber.deleted_at.is_not(None)
        )
    )
    return (result.rowcount or 0) > 0


def _count_subquery(model) -> Any:  # type: ignore[no-untyped-def]
    # Correlated counts avoid the row multiplication of joining two child tables at once.
    return (
        select(func.count(model.id))
        .where(model.subscriber_id == Subscriber.id)
        .correlate(Subscriber)
        .scalar_subquery()
    )


async def list_with_counts(session: AsyncSession, *, trashed: bool) -> list[Row]:
    first_snapshot = (
        select(
            DeviceLocationSnapshot.subscriber_id.label("subscriber_id"),
            func.min(DeviceLocationSnapshot.id).label("snapshot_id"),
        )
        .group_by(DeviceLocationSnapshot.subscriber_id)
        .subquery()
    )
    stmt = (
        select(
            Subscriber,
            DeviceLocationSnapshot.country,
            DeviceLocationSnapshot.region,
            DeviceLocationSnapshot.city,
            DeviceLocationSnapshot.device_type,
            DeviceLocationSnapshot.browser,
            _count_subquery(BehavioralEvent).label("behavioral_events_count"),
            _count_subquery(PageView).label("page_views_count"),
        )
        .outerjoin(first_snapshot, first_snapshot.c.subscriber_id == Subscriber.id)
        .outerjoin(DeviceLocationSnapshot, DeviceLocationSnapshot.id == first_snapshot.c.snapshot_id)
    )
    if trashed:
        stmt = stmt.where(Subscriber.deleted_at.is_not(None)).order_by(
            Subscriber.deleted_at.desc(), Subscriber.id.desc()
        )
    else:
        stmt = stmt.where(Subscriber.deleted_at.is_(None)).order_by(
            Subscriber.created_at.desc(), Subscriber.id.desc()
        )
    result = await session.execute(stmt)
    return list(result.all())


async def count_subscribers(session: AsyncSession, *, trashed: bool | None = None) -> int:
    stmt = select(func.count()).select_from(Subscriber)
    if trashed is True:
        stmt = stmt.where(Subscriber.deleted_at.is_not(None))
    elif trashed is False:
        stmt = stmt.where(Subscriber.deleted_at.is_(None))
    result = await session.execute(stmt)
    return int(result.scalar() or 0)
