from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_tracker.domain.models import (
    OWNED_MODELS,
    BehavioralEvent,
    DeviceLocationSnapshot,
    PageView,
)


async def insert_event(session: AsyncSession, **values: Any) -> int:
    row = BehavioralEvent(**values)
    session.add(row)
    await session.flush()
    return int(row.id)


async def insert_snapshot(session: AsyncSession, **values: Any) -> int:
    row = DeviceLocationSnapshot(**values)
    session.add(row)
    await session.flush()
    return int(row.id)


async def insert_page_view(session: AsyncSession, **values: Any) -> int:
    row = PageView(**values)
    session.add(row)
    await session.flush()
    return int(row.id)


async def list_events(session: AsyncSession, subscriber_id: int) -> list[BehavioralEvent]:
    # Ids are monotonic, so id order is insertion (capture) order.
    result = await session.execute(
        select(BehavioralEvent)
        .where(BehavioralEvent.subscriber_id == subscriber_id)
        .order_by(BehavioralEvent.id)
    )
    return list(result.scalars().all())


async def first_snapshot(session: AsyncSession, subscriber_id: int) -> DeviceLocationSnapshot | None:
    result = await session.execute(
        select(DeviceLocationSnapshot)
        .where(DeviceLocationSnapshot.subscriber_id == subscriber_id)
        .order_by(DeviceLocationSnapshot.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_page_views(session: AsyncSession, subscriber_id: int) -> list[PageView]:
    result = await session.execute(
        select(PageView).where(PageView.subscriber_id == subscriber_id).order_by(PageView.id)
    )
    return list(result.scalars().all())


async def delete_owned(session: AsyncSession, subscriber_id: int) -> dict[str, int]:
    # Children only; the caller removes the subscriber row in the same transaction.
    deleted: dict[str, int] = {}
    for model in OWNED_MODELS:
        result = await session.execute(delete(model).where(model.subscriber_id == subscriber_id))
        deleted[model.__tablename__] = int(result.rowcount or 0)
    return deleted


async def count_events(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(BehavioralEvent))
    return int(result.scalar() or 0)
