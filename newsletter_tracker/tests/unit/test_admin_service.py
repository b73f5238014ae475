from __future__ import annotations

import pytest

from newsletter_tracker.core.errors import NotFoundError, StorageError, ValidationError
from newsletter_tracker.persistence.base import NewSubscriber
from newsletter_tracker.services.admin import MAX_BULK_IDS, AdminService


class _FlakyStore:
    """Wraps a real store and fails soft deletes for chosen ids."""

    def __init__(self, inner, failing: set[int]) -> None:
        self._inner = inner
        self._failing = failing

    async def soft_delete(self, subscriber_id: int) -> bool:
        if subscriber_id in self._failing:
            raise StorageError("disk full")
        return await self._inner.soft_delete(subscriber_id)

    def __getattr__(self, name: str):
        return getattr(self._inner, name)


@pytest.mark.asyncio
async def test_bulk_records_failed_items_and_continues(sql_store) -> None:
    ids = [
        (await sql_store.add_subscriber(NewSubscriber(email=f"user{n}@example.com"))).id
        for n in range(3)
    ]
    service = AdminService(_FlakyStore(sql_store, failing={ids[1]}))

    result = await service.bulk("soft_delete", ids)

    assert result.requested == 3
    assert result.applied == 2
    assert result.failed == 1
    assert [outcome.status for outcome in result.outcomes] == ["applied", "failed", "applied"]
    assert result.outcomes[1].error == "disk full"
    assert (await sql_store.get_stats()).trashed_subscribers == 2


@pytest.mark.asyncio
async def test_bulk_rejects_empty_and_oversized_requests(sql_store) -> None:
    service = AdminService(sql_store)
    with pytest.raises(ValidationError):
        await service.bulk("restore", [])
    with pytest.raises(ValidationError):
        await service.bulk("restore", list(range(MAX_BULK_IDS + 1)))


@pytest.mark.asyncio
async def test_single_operations_raise_not_found_on_illegal_transition(sql_store) -> None:
    subscriber = await sql_store.add_subscriber(NewSubscriber(email="ada@example.com"))
    service = AdminService(sql_store)

    with pytest.raises(NotFoundError):
        await service.restore(subscriber.id)
    with pytest.raises(NotFoundError):
        await service.permanently_delete(subscriber.id)
    await service.soft_delete(subscriber.id)
    with pytest.raises(NotFoundError):
        await service.soft_delete(subscriber.id)
    await service.permanently_delete(subscriber.id)
    assert await service.list_trashed() == []
