from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from newsletter_tracker.core.errors import NewsletterError, NotFoundError, ValidationError
from newsletter_tracker.persistence.base import (
    StoreStats,
    SubscriberDetail,
    SubscriberStore,
    SubscriberSummary,
)


logger = logging.getLogger(__name__)

BulkAction = Literal["soft_delete", "restore", "permanent_delete"]
ItemStatus = Literal["applied", "skipped", "failed"]

# Bulk requests above this size are rejected up front.
MAX_BULK_IDS = 1000


@dataclass(frozen=True)
class ItemOutcome:
    subscriber_id: int
    status: ItemStatus
    error: str | None = None


@dataclass(frozen=True)
class BulkResult:
    action: BulkAction
    requested: int
    applied: int
    outcomes: list[ItemOutcome]

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "failed")

    @property
    def skipped(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "skipped")


class AdminService:
    """Subscriber listings and trash lifecycle operations for operators."""

    def __init__(self, store: SubscriberStore) -> None:
        self._store = store

    async def list_active(self) -> list[SubscriberSummary]:
        return await self._store.list_active_subscribers_with_counts()

    async def list_trashed(self) -> list[SubscriberSummary]:
        return await self._store.list_trashed_subscribers_with_counts()

    async def detail(self, subscriber_id: int) -> SubscriberDetail:
        return await self._store.get_subscriber_detail(subscriber_id)

    async def stats(self) -> StoreStats:
        return await self._store.get_stats()

    async def soft_delete(self, subscriber_id: int) -> None:
        if not await self._store.soft_delete(subscriber_id):
            raise NotFoundError("Subscriber not found or already deleted")
        logger.info("subscriber_trashed subscriber_id=%s", subscriber_id)

    async def restore(self, subscriber_id: int) -> None:
        if not await self._store.restore(subscriber_id):
            raise NotFoundError("Subscriber not found in trash")
        logger.info("subscriber_restored subscriber_id=%s", subscriber_id)

    async def permanently_delete(self, subscriber_id: int) -> None:
        if not await self._store.permanently_delete(subscriber_id):
            raise NotFoundError("Subscriber not found in trash")

    def _operation(self, action: BulkAction) -> Callable[[int], Awaitable[bool]]:
        return {
            "soft_delete": self._store.soft_delete,
            "restore": self._store.restore,
            "permanent_delete": self._store.permanently_delete,
        }[action]

    async def bulk(self, action: BulkAction, subscriber_ids: list[int]) -> BulkResult:
        if not subscriber_ids:
            raise ValidationError("Subscriber IDs array is required")
        if len(subscriber_ids) > MAX_BULK_IDS:
            raise ValidationError(f"At most {MAX_BULK_IDS} subscriber IDs per request")
        operation = self._operation(action)
        outcomes: list[ItemOutcome] = []
        # Items run one by one; a failing item is recorded and the batch continues.
        for subscriber_id in subscriber_ids:
            try:
                changed = await operation(subscriber_id)
            except NewsletterError as exc:
                logger.warning(
                    "bulk_item_failed action=%s subscriber_id=%s", action, subscriber_id, exc_info=exc
                )
                outcomes.append(ItemOutcome(subscriber_id, "failed", str(exc)))
                continue
            outcomes.append(ItemOutcome(subscriber_id, "applied" if changed else "skipped"))
        applied = sum(1 for outcome in outcomes if outcome.status == "applied")
        logger.info(
            "bulk_completed action=%s applied=%s requested=%s", action, applied, len(subscriber_ids)
        )
        return BulkResult(action=action, requested=len(subscriber_ids), applied=applied, outcomes=outcomes)
