from __future__ import annotations

import asyncio
import logging
from typing import Any

from bson.errors import InvalidDocument
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from newsletter_tracker.core.errors import ConflictError, NotFoundError, StorageError
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


logger = logging.getLogger(__name__)

SUBSCRIBERS = "subscribers"
BEHAVIORAL_EVENTS = "behavioral_events"
SNAPSHOTS = "device_location_snapshots"
PAGE_VIEWS = "page_views"
COUNTERS = "counters"
# Purge order: owned collections first, the subscriber document last.
OWNED_COLLECTIONS = (BEHAVIORAL_EVENTS, SNAPSHOTS, PAGE_VIEWS)


def _subscriber_record(doc: dict[str, Any]) -> SubscriberRecord:
    return SubscriberRecord(
        id=int(doc["_id"]),
        email=doc["email"],
        first_name=doc.get("first_name"),
        external_customer_id=doc.get("external_customer_id"),
        subscription_status=doc.get("subscription_status", SubscriptionStatus.PENDING.value),
        ip_address=doc.get("ip_address"),
        user_agent=doc.get("user_agent"),
        referrer=doc.get("referrer"),
        source=doc.get("source"),
        session_id=doc.get("session_id"),
        deleted_at=as_utc(doc.get("deleted_at")),
        created_at=as_utc(doc.get("created_at")),
        updated_at=as_utc(doc.get("updated_at")),
    )


def _event_record(doc: dict[str, Any]) -> EventRecord:
    return EventRecord(
        id=int(doc["_id"]),
        subscriber_id=int(doc["subscriber_id"]),
        session_id=doc.get("session_id"),
        event_type=doc["event_type"],
        event_data=dict(doc.get("event_data") or {}),
        page_url=doc.get("page_url"),
        page_title=doc.get("page_title"),
        referrer=doc.get("referrer"),
        captured_at=as_utc(doc.get("captured_at")),
    )


def _snapshot_record(doc: dict[str, Any]) -> SnapshotRecord:
    location = dict(doc.get("location") or {})
    return SnapshotRecord(
        id=int(doc["_id"]),
        subscriber_id=int(doc["subscriber_id"]),
        device_type=doc.get("device_type"),
        browser=doc.get("browser"),
        operating_system=doc.get("operating_system"),
        country=location_field(location, "country"),
        region=location_field(location, "region"),
        city=location_field(location, "city"),
        device=dict(doc.get("device") or {}),
        location=location,
        page=dict(doc.get("page") or {}),
        created_at=as_utc(doc.get("created_at")),
    )


def _page_view_record(doc: dict[str, Any]) -> PageViewRecord:
    return PageViewRecord(
        id=int(doc["_id"]),
        subscriber_id=int(doc["subscriber_id"]),
        session_id=doc.get("session_id"),
        page_url=doc["page_url"],
        page_title=doc.get("page_title"),
        time_spent_ms=doc.get("time_spent_ms"),
        referrer=doc.get("referrer"),
        viewed_at=as_utc(doc.get("viewed_at")),
    )


class MongoSubscriberStore:
    """Document backend on MongoDB.

    Ids come from a per-collection counter document so they are integers that
    only ever grow, matching the relational backend. Purge relies on ordered
    single-document deletes instead of a multi-document transaction: owned
    documents go first, the subscriber last, and a failure part-way is logged
    as an inconsistency that needs manual cleanup.
    """

    def __init__(
        self,
        uri: str,
        database: str,
        *,
        client: AsyncIOMotorClient | None = None,
    ) -> None:
        self._client = client or AsyncIOMotorClient(uri, tz_aware=True)
        self._db = self._client[database]
        self._purge_lock = asyncio.Lock()

    async def connect(self) -> None:
        try:
            await self._db[SUBSCRIBERS].create_index([("email", ASCENDING)], unique=True)
            await self._db[SUBSCRIBERS].create_index([("deleted_at", ASCENDING)])
            await self._db[SUBSCRIBERS].create_index([("created_at", DESCENDING)])
            for name in OWNED_COLLECTIONS:
                await self._db[name].create_index([("subscriber_id", ASCENDING)])
            await self._db[BEHAVIORAL_EVENTS].create_index(
                [("session_id", ASCENDING), ("captured_at", DESCENDING)]
            )
        except PyMongoError as exc:
            raise StorageError("Failed to initialize document storage") from exc

    async def close(self) -> None:
        self._client.close()

    async def _next_id(self, collection: str) -> int:
        counter = await self._db[COUNTERS].find_one_and_update(
            {"_id": collection},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    async def add_subscriber(self, subscriber: NewSubscriber) -> SubscriberRecord:
        email = normalize_email(subscriber.email)
        now = utc_now()
        try:
            doc = {
                "_id": await self._next_id(SUBSCRIBERS),
                "email": email,
                "first_name": subscriber.first_name,
                "external_customer_id": subscriber.external_customer_id,
                "subscription_status": checked_status(subscriber.subscription_status).value,
                "ip_address": subscriber.ip_address,
                "user_agent": subscriber.user_agent,
                "referrer": subscriber.referrer,
                "source": subscriber.source,
                "session_id": subscriber.session_id,
                "deleted_at": None,
                "created_at": now,
                "updated_at": now,
            }
            await self._db[SUBSCRIBERS].insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConflictError(f"Email already exists: {email}") from exc
        except PyMongoError as exc:
            raise StorageError("Failed to add subscriber") from exc
        return _subscriber_record(doc)

    async def get_subscriber_by_email(self, email: str) -> SubscriberRecord | None:
        normalized = normalize_email(email)
        try:
            doc = await self._db[SUBSCRIBERS].find_one({"email": normalized})
        except PyMongoError as exc:
            raise StorageError("Failed to look up subscriber") from exc
        return _subscriber_record(doc) if doc is not None else None

    async def _insert_owned(self, collection: str, subscriber_id: int, doc: dict[str, Any]) -> int:
        try:
            if await self._db[SUBSCRIBERS].count_documents({"_id": subscriber_id}, limit=1) == 0:
                raise NotFoundError(f"Subscriber {subscriber_id} not found")
            doc_id = await self._next_id(collection)
            await self._db[collection].insert_one({"_id": doc_id, "subscriber_id": subscriber_id, **doc})
        except (PyMongoError, InvalidDocument, OverflowError) as exc:
            raise StorageError("Failed to write subscriber activity") from exc
        return doc_id

    async def add_behavioral_event(self, event: NewBehavioralEvent) -> int:
        event = checked_event(event)
        return await self._insert_owned(
            BEHAVIORAL_EVENTS,
            event.subscriber_id,
            {
                "session_id": event.session_id,
                "event_type": event.event_type,
                "event_data": dict(event.event_data or {}),
                "page_url": event.page_url,
                "page_title": event.page_title,
                "referrer": event.referrer,
                "captured_at": event.captured_at or utc_now(),
            },
        )

    async def add_device_location_snapshot(self, snapshot: NewDeviceLocationSnapshot) -> int:
        snapshot = checked_snapshot(snapshot)
        return await self._insert_owned(
            SNAPSHOTS,
            snapshot.subscriber_id,
            {
                "device_type": snapshot.device_type,
                "browser": snapshot.browser,
                "operating_system": snapshot.operating_system,
                "device": dict(snapshot.device or {}),
                "location": dict(snapshot.location or {}),
                "page": dict(snapshot.page or {}),
                "created_at": utc_now(),
            },
        )

    async def add_page_view(self, page_view: NewPageView) -> int:
        page_view = checked_page_view(page_view)
        return await self._insert_owned(
            PAGE_VIEWS,
            page_view.subscriber_id,
            {
                "session_id": page_view.session_id,
                "page_url": page_view.page_url,
                "page_title": page_view.page_title,
                "time_spent_ms": page_view.time_spent_ms,
                "referrer": page_view.referrer,
                "viewed_at": page_view.viewed_at or utc_now(),
            },
        )

    async def _counts_by_subscriber(self, collection: str, ids: list[int]) -> dict[int, int]:
        pipeline = [
            {"$match": {"subscriber_id": {"$in": ids}}},
            {"$group": {"_id": "$subscriber_id", "count": {"$sum": 1}}},
        ]
        counts: dict[int, int] = {}
        async for row in self._db[collection].aggregate(pipeline):
            counts[int(row["_id"])] = int(row["count"])
        return counts

    async def _list(self, *, trashed: bool) -> list[SubscriberSummary]:
        if trashed:
            query: dict[str, Any] = {"deleted_at": {"$ne": None}}
            order = [("deleted_at", DESCENDING), ("_id", DESCENDING)]
        else:
            query = {"deleted_at": None}
            order = [("created_at", DESCENDING), ("_id", DESCENDING)]
        try:
            docs = [doc async for doc in self._db[SUBSCRIBERS].find(query).sort(order)]
            ids = [int(doc["_id"]) for doc in docs]
            event_counts = await self._counts_by_subscriber(BEHAVIORAL_EVENTS, ids)
            view_counts = await self._counts_by_subscriber(PAGE_VIEWS, ids)
            snapshots: dict[int, SnapshotRecord] = {}
            cursor = self._db[SNAPSHOTS].find({"subscriber_id": {"$in": ids}}).sort("_id", ASCENDING)
            async for snap in cursor:
                # The earliest snapshot is the signup-time one.
                snapshots.setdefault(int(snap["subscriber_id"]), _snapshot_record(snap))
        except PyMongoError as exc:
            raise StorageError("Failed to list subscribers") from exc

        summaries: list[SubscriberSummary] = []
        for doc in docs:
            subscriber_id = int(doc["_id"])
            snapshot = snapshots.get(subscriber_id)
            summaries.append(
                SubscriberSummary(
                    subscriber=_subscriber_record(doc),
                    country=snapshot.country if snapshot else None,
                    region=snapshot.region if snapshot else None,
                    city=snapshot.city if snapshot else None,
                    device_type=snapshot.device_type if snapshot else None,
                    browser=snapshot.browser if snapshot else None,
                    behavioral_events_count=event_counts.get(subscriber_id, 0),
                    page_views_count=view_counts.get(subscriber_id, 0),
                )
            )
        return summaries

    async def list_active_subscribers_with_counts(self) -> list[SubscriberSummary]:
        return await self._list(trashed=False)

    async def list_trashed_subscribers_with_counts(self) -> list[SubscriberSummary]:
        return await self._list(trashed=True)

    async def soft_delete(self, subscriber_id: int) -> bool:
        now = utc_now()
        try:
            result = await self._db[SUBSCRIBERS].update_one(
                {"_id": subscriber_id, "deleted_at": None},
                {"$set": {"deleted_at": now, "updated_at": now}},
            )
        except PyMongoError as exc:
            raise StorageError("Failed to move subscriber to trash") from exc
        return result.matched_count > 0

    async def restore(self, subscriber_id: int) -> bool:
        try:
            result = await self._db[SUBSCRIBERS].update_one(
                {"_id": subscriber_id, "deleted_at": {"$ne": None}},
                {"$set": {"deleted_at": None, "updated_at": utc_now()}},
            )
        except PyMongoError as exc:
            raise StorageError("Failed to restore subscriber") from exc
        return result.matched_count > 0

    async def permanently_delete(self, subscriber_id: int) -> bool:
        async with self._purge_lock:
            try:
                trashed = await self._db[SUBSCRIBERS].count_documents(
                    {"_id": subscriber_id, "deleted_at": {"$ne": None}}, limit=1
                )
            except PyMongoError as exc:
                raise StorageError("Failed to permanently delete subscriber") from exc
            if not trashed:
                return False

            deleted: dict[str, int] = {}
            try:
                for name in OWNED_COLLECTIONS:
                    result = await self._db[name].delete_many({"subscriber_id": subscriber_id})
                    deleted[name] = result.deleted_count
                result = await self._db[SUBSCRIBERS].delete_one(
                    {"_id": subscriber_id, "deleted_at": {"$ne": None}}
                )
            except PyMongoError as exc:
                logger.critical(
                    "subscriber_purge_partial subscriber_id=%s deleted=%s manual remediation required",
                    subscriber_id,
                    deleted,
                    exc_info=exc,
                )
                raise StorageError("Permanent delete stopped part-way; manual remediation required") from exc
            if result.deleted_count == 0:
                # Restored after the owned documents were removed.
                logger.critical(
                    "subscriber_purge_partial subscriber_id=%s deleted=%s subscriber row survived",
                    subscriber_id,
                    deleted,
                )
                raise StorageError("Permanent delete stopped part-way; manual remediation required")
        logger.info("subscriber_purged subscriber_id=%s deleted=%s", subscriber_id, deleted)
        return True

    async def update_subscription_status(
        self, subscriber_id: int, status: str | SubscriptionStatus
    ) -> bool:
        resolved = checked_status(status)
        try:
            result = await self._db[SUBSCRIBERS].update_one(
                {"_id": subscriber_id},
                {"$set": {"subscription_status": resolved.value, "updated_at": utc_now()}},
            )
        except PyMongoError as exc:
            raise StorageError("Failed to update subscription status") from exc
        return result.matched_count > 0

    async def get_subscriber_detail(self, subscriber_id: int) -> SubscriberDetail:
        try:
            doc = await self._db[SUBSCRIBERS].find_one({"_id": subscriber_id})
            if doc is None:
                raise NotFoundError(f"Subscriber {subscriber_id} not found")
            snapshot = await self._db[SNAPSHOTS].find_one(
                {"subscriber_id": subscriber_id}, sort=[("_id", ASCENDING)]
            )
            events = [
                event
                async for event in self._db[BEHAVIORAL_EVENTS]
                .find({"subscriber_id": subscriber_id})
                .sort("_id", ASCENDING)
            ]
            page_views = [
                view
                async for view in self._db[PAGE_VIEWS]
                .find({"subscriber_id": subscriber_id})
                .sort("_id", ASCENDING)
            ]
        except PyMongoError as exc:
            raise StorageError("Failed to load subscriber detail") from exc
        return SubscriberDetail(
            subscriber=_subscriber_record(doc),
            device_location=_snapshot_record(snapshot) if snapshot is not None else None,
            behavioral=[_event_record(event) for event in events],
            page_views=[_page_view_record(view) for view in page_views],
        )

    async def get_stats(self) -> StoreStats:
        try:
            total = await self._db[SUBSCRIBERS].count_documents({})
            active = await self._db[SUBSCRIBERS].count_documents({"deleted_at": None})
            trashed = await self._db[SUBSCRIBERS].count_documents({"deleted_at": {"$ne": None}})
            events = await self._db[BEHAVIORAL_EVENTS].count_documents({})
        except PyMongoError as exc:
            raise StorageError("Failed to compute storage stats") from exc
        return StoreStats(
            total_subscribers=total,
            active_subscribers=active,
            trashed_subscribers=trashed,
            total_events=events,
        )
