from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from newsletter_tracker.apps.api.main import create_app
from newsletter_tracker.core.config import get_settings
from newsletter_tracker.persistence.base import (
    NewBehavioralEvent,
    NewDeviceLocationSnapshot,
    NewPageView,
    NewSubscriber,
)


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _seed(store, email: str, *, with_activity: bool = False) -> int:
    subscriber = await store.add_subscriber(NewSubscriber(email=email, first_name="Test"))
    if with_activity:
        await store.add_device_location_snapshot(
            NewDeviceLocationSnapshot(
                subscriber_id=subscriber.id,
                device_type="desktop",
                browser="Firefox",
                operating_system="Linux",
                location={"country": "Italy", "city": "Rome"},
            )
        )
        await store.add_behavioral_event(
            NewBehavioralEvent(subscriber_id=subscriber.id, event_type="page_view", event_data={"url": "/"})
        )
        await store.add_page_view(NewPageView(subscriber_id=subscriber.id, page_url="https://shop.test/"))
    return subscriber.id


@pytest.mark.asyncio
async def test_list_detail_and_stats(store) -> None:
    subscriber_id = await _seed(store, "ada@example.com", with_activity=True)
    await _seed(store, "bob@example.com")
    app = create_app(store=store)

    async with _client(app) as client:
        listing = await client.get("/api/admin/subscribers")
        assert listing.status_code == 200
        body = listing.json()
        assert body["success"] is True
        assert body["count"] == 2
        ada = next(row for row in body["data"] if row["email"] == "ada@example.com")
        assert ada["id"] == subscriber_id
        assert ada["country"] == "Italy"
        assert ada["browser"] == "Firefox"
        assert ada["behavioralEventsCount"] == 1
        assert ada["pageViewsCount"] == 1
        assert ada["deletedAt"] is None

        detail = await client.get(f"/api/admin/subscriber/{subscriber_id}")
        assert detail.status_code == 200
        data = detail.json()["data"]
        assert data["subscriber"]["email"] == "ada@example.com"
        assert data["deviceLocation"]["operatingSystem"] == "Linux"
        assert [event["eventType"] for event in data["behavioral"]] == ["page_view"]
        assert data["pageViews"][0]["pageUrl"] == "https://shop.test/"

        stats = await client.get("/api/admin/stats")
        assert stats.json()["data"] == {
            "totalSubscribers": 2,
            "activeSubscribers": 2,
            "trashedSubscribers": 0,
            "totalEvents": 1,
        }

        missing = await client.get("/api/admin/subscriber/99999")
        assert missing.status_code == 404
        not_an_id = await client.get("/api/admin/subscriber/abc")
        assert not_an_id.status_code == 422


@pytest.mark.asyncio
async def test_trash_lifecycle(store) -> None:
    subscriber_id = await _seed(store, "ada@example.com", with_activity=True)
    app = create_app(store=store)

    async with _client(app) as client:
        purge_active = await client.delete(f"/api/admin/subscriber/{subscriber_id}/permanent")
        assert purge_active.status_code == 404
        assert purge_active.json()["message"] == "Subscriber not found in trash"

        trashed = await client.delete(f"/api/admin/subscriber/{subscriber_id}")
        assert trashed.status_code == 200
        assert trashed.json() == {"success": True, "message": "Subscriber moved to trash successfully"}

        twice = await client.delete(f"/api/admin/subscriber/{subscriber_id}")
        assert twice.status_code == 404
        assert twice.json()["message"] == "Subscriber not found or already deleted"

        trash = await client.get("/api/admin/subscribers/trash")
        assert [row["id"] for row in trash.json()["data"]] == [subscriber_id]
        assert trash.json()["data"][0]["deletedAt"] is not None
        assert (await client.get("/api/admin/subscribers")).json()["count"] == 0

        restored = await client.post(f"/api/admin/subscriber/{subscriber_id}/restore")
        assert restored.status_code == 200
        restore_again = await client.post(f"/api/admin/subscriber/{subscriber_id}/restore")
        assert restore_again.status_code == 404

        await client.delete(f"/api/admin/subscriber/{subscriber_id}")
        purged = await client.delete(f"/api/admin/subscriber/{subscriber_id}/permanent")
        assert purged.status_code == 200
        assert purged.json()["message"] == "Subscriber permanently deleted"

        gone = await client.get(f"/api/admin/subscriber/{subscriber_id}")
        assert gone.status_code == 404

    stats = await store.get_stats()
    assert stats.total_subscribers == 0
    assert stats.total_events == 0


@pytest.mark.asyncio
async def test_bulk_operations_report_per_item_outcomes(sql_store) -> None:
    first = await _seed(sql_store, "one@example.com")
    second = await _seed(sql_store, "two@example.com")
    app = create_app(store=sql_store)

    async with _client(app) as client:
        deleted = await client.post(
            "/api/admin/subscribers/bulk-delete", json={"subscriberIds": [first, second, 99999]}
        )
        assert deleted.status_code == 200
        body = deleted.json()
        assert body["message"] == "2 subscribers moved to trash"
        assert body["counts"] == {"requested": 3, "applied": 2, "skipped": 1, "failed": 0}
        assert [item["status"] for item in body["outcomes"]] == ["applied", "applied", "skipped"]

        restored = await client.post("/api/admin/subscribers/bulk-restore", json={"subscriberIds": [first]})
        assert restored.json()["counts"]["applied"] == 1

        purged = await client.post(
            "/api/admin/subscribers/bulk-permanent-delete", json={"subscriberIds": [first, second]}
        )
        assert purged.json()["counts"] == {"requested": 2, "applied": 1, "skipped": 1, "failed": 0}
        assert purged.json()["message"] == "1 subscribers permanently deleted"

        empty = await client.post("/api/admin/subscribers/bulk-delete", json={"subscriberIds": []})
        assert empty.status_code == 422
        assert empty.json()["message"] == "Subscriber IDs array is required"

    remaining = await sql_store.list_active_subscribers_with_counts()
    assert [row.subscriber.id for row in remaining] == [first]


@pytest.mark.asyncio
async def test_admin_routes_require_bearer_key_when_configured(sql_store, monkeypatch) -> None:
    monkeypatch.setenv("ADMIN_API_KEY", "s3cret")
    # The store fixture already primed the settings cache; re-read the env.
    get_settings.cache_clear()
    app = create_app(store=sql_store)

    async with _client(app) as client:
        anonymous = await client.get("/api/admin/stats")
        assert anonymous.status_code == 401
        assert anonymous.json()["code"] == "AUTH_UNAUTHORIZED"

        wrong = await client.get("/api/admin/stats", headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401

        allowed = await client.get("/api/admin/stats", headers={"Authorization": "Bearer s3cret"})
        assert allowed.status_code == 200

        # Storefront routes stay public.
        public = await client.post("/api/track/event", json={"email": "x@example.com", "eventType": "page_view"})
        assert public.status_code == 404
