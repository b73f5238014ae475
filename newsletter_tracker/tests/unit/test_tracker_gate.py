from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncIterator

import pytest

from newsletter_tracker.client.cache import LocalEventCache, MemoryLocalStore
from newsletter_tracker.client.capture import PageContext
from newsletter_tracker.client.tracker import NewsletterTracker
from newsletter_tracker.core.config import TrackerSettings
from newsletter_tracker.core.errors import DeliveryError


HOME = PageContext(url="https://shop.test/", title="Home", referrer="https://google.com/")
PRODUCT = PageContext(url="https://shop.test/products/mug", title="Mug", referrer="https://shop.test/")


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.signups: list[dict[str, Any]] = []
        self.signup_response: dict[str, Any] = {"success": True, "message": "Thanks", "newSubscriber": True}
        self.signup_offline = False
        self.tracking_offline = False
        self.reject_types: set[str] = set()

    async def signup(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.signups.append(payload)
        if self.signup_offline:
            raise DeliveryError("offline")
        return dict(self.signup_response)

    async def track_event(self, payload: dict[str, Any]) -> None:
        if self.tracking_offline:
            raise DeliveryError("offline")
        if payload["eventType"] in self.reject_types:
            raise DeliveryError("rejected", status_code=422)
        self.sent.append(("event", payload))

    async def track_page_view(self, payload: dict[str, Any]) -> None:
        if self.tracking_offline:
            raise DeliveryError("offline")
        self.sent.append(("page_view", payload))


class _Clock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        # Every reading advances one second so capture order is unambiguous.
        self.now += 1.0
        return self.now


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
async def tracker(transport) -> AsyncIterator[NewsletterTracker]:
    async def _location() -> dict[str, Any]:
        return {"country": "Italy", "method": "ip_geolocation"}

    instance = NewsletterTracker(
        transport,  # type: ignore[arg-type]
        LocalEventCache(MemoryLocalStore()),
        page=HOME,
        settings=TrackerSettings(persist_interval_s=3600),
        session_id="sess_test",
        clock=_Clock(),
        location_lookup=_location,
    )
    yield instance
    await instance.stop()


async def _browse(tracker: NewsletterTracker) -> None:
    await tracker.start()
    tracker.track("button_click", {"id": "hero"})
    tracker.navigate(PRODUCT)


def _kinds(transport: FakeTransport) -> list[str]:
    return [payload.get("eventType") or kind for kind, payload in transport.sent]


@pytest.mark.asyncio
async def test_nothing_is_sent_before_identity(tracker, transport) -> None:
    await _browse(tracker)
    tracker.capture.scroll(900, 2000, 1000)

    report = await tracker.drain()

    assert transport.sent == []
    assert report.events_sent == 0
    assert tracker.identity is None
    tracker.cache.flush_to_local_storage()
    assert len(tracker.cache.stored_page_views()) == 1
    assert [entry["type"] for entry in tracker.cache.stored_events()] == [
        "page_view",
        "button_click",
        "page_view",
        "product_view",
        "scroll_depth",
    ]


@pytest.mark.asyncio
async def test_new_signup_carries_history_and_drains_the_rest(tracker, transport) -> None:
    await _browse(tracker)

    result = await tracker.signup("Ada@Example.com", "Ada", device_data={"platform": "test"})

    assert result["newSubscriber"] is True
    assert tracker.identity == "ada@example.com"
    payload = transport.signups[0]
    assert payload["sessionId"] == "sess_test"
    assert payload["locationData"] == {"country": "Italy", "method": "ip_geolocation"}
    assert payload["pageData"]["url"] == PRODUCT.url
    assert [entry["type"] for entry in payload["behavioralData"]] == [
        "page_view",
        "button_click",
        "page_view",
        "product_view",
        "newsletter_signup_attempt",
    ]
    # Events stored with the signup are not sent again; the page view and success event are.
    assert _kinds(transport) == ["page_view", "newsletter_signup_success"]
    assert all(p["email"] == "ada@example.com" for _, p in transport.sent)
    assert tracker.cache.stored_events() == []
    assert tracker.cache.stored_page_views() == []


@pytest.mark.asyncio
async def test_existing_subscriber_drain_is_in_capture_order(tracker, transport) -> None:
    transport.signup_response = {"success": True, "message": "Already", "alreadySubscribed": True}
    await _browse(tracker)

    await tracker.signup("ada@example.com", "Ada", device_data={})

    assert _kinds(transport) == [
        "page_view",
        "button_click",
        "page_view",
        "page_view",
        "product_view",
        "newsletter_signup_attempt",
        "newsletter_signup_success",
    ]
    kinds = [kind for kind, _ in transport.sent]
    assert kinds[2] == "page_view"
    assert transport.sent[2][1]["timeSpent"] > 0
    assert tracker.cache.stored_events() == []
    assert tracker.cache.stored_page_views() == []


@pytest.mark.asyncio
async def test_identified_activity_is_sent_live_and_not_redrained(tracker, transport) -> None:
    await tracker.signup("ada@example.com", "Ada", device_data={})
    transport.sent.clear()

    tracker.track("cart_view")
    tracker.navigate(HOME)
    await tracker.wait_for_pending_sends()

    assert "cart_view" in _kinds(transport)
    assert sum(1 for kind, _ in transport.sent if kind == "page_view") == 1
    sent_before = len(transport.sent)

    report = await tracker.drain()

    assert report.events_sent == 0
    assert report.page_views_sent == 0
    assert len(transport.sent) == sent_before
    assert tracker.cache.stored_events() == []
    assert tracker.cache.stored_page_views() == []


@pytest.mark.asyncio
async def test_network_error_interrupts_drain_and_keeps_history(tracker, transport) -> None:
    transport.signup_response = {"success": True, "message": "Already", "alreadySubscribed": True}
    transport.tracking_offline = True
    await _browse(tracker)

    result = await tracker.signup("ada@example.com", "Ada", device_data={})

    assert result["success"] is True
    assert tracker.identity == "ada@example.com"
    assert transport.sent == []
    assert len(tracker.cache.stored_events()) == 6
    assert len(tracker.cache.stored_page_views()) == 1

    transport.tracking_offline = False
    report = await tracker.drain()

    assert report.interrupted is False
    assert report.events_sent == 6
    assert report.page_views_sent == 1
    assert tracker.cache.stored_events() == []


@pytest.mark.asyncio
async def test_rejected_entries_are_dropped_and_drain_continues(tracker, transport) -> None:
    transport.signup_response = {"success": True, "message": "Already", "alreadySubscribed": True}
    transport.reject_types = {"button_click"}
    await _browse(tracker)

    await tracker.signup("ada@example.com", "Ada", device_data={})

    assert "button_click" not in _kinds(transport)
    assert "newsletter_signup_success" in _kinds(transport)
    assert tracker.cache.stored_events() == []


@pytest.mark.asyncio
async def test_signup_network_failure_keeps_visitor_anonymous(tracker, transport) -> None:
    transport.signup_offline = True
    await tracker.start()

    result = await tracker.signup("ada@example.com", "Ada", device_data={})

    assert result == {"success": False, "message": "Network error occurred"}
    assert tracker.identity is None
    assert transport.sent == []
    assert tracker.cache.pending()[-1]["type"] == "newsletter_signup_error"


@pytest.mark.asyncio
async def test_signup_rejection_is_returned_without_identity(tracker, transport) -> None:
    transport.signup_response = {"success": False, "message": "Email and first name are required"}

    result = await tracker.signup("", "", device_data={})

    assert result["success"] is False
    assert tracker.identity is None
    assert transport.sent == []


@pytest.mark.asyncio
async def test_stop_persists_pending_events(tracker) -> None:
    await tracker.start()
    tracker.track("button_click")

    await tracker.stop()

    assert tracker.cache.pending() == []
    assert [entry["type"] for entry in tracker.cache.stored_events()] == ["page_view", "button_click"]


def test_device_info_shape() -> None:
    instance = NewsletterTracker(
        FakeTransport(),  # type: ignore[arg-type]
        LocalEventCache(MemoryLocalStore()),
        page=HOME,
        settings=TrackerSettings(),
    )
    info = instance.device_info()
    assert set(info) == {"timezone", "language", "platform"}
    assert instance.session_id.startswith("sess_")


@pytest.mark.asyncio
async def test_unserializable_event_data_does_not_break_signup(tracker, transport) -> None:
    await tracker.start()
    tracker.track("button_click", {"at": datetime(2024, 1, 1)})
    assert tracker.cache.flush_to_local_storage() == 2

    result = await tracker.signup("ada@example.com", "Ada")

    assert result["success"] is True
    assert tracker.identity == "ada@example.com"
    clicks = [entry for entry in transport.signups[0]["behavioralData"] if entry["type"] == "button_click"]
    assert clicks[0]["data"] == {"at": "2024-01-01 00:00:00"}
    assert tracker.cache.stored_events() == []


@pytest.mark.asyncio
async def test_unscheduled_live_send_stays_buffered_for_drain(tracker, transport, monkeypatch) -> None:
    transport.signup_response = {"success": True, "message": "Already", "alreadySubscribed": True}
    await tracker.signup("ada@example.com", "Ada", device_data={})
    transport.sent.clear()

    def _no_loop(coro, *, what):  # type: ignore[no-untyped-def]
        coro.close()
        raise RuntimeError("no running event loop")

    monkeypatch.setattr(tracker, "_dispatch", _no_loop)
    entry = tracker.track("cart_view")
    monkeypatch.undo()

    assert entry is not None
    assert "delivered" not in entry
    report = await tracker.drain()
    assert report.events_sent == 1
    assert _kinds(transport) == ["cart_view"]
