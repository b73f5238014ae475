from __future__ import annotations

import httpx
import pytest

from newsletter_tracker.client.transport import IngestionClient, detect_location
from newsletter_tracker.core.errors import DeliveryError


def _client(handler) -> IngestionClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://api.test")
    return IngestionClient("http://api.test", client=http)


@pytest.mark.asyncio
async def test_signup_returns_body_for_success_and_client_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/newsletter/signup"
        if b"ada@example.com" in request.content:
            return httpx.Response(200, json={"success": True, "message": "Thanks", "newSubscriber": True})
        return httpx.Response(422, json={"code": "VALIDATION_ERROR", "message": "Email and first name are required"})

    client = _client(handler)

    ok = await client.signup({"email": "ada@example.com", "firstName": "Ada"})
    assert ok["newSubscriber"] is True

    rejected = await client.signup({"email": "", "firstName": ""})
    assert rejected["success"] is False
    assert rejected["message"] == "Email and first name are required"
    await client.aclose()


@pytest.mark.asyncio
async def test_signup_server_error_raises_with_status() -> None:
    client = _client(lambda request: httpx.Response(500, json={"success": False, "message": "Storage operation failed"}))
    with pytest.raises(DeliveryError) as excinfo:
        await client.signup({"email": "ada@example.com", "firstName": "Ada"})
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_tracking_rejections_and_network_failures() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path.endswith("/page-view"):
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"success": False, "code": "NOT_FOUND", "message": "Subscriber not found"})

    client = _client(handler)
    await client.track_page_view({"email": "ada@example.com", "pageUrl": "https://shop.test/"})
    with pytest.raises(DeliveryError) as excinfo:
        await client.track_event({"email": "ada@example.com", "eventType": "page_view"})
    assert excinfo.value.status_code == 404
    assert paths == ["/api/track/page-view", "/api/track/event"]

    def offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    with pytest.raises(DeliveryError) as excinfo:
        await _client(offline).track_event({"email": "ada@example.com", "eventType": "page_view"})
    assert excinfo.value.status_code is None


@pytest.mark.asyncio
async def test_detect_location_maps_lookup_fields() -> None:
    body = {
        "ip": "203.0.113.5",
        "city": "Rome",
        "region": "Lazio",
        "country_name": "Italy",
        "country_code": "IT",
        "postal": "",
        "timezone": "Europe/Rome",
    }
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))

    location = await detect_location("https://geo.test/json/", client=http)

    assert location == {
        "country": "Italy",
        "countryCode": "IT",
        "region": "Lazio",
        "city": "Rome",
        "timezone": "Europe/Rome",
        "ip": "203.0.113.5",
        "method": "ip_geolocation",
    }


@pytest.mark.asyncio
async def test_detect_location_failures_yield_empty_mapping() -> None:
    failing = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(429)))
    assert await detect_location("https://geo.test/json/", client=failing) == {}

    error_body = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"error": True, "reason": "RateLimited"}))
    )
    assert await detect_location("https://geo.test/json/", client=error_body) == {}
