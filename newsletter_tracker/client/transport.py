from __future__ import annotations

import logging
from typing import Any

import httpx

from newsletter_tracker.core.errors import DeliveryError


logger = logging.getLogger(__name__)


class IngestionClient:
    """HTTP client for the ingestion endpoint used by the storefront tracker."""

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._timeout_s = timeout_s

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client for connection pooling.
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout_s)
        return self._client

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        try:
            return await self._get_client().post(path, json=payload)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"POST {path} failed: {type(exc).__name__}") from exc
        except (TypeError, ValueError) as exc:
            # The body could not be encoded as JSON, so nothing was sent.
            raise DeliveryError(f"POST {path} payload is not JSON serializable") from exc

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def signup(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return the endpoint's JSON body; 4xx bodies are returned, not raised."""
        response = await self._post("/api/newsletter/signup", payload)
        body = self._json(response)
        if response.status_code >= 500:
            raise DeliveryError(
                str(body.get("message") or f"Signup failed: {response.status_code}"),
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            body.setdefault("success", False)
        return body

    async def _track(self, path: str, payload: dict[str, Any]) -> None:
        response = await self._post(path, payload)
        if response.status_code >= 400:
            body = self._json(response)
            raise DeliveryError(
                str(body.get("message") or f"{path} rejected: {response.status_code}"),
                status_code=response.status_code,
            )

    async def track_event(self, payload: dict[str, Any]) -> None:
        await self._track("/api/track/event", payload)

    async def track_page_view(self, payload: dict[str, Any]) -> None:
        await self._track("/api/track/page-view", payload)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


async def detect_location(
    url: str = "https://ipapi.co/json/",
    *,
    client: httpx.AsyncClient | None = None,
    timeout_s: float = 5.0,
) -> dict[str, Any]:
    """Coarse IP geolocation; any failure yields an empty mapping."""
    owned = client is None
    http = client or httpx.AsyncClient(timeout=timeout_s)
    try:
        response = await http.get(url)
        response.raise_for_status()
        body = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.info("location_detect_failed url=%s", url, exc_info=exc)
        return {}
    finally:
        if owned:
            await http.aclose()
    if not isinstance(body, dict) or body.get("error"):
        return {}
    location = {
        "country": body.get("country_name"),
        "countryCode": body.get("country_code") or body.get("country"),
        "region": body.get("region"),
        "city": body.get("city"),
        "timezone": body.get("timezone"),
        "ip": body.get("ip"),
        "postal": body.get("postal"),
        "method": "ip_geolocation",
    }
    return {key: value for key, value in location.items() if value not in (None, "")}
