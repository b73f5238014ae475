from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from newsletter_tracker.core.config import Settings, get_settings
from newsletter_tracker.core.errors import DirectoryConfigError, ExternalServiceError
from newsletter_tracker.services.resilience import retry_async


logger = logging.getLogger(__name__)

DirectoryRecord = dict[str, Any]


class DirectoryClient(Protocol):
    """External customer directory consulted during signup and status sync."""

    async def find_by_email(self, email: str) -> DirectoryRecord | None:
        ...

    async def create(self, email: str, name: str | None) -> DirectoryRecord:
        ...

    def is_confirmed_subscriber(self, record: DirectoryRecord | None) -> bool:
        ...

    async def aclose(self) -> None:
        ...


class NullDirectory:
    """Directory stand-in for deployments without an external customer store."""

    async def find_by_email(self, email: str) -> DirectoryRecord | None:
        return None

    async def create(self, email: str, name: str | None) -> DirectoryRecord:
        return {"id": None, "email": email, "first_name": name}

    def is_confirmed_subscriber(self, record: DirectoryRecord | None) -> bool:
        return False

    async def aclose(self) -> None:
        return None


class ShopifyDirectory:
    """Shopify Admin REST API customer lookup and creation."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: str = "2023-10",
        subscriber_tag: str = "newsletter-subscriber",
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 8.0,
    ) -> None:
        if not shop_domain or not access_token:
            raise DirectoryConfigError("SHOPIFY_SHOP_DOMAIN and SHOPIFY_ACCESS_TOKEN are required")
        self._base_url = f"https://{shop_domain}/admin/api/{api_version}/"
        self._access_token = access_token
        self._subscriber_tag = subscriber_tag.lower()
        self._client = client
        self._timeout_s = timeout_s

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # One pooled client per directory instance.
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_s,
            headers={
                "X-Shopify-Access-Token": self._access_token,
                "Content-Type": "application/json",
            },
        )
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.request(method, path, **kwargs)
            if response.status_code >= 500:
                error = ExternalServiceError(f"Directory error: {response.status_code}")
                setattr(error, "status_code", response.status_code)
                raise error
            return response

        try:
            response = await retry_async(_call, name="directory.shopify")
        except httpx.HTTPError as exc:
            raise ExternalServiceError("Directory request failed") from exc
        except TimeoutError as exc:
            raise ExternalServiceError("Directory request timed out") from exc

        if response.status_code in {401, 403}:
            raise DirectoryConfigError("Directory auth error: check SHOPIFY_ACCESS_TOKEN")
        if response.status_code >= 400:
            error = ExternalServiceError(f"Directory error: {response.status_code}")
            setattr(error, "status_code", response.status_code)
            raise error
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalServiceError("Directory returned a non-JSON body") from exc

    async def find_by_email(self, email: str) -> DirectoryRecord | None:
        body = await self._request("GET", "customers/search.json", params={"query": f"email:{email}"})
        customers = body.get("customers") or []
        return customers[0] if customers else None

    async def create(self, email: str, name: str | None) -> DirectoryRecord:
        payload = {
            "customer": {
                "email": email,
                "first_name": name,
                "accepts_marketing": True,
                "tags": self._subscriber_tag,
                "verified_email": False,
                "email_marketing_consent": {
                    "state": "pending",
                    "opt_in_level": "confirmed_opt_in",
                    "consent_updated_at": datetime.now(timezone.utc).isoformat(),
                },
            }
        }
        body = await self._request("POST", "customers.json", json=payload)
        customers = body.get("customers")
        if customers:
            return customers[0]
        customer = body.get("customer")
        if not isinstance(customer, dict):
            raise ExternalServiceError("Directory create returned no customer")
        return customer

    def is_confirmed_subscriber(self, record: DirectoryRecord | None) -> bool:
        # Confirmed means tagged as a subscriber and opted into marketing.
        if not record or not record.get("tags"):
            return False
        tags = [tag.strip().lower() for tag in str(record["tags"]).split(",")]
        return self._subscriber_tag in tags and bool(record.get("accepts_marketing"))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def get_directory(settings: Settings | None = None) -> DirectoryClient:
    settings = settings or get_settings()
    provider = (settings.directory_provider or "none").lower()

    if provider == "none":
        return NullDirectory()
    if provider == "shopify":
        if not settings.shopify_shop_domain or not settings.shopify_access_token:
            # Run without reconciliation rather than refuse signups.
            logger.warning("directory_not_configured provider=shopify falling_back=none")
            return NullDirectory()
        return ShopifyDirectory(
            settings.shopify_shop_domain,
            settings.shopify_access_token,
            api_version=settings.shopify_api_version,
            subscriber_tag=settings.shopify_subscriber_tag,
            timeout_s=settings.ext_call_timeout_ms / 1000.0,
        )

    raise DirectoryConfigError(f"Unsupported directory provider: {provider}")
