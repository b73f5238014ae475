from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Local store keys mirror the storefront script so cached history survives upgrades.
PAGE_VIEWS_STORAGE_KEY = "newsletterTracker_pageViews"
BEHAVIORAL_STORAGE_KEY = "newsletterTracker_behavioral"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "newsletter-tracker"
    log_level: str = "INFO"

    # Select the persistence backend at process start: sql or mongo.
    storage_backend: str = "sql"
    database_url: str = "sqlite+aiosqlite:///./newsletter_data.db"
    # Bounded pools only apply to server databases; SQLite ignores them.
    db_pool_size: int = 5
    db_max_overflow: int = 10

    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "newsletter_tracker"

    # Directory reconciliation provider: shopify or none.
    directory_provider: str = "shopify"
    shopify_shop_domain: str | None = None
    shopify_access_token: str | None = None
    shopify_api_version: str = "2023-10"
    # Tag that marks a directory customer as a newsletter subscriber.
    shopify_subscriber_tag: str = "newsletter-subscriber"

    # Centralize external call timeouts for integrations (ms).
    ext_call_timeout_ms: int = 8000
    # Retry transient integration failures for a bounded number of attempts.
    ext_retry_max_attempts: int = 2
    # Base backoff between retry attempts (ms), jittered per call.
    ext_retry_backoff_ms: int = 200

    # Reject oversized event payloads before they reach storage.
    event_data_max_bytes: int = 16384
    # Cap how much buffered history a single signup request may carry.
    signup_max_buffered_events: int = 500
    # Source tag recorded on subscribers created through signup.
    default_subscriber_source: str = "shopify_store"

    # Optional bearer token guarding the admin routes; unset disables the check.
    admin_api_key: str | None = None


class TrackerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TRACKER_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_base_url: str = "http://localhost:3000"
    # Persist the in-memory queue to the local store on this cadence.
    persist_interval_s: float = 5.0
    page_view_cap: int = 50
    event_cap: int = 100
    storage_path: str = "./newsletter_tracker_cache.json"
    location_lookup_url: str = "https://ipapi.co/json/"
    http_timeout_s: float = 10.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_tracker_settings() -> TrackerSettings:
    return TrackerSettings()
