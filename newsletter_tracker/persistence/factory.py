from __future__ import annotations

from newsletter_tracker.core.config import Settings, get_settings
from newsletter_tracker.core.errors import StorageConfigError
from newsletter_tracker.persistence.base import SubscriberStore
from newsletter_tracker.persistence.mongo_store import MongoSubscriberStore
from newsletter_tracker.persistence.sql_store import SqlSubscriberStore


def get_store(settings: Settings | None = None) -> SubscriberStore:
    settings = settings or get_settings()
    backend = (settings.storage_backend or "sql").lower()

    if backend in {"sql", "sqlite", "postgres", "postgresql"}:
        return SqlSubscriberStore(settings.database_url)
    if backend in {"mongo", "mongodb"}:
        if not settings.mongodb_uri:
            # Fail at startup rather than on the first request.
            raise StorageConfigError("MONGODB_URI is required when STORAGE_BACKEND=mongo")
        return MongoSubscriberStore(settings.mongodb_uri, settings.mongodb_database)

    raise StorageConfigError(f"Unsupported storage backend: {backend}")
