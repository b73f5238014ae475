from __future__ import annotations

from typing import Any, AsyncIterator

import pytest
from mongomock_motor import AsyncMongoMockClient

from newsletter_tracker.core.config import get_settings, get_tracker_settings
from newsletter_tracker.core.errors import ExternalServiceError
from newsletter_tracker.persistence.base import SubscriberStore
from newsletter_tracker.persistence.mongo_store import MongoSubscriberStore
from newsletter_tracker.persistence.sql_store import SqlSubscriberStore


class StubDirectory:
    """In-memory customer directory; tests flip the failure switches directly."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.confirmed: set[str] = set()
        self.created: list[dict[str, Any]] = []
        self.fail_lookup = False
        self.fail_create = False
        self.closed = False

    async def find_by_email(self, email: str) -> dict[str, Any] | None:
        if self.fail_lookup:
            raise ExternalServiceError("Directory request failed")
        return self.records.get(email)

    async def create(self, email: str, name: str | None) -> dict[str, Any]:
        if self.fail_create:
            raise ExternalServiceError("Directory request failed")
        record = {
            "id": f"cust-{len(self.created) + 1}",
            "email": email,
            "first_name": name,
            "accepts_marketing": True,
            "tags": "",
        }
        self.created.append(record)
        self.records[email] = record
        return record

    def is_confirmed_subscriber(self, record: dict[str, Any] | None) -> bool:
        return bool(record) and record.get("email") in self.confirmed

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Settings are cached per process; tests that set env vars need a fresh read.
    get_settings.cache_clear()
    get_tracker_settings.cache_clear()
    yield
    get_settings.cache_clear()
    get_tracker_settings.cache_clear()


@pytest.fixture
async def sql_store(tmp_path) -> AsyncIterator[SqlSubscriberStore]:
    store = SqlSubscriberStore(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
async def mongo_store() -> AsyncIterator[MongoSubscriberStore]:
    store = MongoSubscriberStore(
        "mongodb://localhost:27017",
        "tracker_test",
        client=AsyncMongoMockClient(),
    )
    await store.connect()
    yield store


@pytest.fixture(params=["sql", "mongo"])
async def store(request, tmp_path) -> AsyncIterator[SubscriberStore]:
    # Every store-level behavior is checked against both backends.
    if request.param == "sql":
        backend: SubscriberStore = SqlSubscriberStore(f"sqlite+aiosqlite:///{tmp_path / 'parity.db'}")
    else:
        backend = MongoSubscriberStore(
            "mongodb://localhost:27017",
            "tracker_parity",
            client=AsyncMongoMockClient(),
        )
    await backend.connect()
    yield backend
    if request.param == "sql":
        await backend.close()


@pytest.fixture
def directory() -> StubDirectory:
    return StubDirectory()
