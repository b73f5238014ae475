from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from newsletter_tracker.core.config import get_settings


def create_engine_for(database_url: str) -> AsyncEngine:
    settings = get_settings()
    _engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded pools for server databases; SQLite manages its own connections.
    if not database_url.startswith("sqlite"):
        _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        _engine_kwargs["pool_timeout"] = 30
        _engine_kwargs["pool_recycle"] = 1800
    engine = create_async_engine(database_url, **_engine_kwargs)
    if database_url.startswith("sqlite"):
        # SQLite ignores foreign keys unless enabled per connection.
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_sqlite_fks(dbapi_connection, _record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    sessionmaker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    # One unit of work: commit on success, roll back on any error.
    async with sessionmaker() as session:
        async with session.begin():
            yield session
