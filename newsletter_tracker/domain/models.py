from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite for local runs and tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements BIGINT primary keys when declared as INTEGER.
IdType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Subscriber(Base):
    __tablename__ = "subscribers"
    __table_args__ = (
        Index("ix_subscribers_deleted_at", "deleted_at"),
        Index("ix_subscribers_created_at", "created_at"),
        # AUTOINCREMENT keeps SQLite from reusing ids of purged rows.
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    # Stored lowercased; uniqueness here is what makes signup idempotent.
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Soft-delete marker: null while active, delete time while in the trash.
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BehavioralEvent(Base):
    __tablename__ = "behavioral_events"
    __table_args__ = (
        Index("ix_behavioral_events_subscriber_ts", "subscriber_id", "captured_at"),
        Index("ix_behavioral_events_session_ts", "session_id", "captured_at"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int] = mapped_column(
        IdType, ForeignKey("subscribers.id"), nullable=False
    )
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_data: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    page_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    page_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DeviceLocationSnapshot(Base):
    __tablename__ = "device_location_snapshots"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int] = mapped_column(
        IdType, ForeignKey("subscribers.id"), nullable=False, index=True
    )
    # Parsed from the request user agent at signup.
    device_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    browser: Mapped[str | None] = mapped_column(String(32), nullable=True)
    operating_system: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # Flattened location fields back the list views without JSON extraction.
    country: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    city: Mapped[str | None] = mapped_column(String, nullable=True)
    device_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    location_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    page_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PageView(Base):
    __tablename__ = "page_views"
    __table_args__ = (
        Index("ix_page_views_subscriber_ts", "subscriber_id", "viewed_at"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[int] = mapped_column(
        IdType, ForeignKey("subscribers.id"), nullable=False
    )
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    page_url: Mapped[str] = mapped_column(Text, nullable=False)
    page_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Milliseconds spent on the page before unload.
    time_spent_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    viewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# Children in dependency order; purge deletes these before the subscriber row.
OWNED_MODELS = (BehavioralEvent, DeviceLocationSnapshot, PageView)
