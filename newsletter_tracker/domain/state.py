from __future__ import annotations

from datetime import datetime
from enum import Enum

from newsletter_tracker.core.errors import ValidationError


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    UNSUBSCRIBED = "unsubscribed"


class TrashState(str, Enum):
    # Purged records no longer exist, so only the two live states are observable.
    ACTIVE = "active"
    TRASHED = "trashed"


def trash_state(deleted_at: datetime | None) -> TrashState:
    return TrashState.ACTIVE if deleted_at is None else TrashState.TRASHED


def parse_status(value: str | SubscriptionStatus | None) -> SubscriptionStatus:
    if isinstance(value, SubscriptionStatus):
        return value
    try:
        return SubscriptionStatus((value or "").strip().lower())
    except ValueError as exc:
        allowed = ", ".join(status.value for status in SubscriptionStatus)
        raise ValidationError(f"Status must be one of: {allowed}") from exc


def normalize_email(email: str | None) -> str:
    # Emails are the natural key; compare and store them lowercased and trimmed.
    normalized = (email or "").strip().lower()
    if not normalized or "@" not in normalized:
        raise ValidationError("A valid email is required")
    return normalized
