from __future__ import annotations

import json
from typing import Any, Literal, Mapping, TypedDict

from newsletter_tracker.core.errors import ValidationError


EventType = Literal[
    "page_view",
    "newsletter_form_view",
    "newsletter_form_field_focus",
    "newsletter_form_submit",
    "newsletter_form_success",
    "newsletter_form_error",
    "newsletter_form_validation_error",
    "newsletter_form_api_call",
    "newsletter_form_api_error",
    "newsletter_form_network_error",
    "newsletter_form_message_shown",
    "newsletter_signup_attempt",
    "newsletter_signup_success",
    "newsletter_signup_error",
    "scroll_depth",
    "add_to_cart_click",
    "form_field_focus",
    "button_click",
    "product_view",
    "collection_view",
    "cart_view",
    "checkout_view",
]

# Closed set accepted by storage; anything else is rejected, never stored.
EVENT_TYPES: frozenset[str] = frozenset(EventType.__args__)  # type: ignore[attr-defined]

NEWSLETTER_FORM_STAGES: frozenset[str] = frozenset(
    name.removeprefix("newsletter_form_")
    for name in EVENT_TYPES
    if name.startswith("newsletter_form_")
)


class BufferedEvent(TypedDict, total=False):
    type: str
    data: dict[str, Any]
    pageUrl: str
    timestamp: int


def validate_event_type(event_type: str | None) -> str:
    if not event_type or event_type not in EVENT_TYPES:
        raise ValidationError(f"Unsupported event type: {event_type!r}")
    return event_type


def normalize_event_data(raw: Any, *, max_bytes: int) -> dict[str, Any]:
    """Coerce an incoming payload into a bounded JSON object.

    Drained history arrives JSON-encoded as a string while live sends carry
    an object, so both shapes are accepted. Non-object JSON is wrapped under
    ``value``. Payload contents are otherwise left untyped.
    """
    if raw is None:
        return {}
    data: Any = raw
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except ValueError:
            data = {"value": text}
    if not isinstance(data, Mapping):
        data = {"value": data}
    try:
        encoded = json.dumps(dict(data), separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Event data must be JSON serializable") from exc
    if len(encoded.encode("utf-8")) > max_bytes:
        raise ValidationError(f"Event data exceeds {max_bytes} bytes")
    normalized = json.loads(encoded)
    if not fits_int64(normalized):
        raise ValidationError("Event data integers must fit in a signed 64-bit range")
    return normalized


# Widest integer every storage backend can hold.
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


def fits_int64(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    if isinstance(value, int):
        return INT64_MIN <= value <= INT64_MAX
    if isinstance(value, dict):
        return all(fits_int64(item) for item in value.values())
    if isinstance(value, list):
        return all(fits_int64(item) for item in value)
    return True
