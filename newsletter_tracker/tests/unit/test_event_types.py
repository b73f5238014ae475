from __future__ import annotations

import pytest

from newsletter_tracker.core.errors import ValidationError
from newsletter_tracker.domain.events import EVENT_TYPES, NEWSLETTER_FORM_STAGES, normalize_event_data, validate_event_type
from newsletter_tracker.domain.state import SubscriptionStatus, normalize_email, parse_status


def test_event_type_set_is_closed() -> None:
    assert len(EVENT_TYPES) == 22
    assert validate_event_type("checkout_view") == "checkout_view"
    assert {"submit", "view", "network_error"} <= NEWSLETTER_FORM_STAGES
    for bad in (None, "", "PAGE_VIEW", "mouse_wiggle"):
        with pytest.raises(ValidationError):
            validate_event_type(bad)


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, {}),
        ("", {}),
        ('{"percent": 50}', {"percent": 50}),
        ({"percent": 50}, {"percent": 50}),
        ("not json", {"value": "not json"}),
        ("[1, 2]", {"value": [1, 2]}),
        (7, {"value": 7}),
    ],
)
def test_normalize_event_data_shapes(raw, expected) -> None:
    assert normalize_event_data(raw, max_bytes=1024) == expected


def test_normalize_event_data_rejects_oversized_and_unserializable() -> None:
    with pytest.raises(ValidationError):
        normalize_event_data({"blob": "x" * 100}, max_bytes=50)
    with pytest.raises(ValidationError):
        normalize_event_data({"when": object()}, max_bytes=1024)


def test_status_and_email_normalization() -> None:
    assert parse_status(" Confirmed ") is SubscriptionStatus.CONFIRMED
    with pytest.raises(ValidationError):
        parse_status("paused")
    assert normalize_email("  Ada@Example.COM ") == "ada@example.com"
    with pytest.raises(ValidationError):
        normalize_email("not-an-email")
