from __future__ import annotations

import functools
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, TypeVar
from urllib.parse import urlparse

from newsletter_tracker.client.cache import CacheEntry, LocalEventCache
from newsletter_tracker.domain.events import EVENT_TYPES, NEWSLETTER_FORM_STAGES


logger = logging.getLogger(__name__)

T = TypeVar("T")

_PRODUCT_PATH = re.compile(r"/products/([^/?#]+)")
_COLLECTION_PATH = re.compile(r"/collections/([^/?#]+)")
_ADD_TO_CART_TEXT = ("add to cart", "add to bag")
_ADD_TO_CART_CLASSES = ("add-to-cart", "add-cart")
_SCROLL_MILESTONES = (25, 50, 75, 100)
_TEXT_LIMIT = 100


@dataclass(frozen=True)
class PageContext:
    url: str
    title: str = ""
    referrer: str = ""

    @property
    def path(self) -> str:
        try:
            return urlparse(self.url).path or "/"
        except ValueError:
            return ""


def _text(element: Mapping[str, Any] | None, key: str, limit: int | None = None) -> str:
    # Malformed attributes degrade to empty strings.
    if not isinstance(element, Mapping):
        return ""
    value = element.get(key)
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    return text[:limit] if limit else text


def product_id_from_url(url: str | None) -> str | None:
    match = _PRODUCT_PATH.search(url or "")
    return match.group(1) if match else None


def checkout_step(path: str) -> str:
    if "/checkout/contact" in path:
        return "contact_info"
    if "/checkout/shipping" in path:
        return "shipping_info"
    if "/checkout/payment" in path:
        return "payment_info"
    if "/checkout" in path:
        return "checkout_start"
    return "unknown"


def is_add_to_cart(element: Mapping[str, Any]) -> bool:
    text = _text(element, "text").lower()
    class_name = _text(element, "className").lower()
    return (
        any(marker in text for marker in _ADD_TO_CART_TEXT)
        or any(marker in class_name for marker in _ADD_TO_CART_CLASSES)
        or _text(element, "name") == "add"
        or bool(_text(element, "data-add-to-cart"))
    )


def _never_raises(func: Callable[..., T]) -> Callable[..., T | None]:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T | None:
        try:
            return func(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001 - capture must not break the host page
            logger.warning("capture_failed handler=%s", func.__name__, exc_info=exc)
            return None

    return wrapper


class EventCapture:
    """Turns page-level activity into typed entries in the local cache.

    Capture runs regardless of identity and never touches the network.
    Each handler returns the appended entry, or ``None`` when nothing was
    recorded.
    """

    def __init__(
        self,
        cache: LocalEventCache,
        page: Callable[[], PageContext],
        *,
        session_id: str,
        clock: Callable[[], float] = time.time,
        on_record: Callable[[CacheEntry], None] | None = None,
    ) -> None:
        self._cache = cache
        self._page = page
        self._session_id = session_id
        self._clock = clock
        # Sees each entry once it is buffered and may flag it.
        self._on_record = on_record
        self._max_scroll_milestone = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _record(self, event_type: str, data: dict[str, Any], **flags: Any) -> CacheEntry | None:
        if event_type not in EVENT_TYPES:
            logger.warning("capture_dropped reason=unknown_type type=%s", event_type)
            return None
        page = self._page()
        entry: CacheEntry = {
            "type": event_type,
            "data": data,
            "pageUrl": page.url,
            "pageTitle": page.title,
            "sessionId": self._session_id,
            "timestamp": self._now_ms(),
            **flags,
        }
        if not self._cache.append(entry):
            return None
        if self._on_record is not None:
            try:
                self._on_record(entry)
            except Exception as exc:  # noqa: BLE001 - the entry is already buffered
                logger.warning("capture_notify_failed type=%s", event_type, exc_info=exc)
        return entry

    def reset_page(self) -> None:
        self._max_scroll_milestone = 0

    @_never_raises
    def page_view(self) -> list[CacheEntry]:
        """Record the page view plus any storefront page-type event."""
        page = self._page()
        entries = [self._record("page_view", {"url": page.url, "title": page.title, "referrer": page.referrer})]
        path = page.path
        product_id = product_id_from_url(path)
        collection = _COLLECTION_PATH.search(path)
        if product_id:
            entries.append(self._record("product_view", {"productId": product_id, "productTitle": page.title}))
        elif collection:
            entries.append(self._record("collection_view", {"collectionHandle": collection.group(1)}))
        if "/checkout" in path:
            entries.append(self._record("checkout_view", {"step": checkout_step(path)}))
        elif path.rstrip("/").endswith("/cart"):
            entries.append(self._record("cart_view", {}))
        return [entry for entry in entries if entry is not None]

    @_never_raises
    def click(self, element: Mapping[str, Any], x: float | None = None, y: float | None = None) -> CacheEntry | None:
        data: dict[str, Any] = {
            "tagName": _text(element, "tagName"),
            "className": _text(element, "className"),
            "id": _text(element, "id"),
            "text": _text(element, "text", _TEXT_LIMIT),
            "href": _text(element, "href") or None,
            "x": x,
            "y": y,
        }
        if is_add_to_cart(element):
            data["productId"] = (
                _text(element, "data-product-id")
                or product_id_from_url(_text(element, "href"))
                or product_id_from_url(self._page().url)
            )
            data["productTitle"] = _text(element, "data-product-title") or self._page().title
            return self._record("add_to_cart_click", data)
        return self._record("button_click", data)

    @_never_raises
    def field_focus(self, element: Mapping[str, Any], *, newsletter_form: bool = False) -> CacheEntry | None:
        data = {
            "inputType": _text(element, "type"),
            "inputName": _text(element, "name"),
            "inputId": _text(element, "id"),
            "placeholder": _text(element, "placeholder"),
        }
        return self._record("newsletter_form_field_focus" if newsletter_form else "form_field_focus", data)

    @_never_raises
    def scroll(self, scroll_y: float, document_height: float, viewport_height: float) -> CacheEntry | None:
        """Record scroll depth each time a new 25% milestone is reached on this page."""
        scrollable = float(document_height) - float(viewport_height)
        percent = 100 if scrollable <= 0 else round(max(0.0, min(float(scroll_y) / scrollable, 1.0)) * 100)
        reached = max((m for m in _SCROLL_MILESTONES if percent >= m), default=0)
        if reached <= self._max_scroll_milestone:
            return None
        self._max_scroll_milestone = reached
        return self._record("scroll_depth", {"percent": percent, "milestone": reached, "scrollY": scroll_y})

    @_never_raises
    def newsletter_form(self, stage: str, data: Mapping[str, Any] | None = None) -> CacheEntry | None:
        if stage not in NEWSLETTER_FORM_STAGES:
            logger.warning("capture_dropped reason=unknown_form_stage stage=%s", stage)
            return None
        return self._record(f"newsletter_form_{stage}", dict(data or {}))

    @_never_raises
    def signup_lifecycle(self, stage: str, data: Mapping[str, Any] | None = None) -> CacheEntry | None:
        return self._record(f"newsletter_signup_{stage}", dict(data or {}))

    @_never_raises
    def custom(self, event_type: str, data: Mapping[str, Any] | None = None, **flags: Any) -> CacheEntry | None:
        payload = dict(data) if isinstance(data, Mapping) else ({} if data is None else {"value": data})
        return self._record(event_type, payload, **flags)
