from __future__ import annotations

import asyncio
import locale
import logging
import platform
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Coroutine, Mapping
from uuid import uuid4

from newsletter_tracker.client.cache import CacheEntry, FileLocalStore, LocalEventCache
from newsletter_tracker.client.capture import EventCapture, PageContext
from newsletter_tracker.client.transport import IngestionClient, detect_location
from newsletter_tracker.core.config import TrackerSettings, get_tracker_settings
from newsletter_tracker.core.errors import DeliveryError


logger = logging.getLogger(__name__)

# Entries sent live are kept for local history but skipped by the drain.
DELIVERED_FLAG = "delivered"


def new_session_id(clock: Callable[[], float] = time.time) -> str:
    return f"sess_{int(clock() * 1000)}_{uuid4().hex[:9]}"


@dataclass(frozen=True)
class DrainReport:
    page_views_sent: int = 0
    events_sent: int = 0
    failed: int = 0
    interrupted: bool = False


def _event_payload(email: str, session_id: str, entry: CacheEntry) -> dict[str, Any]:
    return {
        "email": email,
        "sessionId": entry.get("sessionId") or session_id,
        "eventType": entry.get("type"),
        "eventData": entry.get("data") or {},
        "pageUrl": entry.get("pageUrl"),
        "pageTitle": entry.get("pageTitle"),
        "timestamp": entry.get("timestamp"),
    }


def _page_view_payload(email: str, session_id: str, entry: CacheEntry) -> dict[str, Any]:
    return {
        "email": email,
        "sessionId": entry.get("sessionId") or session_id,
        "pageUrl": entry.get("pageUrl"),
        "pageTitle": entry.get("pageTitle"),
        "timeSpent": entry.get("timeSpent"),
        "referrer": entry.get("referrer"),
        "timestamp": entry.get("timestamp"),
    }


class NewsletterTracker:
    """Identity gate and flush controller for one browsing context.

    Owns the session id, the visitor identity and the local cache handle.
    While ``identity`` is ``None`` activity is only buffered. A successful
    signup sets the identity and drains the buffered history once; after
    that, every newly captured event is also sent immediately as a detached task
    whose failures are logged and dropped.
    """

    def __init__(
        self,
        transport: IngestionClient,
        cache: LocalEventCache,
        *,
        page: PageContext,
        settings: TrackerSettings | None = None,
        session_id: str | None = None,
        clock: Callable[[], float] = time.time,
        location_lookup: Callable[[], Coroutine[Any, Any, dict[str, Any]]] | None = None,
    ) -> None:
        self._settings = settings or get_tracker_settings()
        self._transport = transport
        self.cache = cache
        self._clock = clock
        self.session_id = session_id or new_session_id(clock)
        self.identity: str | None = None
        self._page = page
        self._page_started_at = clock()
        self._location: dict[str, Any] | None = None
        self._location_lookup = location_lookup or self._default_location_lookup
        self.capture = EventCapture(
            cache,
            lambda: self._page,
            session_id=self.session_id,
            clock=clock,
            on_record=self._send_live,
        )
        self._persist_task: asyncio.Task[None] | None = None
        self._sends: set[asyncio.Task[None]] = set()
        self._drain_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, page: PageContext, settings: TrackerSettings | None = None) -> NewsletterTracker:
        settings = settings or get_tracker_settings()
        cache = LocalEventCache(
            FileLocalStore(settings.storage_path),
            page_view_cap=settings.page_view_cap,
            event_cap=settings.event_cap,
        )
        transport = IngestionClient(settings.api_base_url, timeout_s=settings.http_timeout_s)
        return cls(transport, cache, page=page, settings=settings)

    @property
    def page(self) -> PageContext:
        return self._page

    async def _default_location_lookup(self) -> dict[str, Any]:
        return await detect_location(self._settings.location_lookup_url, timeout_s=self._settings.http_timeout_s)

    async def start(self) -> None:
        """Record the landing page and begin the periodic persist cycle."""
        self.capture.page_view()
        if self._persist_task is None:
            self._persist_task = asyncio.create_task(self._persist_loop())

    async def _persist_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.persist_interval_s)
            self.cache.flush_to_local_storage()

    async def stop(self) -> None:
        if self._persist_task is not None:
            self._persist_task.cancel()
            try:
                await self._persist_task
            except asyncio.CancelledError:
                pass
            self._persist_task = None
        self.cache.flush_to_local_storage()
        await self.wait_for_pending_sends()

    async def location(self) -> dict[str, Any]:
        if self._location is None:
            try:
                self._location = await self._location_lookup()
            except Exception as exc:  # noqa: BLE001 - location is optional context
                logger.info("location_lookup_failed", exc_info=exc)
                self._location = {}
        return self._location

    def _dispatch(self, coro: Coroutine[Any, Any, None], *, what: str) -> None:
        # Fire-and-forget: send errors are logged from the task.
        try:
            task = asyncio.create_task(coro)
        except RuntimeError:
            # No running loop: the coroutine is never awaited.
            coro.close()
            raise
        self._sends.add(task)

        def _done(finished: asyncio.Task[None]) -> None:
            self._sends.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.warning("live_send_failed what=%s", what, exc_info=exc)

        task.add_done_callback(_done)

    async def wait_for_pending_sends(self) -> None:
        if self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)

    def _send_live(self, entry: CacheEntry) -> None:
        if self.identity is None:
            return
        payload = _event_payload(self.identity, self.session_id, entry)
        self._dispatch(self._transport.track_event(payload), what=str(entry.get("type")))
        # Flagged only once the send is scheduled; later drains skip it.
        entry[DELIVERED_FLAG] = True

    def track(self, event_type: str, data: Mapping[str, Any] | None = None) -> CacheEntry | None:
        """Buffer an event, and send it immediately once the visitor is identified."""
        return self.capture.custom(event_type, data)

    def navigate(self, page: PageContext) -> CacheEntry | None:
        """Record time spent on the current page, then switch to ``page``."""
        now = self._clock()
        view: CacheEntry = {
            "sessionId": self.session_id,
            "pageUrl": self._page.url,
            "pageTitle": self._page.title,
            "timeSpent": int((now - self._page_started_at) * 1000),
            "referrer": self._page.referrer,
            "timestamp": int(now * 1000),
        }
        if self.identity:
            payload = _page_view_payload(self.identity, self.session_id, view)
            try:
                self._dispatch(self._transport.track_page_view(payload), what="page_view")
            except RuntimeError as exc:
                # Not scheduled; left unflagged so the next drain sends it.
                logger.warning("live_send_failed what=page_view", exc_info=exc)
            else:
                view[DELIVERED_FLAG] = True
        stored = self.cache.append_page_view(view)
        self._page = page
        self._page_started_at = now
        self.capture.reset_page()
        self.capture.page_view()
        return view if stored else None

    def device_info(self) -> dict[str, Any]:
        return {
            "timezone": datetime.now().astimezone().tzname(),
            "language": locale.getlocale()[0],
            "platform": platform.system() or None,
        }

    async def signup(
        self,
        email: str,
        first_name: str,
        captcha_token: str | None = None,
        *,
        device_data: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Submit the newsletter form and, on success, identify and drain."""
        self.capture.signup_lifecycle("attempt", {"email": email})
        # Buffered history rides along with the signup request.
        self.cache.flush_to_local_storage()
        buffered = [entry for entry in self.cache.stored_events() if not entry.get(DELIVERED_FLAG)]
        payload = {
            "email": email,
            "firstName": first_name,
            "captchaToken": captcha_token,
            "sessionId": self.session_id,
            "behavioralData": [
                {
                    "type": entry.get("type"),
                    "data": entry.get("data") or {},
                    "pageUrl": entry.get("pageUrl"),
                    "pageTitle": entry.get("pageTitle"),
                    "timestamp": entry.get("timestamp"),
                }
                for entry in buffered
            ],
            "deviceData": dict(device_data or self.device_info()),
            "locationData": await self.location(),
            "pageData": {
                "url": self._page.url,
                "title": self._page.title,
                "referrer": self._page.referrer,
                "timestamp": int(self._clock() * 1000),
            },
        }
        try:
            result = await self._transport.signup(payload)
        except DeliveryError as exc:
            logger.warning("signup_request_failed status=%s", exc.status_code, exc_info=exc)
            self.capture.signup_lifecycle("error", {"reason": "network"})
            return {"success": False, "message": "Network error occurred"}

        if not result.get("success"):
            self.capture.signup_lifecycle("error", {"message": result.get("message")})
            return result

        if result.get("newSubscriber"):
            # The endpoint stored these with the new subscriber; do not send them again.
            self.cache.remove_delivered(event_ids=[entry["id"] for entry in buffered if "id" in entry])
        self.capture.signup_lifecycle("success", {"alreadySubscribed": bool(result.get("alreadySubscribed"))})
        self.identity = email.strip().lower()
        await self.drain()
        return result

    async def drain(self) -> DrainReport:
        """Send every buffered page view and event in capture order, then clear them.

        A network failure stops the drain; unattempted entries stay buffered
        for a later drain. Entries the endpoint rejects are logged and dropped.
        """
        if self.identity is None:
            return DrainReport()
        async with self._drain_lock:
            self.cache.flush_to_local_storage()
            page_views = self.cache.stored_page_views()
            events = self.cache.stored_events()
            delivered_views = [e.get("id") for e in page_views if e.get(DELIVERED_FLAG)]
            delivered_events = [e.get("id") for e in events if e.get(DELIVERED_FLAG)]
            queue = [("page_view", e) for e in page_views if not e.get(DELIVERED_FLAG)]
            queue += [("event", e) for e in events if not e.get(DELIVERED_FLAG)]
            # Stable sort: page views precede events captured in the same millisecond.
            queue.sort(key=lambda item: item[1].get("timestamp") or 0)

            sent = {"page_view": 0, "event": 0}
            failed = 0
            interrupted = False
            for kind, entry in queue:
                try:
                    if kind == "page_view":
                        await self._transport.track_page_view(
                            _page_view_payload(self.identity, self.session_id, entry)
                        )
                    else:
                        await self._transport.track_event(_event_payload(self.identity, self.session_id, entry))
                except DeliveryError as exc:
                    if exc.status_code is None:
                        logger.warning("drain_interrupted remaining=%s", len(queue) - sum(sent.values()) - failed)
                        interrupted = True
                        break
                    logger.warning("drain_entry_rejected kind=%s status=%s", kind, exc.status_code)
                    failed += 1
                else:
                    sent[kind] += 1
                (delivered_views if kind == "page_view" else delivered_events).append(entry.get("id"))

            self.cache.remove_delivered(page_view_ids=delivered_views, event_ids=delivered_events)
        logger.info(
            "drain_completed page_views=%s events=%s failed=%s interrupted=%s",
            sent["page_view"],
            sent["event"],
            failed,
            interrupted,
        )
        return DrainReport(
            page_views_sent=sent["page_view"],
            events_sent=sent["event"],
            failed=failed,
            interrupted=interrupted,
        )
