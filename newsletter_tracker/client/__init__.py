from __future__ import annotations

# Re-export the storefront tracker surface for centralized imports.

from newsletter_tracker.client.cache import FileLocalStore, LocalEventCache, LocalStore, MemoryLocalStore
from newsletter_tracker.client.capture import EventCapture, PageContext
from newsletter_tracker.client.tracker import DrainReport, NewsletterTracker
from newsletter_tracker.client.transport import IngestionClient, detect_location

__all__ = [
    "FileLocalStore",
    "LocalEventCache",
    "LocalStore",
    "MemoryLocalStore",
    "EventCapture",
    "PageContext",
    "DrainReport",
    "NewsletterTracker",
    "IngestionClient",
    "detect_location",
]
