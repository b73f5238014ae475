from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, Protocol
from uuid import uuid4

from newsletter_tracker.core.config import BEHAVIORAL_STORAGE_KEY, PAGE_VIEWS_STORAGE_KEY
from newsletter_tracker.core.errors import LocalStoreError


logger = logging.getLogger(__name__)

CacheEntry = dict[str, Any]


class LocalStore(Protocol):
    """Key -> list-of-entries durable storage that survives navigation."""

    def read(self, key: str) -> list[CacheEntry]:
        ...

    def write(self, key: str, entries: list[CacheEntry]) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class MemoryLocalStore:
    """In-process store with an optional byte quota, mirroring browser storage limits."""

    def __init__(self, quota_bytes: int | None = None) -> None:
        self._data: dict[str, str] = {}
        self._quota_bytes = quota_bytes

    def read(self, key: str) -> list[CacheEntry]:
        raw = self._data.get(key)
        return json.loads(raw) if raw else []

    def write(self, key: str, entries: list[CacheEntry]) -> None:
        encoded = json.dumps(entries, separators=(",", ":"))
        if self._quota_bytes is not None:
            used = sum(len(value) for name, value in self._data.items() if name != key)
            if used + len(encoded) > self._quota_bytes:
                raise LocalStoreError(f"Local store quota exceeded writing {key}")
        self._data[key] = encoded

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class FileLocalStore:
    """JSON file holding every key; writes replace the file atomically."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def _load(self) -> dict[str, list[CacheEntry]]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise LocalStoreError(f"Cannot read {self._path}") from exc
        try:
            data = json.loads(raw) if raw.strip() else {}
        except ValueError:
            # A torn or hand-edited file is treated as empty rather than fatal.
            logger.warning("local_store_corrupt path=%s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, list[CacheEntry]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".tracker-", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, separators=(",", ":"))
            os.replace(tmp_name, self._path)
        except Exception as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise LocalStoreError(f"Cannot write {self._path}") from exc

    def read(self, key: str) -> list[CacheEntry]:
        entries = self._load().get(key)
        if not isinstance(entries, list):
            return []
        return [entry for entry in entries if isinstance(entry, dict)]

    def write(self, key: str, entries: list[CacheEntry]) -> None:
        data = self._load()
        data[key] = entries
        self._save(data)

    def remove(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)


def _make_json_safe(entry: CacheEntry) -> bool:
    """Rewrite ``entry`` in place into plain JSON values; False when it cannot be encoded.

    Unknown objects such as datetimes become strings. The dict keeps its
    identity so flags set on it after buffering still reach the store.
    """
    try:
        safe = json.loads(json.dumps(entry, default=str, allow_nan=False))
    except (TypeError, ValueError):
        return False
    entry.clear()
    entry.update(safe)
    return True


def _trim(entries: list[CacheEntry], cap: int) -> list[CacheEntry]:
    # Oldest-first eviction: keep the most recent `cap` entries.
    return entries[-cap:] if cap > 0 and len(entries) > cap else entries


class LocalEventCache:
    """Bounded buffer of not-yet-delivered events and page views.

    Captured events collect in an in-memory queue that ``flush_to_local_storage``
    moves into the durable store on a fixed cadence. Page views are written to
    the durable store as soon as they are recorded. Every entry carries an
    ``id`` so a drain can remove exactly what it sent, leaving anything
    appended in the meantime for the next drain.
    """

    def __init__(
        self,
        store: LocalStore,
        *,
        page_view_cap: int = 50,
        event_cap: int = 100,
    ) -> None:
        self._store = store
        self._page_view_cap = page_view_cap
        self._event_cap = event_cap
        self._pending: list[CacheEntry] = []

    def append(self, entry: CacheEntry) -> bool:
        if not isinstance(entry, dict):
            logger.warning("cache_append_dropped reason=not_a_mapping")
            return False
        entry.setdefault("id", uuid4().hex)
        if not _make_json_safe(entry):
            logger.warning("cache_append_dropped reason=not_serializable type=%s", entry.get("type"))
            return False
        self._pending.append(entry)
        # A store that keeps rejecting writes must not grow the queue without bound.
        self._pending = _trim(self._pending, self._event_cap)
        return True

    def append_page_view(self, entry: CacheEntry) -> bool:
        if not isinstance(entry, dict):
            logger.warning("cache_page_view_dropped reason=not_a_mapping")
            return False
        entry.setdefault("id", uuid4().hex)
        if not _make_json_safe(entry):
            logger.warning("cache_page_view_dropped reason=not_serializable")
            return False
        try:
            stored = self._store.read(PAGE_VIEWS_STORAGE_KEY)
            self._store.write(PAGE_VIEWS_STORAGE_KEY, _trim(stored + [entry], self._page_view_cap))
        except (LocalStoreError, TypeError, ValueError) as exc:
            logger.warning("cache_page_view_dropped reason=store_error", exc_info=exc)
            return False
        return True

    def flush_to_local_storage(self) -> int:
        """Persist the in-memory queue and clear it; returns how many entries moved."""
        if not self._pending:
            return 0
        batch = list(self._pending)
        try:
            stored = self._store.read(BEHAVIORAL_STORAGE_KEY)
            self._store.write(BEHAVIORAL_STORAGE_KEY, _trim(stored + batch, self._event_cap))
        except (LocalStoreError, TypeError, ValueError) as exc:
            # Nothing was written, so the batch stays queued for the next cycle.
            logger.warning("cache_flush_failed pending=%s", len(batch), exc_info=exc)
            return 0
        # Only drop what was written; appends made during the write stay queued.
        written = {entry["id"] for entry in batch}
        self._pending = [entry for entry in self._pending if entry["id"] not in written]
        return len(batch)

    def pending(self) -> list[CacheEntry]:
        return list(self._pending)

    def stored_events(self) -> list[CacheEntry]:
        return self._safe_read(BEHAVIORAL_STORAGE_KEY)

    def stored_page_views(self) -> list[CacheEntry]:
        return self._safe_read(PAGE_VIEWS_STORAGE_KEY)

    def _safe_read(self, key: str) -> list[CacheEntry]:
        try:
            return self._store.read(key)
        except (LocalStoreError, TypeError, ValueError) as exc:
            logger.warning("cache_read_failed key=%s", key, exc_info=exc)
            return []

    def remove_delivered(
        self,
        *,
        page_view_ids: Iterable[str] = (),
        event_ids: Iterable[str] = (),
    ) -> None:
        for key, ids in (
            (PAGE_VIEWS_STORAGE_KEY, set(page_view_ids)),
            (BEHAVIORAL_STORAGE_KEY, set(event_ids)),
        ):
            if not ids:
                continue
            try:
                remaining = [entry for entry in self._store.read(key) if entry.get("id") not in ids]
                if remaining:
                    self._store.write(key, remaining)
                else:
                    self._store.remove(key)
            except (LocalStoreError, TypeError, ValueError) as exc:
                # Leaving entries behind means a later drain resends them.
                logger.warning("cache_remove_failed key=%s count=%s", key, len(ids), exc_info=exc)

    def clear(self) -> None:
        self._pending = []
        for key in (PAGE_VIEWS_STORAGE_KEY, BEHAVIORAL_STORAGE_KEY):
            try:
                self._store.remove(key)
            except LocalStoreError as exc:
                logger.warning("cache_clear_failed key=%s", key, exc_info=exc)
