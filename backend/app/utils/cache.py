"""In-memory TTL caches.

``chart_cache`` holds per-patient chart reads under ``chart:<patient_id>``
keys; document writes invalidate that prefix.  ``ProcessedEventMarker``
remembers recently processed webhook deliveries so duplicates can be
short-circuited without a database round trip.
"""

import time
from typing import Any

from app.config import get_settings


class TTLCache:
    """Coroutine-safe in-memory cache with per-key TTL expiry.

    Safe to use from async code (single-threaded event loop). Not thread-safe.
    """

    def __init__(self, default_ttl: int = 300, max_entries: int | None = None):
        """
        Parameters
        ----------
        default_ttl : int
            Default time-to-live in seconds (default 5 minutes).
        max_entries : int | None
            Upper bound on stored keys; the entry closest to expiry is
            evicted first when full.  None means unbounded.
        """
        self._store: dict[str, tuple[Any, float]] = {}
        self._default_ttl = default_ttl
        self._max_entries = max_entries

    def __len__(self) -> int:
        return len(self._store)

    def get(self, key: str) -> Any | None:
        """Return cached value if present and not expired, else None."""
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() > expires_at:
            del self._store[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store a value with optional custom TTL."""
        expires_at = time.monotonic() + (ttl if ttl is not None else self._default_ttl)
        if self._max_entries is not None and key not in self._store and len(self._store) >= self._max_entries:
            self._evict()
        self._store[key] = (value, expires_at)

    def _evict(self) -> None:
        now = time.monotonic()
        expired = [k for k, (_, exp) in self._store.items() if exp < now]
        for k in expired:
            del self._store[k]
        if self._max_entries is not None and len(self._store) >= self._max_entries:
            oldest = min(self._store, key=lambda k: self._store[k][1])
            del self._store[oldest]

    def invalidate(self, key: str) -> None:
        """Remove a specific key from the cache."""
        self._store.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        """Remove all keys starting with a given prefix."""
        keys_to_remove = [k for k in self._store if k.startswith(prefix)]
        for k in keys_to_remove:
            del self._store[k]

    def clear(self) -> None:
        """Remove all entries."""
        self._store.clear()


class ProcessedEventMarker:
    """Bounded, expiring set of processed webhook identifiers.

    Process scoped and lost on restart.  The persisted billing sync record
    remains the source of truth for idempotency; this only avoids the
    lookup for hot duplicates.
    """

    def __init__(self, ttl_seconds: int, max_entries: int = 10_000):
        self._cache = TTLCache(default_ttl=ttl_seconds, max_entries=max_entries)

    def mark(self, *keys: str | None) -> None:
        for key in keys:
            if key:
                self._cache.set(key, True)

    def seen(self, *keys: str | None) -> bool:
        return any(key and self._cache.get(key) for key in keys)

    def discard(self, *keys: str | None) -> None:
        for key in keys:
            if key:
                self._cache.invalidate(key)

    def clear(self) -> None:
        self._cache.clear()


def chart_cache_key(patient_id: str, suffix: str = "") -> str:
    return f"chart:{patient_id}:{suffix}" if suffix else f"chart:{patient_id}:"


# Global singletons shared across the application
chart_cache = TTLCache(default_ttl=300)  # 5 minute TTL
processed_events = ProcessedEventMarker(ttl_seconds=get_settings().PROCESSED_EVENT_TTL_SECONDS)
