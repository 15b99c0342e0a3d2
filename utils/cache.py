"""Lightweight in-memory TTL cache for RGAP.

Provides a TTLCache class for caching reference data, popular searches and
trend aggregations, with optional tags so related entries can be dropped
together when the underlying data changes.
"""

from __future__ import annotations

import time
import threading
from typing import Any, Callable


class TTLCache:
    """Thread-safe in-memory cache with time-to-live (TTL) expiry.

    Entries expire after ``ttl_seconds`` seconds. A maximum of ``maxsize``
    entries are retained; when the cache is full the entry expiring soonest
    is evicted.

    Usage::

        cache = TTLCache(maxsize=128, ttl_seconds=300)
        cache.set(("popular", "grant", 5), rows, tags={"analytics"})
        cache.get(("popular", "grant", 5))
        cache.invalidate_tag("analytics")
    """

    def __init__(self, maxsize: int = 128, ttl_seconds: float = 300.0) -> None:
        self._maxsize = maxsize
        self._ttl = ttl_seconds
        # key -> (value, expires_at)
        self._store: dict[Any, tuple[Any, float]] = {}
        self._tags: dict[str, set[Any]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def _drop(self, key: Any) -> None:
        self._store.pop(key, None)
        for keys in self._tags.values():
            keys.discard(key)

    def get(self, key: Any) -> Any | None:
        """Return cached value for *key*, or ``None`` if absent or expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            value, expires_at = entry
            if time.monotonic() > expires_at:
                self._drop(key)
                self._misses += 1
                return None
            self._hits += 1
            return value

    def set(
        self,
        key: Any,
        value: Any,
        tags: set[str] | None = None,
        ttl_seconds: float | None = None,
    ) -> None:
        """Store *value* under *key*.

        Args:
            key: Cache key (must be hashable).
            value: Value to cache.
            tags: Tag names this entry belongs to, for ``invalidate_tag``.
            ttl_seconds: Per-entry TTL overriding the cache default.
        """
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        expires_at = time.monotonic() + ttl
        with self._lock:
            if key not in self._store and len(self._store) >= self._maxsize:
                oldest_key = min(self._store, key=lambda k: self._store[k][1])
                self._drop(oldest_key)
            self._store[key] = (value, expires_at)
            for tag in tags or ():
                self._tags.setdefault(tag, set()).add(key)

    def get_or_set(
        self,
        key: Any,
        factory: Callable[[], Any],
        tags: set[str] | None = None,
    ) -> Any:
        """Return the cached value, computing and storing it on a miss.

        ``None`` results from *factory* are not cached.
        """
        value = self.get(key)
        if value is not None:
            return value
        value = factory()
        if value is not None:
            self.set(key, value, tags=tags)
        return value

    def invalidate_tag(self, tag: str) -> int:
        """Remove every entry stored with *tag*. Returns the number removed."""
        with self._lock:
            keys = self._tags.pop(tag, set())
            removed = 0
            for key in keys:
                if key in self._store:
                    self._drop(key)
                    removed += 1
            return removed

    def clear(self) -> None:
        """Remove all entries and reset statistics."""
        with self._lock:
            self._store.clear()
            self._tags.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, int]:
        """Return cache statistics: ``hits``, ``misses`` and live ``size``."""
        with self._lock:
            now = time.monotonic()
            expired = [k for k, (_, exp) in self._store.items() if now > exp]
            for k in expired:
                self._drop(k)
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": len(self._store),
            }
