from __future__ import annotations

import enum
import logging
import sys
import threading
import typing as t
from dataclasses import dataclass

from listsync.monitoring.metrics import Counter
from listsync.utils.clock import Clock, SystemClock

_logger = logging.getLogger(__name__)


class LookupStatus(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CacheLookup:
    """Result of `ExpiringCache.get`.

    For EXPIRED lookups `value` still carries the stale value so callers can
    fall back to it; the entry itself is already gone from the cache.
    """

    status: LookupStatus
    value: t.Any = None

    @property
    def hit(self) -> bool:
        return self.status is LookupStatus.FOUND


@dataclass(frozen=True)
class CacheEntry:
    value: t.Any
    expires_at: float


class ExpiringCache:
    """In-memory key/value store with a TTL per write.

    Reads go straight to the backing dict; writes and deletes take a lock so
    concurrent writers to the same key are serialized (last writer wins).
    Expired entries are removed when read and by `sweep_expired()`, which the
    service runs periodically.
    """

    def __init__(self, default_ttl_seconds: float = 3600.0, clock: t.Optional[Clock] = None) -> None:
        self._store: t.Dict[t.Hashable, CacheEntry] = {}
        self._lock = threading.RLock()
        self._default_ttl = default_ttl_seconds
        self._clock = clock or SystemClock()
        self._events = Counter("listsync_cache_events_total", "Cache events by kind")

    def put(self, key: t.Hashable, value: t.Any, ttl_seconds: t.Optional[float] = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        entry = CacheEntry(value=value, expires_at=self._clock.now() + ttl)
        with self._lock:
            self._store[key] = entry
        self._events.inc(event="write")

    def get(self, key: t.Hashable) -> CacheLookup:
        entry = self._store.get(key)
        if entry is None:
            self._events.inc(event="miss")
            _logger.debug("Cache miss for %s", key)
            return CacheLookup(LookupStatus.NOT_FOUND)
        if self._clock.now() >= entry.expires_at:
            with self._lock:
                # a concurrent put may have refreshed the key meanwhile
                if self._store.get(key) is entry:
                    del self._store[key]
            self._events.inc(event="miss")
            self._events.inc(event="expired")
            _logger.debug("Cache expired for %s", key)
            return CacheLookup(LookupStatus.EXPIRED, entry.value)
        self._events.inc(event="hit")
        _logger.debug("Cache hit for %s", key)
        return CacheLookup(LookupStatus.FOUND, entry.value)

    def get_value(self, key: t.Hashable, default: t.Any = None) -> t.Any:
        lookup = self.get(key)
        return lookup.value if lookup.hit else default

    def invalidate(self, key: t.Hashable) -> None:
        with self._lock:
            self._store.pop(key, None)
        self._events.inc(event="invalidation")

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
        self._events.inc(event="invalidation")
        _logger.info("Cleared all cache entries")

    def snapshot(self, key: t.Hashable) -> t.Optional[CacheEntry]:
        """Return the live entry for `key` without touching statistics."""
        entry = self._store.get(key)
        if entry is None or self._clock.now() >= entry.expires_at:
            return None
        return entry

    def restore(self, key: t.Hashable, entry: t.Optional[CacheEntry]) -> None:
        """Put back an entry taken with `snapshot`; `None` means the key was absent."""
        with self._lock:
            if entry is None:
                self._store.pop(key, None)
                return
            self._store[key] = entry
        self._events.inc(event="write")

    def sweep_expired(self) -> int:
        now = self._clock.now()
        removed = 0
        with self._lock:
            for key in [k for k, e in self._store.items() if now >= e.expires_at]:
                del self._store[key]
                removed += 1
        if removed:
            self._events.inc(removed, event="expired")
            _logger.debug("Swept %d expired cache entries", removed)
        return removed

    def stats(self) -> t.Dict[str, int]:
        with self._lock:
            items = list(self._store.items())
        memory = sum(sys.getsizeof(k) + sys.getsizeof(e.value) for k, e in items)
        return {
            "hits": int(self._events.get(event="hit")),
            "misses": int(self._events.get(event="miss")),
            "writes": int(self._events.get(event="write")),
            "expired": int(self._events.get(event="expired")),
            "invalidations": int(self._events.get(event="invalidation")),
            "size": len(items),
            "approx_memory_bytes": memory,
        }

    def reset_stats(self) -> None:
        self._events.reset()

    def __len__(self) -> int:
        return len(self._store)
