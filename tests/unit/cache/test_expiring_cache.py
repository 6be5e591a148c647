"""Unit tests for ExpiringCache."""

from listsync.cache.expiring_cache import CacheEntry, ExpiringCache, LookupStatus
from listsync.cache.keys import collection_key, items_key, owner_collections_key
from listsync.utils.clock import ManualClock


class TestExpiringCache:
    """Test ExpiringCache lookups, expiry and statistics."""

    def test_get_miss(self):
        """Test that an unknown key is reported as not found."""
        cache = ExpiringCache(clock=ManualClock())

        lookup = cache.get(collection_key(1))

        assert lookup.status is LookupStatus.NOT_FOUND
        assert not lookup.hit
        assert cache.stats()["misses"] == 1

    def test_put_and_get(self):
        """Test basic put/get with the default TTL."""
        cache = ExpiringCache(clock=ManualClock())

        cache.put(collection_key(7), {"id": 7, "name": "Watch Later"})
        lookup = cache.get(collection_key(7))

        assert lookup.hit
        assert lookup.value == {"id": 7, "name": "Watch Later"}
        assert cache.get_value(collection_key(7))["name"] == "Watch Later"
        assert cache.get_value(collection_key(8), default="nope") == "nope"

    def test_entry_expires_at_ttl(self):
        """Test that an entry is gone once its TTL has elapsed, and counted as expired."""
        clock = ManualClock()
        cache = ExpiringCache(clock=clock)
        cache.put(items_key(7), [{"id": 1}], ttl_seconds=900)

        clock.advance(899)
        assert cache.get(items_key(7)).hit

        clock.advance(1)
        lookup = cache.get(items_key(7))

        assert lookup.status is LookupStatus.EXPIRED
        assert lookup.value == [{"id": 1}]
        assert len(cache) == 0
        stats = cache.stats()
        assert stats["expired"] == 1
        assert stats["misses"] == 1
        assert cache.get(items_key(7)).status is LookupStatus.NOT_FOUND

    def test_per_write_ttl(self):
        """Test that each write carries its own TTL."""
        clock = ManualClock()
        cache = ExpiringCache(default_ttl_seconds=3600, clock=clock)
        cache.put(collection_key(1), "long")
        cache.put(owner_collections_key(42), "short", ttl_seconds=10)

        clock.advance(11)

        assert cache.get(collection_key(1)).hit
        assert not cache.get(owner_collections_key(42)).hit

    def test_rewrite_refreshes_expiry(self):
        """Test that writing a key again restarts its TTL."""
        clock = ManualClock()
        cache = ExpiringCache(clock=clock)
        cache.put(collection_key(1), "v1", ttl_seconds=10)
        clock.advance(8)
        cache.put(collection_key(1), "v2", ttl_seconds=10)
        clock.advance(8)

        assert cache.get(collection_key(1)).value == "v2"

    def test_invalidate_is_idempotent(self):
        """Test that invalidating twice, or a missing key, does not fail."""
        cache = ExpiringCache(clock=ManualClock())
        cache.put(collection_key(1), "value")

        cache.invalidate(collection_key(1))
        cache.invalidate(collection_key(1))
        cache.invalidate(collection_key(999))

        assert not cache.get(collection_key(1)).hit
        assert cache.stats()["invalidations"] == 3

    def test_clear(self):
        """Test that clear drops every entry."""
        cache = ExpiringCache(clock=ManualClock())
        for i in range(5):
            cache.put(collection_key(i), i)

        cache.clear()

        assert len(cache) == 0
        assert cache.stats()["size"] == 0

    def test_sweep_expired(self):
        """Test that sweeping removes only expired entries."""
        clock = ManualClock()
        cache = ExpiringCache(clock=clock)
        cache.put(collection_key(1), "a", ttl_seconds=5)
        cache.put(collection_key(2), "b", ttl_seconds=5)
        cache.put(collection_key(3), "c", ttl_seconds=60)

        clock.advance(6)

        assert cache.sweep_expired() == 2
        assert len(cache) == 1
        assert cache.stats()["expired"] == 2
        assert cache.sweep_expired() == 0

    def test_snapshot_does_not_touch_stats(self):
        """Test that snapshot reads bypass hit/miss accounting."""
        clock = ManualClock()
        cache = ExpiringCache(clock=clock)
        cache.put(collection_key(1), "value", ttl_seconds=10)

        entry = cache.snapshot(collection_key(1))

        assert entry == CacheEntry("value", clock.now() + 10)
        assert cache.snapshot(collection_key(2)) is None
        stats = cache.stats()
        assert stats["hits"] == 0
        assert stats["misses"] == 0

    def test_restore_puts_back_entry_verbatim(self):
        """Test that restore brings back the value and its original expiry."""
        clock = ManualClock()
        cache = ExpiringCache(clock=clock)
        cache.put(collection_key(1), {"name": "before"}, ttl_seconds=100)
        snapshot = cache.snapshot(collection_key(1))

        cache.put(collection_key(1), {"name": "after"}, ttl_seconds=1000)
        cache.restore(collection_key(1), snapshot)

        assert cache.snapshot(collection_key(1)) == snapshot
        clock.advance(100)
        assert not cache.get(collection_key(1)).hit

    def test_restore_absent_removes_key(self):
        """Test that restoring an absent snapshot deletes whatever was written since."""
        cache = ExpiringCache(clock=ManualClock())
        snapshot = cache.snapshot(collection_key(1))
        cache.put(collection_key(1), "optimistic")

        cache.restore(collection_key(1), snapshot)

        assert cache.snapshot(collection_key(1)) is None

    def test_stats_and_reset(self):
        """Test stats counters and reset_stats."""
        cache = ExpiringCache(clock=ManualClock())
        cache.put(collection_key(1), "value")
        cache.get(collection_key(1))
        cache.get(collection_key(1))
        cache.get(collection_key(2))

        stats = cache.stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["writes"] == 1
        assert stats["size"] == 1
        assert stats["approx_memory_bytes"] > 0

        cache.reset_stats()

        stats = cache.stats()
        assert stats["hits"] == 0
        assert stats["writes"] == 0
        assert stats["size"] == 1

    def test_instances_keep_separate_stats(self):
        """Test that two caches do not share counters."""
        first = ExpiringCache(clock=ManualClock())
        second = ExpiringCache(clock=ManualClock())

        first.get(collection_key(1))

        assert first.stats()["misses"] == 1
        assert second.stats()["misses"] == 0
