"""
Tests for the in-memory TTL cache and processed-event marker.
"""

from unittest.mock import patch

from app.utils.cache import ProcessedEventMarker, TTLCache, chart_cache_key


class TestTTLCache:

    def test_get_set(self):
        cache = TTLCache(60)
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert cache.get("missing") is None

    def test_expiry(self):
        cache = TTLCache(10)
        with patch("app.utils.cache.time.monotonic", return_value=100.0):
            cache.set("a", 1)
        with patch("app.utils.cache.time.monotonic", return_value=111.0):
            assert cache.get("a") is None
        assert len(cache) == 0

    def test_eviction_drops_entry_closest_to_expiry(self):
        cache = TTLCache(60, max_entries=2)
        cache.set("short", 1, ttl=5)
        cache.set("long", 2, ttl=500)
        cache.set("new", 3)
        assert cache.get("short") is None
        assert cache.get("long") == 2
        assert cache.get("new") == 3

    def test_invalidate_prefix(self):
        cache = TTLCache(60)
        cache.set(chart_cache_key("P1", "documents"), [])
        cache.set(chart_cache_key("P1", "appointments"), [])
        cache.set(chart_cache_key("P2", "documents"), [])
        cache.invalidate_prefix(chart_cache_key("P1"))
        assert len(cache) == 1
        assert cache.get("chart:P2:documents") == []


class TestProcessedEventMarker:

    def test_mark_and_seen(self):
        marker = ProcessedEventMarker(60)
        assert not marker.seen("evt_1", "pi_1")
        marker.mark("evt_1", None)
        assert marker.seen("evt_1")
        assert marker.seen(None, "evt_1")
        assert not marker.seen("pi_1")

    def test_seen_by_any_key(self):
        marker = ProcessedEventMarker(60)
        marker.mark("evt_1", "pi_1")
        assert marker.seen("evt_2", "pi_1")

    def test_clear(self):
        marker = ProcessedEventMarker(60)
        marker.mark("evt_1")
        marker.clear()
        assert not marker.seen("evt_1")
