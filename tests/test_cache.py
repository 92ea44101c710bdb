"""Response cache: TTL, LRU bound, stats and the diskcache backend."""

from __future__ import annotations

import unittest

import pytest

from ai_dispatch.cache import ResponseCache
from conftest import FakeClock


class TestMemoryCache(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = ResponseCache(max_entries=3, ttl=300, clock=self.clock)

    def test_put_get(self):
        self.cache.put("req:a", "Hello")
        self.assertEqual(self.cache.get("req:a"), "Hello")
        self.assertIn("req:a", self.cache)

    def test_miss(self):
        self.assertIsNone(self.cache.get("req:nope"))

    def test_expires_after_ttl(self):
        self.cache.put("req:a", "Hello")
        self.clock.advance(299)
        self.assertEqual(self.cache.get("req:a"), "Hello")
        self.clock.advance(1)
        self.assertIsNone(self.cache.get("req:a"))
        self.assertEqual(len(self.cache), 0)

    def test_per_entry_ttl(self):
        self.cache.put("req:a", "short", ttl=5)
        self.clock.advance(6)
        self.assertNotIn("req:a", self.cache)

    def test_lru_eviction(self):
        for key in ("a", "b", "c"):
            self.cache.put(f"req:{key}", key)
        self.cache.get("req:a")             # a is now most recently used
        self.cache.put("req:d", "d")
        self.assertIsNone(self.cache.get("req:b"))
        self.assertEqual(self.cache.get("req:a"), "a")
        self.assertEqual(len(self.cache), 3)

    def test_stats(self):
        self.cache.put("req:a", "x")
        self.cache.get("req:a")
        self.cache.get("req:b")
        stats = self.cache.stats
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(stats["hit_rate"], 0.5)
        self.assertEqual(stats["entries"], 1)
        self.assertEqual(stats["backend"], "memory")

    def test_clear_and_invalidate(self):
        self.cache.put("req:a", "x")
        self.cache.put("req:b", "y")
        self.cache.invalidate("req:a")
        self.assertNotIn("req:a", self.cache)
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)

    def test_disabled_cache_stores_nothing(self):
        cache = ResponseCache(enabled=False)
        cache.put("req:a", "x")
        self.assertIsNone(cache.get("req:a"))
        self.assertEqual(len(cache), 0)

    def test_unknown_backend(self):
        with self.assertRaises(ValueError):
            ResponseCache(backend="redis")


class TestDiskCache:
    def test_round_trip_and_persistence(self, tmp_path):
        cache = ResponseCache(backend="disk", directory=str(tmp_path / "cache"), ttl=300)
        cache.put("req:a", "Hello")
        assert cache.get("req:a") == "Hello"
        cache.close()

        reopened = ResponseCache(backend="disk", directory=str(tmp_path / "cache"), ttl=300)
        assert reopened.get("req:a") == "Hello"
        assert reopened.stats["backend"] == "disk"
        reopened.clear()
        assert len(reopened) == 0
        reopened.close()

    def test_disk_backend_needs_directory(self):
        with pytest.raises(ValueError):
            ResponseCache(backend="disk", directory=None)
