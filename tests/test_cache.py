"""
tests/test_cache.py

Coverage
--------
- set/get round trip before TTL, expiry after TTL
- FIFO eviction by entry count and by byte size
- Key stability under mapping-key reordering
- Stats bookkeeping (counts, sizes, hit rate)
"""

from __future__ import annotations

import pytest

from core.cache import QueryCache, make_key, serialize


class TestTTL:
    def test_get_before_expiry(self, clock) -> None:
        cache = QueryCache(ttl_seconds=10, max_entries=5, clock=clock)
        cache.set("analyze", {"a": 1}, [1, 2, 3])
        clock.advance(9.9)
        assert cache.get("analyze", {"a": 1}) == [1, 2, 3]

    def test_expired_entry_removed(self, clock) -> None:
        cache = QueryCache(ttl_seconds=10, max_entries=5, clock=clock)
        cache.set("analyze", {"a": 1}, "value")
        clock.advance(10)
        assert cache.get("analyze", {"a": 1}) is None
        assert cache.stats().entry_count == 0
        assert cache.stats().total_size == 0

    def test_ttl_not_refreshed_by_reads(self, clock) -> None:
        cache = QueryCache(ttl_seconds=10, max_entries=5, clock=clock)
        cache.set("op", {}, "v")
        clock.advance(6)
        assert cache.get("op", {}) == "v"
        clock.advance(6)
        assert cache.get("op", {}) is None

    def test_purge_expired(self, clock) -> None:
        cache = QueryCache(ttl_seconds=10, max_entries=5, clock=clock)
        cache.set("op", {"k": 1}, "old")
        clock.advance(5)
        cache.set("op", {"k": 2}, "new")
        clock.advance(6)
        assert cache.purge_expired() == 1
        assert cache.get("op", {"k": 2}) == "new"


class TestBounds:
    def test_entry_bound_evicts_oldest(self, clock) -> None:
        cache = QueryCache(ttl_seconds=300, max_entries=3, clock=clock)
        for i in range(5):
            cache.set("op", {"i": i}, i)
        assert cache.stats().entry_count == 3
        assert [cache.get("op", {"i": i}) for i in range(5)] == [None, None, 2, 3, 4]

    def test_reset_moves_to_newest(self, clock) -> None:
        cache = QueryCache(ttl_seconds=300, max_entries=2, clock=clock)
        cache.set("op", {"i": 0}, "a")
        cache.set("op", {"i": 1}, "b")
        cache.set("op", {"i": 0}, "a2")
        cache.set("op", {"i": 2}, "c")
        assert cache.get("op", {"i": 0}) == "a2"
        assert cache.get("op", {"i": 1}) is None
        assert len(cache) == 2

    def test_byte_bound(self, clock) -> None:
        value = "x" * 40
        size = len(serialize(value))
        cache = QueryCache(ttl_seconds=300, max_entries=100, max_bytes=size * 2, clock=clock)
        for i in range(3):
            cache.set("op", {"i": i}, value)
        stats = cache.stats()
        assert stats.entry_count == 2
        assert stats.total_size <= size * 2
        assert cache.get("op", {"i": 0}) is None

    def test_oversized_value_not_stored(self, clock) -> None:
        cache = QueryCache(ttl_seconds=300, max_entries=10, max_bytes=8, clock=clock)
        cache.set("op", {}, "a much longer value")
        assert len(cache) == 0

    def test_expired_entries_purged_before_eviction(self, clock) -> None:
        cache = QueryCache(ttl_seconds=10, max_entries=2, clock=clock)
        cache.set("op", {"i": 0}, 0)
        clock.advance(5)
        cache.set("op", {"i": 1}, 1)
        clock.advance(6)
        cache.set("op", {"i": 2}, 2)
        assert cache.get("op", {"i": 1}) == 1
        assert cache.get("op", {"i": 2}) == 2

    def test_invalid_bounds(self) -> None:
        with pytest.raises(ValueError):
            QueryCache(max_entries=0)


class TestKeys:
    def test_key_ignores_mapping_order(self) -> None:
        assert make_key("analyze", {"a": 1, "b": [2]}) == make_key("analyze", {"b": [2], "a": 1})

    def test_operation_is_part_of_key(self) -> None:
        assert make_key("query", {}) != make_key("analyze", {})

    def test_list_order_is_significant(self) -> None:
        assert make_key("analyze", {"dims": ["a", "b"]}) != make_key("analyze", {"dims": ["b", "a"]})


class TestStats:
    def test_hit_rate(self, clock) -> None:
        cache = QueryCache(ttl_seconds=300, max_entries=10, clock=clock)
        cache.set("op", {}, 1)
        cache.get("op", {})
        cache.get("op", {"missing": True})
        stats = cache.stats()
        assert (stats.hits, stats.misses) == (1, 1)
        assert stats.hit_rate == pytest.approx(50.0)

    def test_get_or_compute_calls_once(self, clock) -> None:
        cache = QueryCache(ttl_seconds=300, max_entries=10, clock=clock)
        calls = []

        def compute() -> int:
            calls.append(1)
            return 42

        assert cache.get_or_compute("op", {}, compute) == 42
        assert cache.get_or_compute("op", {}, compute) == 42
        assert len(calls) == 1

    def test_clear(self, clock) -> None:
        cache = QueryCache(ttl_seconds=300, max_entries=10, clock=clock)
        cache.set("op", {}, 1)
        cache.clear()
        assert cache.stats().entry_count == 0
        assert cache.stats().total_size == 0
