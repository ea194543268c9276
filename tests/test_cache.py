"""Tests for the LRU cache."""

import pytest

from memflow.memory.cache import MemoryCache
from memflow.memory.types import MemoryUnit


class TestMemoryCache:
    """Tests for MemoryCache."""

    def test_evicts_least_recently_used(self):
        """Test that a read protects an entry from eviction."""
        cache = MemoryCache(capacity=2)
        a, b, c = MemoryUnit(content="a"), MemoryUnit(content="b"), MemoryUnit(content="c")

        cache.set(a)
        cache.set(b)
        assert cache.get(a.id) is not None
        cache.set(c)

        assert a.id in cache
        assert c.id in cache
        assert b.id not in cache
        assert len(cache) == 2

    def test_hits_and_misses(self):
        """Test hit and miss counters."""
        cache = MemoryCache(capacity=4)
        unit = MemoryUnit(content="x")
        cache.set(unit)

        cache.get(unit.id)
        cache.get("missing")

        assert cache.hits == 1
        assert cache.misses == 1

    def test_entries_are_copies(self):
        """Test cached units never alias the caller's objects."""
        cache = MemoryCache()
        unit = MemoryUnit(content={"text": "cached"})
        cache.set(unit)
        unit.content["text"] = "changed"

        assert cache.get(unit.id).content == {"text": "cached"}

    def test_keys_order_and_delete(self):
        """Test recency ordering and removal."""
        cache = MemoryCache(capacity=3)
        a, b = MemoryUnit(content="a"), MemoryUnit(content="b")
        cache.set(a)
        cache.set(b)
        cache.get(a.id)

        assert cache.keys() == [b.id, a.id]

        cache.delete(a.id)
        assert cache.keys() == [b.id]

        cache.clear()
        assert len(cache) == 0

    def test_invalid_capacity(self):
        """Test that a cache must hold at least one entry."""
        with pytest.raises(ValueError):
            MemoryCache(capacity=0)
