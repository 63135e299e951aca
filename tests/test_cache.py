"""Tests for cache keys and the two-tier cache."""

from typing import Any, Dict, List, Optional
import asyncio
import time

from commerce_agent.domain.cache.cache_keys import cache_key, normalize_params
from commerce_agent.domain.cache.cache_layer import TieredCache
from commerce_agent.domain.cache.memory_backend import DistributedCacheBackend, InMemoryDistributedCache


class _FailingBackend(DistributedCacheBackend):
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise ConnectionError("l2 down")

    async def set(self, key: str, value: Any, ttl: float, tags: Optional[List[str]] = None) -> None:
        raise ConnectionError("l2 down")

    async def delete(self, key: str) -> bool:
        raise ConnectionError("l2 down")

    async def delete_tag(self, tag: str) -> int:
        raise ConnectionError("l2 down")


class _HangingBackend(InMemoryDistributedCache):
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(10)
        return None

    async def set(self, key: str, value: Any, ttl: float, tags: Optional[List[str]] = None) -> None:
        await asyncio.sleep(10)


def _make_clock(start: float = 0.0):
    now = [start]

    def clock() -> float:
        return now[0]

    return now, clock


class TestCacheKey:
    def test_case_whitespace_and_key_order_insensitive(self):
        a = cache_key("search_products", {"query": " Laptops ", "filters": {"maxPrice": 1000, "category": "Laptops"}}, "b2c")
        b = cache_key("search_products", {"filters": {"category": "laptops", "maxPrice": 1000}, "query": "laptops"}, "b2c")
        assert a == b

    def test_none_values_dropped(self):
        assert cache_key("search_products", {"query": "desk", "brand": None}, "b2c") == \
            cache_key("search_products", {"query": "desk"}, "b2c")

    def test_list_order_kept(self):
        assert cache_key("get_pricing", {"product_ids": ["A", "B"]}, "b2c") != \
            cache_key("get_pricing", {"product_ids": ["B", "A"]}, "b2c")

    def test_mode_is_part_of_key(self):
        params = {"product_ids": ["SKU123"]}
        assert cache_key("get_pricing", params, "b2c") != cache_key("get_pricing", params, "b2b")

    def test_key_format(self):
        key = cache_key("search_products", {"query": "x"}, "b2c")
        action, mode, digest = key.split(":")
        assert (action, mode) == ("search_products", "b2c")
        assert len(digest) == 64

    def test_normalize_nested(self):
        assert normalize_params({"B": [" X ", {"z": None, "y": "Q"}]}) == {"B": ["x", {"y": "q"}]}


class TestTieredCache:
    async def test_set_then_get_hits_l1(self):
        cache = TieredCache()
        await cache.set("k", {"v": 1})
        assert await cache.get("k") == {"v": 1}
        assert cache.stats["l1_hits"] == 1

    async def test_miss_counted(self):
        cache = TieredCache()
        assert await cache.get("missing") is None
        assert cache.stats["misses"] == 1

    async def test_entry_expires_after_ttl(self):
        now, clock = _make_clock()
        cache = TieredCache(clock=clock)
        await cache.set("k", "v", ttl_seconds=10)
        now[0] = 9.0
        assert await cache.get("k") == "v"
        now[0] = 11.0
        assert await cache.get("k") is None
        assert "k" not in cache

    async def test_lru_eviction(self):
        cache = TieredCache(max_entries=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.get("a")
        await cache.set("c", 3)
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert cache.stats["evictions"] == 1

    async def test_invalidate_tag_removes_only_tagged(self):
        cache = TieredCache()
        await cache.set("cart-1-summary", "one", tags=["cart:c1"])
        await cache.set("cart-2-summary", "two", tags=["cart:c2"])
        await cache.set("search", "results", tags=["catalog"])

        removed = await cache.invalidate_tag("cart:c1")

        assert removed == 1
        assert "cart-1-summary" not in cache
        assert "cart-2-summary" in cache
        assert "search" in cache

    async def test_invalidate_tag_reaches_l2(self):
        backend = InMemoryDistributedCache()
        cache = TieredCache(backend=backend)
        await cache.set("k", "v", tags=["cart:c1"])
        await cache.invalidate_tag("cart:c1")
        assert await backend.get("k") is None

    async def test_invalidate_key(self):
        cache = TieredCache(backend=InMemoryDistributedCache())
        await cache.set("k", "v")
        await cache.invalidate("k")
        assert await cache.get("k") is None

    async def test_l2_hit_is_promoted(self):
        backend = InMemoryDistributedCache()
        writer = TieredCache(backend=backend)
        reader = TieredCache(backend=backend)
        await writer.set("k", {"v": 1}, ttl_seconds=60, tags=["catalog"])

        assert "k" not in reader
        assert await reader.get("k") == {"v": 1}
        assert reader.stats["l2_hits"] == 1
        assert "k" in reader

        await reader.get("k")
        assert reader.stats["l1_hits"] == 1

    async def test_l2_failures_are_misses(self):
        cache = TieredCache(backend=_FailingBackend())
        assert await cache.get("k") is None
        assert cache.stats["misses"] == 1
        assert cache.stats["l2_errors"] == 1

    async def test_l2_write_failure_keeps_l1(self):
        cache = TieredCache(backend=_FailingBackend())
        await cache.set("k", "v")
        assert await cache.get("k") == "v"
        assert cache.stats["l2_errors"] == 1

    async def test_slow_l2_read_is_a_miss_within_timeout(self):
        cache = TieredCache(backend=_HangingBackend(), l2_timeout_ms=20)
        started = time.monotonic()
        assert await cache.get("k") is None
        assert time.monotonic() - started < 1
        assert cache.stats["misses"] == 1
        assert cache.stats["l2_errors"] == 1

    async def test_slow_l2_write_is_skipped(self):
        cache = TieredCache(backend=_HangingBackend(), l2_timeout_ms=20)
        started = time.monotonic()
        await cache.set("k", "v")
        assert time.monotonic() - started < 1
        assert await cache.get("k") == "v"
        assert cache.stats["l2_errors"] == 1

    async def test_overwrite_is_last_write_wins(self):
        cache = TieredCache()
        await cache.set("k", "first", tags=["a"])
        await cache.set("k", "second", tags=["b"])
        assert await cache.get("k") == "second"
        assert await cache.invalidate_tag("a") == 0
        assert len(cache) == 1


class TestInMemoryDistributedCache:
    async def test_expired_entries_cleared(self):
        backend = InMemoryDistributedCache()
        await backend.set("old", "v", ttl=-1)
        await backend.set("new", "v", ttl=60)
        assert await backend.clear_expired() == 1
        assert await backend.get("new") is not None

    async def test_delete_tag_counts(self):
        backend = InMemoryDistributedCache()
        await backend.set("a", 1, ttl=60, tags=["pricing"])
        await backend.set("b", 2, ttl=60, tags=["pricing", "bulk_pricing"])
        await backend.set("c", 3, ttl=60)
        assert await backend.delete_tag("pricing") == 2
        assert await backend.get("c") is not None
