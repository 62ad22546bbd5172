"""
Unit Tests for the Response Cache Layer
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.response_cache import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    ResponseCache,
    create_cache_backend,
    department_budget_key,
    detail_key,
    generate_cache_key,
    generate_user_cache_key,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class BrokenBackend(CacheBackend):
    name = "broken"

    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl_seconds):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")

    async def delete_pattern(self, pattern):
        raise ConnectionError("cache down")


# =============================================================================
# Key Generation
# =============================================================================

class TestCacheKeys:

    def test_key_ignores_dict_order(self) -> None:
        a = generate_cache_key("analytics:summary", {"b": 2, "a": 1})
        b = generate_cache_key("analytics:summary", {"a": 1, "b": 2})
        assert a == b

    def test_key_changes_with_params(self) -> None:
        a = generate_cache_key("analytics:summary", {"a": 1})
        b = generate_cache_key("analytics:summary", {"a": 2})
        assert a != b

    def test_user_key_scoped_by_user_and_role(self) -> None:
        filters = {"status": "DRAFT"}
        key = generate_user_cache_key("requests:list", "u-1", "Operations Staff", filters)
        assert key.startswith("requests:list:u-1:Operations Staff:")
        other = generate_user_cache_key("requests:list", "u-2", "Operations Staff", filters)
        assert key != other

    def test_named_keys(self) -> None:
        assert detail_key(7) == "requests:detail:7"
        assert department_budget_key("hr", 2026, "Q1") == "budget:hr:2026:Q1"

    def test_backend_selection(self) -> None:
        assert isinstance(create_cache_backend(None), InMemoryCacheBackend)
        assert isinstance(create_cache_backend("redis://localhost:6379/0"), RedisCacheBackend)


# =============================================================================
# In-Memory Backend
# =============================================================================

class TestInMemoryBackend:

    async def test_ttl_expiry(self) -> None:
        clock = FakeClock()
        backend = InMemoryCacheBackend(clock=clock)
        await backend.set("k", "v", ttl_seconds=10)
        assert await backend.get("k") == "v"
        clock.now += 10
        assert await backend.get("k") is None

    async def test_delete_pattern(self) -> None:
        backend = InMemoryCacheBackend()
        await backend.set("requests:list:a", "1", 60)
        await backend.set("requests:list:b", "2", 60)
        await backend.set("requests:detail:1", "3", 60)
        assert await backend.delete_pattern("requests:list:*") == 2
        assert backend.keys() == ["requests:detail:1"]


# =============================================================================
# ResponseCache
# =============================================================================

class TestResponseCache:

    async def test_with_cache_computes_once(self) -> None:
        cache = ResponseCache(InMemoryCacheBackend())
        calls = []

        async def compute():
            calls.append(1)
            return {"value": 42}

        first = await cache.with_cache("k", compute, 60)
        second = await cache.with_cache("k", compute, 60)
        assert first == second == {"value": 42}
        assert len(calls) == 1

    async def test_none_result_not_cached(self) -> None:
        backend = InMemoryCacheBackend()
        cache = ResponseCache(backend)

        async def compute():
            return None

        assert await cache.with_cache("k", compute, 60) is None
        assert backend.keys() == []

    async def test_compute_error_propagates(self) -> None:
        cache = ResponseCache(InMemoryCacheBackend())

        async def compute():
            raise LookupError("missing")

        with pytest.raises(LookupError):
            await cache.with_cache("k", compute, 60)

    async def test_expired_entry_recomputed(self) -> None:
        clock = FakeClock()
        cache = ResponseCache(InMemoryCacheBackend(clock=clock))
        values = iter([1, 2])

        async def compute():
            return next(values)

        assert await cache.with_cache("k", compute, 5) == 1
        clock.now += 6
        assert await cache.with_cache("k", compute, 5) == 2

    async def test_invalidate_after_mutation(self) -> None:
        backend = InMemoryCacheBackend()
        cache = ResponseCache(backend)
        await cache.set_json(detail_key(1), {"id": 1}, 60)
        await cache.set_json(detail_key(2), {"id": 2}, 60)
        await cache.set_json("requests:list:u-1:Staff:abc", [1], 60)
        await cache.set_json("analytics:department_summary:abc", {}, 60)
        await cache.set_json("budget:hr:2026:Q1", {}, 60)

        await cache.invalidate_after_mutation(1, "corr-1")

        assert sorted(backend.keys()) == ["budget:hr:2026:Q1", detail_key(2)]

    async def test_backend_failure_degrades_to_miss(self) -> None:
        cache = ResponseCache(BrokenBackend())
        calls = []

        async def compute():
            calls.append(1)
            return "fresh"

        assert await cache.with_cache("k", compute, 60) == "fresh"
        assert await cache.with_cache("k", compute, 60) == "fresh"
        assert len(calls) == 2
        assert await cache.delete_pattern("requests:list:*") == 0
        await cache.invalidate_after_mutation(1)

    async def test_corrupt_entry_dropped(self) -> None:
        backend = InMemoryCacheBackend()
        await backend.set("k", "{not json", 60)
        cache = ResponseCache(backend)
        assert await cache.get_json("k") is None
        assert backend.keys() == []

    async def test_decimal_values_serialized_as_strings(self) -> None:
        from decimal import Decimal

        cache = ResponseCache(InMemoryCacheBackend())
        await cache.set_json("k", {"amount": Decimal("10.50")}, 60)
        assert await cache.get_json("k") == {"amount": "10.50"}
