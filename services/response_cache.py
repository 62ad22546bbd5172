"""
============================================================================
Budget Request Service - Response Cache Layer
============================================================================

Input Constraints: Cached values must be JSON-safe (BudgetJSONEncoder)
Side Effects: Reads/writes the configured cache backend

KEY NAMESPACES:
    requests:detail:<id>                         detail read (TTL 10 min)
    requests:list:<user>:<role>:<filter-hash>    user-scoped list (TTL 3 min)
    analytics:<name>:<param-hash>                analytics (TTL 5 min)
    budget:<dept>:<year>:<period>                department budget (TTL 15 min)

CONSISTENCY:
    Every mutation of a request calls invalidate_after_mutation(id), which
    drops the detail key, every requests:list:* key and every analytics:* key.
    A backend failure degrades to a cache miss and is never raised.

BACKENDS:
    - InMemoryCacheBackend: process-local TTL map (default)
    - RedisCacheBackend: redis.asyncio, used when REDIS_URL is set

============================================================================
"""

from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
import fnmatch
import hashlib
import json
import logging
import time

import redis.asyncio as redis_asyncio

from app.observability.metrics import record_cache_operation
from services.budget_request_models import dumps

logger = logging.getLogger(__name__)


# =============================================================================
# Key Namespaces
# =============================================================================

DETAIL_PREFIX = "requests:detail"
LIST_PREFIX = "requests:list"
ANALYTICS_PREFIX = "analytics"
BUDGET_PREFIX = "budget"


def _hash_params(params: Optional[Dict[str, Any]]) -> str:
    canonical = dumps(params or {})
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def generate_cache_key(prefix: str, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Deterministic key for a prefix and parameter set.

    Parameters are hashed from canonical sorted JSON, so dict ordering
    never produces a different key.
    """
    return f"{prefix}:{_hash_params(params)}"


def generate_user_cache_key(
    prefix: str,
    user_id: str,
    role: str,
    filters: Optional[Dict[str, Any]] = None,
) -> str:
    """Key scoped to (user, role, full filter set)."""
    return f"{prefix}:{user_id}:{role}:{_hash_params(filters)}"


def detail_key(request_id: int) -> str:
    return f"{DETAIL_PREFIX}:{request_id}"


def department_budget_key(department: str, fiscal_year: int, fiscal_period: str) -> str:
    return f"{BUDGET_PREFIX}:{department}:{fiscal_year}:{fiscal_period}"


# =============================================================================
# Backends
# =============================================================================

class CacheBackend:
    """Async string key/value store with TTL and glob deletion."""

    name = "base"

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def delete_pattern(self, pattern: str) -> int:
        raise NotImplementedError


class InMemoryCacheBackend(CacheBackend):
    """
    Process-local TTL map.

    Expiry is checked lazily on read. Good enough for a single worker
    and for tests; multi-worker deployments should set REDIS_URL.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: Dict[str, Tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._store.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._store[key] = (self._clock() + ttl_seconds, value)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        doomed = [key for key in self._store if fnmatch.fnmatchcase(key, pattern)]
        for key in doomed:
            del self._store[key]
        return len(doomed)

    async def close(self) -> None:
        self._store.clear()

    def keys(self):
        return list(self._store.keys())


class RedisCacheBackend(CacheBackend):
    """redis.asyncio backend. SCAN-based pattern deletion, never KEYS."""

    name = "redis"

    def __init__(self, url: str, scan_count: int = 500) -> None:
        self.url = url
        self.scan_count = scan_count
        self._client: Optional[redis_asyncio.Redis] = None

    @property
    def client(self) -> redis_asyncio.Redis:
        if self._client is None:
            raise RuntimeError("Redis cache backend is not connected")
        return self._client

    async def connect(self) -> None:
        if self._client is None:
            self._client = redis_asyncio.from_url(self.url, decode_responses=True)
            await self._client.ping()
            logger.info("[BR-CACHE] Redis cache backend connected")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        batch = []
        async for key in self.client.scan_iter(match=pattern, count=self.scan_count):
            batch.append(key)
            if len(batch) >= self.scan_count:
                deleted += await self.client.delete(*batch)
                batch = []
        if batch:
            deleted += await self.client.delete(*batch)
        return deleted


def create_cache_backend(redis_url: Optional[str]) -> CacheBackend:
    if redis_url:
        return RedisCacheBackend(redis_url)
    return InMemoryCacheBackend()


# =============================================================================
# ResponseCache
# =============================================================================

class ResponseCache:
    """
    Read-through JSON cache over a CacheBackend.

    Reliability: backend errors are logged and treated as a miss (reads)
    or a no-op (writes/deletes). Callers never see them.
    """

    def __init__(self, backend: Optional[CacheBackend] = None) -> None:
        self.backend = backend or InMemoryCacheBackend()

    async def connect(self) -> None:
        await self.backend.connect()

    async def close(self) -> None:
        await self.backend.close()

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.backend.get(key)
        except Exception as e:
            record_cache_operation("get", "error")
            logger.warning(f"[BR-CACHE] Cache read failed, treating as miss | key={key} | error={e}")
            return None
        if raw is None:
            record_cache_operation("get", "miss")
            return None
        try:
            value = json.loads(raw)
        except ValueError as e:
            record_cache_operation("get", "error")
            logger.warning(f"[BR-CACHE] Corrupt cache entry dropped | key={key} | error={e}")
            await self.delete(key)
            return None
        record_cache_operation("get", "hit")
        return value

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self.backend.set(key, dumps(value), ttl_seconds)
            record_cache_operation("set", "ok")
        except Exception as e:
            record_cache_operation("set", "error")
            logger.warning(f"[BR-CACHE] Cache write failed | key={key} | error={e}")

    async def delete(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as e:
            record_cache_operation("delete", "error")
            logger.warning(f"[BR-CACHE] Cache delete failed | key={key} | error={e}")

    async def delete_pattern(self, pattern: str) -> int:
        try:
            return await self.backend.delete_pattern(pattern)
        except Exception as e:
            record_cache_operation("delete_pattern", "error")
            logger.warning(
                f"[BR-CACHE] Cache pattern delete failed | pattern={pattern} | error={e}"
            )
            return 0

    async def with_cache(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl_seconds: int,
    ) -> Any:
        """
        Read-through helper.

        On a hit the cached value is returned and compute is not called.
        On a miss compute runs once and its result is stored, unless it
        is None. Exceptions raised by compute propagate unchanged.
        """
        cached = await self.get_json(key)
        if cached is not None:
            logger.debug(f"[BR-CACHE] Hit | key={key}")
            return cached

        value = await compute()
        if value is not None:
            await self.set_json(key, value, ttl_seconds)
        return value

    async def invalidate_after_mutation(
        self,
        request_id: Optional[int],
        correlation_id: Optional[str] = None,
    ) -> None:
        """
        Drop everything a request mutation can make stale: the request's
        detail entry, every list entry and every analytics entry.
        """
        if request_id is not None:
            await self.delete(detail_key(request_id))
        lists = await self.delete_pattern(f"{LIST_PREFIX}:*")
        analytics = await self.delete_pattern(f"{ANALYTICS_PREFIX}:*")
        logger.debug(
            f"[BR-CACHE] Invalidated after mutation | "
            f"request_id={request_id} | "
            f"list_keys={lists} | analytics_keys={analytics} | "
            f"correlation_id={correlation_id}"
        )

    async def invalidate_department_budget(
        self, department: str, fiscal_year: int, fiscal_period: str
    ) -> None:
        await self.delete(department_budget_key(department, fiscal_year, fiscal_period))


__all__ = [
    "DETAIL_PREFIX",
    "LIST_PREFIX",
    "ANALYTICS_PREFIX",
    "BUDGET_PREFIX",
    "generate_cache_key",
    "generate_user_cache_key",
    "detail_key",
    "department_budget_key",
    "CacheBackend",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "create_cache_backend",
    "ResponseCache",
]
