import asyncio
import fnmatch
import json
import logging
from typing import Any, Callable, Optional

from cachetools import TTLCache
from redis.asyncio import Redis, RedisError

from taskboard.core.config import get_settings

logger = logging.getLogger(__name__)


class RedisMemoryGuard:
    """
    Samples Redis memory usage so writes can back off under pressure.

    Levels 0-10 are ``used_memory / maxmemory`` in tenths:
    - 0-4: normal TTL
    - 5-6: TTL reduced by 20%
    - 7-8: TTL capped at 60s
    - 9+: skip Redis writes, L1 only
    """

    def __init__(self, redis: Redis, refresh_interval: int = 5):
        self.redis = redis
        self.refresh_interval = refresh_interval
        self._last_check = 0.0
        self._cached: dict | None = None

    async def check(self) -> dict:
        now = asyncio.get_running_loop().time()
        if self._cached and (now - self._last_check) < self.refresh_interval:
            return self._cached

        try:
            info = await self.redis.info("memory")
        except RedisError as e:
            logger.error("Redis memory check failed: %s", e)
            return {"level": 0, "ratio": None, "error": str(e)}

        used = info["used_memory"]
        maxm = info.get("maxmemory", 0)
        if maxm == 0:
            result = {"level": 0, "ratio": None, "used_mb": used / (1024 * 1024)}
        else:
            ratio = used / maxm
            result = {
                "level": int(min(ratio * 10, 10)),
                "ratio": ratio,
                "used_mb": used / (1024 * 1024),
                "max_mb": maxm / (1024 * 1024),
            }
            if result["level"] >= 9:
                logger.warning("Redis memory critical: level=%s ratio=%.1f%%", result["level"], ratio * 100)

        self._cached = result
        self._last_check = now
        return result


class CacheLayer:
    """
    Two-tier read cache for task and stats snapshots.

    L1: process-local TTLCache. L2: Redis, shared across workers, optional.
    Values must be JSON-serialisable; callers store ``model_dump(mode="json")``
    output. When Redis is not configured or unreachable the layer runs on L1 only.
    """

    def __init__(self):
        self._settings = None
        self._redis: Redis | None = None
        self._memory_guard: RedisMemoryGuard | None = None
        self.l1: TTLCache | None = None
        self._initialized = False

        self.stats = {"l1_hits": 0, "l2_hits": 0, "misses": 0, "errors": 0}

    async def init_cache(self):
        """Initialize settings, L1 cache, and Redis connection."""
        if self._initialized:
            return

        if self._settings is None:
            self._settings = get_settings()
        settings = self._settings

        if self.l1 is None:
            self.l1 = TTLCache(maxsize=settings.l1_maxsize, ttl=settings.l1_ttl_seconds)

        if settings.redis_dsn and self._redis is None:
            try:
                self._redis = Redis.from_url(
                    settings.redis_dsn,
                    encoding="utf-8",
                    decode_responses=True,
                    max_connections=settings.redis_pool_size,
                    socket_connect_timeout=5,
                    socket_keepalive=True,
                    health_check_interval=30,
                )
                await self._redis.ping()
                self._memory_guard = RedisMemoryGuard(self._redis)
                logger.info("Redis connection established")
            except RedisError as e:
                logger.warning("Redis unavailable, running with L1 cache only: %s", e)
                self._redis = None
                self._memory_guard = None

        self._initialized = True
        logger.info("Cache layer initialized (l2=%s)", "redis" if self._redis else "off")

    def _key(self, key: str) -> str:
        return f"{self._settings.cache_namespace}{key}"

    async def _adjust_ttl_for_pressure(self, base_ttl: int) -> int:
        if not self._memory_guard:
            return base_ttl

        level = (await self._memory_guard.check())["level"]
        if level >= 9:
            return 0
        elif level >= 7:
            return min(base_ttl, 60)
        elif level >= 5:
            return max(int(base_ttl * 0.8), 1)
        return base_ttl

    async def get(
        self,
        key: str,
        loader: Optional[Callable[[], Any]] = None,
        l2_ttl: Optional[int] = None,
    ):
        """
        Retrieve value from cache hierarchy: L1 -> L2 -> loader.

        Args:
            key: Cache key (namespaced automatically)
            loader: Async function to load value on cache miss
            l2_ttl: TTL for L2 cache in seconds (uses default if None)

        Returns:
            Cached value or loaded value, or None if not found
        """
        await self.init_cache()
        full_key = self._key(key)

        if full_key in self.l1:
            self.stats["l1_hits"] += 1
            logger.debug("L1 hit %s", key)
            return self.l1[full_key]

        if self._redis:
            try:
                raw = await self._redis.get(full_key)
                if raw is not None:
                    self.stats["l2_hits"] += 1
                    logger.debug("L2 hit %s", key)
                    value = json.loads(raw)
                    self.l1[full_key] = value
                    return value
            except RedisError as e:
                logger.error("Redis GET error for %s: %s", key, e)
                self.stats["errors"] += 1

        self.stats["misses"] += 1
        if loader is None:
            return None

        # Per-key lock so concurrent misses hit the database once
        async with _get_lock_for_key(full_key):
            if full_key in self.l1:
                return self.l1[full_key]

            value = await loader()
            if value is None:
                return None

            await self._set_both_layers(full_key, value, l2_ttl)
            return value

    async def _set_both_layers(self, full_key: str, value: Any, l2_ttl: int | None = None):
        self.l1[full_key] = value

        if not self._redis:
            return
        try:
            ttl = await self._adjust_ttl_for_pressure(l2_ttl or self._settings.l2_ttl_seconds)
            if ttl == 0:
                logger.debug("Skipping Redis write for %s due to memory pressure", full_key)
                return
            await self._redis.set(full_key, json.dumps(value, default=str), ex=ttl)
        except RedisError as e:
            logger.error("Redis SET error for %s: %s", full_key, e)
            self.stats["errors"] += 1

    async def set(self, key: str, value: Any, l2_ttl: Optional[int] = None):
        await self.init_cache()
        await self._set_both_layers(self._key(key), value, l2_ttl)

    async def delete(self, key: str):
        """Delete a key from both layers."""
        await self.init_cache()
        full_key = self._key(key)
        self.l1.pop(full_key, None)

        if self._redis:
            try:
                await self._redis.delete(full_key)
            except RedisError as e:
                logger.error("Redis DELETE error for %s: %s", key, e)
                self.stats["errors"] += 1

    async def delete_pattern(self, pattern: str):
        """
        Delete every key matching a glob pattern from both layers.

        L1 is scanned in-process; L2 uses SCAN so large keyspaces are not blocked.
        """
        await self.init_cache()
        full_pattern = self._key(pattern)

        for cached_key in [k for k in list(self.l1.keys()) if fnmatch.fnmatchcase(k, full_pattern)]:
            self.l1.pop(cached_key, None)

        if not self._redis:
            return
        try:
            deleted = 0
            async for batch in _scan_batches(self._redis, full_pattern):
                await self._redis.delete(*batch)
                deleted += len(batch)
            logger.debug("Pattern delete %s removed %d L2 keys", pattern, deleted)
        except RedisError as e:
            logger.error("Pattern delete error for %s: %s", pattern, e)
            self.stats["errors"] += 1

    def clear(self):
        """
        Drop every L1 entry and per-key lock.

        Test hook: the suite resets the process-wide cache between cases with it.
        L2 entries are left to expire on their own.
        """
        if self.l1 is not None:
            self.l1.clear()
        _locks.clear()

    async def close(self):
        """Graceful shutdown of cache connections."""
        if self._redis:
            try:
                await self._redis.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error("Error closing Redis: %s", e)
        self._redis = None
        self._memory_guard = None
        self._initialized = False

    def get_stats(self) -> dict:
        total = self.stats["l1_hits"] + self.stats["l2_hits"] + self.stats["misses"]
        return {
            **self.stats,
            "l1_size": len(self.l1) if self.l1 else 0,
            "hit_rate": (self.stats["l1_hits"] + self.stats["l2_hits"]) / total if total else 0,
        }


async def _scan_batches(redis: Redis, pattern: str):
    cursor = 0
    while True:
        cursor, keys = await redis.scan(cursor, match=pattern, count=100)
        if keys:
            yield keys
        if cursor == 0:
            break


# Per-key locks for stampede protection. setdefault() hands every concurrent
# caller the same lock; entries expire 300s after last access.
_locks = TTLCache(maxsize=10_000, ttl=300)


def _get_lock_for_key(key: str) -> asyncio.Lock:
    return _locks.setdefault(key, asyncio.Lock())


# Cache layer instance (singleton per worker)
cache_layer = CacheLayer()
