"""
Tracking Cache.

Short-TTL read cache for tracking-number lookups. Two backends share one async
interface:

- InMemoryTrackingCache: process-local dict with lazy expiry on read and a
  periodic sweep. Default for a single-process deployment.
- RedisTrackingCache: shared cache for horizontally scaled deployments;
  cross-instance staleness is bounded by the TTL.

Callers never see backend failures: the Redis backend logs and degrades to a
miss (reads) or a no-op (writes and deletes).
"""

import asyncio
import fnmatch
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from redis.exceptions import RedisError

from shipping_backend.app.core.config import settings

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


def tracking_cache_key(tracking_number: str) -> str:
    return f"shipment:tracking:{tracking_number}"


def _format_stats(hits: int, misses: int, size: int) -> Dict[str, Any]:
    total = hits + misses
    return {
        "hits": hits,
        "misses": misses,
        "hit_rate": f"{(hits / total) * 100:.2f}%" if total else "0%",
        "size": size,
    }


TRACKING_KEY_PATTERN = "shipment:tracking:*"


class PendingFills:
    """
    Tokens for get_or_set loads in flight, per key.

    A delete revokes the tokens of its key, so a load that started before the
    delete finishes without writing its (pre-mutation) value back.
    """

    def __init__(self):
        self._tokens: Dict[str, Set[object]] = {}

    def begin(self, key: str) -> object:
        token = object()
        self._tokens.setdefault(key, set()).add(token)
        return token

    def finish(self, key: str, token: object) -> bool:
        """Release a token. Returns False when a delete revoked it meanwhile."""
        tokens = self._tokens.get(key)
        if tokens is None or token not in tokens:
            return False
        tokens.discard(token)
        if not tokens:
            del self._tokens[key]
        return True

    def revoke(self, key: str) -> None:
        self._tokens.pop(key, None)

    def revoke_matching(self, pattern: str) -> None:
        for key in [k for k in self._tokens if fnmatch.fnmatchcase(k, pattern)]:
            del self._tokens[key]

    def clear(self) -> None:
        self._tokens.clear()


class InMemoryTrackingCache:
    """
    Process-local TTL cache.

    get_or_set will not store a value whose load started before a delete of
    the same key: a read that races a mutation cannot put the pre-mutation
    value back.
    """

    def __init__(self, default_ttl: int = settings.tracking_cache_ttl_seconds, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._store: Dict[str, Dict[str, Any]] = {}
        self._pending = PendingFills()
        self.hits = 0
        self.misses = 0

    def _read(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            self.misses += 1
            return None

        if entry["expires_at"] is not None and self._clock() >= entry["expires_at"]:
            del self._store[key]
            self.misses += 1
            return None

        self.hits += 1
        return entry["value"]

    def _write(self, key: str, value: Any, ttl_seconds: Optional[int]) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        self._store[key] = {
            "value": value,
            "expires_at": self._clock() + ttl if ttl > 0 else None,
        }

    async def get(self, key: str) -> Optional[Any]:
        return self._read(key)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        self._write(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)
        self._pending.revoke(key)

    async def delete_pattern(self, pattern: str) -> int:
        matched = [key for key in self._store if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._store[key]
        self._pending.revoke_matching(pattern)
        return len(matched)

    async def get_or_set(self, key: str, loader: Loader, ttl_seconds: Optional[int] = None) -> Any:
        cached = self._read(key)
        if cached is not None:
            return cached

        token = self._pending.begin(key)
        try:
            value = await loader()
        finally:
            still_current = self._pending.finish(key, token)

        if still_current:
            self._write(key, value, ttl_seconds)
        return value

    async def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [
            key for key, entry in self._store.items()
            if entry["expires_at"] is not None and now >= entry["expires_at"]
        ]
        for key in expired:
            del self._store[key]
        return len(expired)

    async def clear(self) -> None:
        self._store.clear()
        self._pending.clear()

    async def stats(self) -> Dict[str, Any]:
        return _format_stats(self.hits, self.misses, len(self._store))


class RedisTrackingCache:
    """
    Redis-backed cache storing JSON values with a server-side TTL.

    Loads racing a delete issued through this instance are never written back.
    A delete issued by another instance does not revoke them; that staleness is
    bounded by the TTL.
    """

    def __init__(self, redis_client, default_ttl: int = settings.tracking_cache_ttl_seconds):
        self._redis = redis_client
        self.default_ttl = default_ttl
        self._pending = PendingFills()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis.get(key)
        except RedisError:
            logger.warning("Tracking cache read failed for %s", key, exc_info=True)
            self.misses += 1
            return None

        if raw is None:
            self.misses += 1
            return None
        self.hits += 1
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        try:
            await self._redis.set(key, json.dumps(value), ex=ttl if ttl > 0 else None)
        except RedisError:
            logger.warning("Tracking cache write failed for %s", key, exc_info=True)

    async def delete(self, key: str) -> None:
        self._pending.revoke(key)
        try:
            await self._redis.delete(key)
        except RedisError:
            logger.warning("Tracking cache invalidation failed for %s", key, exc_info=True)

    async def delete_pattern(self, pattern: str) -> int:
        self._pending.revoke_matching(pattern)
        deleted = 0
        try:
            async for key in self._redis.scan_iter(match=pattern):
                deleted += await self._redis.delete(key)
        except RedisError:
            logger.warning("Tracking cache pattern invalidation failed for %s", pattern, exc_info=True)
        return deleted

    async def get_or_set(self, key: str, loader: Loader, ttl_seconds: Optional[int] = None) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached

        token = self._pending.begin(key)
        try:
            value = await loader()
        finally:
            still_current = self._pending.finish(key, token)

        if still_current:
            await self.set(key, value, ttl_seconds)
        return value

    async def sweep(self) -> int:
        # Redis expires keys itself
        return 0

    async def clear(self) -> None:
        await self.delete_pattern(TRACKING_KEY_PATTERN)
        self._pending.clear()

    async def stats(self) -> Dict[str, Any]:
        """Hit/miss counters of this instance; size counts tracking keys only."""
        size = 0
        try:
            async for _ in self._redis.scan_iter(match=TRACKING_KEY_PATTERN):
                size += 1
        except RedisError:
            logger.warning("Tracking cache size lookup failed", exc_info=True)
        return _format_stats(self.hits, self.misses, size)


def build_tracking_cache(backend: str = settings.cache_backend):
    """Create the configured cache backend."""
    if backend == "redis":
        from shipping_backend.app.core.redis_client import redis_client
        return RedisTrackingCache(redis_client)
    return InMemoryTrackingCache()


async def run_cache_sweeper(cache, interval_seconds: int = settings.cache_sweep_interval_seconds) -> None:
    """Background task: periodically sweep expired entries until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        removed = await cache.sweep()
        if removed:
            logger.debug("Tracking cache sweep removed %d expired entries", removed)
