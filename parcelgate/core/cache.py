"""
Key-value cache with TTL shared by the token, rate and transit stores.

Values are JSON documents written whole: a reader sees either the previous
document or the new one, never a partially updated entry. Redis is used when
configured; otherwise (or when a Redis call fails) an in-process LRU store
with the same semantics takes over.

Usage:
    cache = KeyValueCache()
    await cache.set("rates:ups:abc", {"rates": [...]}, ttl_seconds=3600)
    doc = await cache.get("rates:ups:abc")
"""
import json
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
RedisFactory = Callable[[], Awaitable[Any]]


class MemoryStore:
    """
    LRU store with per-entry expiry for single-process deployments and tests.

    Entries hold the serialized document, so callers never share mutable state.
    """

    def __init__(self, max_size: int = 10000, clock: Clock = time.time):
        self.max_size = max_size
        self.clock = clock
        self._data: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()

    def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if self.clock() >= expires_at:
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return raw

    def set(self, key: str, raw: str, ttl_seconds: int) -> None:
        while len(self._data) >= self.max_size and key not in self._data:
            self._data.popitem(last=False)
        self._data[key] = (self.clock() + ttl_seconds, raw)
        self._data.move_to_end(key)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        keys = [k for k in self._data if k.startswith(prefix)]
        for k in keys:
            del self._data[k]
        return len(keys)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class KeyValueCache:
    """
    JSON document cache backed by Redis with in-memory fallback.

    Attributes:
        namespace: Prefix applied to every key (isolates apps sharing a Redis)
        memory: The in-process store used when Redis is absent or failing
    """

    def __init__(
        self,
        namespace: str = "parcelgate:",
        redis_factory: Optional[RedisFactory] = None,
        clock: Clock = time.time,
        max_memory_entries: int = 10000,
    ):
        self.namespace = namespace
        self.clock = clock
        self.memory = MemoryStore(max_size=max_memory_entries, clock=clock)
        self._redis_factory = redis_factory

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    async def _redis(self):
        if self._redis_factory is None:
            return None
        return await self._redis_factory()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored document or None if missing/expired."""
        full_key = self._key(key)
        raw: Optional[str] = None

        client = await self._redis()
        if client is not None:
            try:
                raw = await client.get(full_key)
            except Exception as e:
                logger.warning(f"[CACHE] Redis get failed for {key}: {e}. Using in-memory store.")
                raw = self.memory.get(full_key)
        else:
            raw = self.memory.get(full_key)

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"[CACHE] Discarding undecodable entry {key}")
            await self.delete(key)
            return None

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        """Replace the document stored under key. Non-positive TTLs are not stored."""
        ttl_seconds = int(ttl_seconds)
        if ttl_seconds <= 0:
            return
        full_key = self._key(key)
        raw = json.dumps(value, default=str)

        client = await self._redis()
        if client is not None:
            try:
                await client.setex(full_key, ttl_seconds, raw)
                return
            except Exception as e:
                logger.warning(f"[CACHE] Redis set failed for {key}: {e}. Using in-memory store.")
        self.memory.set(full_key, raw, ttl_seconds)

    async def delete(self, key: str) -> None:
        full_key = self._key(key)
        self.memory.delete(full_key)
        client = await self._redis()
        if client is not None:
            try:
                await client.delete(full_key)
            except Exception as e:
                logger.warning(f"[CACHE] Redis delete failed for {key}: {e}")

    async def delete_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with prefix. Returns the count removed."""
        full_prefix = self._key(prefix)
        removed = self.memory.delete_prefix(full_prefix)
        client = await self._redis()
        if client is not None:
            try:
                keys = [k async for k in client.scan_iter(match=f"{full_prefix}*")]
                if keys:
                    removed += await client.delete(*keys)
            except Exception as e:
                logger.warning(f"[CACHE] Redis prefix delete failed for {prefix}: {e}")
        return removed


_default_cache: Optional[KeyValueCache] = None


def get_cache() -> KeyValueCache:
    """Process-wide cache wired to the configured Redis client."""
    global _default_cache
    if _default_cache is None:
        from parcelgate.core.redis_client import get_redis

        _default_cache = KeyValueCache(redis_factory=get_redis)
    return _default_cache
