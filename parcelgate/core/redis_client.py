"""
Redis connection for the shared key-value cache

Tokens, rate quotes and transit estimates are shared across processes
through Redis when REDIS_URL is set. get_redis returns None when Redis is
not configured or not answering, and KeyValueCache then keeps entries in
process memory. After a failed connect the next attempt waits
RECONNECT_INTERVAL seconds, so a dead Redis costs one ping per interval
rather than one per cache call.
"""
import logging
import time
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from parcelgate.core.config import settings

logger = logging.getLogger(__name__)

RECONNECT_INTERVAL = 30.0

_clock = time.monotonic

_client: Optional[redis.Redis] = None
_retry_at = 0.0


async def get_redis() -> Optional[redis.Redis]:
    global _client, _retry_at

    if not settings.REDIS_URL:
        return None
    if _client is not None:
        return _client
    if _clock() < _retry_at:
        return None

    client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"[CACHE] Redis unavailable ({e}), using in-process cache")
        _retry_at = _clock() + RECONNECT_INTERVAL
        await client.aclose()
        return None

    logger.info("[CACHE] Redis connection established")
    _client = client
    return _client


async def close_redis() -> None:
    global _client, _retry_at
    if _client is not None:
        await _client.aclose()
    _client = None
    _retry_at = 0.0
