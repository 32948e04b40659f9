"""Cache module wrapping the shared Redis instance.

The cache is advisory only. Every method on CacheClient swallows Redis and
network failures, logs them, and answers as if the key were absent, so callers
fall back to the relational store. A CacheClient built without a Redis handle
is permanently disabled and behaves the same way.
"""

import asyncio
import json
import logging
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .keys import (
    SEARCH_PREFIX,
    PRODUCT_PREFIX,
    CATEGORIES_KEY,
    search_key,
    product_key,
)
from .invalidator import CacheInvalidator

logger = logging.getLogger(__name__)

# Failures that degrade to cache-miss behaviour
CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

class CacheClient:
    """JSON get/set/delete on top of an async Redis client."""

    def __init__(self, redis: Optional[aioredis.Redis] = None) -> None:
        """Initialize the cache client.

        Args:
            redis: Async Redis client. None disables caching entirely.
        """
        self.redis = redis

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    async def get_json(self, key: str) -> Optional[Any]:
        """Get and decode a cached value, or None on miss or failure."""
        if not self.enabled:
            return None
        try:
            raw = await self.redis.get(key)
        except CACHE_ERRORS as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            await self.delete(key)
            return None

    async def set_json(self, key: str, value: Any, ttl: int) -> bool:
        """Encode and store a value with a TTL in seconds.

        Returns:
            True if the value was written
        """
        if not self.enabled:
            return False
        try:
            await self.redis.set(key, json.dumps(value), ex=ttl)
            return True
        except CACHE_ERRORS as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        if not self.enabled or not keys:
            return 0
        try:
            return await self.redis.delete(*keys)
        except CACHE_ERRORS as e:
            logger.warning(f"Cache delete failed for {', '.join(keys)}: {e}")
            return 0

    async def delete_prefix(self, prefix: str, batch_size: int = 500) -> int:
        """Delete every key starting with prefix using SCAN, in batches.

        Returns:
            Number of keys deleted
        """
        if not self.enabled:
            return 0
        deleted = 0
        batch: List[str] = []
        try:
            async for key in self.redis.scan_iter(match=f"{prefix}*", count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    deleted += await self.redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.redis.delete(*batch)
        except CACHE_ERRORS as e:
            logger.warning(f"Cache prefix delete failed for {prefix}*: {e}")
        return deleted

    async def ping(self) -> bool:
        """Check whether Redis is reachable."""
        if not self.enabled:
            return False
        try:
            return bool(await self.redis.ping())
        except CACHE_ERRORS:
            return False

    async def close(self) -> None:
        """Close the underlying Redis connection pool."""
        if self.enabled:
            await self.redis.aclose()

def init_cache(redis_url: Optional[str] = None, timeout: Optional[float] = None) -> CacheClient:
    """Create a cache client for the configured Redis instance.

    Connections are opened lazily, so an unreachable Redis does not stop
    startup; operations simply miss until it comes back.

    Args:
        redis_url: Optional Redis URL. If not provided, will use settings.
        timeout: Optional socket timeout in seconds. Defaults to settings.
    """
    from config import settings_conf

    url = redis_url or settings_conf['redis_url']
    if timeout is None:
        timeout = settings_conf['cache_timeout']

    client = aioredis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
    logger.info(f"Cache client configured for {url}")
    return CacheClient(client)

__all__ = [
    'CacheClient',
    'CacheInvalidator',
    'CACHE_ERRORS',
    'init_cache',
    'search_key',
    'product_key',
    'SEARCH_PREFIX',
    'PRODUCT_PREFIX',
    'CATEGORIES_KEY',
]
