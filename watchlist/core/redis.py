"""Shared Redis client for usage counters, provider memory and the quote cache."""
import asyncio
import logging
from typing import Optional

import redis.asyncio as redis

from watchlist.core.config import settings
from watchlist.core.storage import RedisKeyValueStore

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None
_client_lock = asyncio.Lock()


def _build_client() -> redis.Redis:
    logger.debug(f"Connecting to Redis with up to {settings.redis_max_connections} connections")
    return redis.from_url(
        settings.redis_url,
        decode_responses=True,
        max_connections=settings.redis_max_connections
    )


async def get_redis() -> redis.Redis:
    """Shared client, created on first use."""
    global _client
    async with _client_lock:
        if _client is None:
            _client = _build_client()
        return _client


async def get_kv_store(namespace: Optional[str] = None) -> RedisKeyValueStore:
    """Key-value store over the shared client, scoped to a key namespace."""
    return RedisKeyValueStore(await get_redis(), namespace=namespace or settings.storage_namespace)


async def close_redis():
    global _client
    async with _client_lock:
        if _client is None:
            return
        await _client.aclose()
        _client = None
        logger.info("Redis connection closed")
