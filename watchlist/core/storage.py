"""Durable key-value storage for learned refresh state.

Usage counters, per-stock provider memory and cached provider responses are
stored as JSON blobs under a fixed key namespace. Redis is the production
backend; the in-memory store keeps tests and embedded use free of a server.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)


logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract get/set store of serializable blobs."""

    def __init__(self, namespace: str = "watchlist"):
        self.namespace = namespace

    def _make_key(self, key: str) -> str:
        """Scope a logical key under the store namespace."""
        return f"{self.namespace}:{key}"

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored blob or None if absent."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any]) -> None:
        """Store a blob, replacing any previous value."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a blob if present."""
        pass


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store. Values are round-tripped through JSON so they
    behave exactly like persisted blobs."""

    def __init__(self, namespace: str = "watchlist"):
        super().__init__(namespace)
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(self._make_key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        self._data[self._make_key(key)] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self._data.pop(self._make_key(key), None)

    def keys(self) -> list:
        """Logical keys currently stored (namespace stripped)."""
        prefix = f"{self.namespace}:"
        return [k[len(prefix):] for k in self._data if k.startswith(prefix)]


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store using plain string values holding JSON."""

    def __init__(self, client: redis.Redis, namespace: str = "watchlist"):
        super().__init__(namespace)
        self.redis = client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis.get(self._make_key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding unreadable blob at {self._make_key(key)}")
            return None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def set(self, key: str, value: Dict[str, Any]) -> None:
        await self.redis.set(self._make_key(key), json.dumps(value))

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._make_key(key))
