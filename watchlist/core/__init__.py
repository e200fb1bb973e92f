"""Core package initialization."""
from watchlist.core.config import settings
from watchlist.core.database import Base, init_db
from watchlist.core.redis import get_redis, get_kv_store, close_redis
from watchlist.core.storage import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore

__all__ = [
    "settings",
    "Base",
    "init_db",
    "get_redis",
    "get_kv_store",
    "close_redis",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore"
]
