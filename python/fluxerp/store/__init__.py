"""Shared key-value store adapters."""

from fluxerp.store.base import KeyValueStore
from fluxerp.store.memory import MemoryKeyValueStore
from fluxerp.store.redis import RedisKeyValueStore, create_redis_client

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "create_redis_client",
]
