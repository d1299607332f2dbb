"""Redis key-value store adapter."""

from contextlib import contextmanager
from typing import Iterator

import redis.asyncio as redis
from redis.exceptions import RedisError

from fluxerp.errors import StoreUnavailableError
from fluxerp.logging import get_logger
from fluxerp.store.base import KeyValueStore

logger = get_logger(__name__)

# Counts one hit and starts the window on the first one
INCR_WINDOW_SCRIPT = """
local count = redis.call("INCR", KEYS[1])
local ttl = redis.call("PTTL", KEYS[1])
if ttl < 0 then
    redis.call("PEXPIRE", KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


def create_redis_client(redis_url: str, connect_timeout: int = 5) -> redis.Redis:
    """Create an async Redis client shared by the cache, limiter and job store."""
    return redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=connect_timeout,
        socket_timeout=connect_timeout,
        health_check_interval=30,
    )


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Re-raise connection level failures as StoreUnavailableError."""
    try:
        yield
    except (RedisError, OSError) as e:
        raise StoreUnavailableError(f"Redis {operation} failed: {e}") from e


class RedisKeyValueStore(KeyValueStore):
    """
    Async Redis store.

    The client is long lived and reconnects on its own; a failed call raises
    StoreUnavailableError and the next call tries again.
    """

    def __init__(self, redis_client: redis.Redis) -> None:
        self._client = redis_client
        self._incr_window = redis_client.register_script(INCR_WINDOW_SCRIPT)

    @classmethod
    async def create(cls, redis_url: str, connect_timeout: int = 5) -> "RedisKeyValueStore":
        """Create a store and log whether Redis answered."""
        store = cls(create_redis_client(redis_url, connect_timeout))
        if await store.ping():
            logger.info("Redis connection established")
        else:
            logger.warning("Redis not reachable at startup")
        return store

    @property
    def client(self) -> redis.Redis:
        """Underlying client, shared with the Redis job store."""
        return self._client

    async def get(self, key: str) -> str | None:
        with translate_errors("get"):
            return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        with translate_errors("set"):
            if ttl_seconds:
                await self._client.setex(key, ttl_seconds, value)
            else:
                await self._client.set(key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with translate_errors("delete"):
            return await self._client.delete(*keys)

    async def keys(self, pattern: str) -> list[str]:
        with translate_errors("scan"):
            return [key async for key in self._client.scan_iter(match=pattern, count=500)]

    async def incr_window(self, key: str, window_ms: int) -> tuple[int, int]:
        with translate_errors("incr"):
            count, ttl = await self._incr_window(keys=[key], args=[window_ms])
        return int(count), int(ttl)

    async def ping(self) -> bool:
        try:
            await self._client.ping()
            return True
        except (RedisError, OSError) as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis connection closed")
