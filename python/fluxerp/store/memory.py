"""In-process key-value store for development and tests."""

import fnmatch
import time
from typing import Callable

from fluxerp.logging import get_logger
from fluxerp.store.base import KeyValueStore

logger = get_logger(__name__)


class MemoryKeyValueStore(KeyValueStore):
    """
    Dictionary-backed store with lazy expiry.

    Note: state is local to the process. Use Redis when more than one
    process shares the cache or the rate limit counters.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        logger.info("MemoryKeyValueStore initialized")

    def _now(self) -> float:
        return self._clock()

    def _live(self, key: str) -> tuple[str, float | None] | None:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and self._now() >= expires_at:
            del self._data[key]
            return None
        return item

    async def get(self, key: str) -> str | None:
        item = self._live(key)
        return item[0] if item else None

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._now() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                deleted += 1
        return deleted

    async def keys(self, pattern: str) -> list[str]:
        return [
            key
            for key in list(self._data)
            if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
        ]

    async def incr_window(self, key: str, window_ms: int) -> tuple[int, int]:
        now = self._now()
        item = self._live(key)
        if item is None:
            expires_at = now + window_ms / 1000
            count = 1
        else:
            count = int(item[0]) + 1
            expires_at = item[1] if item[1] is not None else now + window_ms / 1000
        self._data[key] = (str(count), expires_at)
        return count, max(0, int(round((expires_at - now) * 1000)))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
