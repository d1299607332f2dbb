"""Key-value store interface shared by the cache and the rate limiter."""

from abc import ABC, abstractmethod


class KeyValueStore(ABC):
    """
    Abstract key-value store.

    Values are strings; callers own serialization. Every operation raises
    ``StoreUnavailableError`` when the backing store cannot be reached.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Get a value, None if the key is absent or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Set a value, optionally expiring after ttl_seconds."""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        pass

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """List keys matching a glob pattern."""
        pass

    @abstractmethod
    async def incr_window(self, key: str, window_ms: int) -> tuple[int, int]:
        """
        Atomically increment a counter that expires window_ms after its first increment.

        Returns:
            Tuple of (count after increment, milliseconds until the counter expires)
        """
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity without raising."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        pass

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern."""
        keys = await self.keys(pattern)
        if not keys:
            return 0
        return await self.delete(*keys)
