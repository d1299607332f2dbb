"""Cache service with read-through and pattern invalidation."""

import asyncio
import json
from enum import IntEnum
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel

from fluxerp.errors import StoreUnavailableError
from fluxerp.logging import get_logger
from fluxerp.store.base import KeyValueStore

logger = get_logger(__name__)


class CacheTTL(IntEnum):
    """Cache TTL constants in seconds."""

    SHORT = 60
    MEDIUM = 300
    LONG = 900
    VERY_LONG = 3600
    DAY = 86400


class CacheKeys:
    """Cache key prefixes."""

    PRODUCTS = "products"
    PRODUCT = "product"
    BOMS = "boms"
    BOM = "bom"
    ECOS = "ecos"
    ECO = "eco"
    ROLES = "roles"
    USERS = "users"
    DASHBOARD = "dashboard"
    ANALYTICS = "analytics"


class CacheService:
    """
    Cache wrapper over a KeyValueStore.

    Values are stored as JSON. Store failures never reach the caller: reads
    behave as misses, writes and deletes report False or 0.
    """

    def __init__(self, store: KeyValueStore, default_ttl: int = CacheTTL.MEDIUM) -> None:
        self._store = store
        self._default_ttl = int(default_ttl)
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """
        Get a value from cache.

        Returns None if key doesn't exist or on error.
        """
        try:
            value = await self._store.get(key)
        except StoreUnavailableError as e:
            logger.warning("Cache get error", key=key, error=str(e))
            return None

        if value is None:
            logger.debug("Cache miss", key=key)
            return None

        try:
            decoded = json.loads(value)
        except ValueError as e:
            logger.warning("Cache value not decodable", key=key, error=str(e))
            return None

        logger.debug("Cache hit", key=key)
        return decoded

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> bool:
        """
        Set a value in cache.

        Args:
            key: Cache key
            value: Value to cache (must be JSON serializable)
            ttl: Time-to-live in seconds (uses default if not specified)

        Returns:
            True if successful, False otherwise
        """
        ttl = int(ttl or self._default_ttl)

        try:
            if isinstance(value, BaseModel):
                serialized = value.model_dump_json()
            else:
                serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Cache value not serializable", key=key, error=str(e))
            return False

        try:
            await self._store.set(key, serialized, ttl)
        except StoreUnavailableError as e:
            logger.warning("Cache set error", key=key, error=str(e))
            return False

        logger.debug("Cache set", key=key, ttl=ttl)
        return True

    async def delete(self, key: str) -> bool:
        """Delete a key from cache."""
        try:
            deleted = await self._store.delete(key)
        except StoreUnavailableError as e:
            logger.warning("Cache delete error", key=key, error=str(e))
            return False

        logger.debug("Cache delete", key=key, deleted=bool(deleted))
        return True

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern, returning the count."""
        try:
            deleted = await self._store.delete_pattern(pattern)
        except StoreUnavailableError as e:
            logger.warning("Cache invalidate error", pattern=pattern, error=str(e))
            return 0

        if deleted:
            logger.info("Cache pattern invalidated", pattern=pattern, deleted=deleted)
        return deleted

    async def get_or_set(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl: int | None = None,
    ) -> Any:
        """
        Return the cached value for key, computing and storing it on a miss.

        Concurrent misses on the same key share a single producer call.
        A producer exception reaches every waiter and nothing is cached.
        The producer runs in its own task, so a cancelled caller does not
        cancel it for the others. Values come back in their JSON form on hits
        and misses alike: pydantic models are returned as dicts.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._produce(key, producer, ttl))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        else:
            logger.debug("Cache miss coalesced", key=key)

        return await asyncio.shield(task)

    async def _produce(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl: int | None,
    ) -> Any:
        value = await producer()
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json")
        await self.set(key, value, ttl)
        return value

    def _forget(self, key: str, task: asyncio.Future[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Retrieved so a failure whose callers all went away is not reported as unhandled
        if not task.cancelled():
            task.exception()

    async def is_available(self) -> bool:
        """Check if the backing store answers."""
        return await self._store.ping()

    # -------------------------------------------------------------------------
    # Entity invalidation
    # -------------------------------------------------------------------------

    async def _invalidate_prefixes(self, *prefixes: str) -> int:
        total = 0
        for prefix in prefixes:
            total += await self.invalidate_pattern(f"{prefix}:*")
        return total

    async def invalidate_products(self) -> int:
        """Invalidate product lists, single products and dashboard aggregates."""
        return await self._invalidate_prefixes(
            CacheKeys.PRODUCTS, CacheKeys.PRODUCT, CacheKeys.DASHBOARD
        )

    async def invalidate_boms(self) -> int:
        """Invalidate BOM lists, single BOMs and dashboard aggregates."""
        return await self._invalidate_prefixes(CacheKeys.BOMS, CacheKeys.BOM, CacheKeys.DASHBOARD)

    async def invalidate_ecos(self) -> int:
        """Invalidate ECO caches plus the dashboard and analytics derived from them."""
        return await self._invalidate_prefixes(
            CacheKeys.ECOS, CacheKeys.ECO, CacheKeys.DASHBOARD, CacheKeys.ANALYTICS
        )

    async def invalidate_roles(self) -> int:
        """Invalidate role and permission caches."""
        return await self._invalidate_prefixes(CacheKeys.ROLES)

    async def invalidate_users(self) -> int:
        """Invalidate user caches."""
        return await self._invalidate_prefixes(CacheKeys.USERS)

    # -------------------------------------------------------------------------
    # Key builders
    # -------------------------------------------------------------------------

    @staticmethod
    def build_list_key(
        prefix: str,
        filters: Mapping[str, str | int | float | bool] | None = None,
    ) -> str:
        """Build a list cache key; filters are sorted by name so order never matters."""
        if not filters:
            return f"{prefix}:list"

        parts = []
        for name in sorted(filters):
            value = filters[name]
            if isinstance(value, bool):
                value = "true" if value else "false"
            parts.append(f"{name}={value}")

        return f"{prefix}:list:{'&'.join(parts)}"

    @staticmethod
    def build_entity_key(prefix: str, entity_id: str) -> str:
        """Build a single-entity cache key."""
        return f"{prefix}:{entity_id}"
