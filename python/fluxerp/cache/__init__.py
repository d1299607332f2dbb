"""Read-through cache built on the key-value store."""

from fluxerp.cache.service import CacheKeys, CacheService, CacheTTL

__all__ = ["CacheKeys", "CacheService", "CacheTTL"]
