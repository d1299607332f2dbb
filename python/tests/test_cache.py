"""
Tests for the read-through cache.

Covers TTL expiry, pattern invalidation, entity helpers, key building,
single-flight get_or_set and fail-soft behaviour with an unreachable store.
"""

import asyncio

import pytest
from pydantic import BaseModel

from fluxerp.cache import CacheKeys, CacheService, CacheTTL


class TestCacheBasics:
    """Get, set, delete and expiry."""

    @pytest.mark.asyncio
    async def test_set_then_get_returns_value(self, kv_store):
        cache = CacheService(kv_store)

        assert await cache.set("product:1", {"id": 1, "name": "Bracket"}) is True
        assert await cache.get("product:1") == {"id": 1, "name": "Bracket"}

    @pytest.mark.asyncio
    async def test_missing_key_is_none(self, kv_store):
        cache = CacheService(kv_store)

        assert await cache.get("product:missing") is None

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, kv_store, clock):
        cache = CacheService(kv_store)
        await cache.set("product:1", {"id": 1}, ttl=CacheTTL.SHORT)

        clock.advance(59)
        assert await cache.get("product:1") == {"id": 1}

        clock.advance(2)
        assert await cache.get("product:1") is None

    @pytest.mark.asyncio
    async def test_default_ttl_applies(self, kv_store, clock):
        cache = CacheService(kv_store, default_ttl=10)
        await cache.set("roles:list", ["admin"])

        clock.advance(11)
        assert await cache.get("roles:list") is None

    @pytest.mark.asyncio
    async def test_delete_removes_key(self, kv_store):
        cache = CacheService(kv_store)
        await cache.set("bom:7", {"id": 7})

        assert await cache.delete("bom:7") is True
        assert await cache.get("bom:7") is None


class TestInvalidation:
    """Pattern and entity invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_pattern_counts_deleted_keys(self, kv_store):
        cache = CacheService(kv_store)
        await cache.set("products:list", [1])
        await cache.set("products:list:category=tools", [2])
        await cache.set("boms:list", [3])

        assert await cache.invalidate_pattern("products:*") == 2
        assert await cache.get("boms:list") == [3]

    @pytest.mark.asyncio
    async def test_invalidate_products_clears_dashboard_but_not_boms(self, kv_store):
        cache = CacheService(kv_store)
        await cache.set("products:list", [1])
        await cache.set("product:1", {"id": 1})
        await cache.set("dashboard:summary", {"count": 1})
        await cache.set("boms:list", [2])

        assert await cache.invalidate_products() == 3
        assert await cache.get("product:1") is None
        assert await cache.get("dashboard:summary") is None
        assert await cache.get("boms:list") == [2]

    @pytest.mark.asyncio
    async def test_invalidate_ecos_clears_analytics(self, kv_store):
        cache = CacheService(kv_store)
        await cache.set("ecos:list", [1])
        await cache.set("eco:9", {"id": 9})
        await cache.set("analytics:eco-throughput", {"weekly": 4})
        await cache.set("users:list", ["ana"])

        assert await cache.invalidate_ecos() == 3
        assert await cache.get("analytics:eco-throughput") is None
        assert await cache.get("users:list") == ["ana"]

    @pytest.mark.asyncio
    async def test_invalidate_roles_and_users_are_scoped(self, kv_store):
        cache = CacheService(kv_store)
        await cache.set("roles:list", ["admin"])
        await cache.set("users:list", ["ana"])

        assert await cache.invalidate_roles() == 1
        assert await cache.get("users:list") == ["ana"]
        assert await cache.invalidate_users() == 1

    @pytest.mark.asyncio
    async def test_invalidate_boms_with_nothing_cached(self, kv_store):
        cache = CacheService(kv_store)

        assert await cache.invalidate_boms() == 0


class TestKeyBuilders:
    """List and entity key construction."""

    def test_list_key_without_filters(self):
        assert CacheService.build_list_key(CacheKeys.PRODUCTS) == "products:list"
        assert CacheService.build_list_key(CacheKeys.PRODUCTS, {}) == "products:list"

    def test_list_key_ignores_filter_order(self):
        first = CacheService.build_list_key("ecos", {"status": "open", "page": 2})
        second = CacheService.build_list_key("ecos", {"page": 2, "status": "open"})

        assert first == second == "ecos:list:page=2&status=open"

    def test_list_key_renders_booleans_like_json(self):
        key = CacheService.build_list_key("products", {"active": True, "archived": False})

        assert key == "products:list:active=true&archived=false"

    def test_entity_key(self):
        assert CacheService.build_entity_key(CacheKeys.BOM, "42") == "bom:42"


class TestGetOrSet:
    """Read-through with single-flight producers."""

    @pytest.mark.asyncio
    async def test_miss_calls_producer_and_caches(self, kv_store):
        cache = CacheService(kv_store)
        calls = 0

        async def produce():
            nonlocal calls
            calls += 1
            return {"total": 12}

        assert await cache.get_or_set("dashboard:summary", produce) == {"total": 12}
        assert await cache.get_or_set("dashboard:summary", produce) == {"total": 12}
        assert calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_producer_call(self, kv_store):
        cache = CacheService(kv_store)
        release = asyncio.Event()
        calls = 0

        async def produce():
            nonlocal calls
            calls += 1
            await release.wait()
            return ["p1", "p2"]

        waiters = [
            asyncio.create_task(cache.get_or_set("products:list", produce)) for _ in range(5)
        ]
        await asyncio.sleep(0.01)
        release.set()
        results = await asyncio.gather(*waiters)

        assert calls == 1
        assert results == [["p1", "p2"]] * 5

    @pytest.mark.asyncio
    async def test_producer_error_reaches_every_waiter_and_is_not_cached(self, kv_store):
        cache = CacheService(kv_store)
        release = asyncio.Event()

        async def produce():
            await release.wait()
            raise RuntimeError("database down")

        waiters = [
            asyncio.create_task(cache.get_or_set("boms:list", produce)) for _ in range(3)
        ]
        await asyncio.sleep(0.01)
        release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, RuntimeError) for r in results)
        assert await cache.get("boms:list") is None

        async def recover():
            return ["bom-1"]

        assert await cache.get_or_set("boms:list", recover) == ["bom-1"]

    @pytest.mark.asyncio
    async def test_cancelled_first_caller_does_not_cancel_others(self, kv_store):
        cache = CacheService(kv_store)
        release = asyncio.Event()

        async def produce():
            await release.wait()
            return {"v": 1}

        first = asyncio.create_task(cache.get_or_set("eco:5", produce))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(cache.get_or_set("eco:5", produce))
        await asyncio.sleep(0.01)

        first.cancel()
        await asyncio.sleep(0.01)
        release.set()

        assert await second == {"v": 1}
        assert first.cancelled()
        assert await cache.get("eco:5") == {"v": 1}

    @pytest.mark.asyncio
    async def test_model_values_come_back_as_dicts(self, kv_store):
        cache = CacheService(kv_store)

        class Summary(BaseModel):
            total: int

        async def produce():
            return Summary(total=4)

        assert await cache.get_or_set("dashboard:summary", produce) == {"total": 4}
        assert await cache.get_or_set("dashboard:summary", produce) == {"total": 4}


class TestFailSoft:
    """An unreachable store never breaks the caller."""

    @pytest.mark.asyncio
    async def test_operations_degrade_quietly(self, broken_kv_store):
        cache = CacheService(broken_kv_store)

        assert await cache.get("product:1") is None
        assert await cache.set("product:1", {"id": 1}) is False
        assert await cache.delete("product:1") is False
        assert await cache.invalidate_pattern("product:*") == 0
        assert await cache.invalidate_products() == 0
        assert await cache.is_available() is False

    @pytest.mark.asyncio
    async def test_get_or_set_still_returns_produced_value(self, broken_kv_store):
        cache = CacheService(broken_kv_store)

        async def produce():
            return {"id": 3}

        assert await cache.get_or_set("product:3", produce) == {"id": 3}

    @pytest.mark.asyncio
    async def test_memory_store_is_available(self, kv_store):
        assert await CacheService(kv_store).is_available() is True
