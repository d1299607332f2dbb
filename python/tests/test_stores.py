"""
Tests for the Redis key-value adapter's window counter.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fluxerp.errors import StoreUnavailableError
from fluxerp.store.redis import INCR_WINDOW_SCRIPT, RedisKeyValueStore


class ScriptedRedis:
    """Records registered scripts and answers them with a fixed reply."""

    def __init__(self, reply=None, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls = []

    def register_script(self, script):
        async def run(keys, args):
            self.calls.append((script, keys, args))
            if self.error is not None:
                raise self.error
            return self.reply

        return run


class TestIncrWindow:
    """Counter increments go through one server-side script."""

    @pytest.mark.asyncio
    async def test_counts_and_reports_remaining_window(self):
        client = ScriptedRedis(reply=[3, 41_500])
        store = RedisKeyValueStore(client)

        assert await store.incr_window("ratelimit:general:ip:10.0.0.1", 60_000) == (3, 41_500)
        assert client.calls == [
            (INCR_WINDOW_SCRIPT, ["ratelimit:general:ip:10.0.0.1"], [60_000])
        ]

    def test_script_does_not_need_pexpire_nx(self):
        assert "NX" not in INCR_WINDOW_SCRIPT
        assert "PEXPIRE" in INCR_WINDOW_SCRIPT

    @pytest.mark.asyncio
    async def test_connection_errors_become_store_unavailable(self):
        store = RedisKeyValueStore(ScriptedRedis(error=RedisConnectionError("refused")))

        with pytest.raises(StoreUnavailableError):
            await store.incr_window("ratelimit:auth:auth:10.0.0.1", 60_000)
