"""Tests for the Redis-backed rate-limit store using a mocked client."""

import hashlib
from unittest.mock import AsyncMock, MagicMock

import pytest

from testhub.service.rate_limit import RateLimiter
from testhub.storage.redis_cache import RedisRateLimitStore


@pytest.fixture
def cache():
    cache = MagicMock()
    cache.client.register_script.return_value = AsyncMock(return_value=[1, "1060.0", ""])
    cache.client.hgetall = AsyncMock(return_value={})
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1, True])
    cache.client.pipeline.return_value = pipe
    return cache


@pytest.fixture
def store(cache):
    return RedisRateLimitStore(cache)


class TestKeying:
    """Raw keys (which embed client IPs) never reach Redis."""

    def test_key_is_hashed_and_namespaced(self, store):
        digest = hashlib.sha256(b"signin:203.0.113.5").hexdigest()
        assert store._key("signin:203.0.113.5") == f"rate:{digest}"
        assert "203.0.113.5" not in store._key("signin:203.0.113.5")


class TestIncrement:
    async def test_increment_runs_script_with_hashed_key(self, store, cache):
        entry = await store.increment("signin:1.2.3.4", now=1000.0, window_seconds=60)

        script = cache.client.register_script.return_value
        script.assert_awaited_once_with(
            keys=[store._key("signin:1.2.3.4")], args=[1000.0, 60]
        )
        assert entry.count == 1
        assert entry.reset_at == 1060.0
        assert entry.locked_until is None

    async def test_increment_parses_lockout(self, store, cache):
        cache.client.register_script.return_value.return_value = [6, "1060.0", "1300.5"]
        entry = await store.increment("k", now=1001.0, window_seconds=60)
        assert entry.count == 6
        assert entry.locked_until == 1300.5


class TestGet:
    async def test_missing_key(self, store):
        assert await store.get("k") is None

    async def test_existing_entry(self, store, cache):
        cache.client.hgetall.return_value = {
            "count": "4",
            "reset_at": "1060.0",
            "locked_until": "1300.0",
        }
        entry = await store.get("k")
        assert entry.count == 4
        assert entry.reset_at == 1060.0
        assert entry.locked_until == 1300.0
        cache.client.hgetall.assert_awaited_once_with(store._key("k"))


class TestSetLockout:
    async def test_lockout_sets_field_and_native_ttl(self, store, cache):
        await store.set_lockout("k", 1300.0, now=1000.0)

        pipe = cache.client.pipeline.return_value
        redis_key = store._key("k")
        pipe.hset.assert_called_once_with(redis_key, mapping={"locked_until": "1300.0"})
        pipe.hsetnx.assert_called_once_with(redis_key, "reset_at", "1000.0")
        pipe.expire.assert_called_once_with(redis_key, 300)
        pipe.execute.assert_awaited_once()


class TestLimiterOverRedis:
    """The limiter drives the Redis store through the same protocol."""

    async def test_locked_entry_denied_without_increment(self, store, cache):
        cache.client.hgetall.return_value = {
            "count": "6",
            "reset_at": "1060.0",
            "locked_until": "1300.0",
        }
        limiter = RateLimiter(store, clock=lambda: 1001.0)

        decision = await limiter.check("signin:1.2.3.4")

        assert decision.allowed is False
        assert decision.time_left == 299
        cache.client.register_script.return_value.assert_not_awaited()

    async def test_sixth_attempt_sets_lockout(self, store, cache):
        cache.client.register_script.return_value.return_value = [6, "1060.0", ""]
        limiter = RateLimiter(store, clock=lambda: 1010.0)

        decision = await limiter.check("signin:1.2.3.4")

        assert decision.allowed is False
        assert decision.time_left == 300
        cache.client.pipeline.return_value.execute.assert_awaited_once()
