"""Tests for the fixed-window rate limiter and its in-memory store."""

from unittest.mock import patch

import pytest
from starlette.requests import Request

from testhub.service.rate_limit import (
    MemoryRateLimitStore,
    RateLimiter,
    RateLimitEntry,
    get_client_ip,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryRateLimitStore(sweep_interval_seconds=60, clock=clock)


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(
        store, max_attempts=5, window_seconds=60, lockout_seconds=300, clock=clock
    )


class TestLockoutEscalation:
    """Five attempts per window, then a five-minute lockout."""

    async def test_sixth_attempt_locks_out(self, limiter):
        for _ in range(5):
            assert (await limiter.check("signin:1.2.3.4")).allowed

        decision = await limiter.check("signin:1.2.3.4")
        assert decision.allowed is False
        assert decision.time_left == 300

    async def test_time_left_counts_down_without_resetting(self, limiter, clock):
        for _ in range(6):
            await limiter.check("signin:1.2.3.4")

        clock.now += 1
        seventh = await limiter.check("signin:1.2.3.4")
        clock.now += 10
        eighth = await limiter.check("signin:1.2.3.4")

        assert seventh.allowed is False and seventh.time_left == 299
        assert eighth.allowed is False and eighth.time_left == 289

    async def test_lockout_outlives_the_window(self, limiter, clock):
        for _ in range(6):
            await limiter.check("signin:1.2.3.4")

        clock.now += 120  # window over, lockout still running
        decision = await limiter.check("signin:1.2.3.4")
        assert decision.allowed is False
        assert decision.time_left == 180

    async def test_fresh_window_after_lockout(self, limiter, store, clock):
        for _ in range(6):
            await limiter.check("signin:1.2.3.4")

        clock.now += 300
        assert (await limiter.check("signin:1.2.3.4")).allowed
        entry = await store.get("signin:1.2.3.4")
        assert entry.count == 1
        assert entry.locked_until is None

    async def test_window_expiry_resets_count(self, limiter, store, clock):
        for _ in range(5):
            await limiter.check("signin:1.2.3.4")

        clock.now += 60
        assert (await limiter.check("signin:1.2.3.4")).allowed
        assert (await store.get("signin:1.2.3.4")).count == 1

    async def test_keys_are_independent(self, limiter):
        for _ in range(6):
            await limiter.check("signin:1.2.3.4")

        assert (await limiter.check("signin:5.6.7.8")).allowed
        assert (await limiter.check("refresh:1.2.3.4")).allowed

    async def test_disabled_limiter_always_allows(self, store, clock):
        limiter = RateLimiter(store, max_attempts=1, enabled=False, clock=clock)
        for _ in range(10):
            assert (await limiter.check("k")).allowed
        assert len(store) == 0

    async def test_lockout_is_logged(self, limiter):
        with patch("testhub.service.rate_limit.logger") as mock_logger:
            for _ in range(6):
                await limiter.check("signin:1.2.3.4")

        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_lockout"
        assert mock_logger.warning.call_args[1]["lockout_seconds"] == 300


class TestMemoryStoreEviction:
    """Stale keys are swept instead of growing without bound."""

    async def test_sweep_drops_stale_entries(self, store, clock):
        await store.increment("a", now=clock.now, window_seconds=60)
        await store.increment("b", now=clock.now, window_seconds=60)

        assert store.sweep(clock.now + 59) == 0
        assert store.sweep(clock.now + 60) == 2
        assert len(store) == 0

    async def test_sweep_keeps_locked_entries(self, store, clock):
        await store.increment("locked", now=clock.now, window_seconds=60)
        await store.set_lockout("locked", clock.now + 300, now=clock.now)

        assert store.sweep(clock.now + 120) == 0
        assert store.sweep(clock.now + 300) == 1

    async def test_increment_triggers_periodic_sweep(self, store, clock):
        await store.increment("old", now=clock.now, window_seconds=10)
        clock.now += 61
        await store.increment("new", now=clock.now, window_seconds=10)

        assert await store.get("old") is None
        assert (await store.get("new")).count == 1

    async def test_get_returns_copy(self, store, clock):
        await store.increment("k", now=clock.now, window_seconds=60)
        entry = await store.get("k")
        entry.count = 99
        assert (await store.get("k")).count == 1


class TestRateLimitEntry:
    def test_stale_only_when_window_and_lockout_passed(self):
        entry = RateLimitEntry(count=6, reset_at=60.0, locked_until=300.0)
        assert entry.is_locked(100.0)
        assert not entry.is_stale(100.0)
        assert entry.is_stale(300.0)


def _request(headers=None, client=("10.0.0.9", 1234)) -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    scope = {"type": "http", "method": "POST", "path": "/", "headers": raw_headers}
    if client is not None:
        scope["client"] = client
    return Request(scope)


class TestClientIp:
    def test_forwarded_for_first_hop(self):
        request = _request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
        assert get_client_ip(request) == "203.0.113.5"

    def test_real_ip_fallback(self):
        assert get_client_ip(_request({"X-Real-IP": "203.0.113.7"})) == "203.0.113.7"

    def test_socket_peer(self):
        assert get_client_ip(_request()) == "10.0.0.9"

    def test_untrusted_proxy_headers_ignored(self):
        request = _request({"X-Forwarded-For": "203.0.113.5"})
        assert get_client_ip(request, trust_proxy_headers=False) == "10.0.0.9"

    def test_default_when_nothing_known(self):
        assert get_client_ip(_request(client=None)) == "127.0.0.1"
