"""Tests for runtime wiring and Redis fallback rules."""

import os
from unittest.mock import patch

import pytest

from testhub.config import reset_settings_cache
from testhub.service.rate_limit import MemoryRateLimitStore
from testhub.service.runtime import Runtime, _mask_url_password, get_runtime
from testhub.storage.models import utcnow
from testhub.storage.redis_cache import RedisRateLimitStore


def _runtime_with_env(env):
    with patch.dict(os.environ, env):
        reset_settings_cache()
        try:
            return Runtime()
        finally:
            reset_settings_cache()


class TestRedisFallback:
    def test_unreachable_redis_is_fatal_outside_test_mode(self):
        env = {
            "REDIS_URL": "redis://localhost:1/0",
            "TEST_MODE": "false",
            "ALLOW_REDIS_FALLBACK_DEV": "false",
        }
        with patch(
            "testhub.service.runtime.RedisCache.verify_connection",
            side_effect=ConnectionError("refused"),
        ):
            with pytest.raises(RuntimeError, match="Redis is configured but unreachable"):
                _runtime_with_env(env)

    def test_unreachable_redis_falls_back_when_allowed(self):
        env = {
            "REDIS_URL": "redis://localhost:1/0",
            "TEST_MODE": "false",
            "ALLOW_REDIS_FALLBACK_DEV": "true",
        }
        with patch(
            "testhub.service.runtime.RedisCache.verify_connection",
            side_effect=ConnectionError("refused"),
        ):
            runtime = _runtime_with_env(env)
        assert runtime.cache is None
        assert isinstance(runtime.rate_limit_store, MemoryRateLimitStore)
        assert runtime.rate_limiter.enabled is True

    def test_reachable_redis_backs_rate_limits(self):
        env = {"REDIS_URL": "redis://localhost:6379/0"}
        with patch("testhub.service.runtime.RedisCache.verify_connection", return_value=None):
            runtime = _runtime_with_env(env)
        assert runtime.cache is not None
        assert isinstance(runtime.rate_limit_store, RedisRateLimitStore)


class TestMaintenance:
    async def test_purges_expired_tokens_and_stale_keys(self):
        runtime = get_runtime()
        user = runtime.store.create_user("a@x.com", "Alice", "hash")
        runtime.store.create_refresh_token(user.id, "dead", utcnow())
        await runtime.rate_limit_store.increment("signin:1.2.3.4", now=0.0, window_seconds=60)

        result = runtime.run_maintenance()

        assert result == {"refresh_tokens_purged": 1, "rate_limit_entries_evicted": 1}


class TestMaskUrl:
    def test_password_masked(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"

    def test_url_without_password_untouched(self):
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
