from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from testhub.config import get_settings, reset_settings_cache
from testhub.logging import get_logger
from testhub.service.auth import SessionService
from testhub.service.rate_limit import MemoryRateLimitStore, RateLimiter, RateLimitStore
from testhub.service.tokens import TokenCodec
from testhub.storage.memory import MemoryStore
from testhub.storage.postgres import PostgresStore
from testhub.storage.redis_cache import RedisCache, RedisRateLimitStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
            if not self.cache:
                if (
                    not self.settings.test_mode
                    and not self.settings.allow_redis_fallback_dev
                ):
                    raise RuntimeError(
                        "Redis is configured but unreachable; start Redis or set "
                        "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else None,
                    message="Rate limits are process-local while Redis is unavailable.",
                )

        self.rate_limit_store: RateLimitStore
        if self.cache:
            self.rate_limit_store = RedisRateLimitStore(self.cache)
        else:
            self.rate_limit_store = MemoryRateLimitStore()
        self.rate_limiter = RateLimiter(
            self.rate_limit_store,
            max_attempts=self.settings.rate_limit_max_attempts,
            window_seconds=self.settings.rate_limit_window_seconds,
            lockout_seconds=self.settings.rate_limit_lockout_seconds,
            enabled=self.settings.rate_limit_active,
        )

        self.tokens = TokenCodec(
            self.settings.jwt_access_secret,
            self.settings.jwt_refresh_secret,
            issuer=self.settings.jwt_issuer,
            access_ttl_seconds=self.settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_days * 24 * 60 * 60,
        )
        self.auth = SessionService(self.store, self.tokens, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            rate_limit_enabled=self.rate_limiter.enabled,
        )

    def run_maintenance(self) -> dict[str, int]:
        """Purge expired refresh grants and stale in-memory rate-limit keys."""
        purged = self.store.purge_expired_refresh_tokens()
        evicted = 0
        if isinstance(self.rate_limit_store, MemoryRateLimitStore):
            evicted = self.rate_limit_store.sweep()
        return {"refresh_tokens_purged": purged, "rate_limit_entries_evicted": evicted}

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                # Called from inside a running loop; the pool is dropped with the runtime
                logger.warning("runtime_reset_cache_close_skipped", error=str(exc))
        runtime = Runtime()
        return runtime
