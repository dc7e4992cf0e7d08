from __future__ import annotations

import hashlib
import math
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from testhub.service.rate_limit import RateLimitEntry


class RedisCache:
    """Thin Redis wrapper shared by cache-backed components."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class RedisRateLimitStore:
    """Rate-limit counters shared by every process behind one Redis.

    Entries are hashes ``{count, reset_at, locked_until}`` whose key TTL
    tracks the later of the window end and the lockout end, so Redis evicts
    them without any sweeping.
    """

    # Counter update runs atomically: fresh window or HINCRBY, then TTL.
    # Floats travel as strings because Lua numbers are truncated on return.
    _INCREMENT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'count', 'reset_at', 'locked_until')
local count = tonumber(data[1])
local reset_at = tonumber(data[2])
local locked_until = tonumber(data[3])

if count == nil or reset_at == nil or now >= reset_at
   or (locked_until ~= nil and now >= locked_until) then
  count = 1
  reset_at = now + window
  locked_until = nil
  redis.call('DEL', key)
  redis.call('HSET', key, 'count', count, 'reset_at', tostring(reset_at))
else
  count = redis.call('HINCRBY', key, 'count', 1)
end

local expire_at = reset_at
if locked_until ~= nil and locked_until > expire_at then
  expire_at = locked_until
end
redis.call('EXPIRE', key, math.max(1, math.ceil(expire_at - now)))

local locked = ''
if locked_until ~= nil then
  locked = tostring(locked_until)
end
return {count, tostring(reset_at), locked}
"""

    def __init__(self, cache: RedisCache, *, namespace: str = "rate"):
        self.cache = cache
        self.namespace = namespace
        self._increment = cache.client.register_script(self._INCREMENT_SCRIPT)

    def _key(self, key: str) -> str:
        # Hashed so raw client IPs never land in Redis and ':' cannot collide
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{self.namespace}:{digest}"

    @staticmethod
    def _parse_float(value: Optional[str]) -> Optional[float]:
        if value in (None, ""):
            return None
        return float(value)

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        data = await self.cache.client.hgetall(self._key(key))
        if not data or "reset_at" not in data:
            return None
        return RateLimitEntry(
            count=int(data.get("count", 0)),
            reset_at=float(data["reset_at"]),
            locked_until=self._parse_float(data.get("locked_until")),
        )

    async def increment(
        self, key: str, *, now: float, window_seconds: int
    ) -> RateLimitEntry:
        count, reset_at, locked_until = await self._increment(
            keys=[self._key(key)], args=[now, window_seconds]
        )
        return RateLimitEntry(
            count=int(count),
            reset_at=float(reset_at),
            locked_until=self._parse_float(locked_until),
        )

    async def set_lockout(self, key: str, locked_until: float, *, now: float) -> None:
        redis_key = self._key(key)
        pipe = self.cache.client.pipeline()
        pipe.hset(redis_key, mapping={"locked_until": repr(locked_until)})
        pipe.hsetnx(redis_key, "reset_at", repr(now))
        pipe.expire(redis_key, max(1, math.ceil(locked_until - now)))
        await pipe.execute()
