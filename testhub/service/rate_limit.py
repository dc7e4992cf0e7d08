from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from starlette.requests import Request

from testhub.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CLIENT_IP = "127.0.0.1"


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float
    locked_until: Optional[float] = None

    def is_locked(self, now: float) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def is_stale(self, now: float) -> bool:
        """True once neither the window nor a lockout can affect decisions."""
        return now >= self.reset_at and not self.is_locked(now)


@dataclass
class RateLimitDecision:
    allowed: bool
    time_left: Optional[int] = None


class RateLimitStore(Protocol):
    async def get(self, key: str) -> Optional[RateLimitEntry]: ...

    async def increment(
        self, key: str, *, now: float, window_seconds: int
    ) -> RateLimitEntry: ...

    async def set_lockout(self, key: str, locked_until: float, *, now: float) -> None: ...


def _starts_fresh_window(entry: Optional[RateLimitEntry], now: float) -> bool:
    if entry is None or now >= entry.reset_at:
        return True
    return entry.locked_until is not None and now >= entry.locked_until


class MemoryRateLimitStore:
    """Process-local counters with periodic eviction of stale keys."""

    def __init__(
        self,
        *,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}
        # Plain lock: no awaits happen while it is held
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return RateLimitEntry(entry.count, entry.reset_at, entry.locked_until)

    async def increment(
        self, key: str, *, now: float, window_seconds: int
    ) -> RateLimitEntry:
        with self._lock:
            entry = self._entries.get(key)
            if _starts_fresh_window(entry, now):
                entry = RateLimitEntry(count=1, reset_at=now + window_seconds)
                self._entries[key] = entry
            else:
                entry.count += 1
            snapshot = RateLimitEntry(entry.count, entry.reset_at, entry.locked_until)
        self.maybe_sweep(now)
        return snapshot

    async def set_lockout(self, key: str, locked_until: float, *, now: float) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = RateLimitEntry(count=0, reset_at=now)
                self._entries[key] = entry
            entry.locked_until = locked_until

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop entries whose window and lockout have both passed."""
        current = now if now is not None else self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.is_stale(current)]
            for key in stale:
                del self._entries[key]
            self._last_sweep = current
        if stale:
            logger.debug("rate_limit_entries_evicted", count=len(stale))
        return len(stale)

    def maybe_sweep(self, now: Optional[float] = None) -> int:
        current = now if now is not None else self._clock()
        if current - self._last_sweep < self._sweep_interval:
            return 0
        return self.sweep(current)


class RateLimiter:
    """Fixed-window attempt counter with an escalating lockout.

    ``max_attempts`` requests are allowed per ``window_seconds``. The next one
    locks the key for ``lockout_seconds``; the lock outlives the window, and
    once it passes the key starts over with a fresh window.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        max_attempts: int = 5,
        window_seconds: int = 60,
        lockout_seconds: int = 300,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.lockout_seconds = lockout_seconds
        self.enabled = enabled
        self._clock = clock

    async def check(self, key: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(allowed=True)
        now = self._clock()
        entry = await self.store.get(key)
        if entry is not None and entry.is_locked(now):
            return RateLimitDecision(
                allowed=False, time_left=math.ceil(entry.locked_until - now)
            )
        entry = await self.store.increment(key, now=now, window_seconds=self.window_seconds)
        if entry.count > self.max_attempts:
            await self.store.set_lockout(key, now + self.lockout_seconds, now=now)
            logger.warning(
                "rate_limit_lockout",
                key=key,
                attempts=entry.count,
                lockout_seconds=self.lockout_seconds,
            )
            return RateLimitDecision(allowed=False, time_left=self.lockout_seconds)
        return RateLimitDecision(allowed=True)


def get_client_ip(request: Request, *, trust_proxy_headers: bool = True) -> str:
    """Best-effort client address: proxy headers first, then the socket peer."""
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return DEFAULT_CLIENT_IP
