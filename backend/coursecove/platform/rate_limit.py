"""
Per-user, per-action rate limiting for mutating procedures.

Fixed window counters keyed by "{user_id}:{action}". The counter store
is injected: a single-instance deployment uses the in-process
InMemoryRateLimitStore, and a multi-instance deployment sets
RATE_LIMIT_REDIS_URL so every instance counts against the same Redis
keys through RedisRateLimitStore.

Usage:
    limiter = RateLimiter(InMemoryRateLimitStore())
    result = limiter.check(rate_limit_key(user_id, "appointmentTypes.create"),
                           RateLimitConfig(limit=10, window_seconds=60))
    if not result.success:
        raise RateLimited(retry_after=result.retry_after_seconds(now))
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

import redis

from coursecove.config.rate_limits import RateLimitConfig

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL_SECONDS = 300


@dataclass(frozen=True)
class RateLimitResult:
    """
    Outcome of a rate limit check.

    reset_at is a unix timestamp (seconds) at which the current window ends.
    """
    success: bool
    remaining: int
    reset_at: float

    def retry_after_seconds(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(int(math.ceil(self.reset_at - now)), 0)


def rate_limit_key(user_id: str, action: str) -> str:
    return f"{user_id}:{action}"


class RateLimitStore(ABC):
    """Counter store contract: atomic check-and-increment within a window."""

    @abstractmethod
    def hit(self, key: str, config: RateLimitConfig, now: float) -> RateLimitResult:
        """Count one call for key and report whether it is within quota."""

    @abstractmethod
    def sweep(self, now: float) -> int:
        """Drop stale entries. Returns the number removed."""


@dataclass
class _Window:
    count: int
    window_start: float


class InMemoryRateLimitStore(RateLimitStore):
    """
    Process-local counter store.

    Not cluster-correct: each process keeps its own counts. Entries whose
    window started more than cleanup_interval ago are swept lazily on
    access.
    """

    def __init__(self, cleanup_interval: int = DEFAULT_CLEANUP_INTERVAL_SECONDS):
        self._entries: Dict[str, _Window] = {}
        self._lock = Lock()
        self._cleanup_interval = cleanup_interval
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._entries)

    def hit(self, key: str, config: RateLimitConfig, now: float) -> RateLimitResult:
        with self._lock:
            if now - self._last_sweep >= self._cleanup_interval:
                self._sweep_locked(now)

            entry = self._entries.get(key)
            window = float(config.window_seconds)

            if entry is None or now - entry.window_start >= window:
                self._entries[key] = _Window(count=1, window_start=now)
                return RateLimitResult(
                    success=True,
                    remaining=config.limit - 1,
                    reset_at=now + window,
                )

            if entry.count >= config.limit:
                return RateLimitResult(
                    success=False,
                    remaining=0,
                    reset_at=entry.window_start + window,
                )

            entry.count += 1
            return RateLimitResult(
                success=True,
                remaining=config.limit - entry.count,
                reset_at=entry.window_start + window,
            )

    def sweep(self, now: float) -> int:
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        stale = [
            key for key, entry in self._entries.items()
            if now - entry.window_start > self._cleanup_interval
        ]
        for key in stale:
            del self._entries[key]
        self._last_sweep = now
        if stale:
            logger.debug("Swept rate limit entries", extra={"removed": len(stale)})
        return len(stale)


class RedisRateLimitStore(RateLimitStore):
    """
    Counter store shared by every API instance through Redis.

    One key per "{user_id}:{action}" holds the current window's count.
    SET NX EX creates the key with the window as its expiry on the first
    call and INCR counts every call, both in one MULTI/EXEC. The window
    ends when Redis expires the key, so there is nothing to sweep.
    """

    def __init__(self, client: redis.Redis, prefix: str = "ratelimit:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "ratelimit:") -> "RedisRateLimitStore":
        return cls(redis.Redis.from_url(url), prefix=prefix)

    def hit(self, key: str, config: RateLimitConfig, now: float) -> RateLimitResult:
        redis_key = f"{self.prefix}{key}"
        pipe = self.client.pipeline(transaction=True)
        pipe.set(redis_key, 0, ex=config.window_seconds, nx=True)
        pipe.incr(redis_key)
        pipe.pttl(redis_key)
        _, count, ttl_ms = pipe.execute()

        ttl = ttl_ms / 1000.0 if ttl_ms and ttl_ms > 0 else float(config.window_seconds)
        reset_at = now + ttl

        if count > config.limit:
            return RateLimitResult(success=False, remaining=0, reset_at=reset_at)
        return RateLimitResult(
            success=True,
            remaining=config.limit - count,
            reset_at=reset_at,
        )

    def sweep(self, now: float) -> int:
        return 0


class RateLimiter:
    def __init__(self, store: RateLimitStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        result = self.store.hit(key, config, self.clock())
        if not result.success:
            logger.warning(
                "Rate limit exceeded",
                extra={"key": key, "limit": config.limit, "window_seconds": config.window_seconds},
            )
        return result


_default_limiter: Optional[RateLimiter] = None
_default_lock = Lock()


def build_rate_limit_store(settings) -> RateLimitStore:
    """Redis when RATE_LIMIT_REDIS_URL is set, otherwise in-process counters."""
    if settings.rate_limit_redis_url:
        logger.info("Rate limiting with shared Redis counters")
        return RedisRateLimitStore.from_url(settings.rate_limit_redis_url)
    logger.info("Rate limiting with in-process counters")
    return InMemoryRateLimitStore(cleanup_interval=settings.rate_limit_cleanup_interval)


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter; the store is chosen from settings on first use."""
    global _default_limiter
    with _default_lock:
        if _default_limiter is None:
            from coursecove.config.settings import get_settings

            _default_limiter = RateLimiter(build_rate_limit_store(get_settings()))
        return _default_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    global _default_limiter
    with _default_lock:
        _default_limiter = limiter
