# =============================================================================
# Rate Limiter — Per-Key Fixed Window
# =============================================================================
#
# Each API key gets `rate_limit` requests per window (one hour by default).
# The window opens at the first request after the previous one expired;
# the request that would make the count exceed the limit is rejected.
#
# Two interchangeable backends behind the `RateLimiter` protocol:
#   - InMemoryRateLimiter: counters live in this process. Read-modify-write
#     races between concurrent requests may let a key slightly exceed its
#     limit; the limit is advisory.
#   - RedisRateLimiter: counters shared by every worker. Uses one pipeline
#     (SET NX EX, INCR, TTL) per request.
#
# Graceful degradation: if Redis is unavailable the request is allowed
# and a warning is logged, so a Redis outage never blocks the API.
# =============================================================================

from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # Seconds until the current window closes


class RateLimiter(Protocol):
    """Counts one request against a key and decides whether it may proceed."""

    async def check_and_increment(
        self, key_id: uuid.UUID | str, limit: int,
    ) -> RateLimitDecision:
        ...


# =============================================================================
# In-memory backend
# =============================================================================


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    """
    Process-local fixed windows.

    `clock` is injectable so tests can move time forward without sleeping.
    """

    def __init__(
        self,
        window_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    async def check_and_increment(
        self, key_id: uuid.UUID | str, limit: int,
    ) -> RateLimitDecision:
        now = self._clock()
        key = str(key_id)
        window = self._windows.get(key)

        if window is None or now >= window.reset_at:
            self._windows[key] = _Window(count=1, reset_at=now + self._window_seconds)
            return RateLimitDecision(
                allowed=limit >= 1,
                limit=limit,
                remaining=max(limit - 1, 0),
                retry_after=self._window_seconds,
            )

        retry_after = max(math.ceil(window.reset_at - now), 1)
        if window.count >= limit:
            return RateLimitDecision(
                allowed=False, limit=limit, remaining=0, retry_after=retry_after,
            )

        window.count += 1
        return RateLimitDecision(
            allowed=True,
            limit=limit,
            remaining=limit - window.count,
            retry_after=retry_after,
        )

    def reset(self) -> None:
        self._windows.clear()


# =============================================================================
# Redis backend
# =============================================================================


class RedisRateLimiter:
    """Fixed windows stored in Redis as `ratelimit:apikey:<id>` counters."""

    def __init__(self, redis_client=None, window_seconds: int = 3600):
        self._redis = redis_client
        self._window_seconds = window_seconds

    def _client(self):
        """Lazily create the async Redis client."""
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                settings.rate_limit_redis_url,
                decode_responses=True,
            )
        return self._redis

    async def check_and_increment(
        self, key_id: uuid.UUID | str, limit: int,
    ) -> RateLimitDecision:
        redis_key = f"ratelimit:apikey:{key_id}"

        try:
            pipe = self._client().pipeline()
            # Open a window only if none is running
            pipe.set(redis_key, 0, ex=self._window_seconds, nx=True)
            pipe.incr(redis_key)
            pipe.ttl(redis_key)
            results = await pipe.execute()
        except Exception as e:
            logger.warning(
                "Rate limiter unavailable (Redis error): %s. "
                "Allowing request through.",
                e,
            )
            return RateLimitDecision(
                allowed=True, limit=limit, remaining=limit,
                retry_after=self._window_seconds,
            )

        count = int(results[1])
        ttl = int(results[2])
        retry_after = ttl if ttl > 0 else self._window_seconds

        return RateLimitDecision(
            allowed=count <= limit,
            limit=limit,
            remaining=max(limit - count, 0),
            retry_after=retry_after,
        )


@lru_cache
def get_rate_limiter() -> RateLimiter:
    """
    Factory: return the process-wide rate limiter for the configured backend.

    Cached so in-memory counters survive across requests.
    """
    backend = settings.rate_limit_backend

    if backend == "memory":
        return InMemoryRateLimiter(window_seconds=settings.rate_limit_window_seconds)
    elif backend == "redis":
        return RedisRateLimiter(window_seconds=settings.rate_limit_window_seconds)
    else:
        raise ValueError(
            f"Unknown rate limit backend: '{backend}'. "
            f"Supported: 'memory', 'redis'"
        )
