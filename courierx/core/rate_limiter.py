"""
Sliding-window rate limiter for mutation-triggering requests.

Keys are `<user_id>:<action>`. Booking is limited per user; admin actions
per user and action type. The in-memory backend suits a single process;
the Redis backend (sorted set per key) is shared across workers.
"""
import asyncio
import math
import time
import uuid
from collections import deque
from typing import Deque, Dict, Optional, Protocol

import redis.asyncio as redis
import structlog

from courierx.config import get_settings
from courierx.core.errors import RateLimited
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RateLimitBackend(Protocol):
    async def hit(self, key: str, limit: int, window: float, now: float) -> Optional[float]:
        """Record a hit. Returns seconds until retry if over the limit, else None."""
        ...

    async def reset(self) -> None:
        ...


class InMemoryBackend:
    """Deque of hit timestamps per key. Keys idle for a whole window are dropped."""

    def __init__(self) -> None:
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = asyncio.Lock()
        self._last_sweep = 0.0

    def _sweep(self, now: float, window: float) -> None:
        cutoff = now - window
        for key in [k for k, ts in self._windows.items() if not ts or ts[-1] <= cutoff]:
            del self._windows[key]
        self._last_sweep = now

    async def hit(self, key: str, limit: int, window: float, now: float) -> Optional[float]:
        async with self._lock:
            if now - self._last_sweep >= window:
                self._sweep(now, window)
            timestamps = self._windows.setdefault(key, deque())
            cutoff = now - window
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()
            if len(timestamps) >= limit:
                return max(timestamps[0] + window - now, 0.0)
            timestamps.append(now)
            return None

    async def reset(self) -> None:
        async with self._lock:
            self._windows.clear()
            self._last_sweep = 0.0


class RedisBackend:
    """Sorted set per key; members are unique hit ids scored by timestamp."""

    def __init__(self, redis_url: Optional[str] = None, prefix: str = "ratelimit:") -> None:
        self.redis_url = redis_url or get_settings().redis_url
        self.prefix = prefix
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def hit(self, key: str, limit: int, window: float, now: float) -> Optional[float]:
        redis_key = f"{self.prefix}{key}"
        member = f"{now}:{uuid.uuid4().hex}"

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now - window)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, int(math.ceil(window)))
            _, _, count, _ = await pipe.execute()

        if count <= limit:
            return None

        await self.client.zrem(redis_key, member)
        oldest = await self.client.zrange(redis_key, 0, 0, withscores=True)
        if not oldest:
            return 0.0
        return max(oldest[0][1] + window - now, 0.0)

    async def reset(self) -> None:
        async for key in self.client.scan_iter(match=f"{self.prefix}*"):
            await self.client.delete(key)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class RateLimiter:
    """Throttles requests per caller and action."""

    def __init__(self, backend: Optional[RateLimitBackend] = None) -> None:
        settings = get_settings()
        if backend is None:
            backend = RedisBackend() if settings.rate_limit_backend == "redis" else InMemoryBackend()
        self.backend = backend
        self.window = float(settings.rate_limit_window_seconds)
        self._settings = settings

    async def check(self, user_id: str, action: str) -> None:
        """
        Raises:
            RateLimited: The caller exceeded the action's limit for the window
        """
        limit = self._settings.rate_limit_for(action)
        retry_after = await self.backend.hit(f"{user_id}:{action}", limit, self.window, time.time())
        if retry_after is None:
            return

        seconds = max(1, int(math.ceil(retry_after)))
        metrics.record_rate_limited(action)
        logger.info("rate_limited", user_id=user_id, action=action, retry_after_seconds=seconds)
        raise RateLimited(action, seconds)

    async def reset(self) -> None:
        await self.backend.reset()
