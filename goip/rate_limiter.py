import math
import secrets
import time
from abc import ABC, abstractmethod
from collections import deque

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from goip.errors import RateLimitExceededError
from goip.logger import logger

RATE_LIMIT_KEY_PREFIX = "goip:ratelimit:"
# Keys outlive their window by this much so a quiet client's state expires on its own.
KEY_TTL_MARGIN_SECONDS = 60
SWEEP_INTERVAL_SECONDS = 60

WINDOWS: tuple[tuple[str, int], ...] = (("minute", 60), ("hour", 3600))


def rate_limit_key(client_ip: str, window: str) -> str:
    return f"{RATE_LIMIT_KEY_PREFIX}{client_ip}:{window}"


class SlidingWindowRateLimiter(ABC):
    """Per-client sliding-window admission over a minute and an hour window.

    A limit of 0 disables that window. Storage failures admit the request.
    """

    def __init__(self, requests_per_minute: int, requests_per_hour: int) -> None:
        self._limits = {"minute": requests_per_minute, "hour": requests_per_hour}

    async def admit(self, client_ip: str) -> None:
        """Record one request for `client_ip`, raising RateLimitExceededError when over budget."""
        for window, duration in WINDOWS:
            limit = self._limits[window]
            if limit <= 0:
                continue
            try:
                allowed, retry_after = await self._check(client_ip, window, limit, duration)
            except (RedisError, OSError) as exc:
                logger.warning(f"Rate limit check failed, allowing request client_ip={client_ip} error={exc!r}")
                continue
            if not allowed:
                raise RateLimitExceededError(retry_after=retry_after, limit=limit)

    @abstractmethod
    async def _check(self, client_ip: str, window: str, limit: int, duration: int) -> tuple[bool, int]:
        """Return (allowed, retry_after_seconds) and record the request."""
        raise NotImplementedError

    @staticmethod
    def _retry_after(oldest: float, duration: int, now: float) -> int:
        return max(1, math.ceil(oldest + duration - now))


class RedisRateLimiter(SlidingWindowRateLimiter):
    """Sliding window kept in a Redis sorted set per client and window, scored by timestamp."""

    def __init__(self, client: aioredis.Redis, requests_per_minute: int, requests_per_hour: int) -> None:
        super().__init__(requests_per_minute, requests_per_hour)
        self._client = client

    async def _check(self, client_ip: str, window: str, limit: int, duration: int) -> tuple[bool, int]:
        key = rate_limit_key(client_ip, window)
        now = time.time()

        async with self._client.pipeline(transaction=False) as pipe:
            pipe.zremrangebyscore(key, 0, now - duration)
            pipe.zcard(key)
            # Members must be unique even for requests landing on the same timestamp.
            pipe.zadd(key, {f"{now:.6f}:{secrets.token_hex(4)}": now})
            pipe.expire(key, duration + KEY_TTL_MARGIN_SECONDS)
            _, count, _, _ = await pipe.execute()

        if count < limit:
            return True, 0

        oldest = await self._client.zrange(key, 0, 0, withscores=True)
        if not oldest:
            return False, duration
        _, oldest_score = oldest[0]
        return False, self._retry_after(float(oldest_score), duration, now)


class MemoryRateLimiter(SlidingWindowRateLimiter):
    """In-process sliding window for single-instance deployments without Redis.

    Keys whose window has fully elapsed are swept at most once per
    `sweep_interval` seconds, so quiet clients do not accumulate.
    """

    def __init__(
        self, requests_per_minute: int, requests_per_hour: int, sweep_interval: float = SWEEP_INTERVAL_SECONDS
    ) -> None:
        super().__init__(requests_per_minute, requests_per_hour)
        self._timestamps: dict[str, deque[float]] = {}
        self._expires_at: dict[str, float] = {}
        self._sweep_interval = sweep_interval
        self._last_sweep = time.time()

    async def _check(self, client_ip: str, window: str, limit: int, duration: int) -> tuple[bool, int]:
        key = rate_limit_key(client_ip, window)
        now = time.time()
        if now - self._last_sweep >= self._sweep_interval:
            self._sweep(now)

        timestamps = self._timestamps.setdefault(key, deque())
        while timestamps and timestamps[0] <= now - duration:
            timestamps.popleft()

        count = len(timestamps)
        timestamps.append(now)
        self._expires_at[key] = now + duration
        if count < limit:
            return True, 0
        return False, self._retry_after(timestamps[0], duration, now)

    def _sweep(self, now: float) -> None:
        """Forget every key whose newest request has left its window."""
        expired = [key for key, expires_at in self._expires_at.items() if expires_at <= now]
        for key in expired:
            del self._expires_at[key]
            del self._timestamps[key]
        self._last_sweep = now
        if expired:
            logger.debug(f"Swept idle rate limit keys count={len(expired)}")
