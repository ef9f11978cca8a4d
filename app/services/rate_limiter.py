from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.core.errors import RateLimited, StorageUnavailable
from app.core.settings import Settings

logger = logging.getLogger(__name__)

PRUNE_THRESHOLD = 10_000


class RouteClass(str, Enum):
    START = "start"
    VERIFY = "verify"
    REVOKE = "revoke"
    TOKEN = "token"


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float


class RateLimitBackend(ABC):
    @abstractmethod
    async def increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        """Count one request in the key's current window.

        Returns the count including this request and the seconds until the
        window resets.
        """

    async def close(self) -> None:
        pass


class InMemoryRateLimitBackend(RateLimitBackend):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, tuple[float, int, float]] = {}
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        # Each bucket expires on its own window, not the caller's.
        stale = [key for key, (start, _, window) in self._windows.items() if now >= start + window]
        for key in stale:
            del self._windows[key]

    async def increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        async with self._lock:
            now = self._clock()
            if len(self._windows) > PRUNE_THRESHOLD:
                self._prune(now)
            start, count, _ = self._windows.get(key, (now, 0, window_seconds))
            if now >= start + window_seconds:
                start, count = now, 0
            count += 1
            self._windows[key] = (start, count, window_seconds)
            return count, start + window_seconds - now


class RedisRateLimitBackend(RateLimitBackend):
    """Fixed windows in Redis: the first hit creates the key with the window TTL."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def increment(self, key: str, window_seconds: float) -> tuple[int, float]:
        window_ms = max(1, int(window_seconds * 1000))
        try:
            pipe = self._redis.pipeline()
            pipe.set(key, 0, px=window_ms, nx=True)
            pipe.incr(key)
            pipe.pttl(key)
            _, count, ttl_ms = await pipe.execute()
        except RedisError as exc:
            logger.error("Rate limit backend unavailable: %s", exc.__class__.__name__)
            raise StorageUnavailable("Rate limit store is temporarily unavailable") from exc
        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        return int(count), ttl_ms / 1000

    async def close(self) -> None:
        await self._redis.aclose()


class RateLimiter:
    """Per-route fixed-window request quotas keyed by caller identity."""

    def __init__(self, backend: RateLimitBackend, policies: Mapping[RouteClass, RateLimitPolicy]) -> None:
        self._backend = backend
        self._policies = dict(policies)

    @classmethod
    def from_settings(cls, settings: Settings, backend: RateLimitBackend) -> "RateLimiter":
        return cls(
            backend,
            {
                RouteClass.START: RateLimitPolicy(settings.start_rate_limit, settings.start_rate_window_seconds),
                RouteClass.VERIFY: RateLimitPolicy(settings.verify_rate_limit, settings.verify_rate_window_seconds),
                RouteClass.REVOKE: RateLimitPolicy(settings.revoke_rate_limit, settings.revoke_rate_window_seconds),
                RouteClass.TOKEN: RateLimitPolicy(settings.token_rate_limit, settings.token_rate_window_seconds),
            },
        )

    @property
    def backend(self) -> RateLimitBackend:
        return self._backend

    def policy(self, route_class: RouteClass) -> RateLimitPolicy:
        return self._policies[route_class]

    @staticmethod
    def bucket_key(route_class: RouteClass, *identity: str) -> str:
        parts = [str(part) for part in identity if part] or ["unknown"]
        return f"ratelimit:{route_class.value}:{':'.join(parts)}"

    async def hit(self, route_class: RouteClass, *identity: str) -> RateLimitDecision:
        policy = self.policy(route_class)
        count, reset_after = await self._backend.increment(
            self.bucket_key(route_class, *identity), policy.window_seconds
        )
        return RateLimitDecision(
            allowed=count <= policy.limit,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            reset_after=max(0.0, reset_after),
        )

    async def allow(self, route_class: RouteClass, *identity: str) -> bool:
        return (await self.hit(route_class, *identity)).allowed

    async def check(self, route_class: RouteClass, *identity: str) -> RateLimitDecision:
        decision = await self.hit(route_class, *identity)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded route_class=%s reset_after=%.1fs",
                route_class.value,
                decision.reset_after,
            )
            raise RateLimited(decision.reset_after, limit=decision.limit, route_class=route_class.value)
        return decision
