"""Global test fixtures and shared test infrastructure.

Provides:
- Environment variable defaults (must be set before any app import)
- FakeClock / FakeMonotonic for driving expiry and rate-limit windows
- FakeRedis matching the slice of ``redis.asyncio.Redis`` the rate limiter uses
- Service and app factories wired to in-memory collaborators
"""

from __future__ import annotations

import os

# Environment defaults; must be set before importing the app, which triggers
# pydantic Settings validation on import.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test-recovery.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("TOKEN_HASH_ROUNDS", "4")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("EXPOSE_TOKENS", "false")

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.settings import settings
from app.main import create_app
from app.services.collaborators import (
    ClientContext,
    InMemoryUserDirectory,
    RiskFactorProvider,
    TokenDelivery,
)
from app.services.rate_limiter import InMemoryRateLimitBackend
from app.services.recovery import RecoveryService, build_recovery_service
from app.services.risk_engine import RiskFactors
from app.services.storage.memory import InMemoryRecordStore
from app.utils.identifiers import Identifier

ALICE_EMAIL = "alice@example.com"
ALICE_ID = "user-alice"
BOB_PHONE = "+15551234567"
BOB_ID = "user-bob"


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FakeClock:
    """Wall clock frozen until ``advance`` is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1_000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


# ---------------------------------------------------------------------------
# FakeRedis: mimics the pipeline calls RedisRateLimitBackend issues
# ---------------------------------------------------------------------------


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple]] = []

    def set(self, key: str, value: Any, px: int | None = None, nx: bool = False) -> FakePipeline:
        self._ops.append(("set", (key, value, px, nx)))
        return self

    def incr(self, key: str) -> FakePipeline:
        self._ops.append(("incr", (key,)))
        return self

    def pttl(self, key: str) -> FakePipeline:
        self._ops.append(("pttl", (key,)))
        return self

    async def execute(self) -> list:
        if self._redis.fail:
            raise RedisConnectionError("connection refused")
        results = [getattr(self._redis, f"_{name}")(*args) for name, args in self._ops]
        self._ops = []
        return results


class FakeRedis:
    def __init__(self, clock: FakeMonotonic | None = None) -> None:
        self.clock = clock or FakeMonotonic()
        self.values: dict[str, int] = {}
        self.expiry: dict[str, float] = {}
        self.fail = False
        self.closed = False

    def _evict(self, key: str) -> None:
        if key in self.expiry and self.clock() >= self.expiry[key]:
            self.values.pop(key, None)
            self.expiry.pop(key, None)

    def _set(self, key: str, value: Any, px: int | None, nx: bool) -> bool | None:
        self._evict(key)
        if nx and key in self.values:
            return None
        self.values[key] = int(value)
        if px is not None:
            self.expiry[key] = self.clock() + px / 1000
        return True

    def _incr(self, key: str) -> int:
        self._evict(key)
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def _pttl(self, key: str) -> int:
        self._evict(key)
        if key not in self.values:
            return -2
        if key not in self.expiry:
            return -1
        return int((self.expiry[key] - self.clock()) * 1000)

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)

    async def ping(self) -> bool:
        if self.fail:
            raise RedisConnectionError("connection refused")
        return True

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class FixedFactorProvider(RiskFactorProvider):
    """Serves factors per identifier, falling back to a default vector."""

    def __init__(self, default: RiskFactors, overrides: Mapping[str, RiskFactors] | None = None) -> None:
        self.default = default
        self.overrides = dict(overrides or {})

    async def collect(self, identifier: Identifier, client: ClientContext) -> RiskFactors:
        return self.overrides.get(identifier.value, self.default)


class RecordingDelivery(TokenDelivery):
    def __init__(self) -> None:
        self.sent: list[tuple[Identifier, str, datetime]] = []

    async def deliver(self, identifier: Identifier, token: str, expires_at: datetime) -> None:
        self.sent.append((identifier, token, expires_at))

    @property
    def last_token(self) -> str:
        return self.sent[-1][1]


def scenario_factors(ip_reputation: float = 80.0, rest: float = 80.0) -> RiskFactors:
    return RiskFactors(
        ip_reputation=ip_reputation,
        device_fingerprint=rest,
        velocity=rest,
        location_anomaly=rest,
        request_pattern=rest,
        time_pattern=rest,
    )


# ---------------------------------------------------------------------------
# Shared pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def factors() -> FixedFactorProvider:
    return FixedFactorProvider(RiskFactors.uniform(90))


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def directory() -> InMemoryUserDirectory:
    return InMemoryUserDirectory({ALICE_EMAIL: ALICE_ID, BOB_PHONE: BOB_ID})


@pytest.fixture
def service(record_store, factors, directory, delivery, clock, monotonic) -> RecoveryService:
    return build_recovery_service(
        settings,
        store=record_store,
        rate_limit_backend=InMemoryRateLimitBackend(clock=monotonic),
        factor_provider=factors,
        user_directory=directory,
        delivery=delivery,
        clock=clock,
    )


@pytest.fixture
def app(service) -> FastAPI:
    application = create_app(recovery=service)
    # Fresh general limiter per app so quotas never leak between tests.
    application.state.limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
    return application


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
