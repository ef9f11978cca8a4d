from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping

from app.core.errors import RecoveryBlocked, TokenError, ValidationError
from app.core.logging import audit_event
from app.core.settings import Settings
from app.services.collaborators import (
    ClientContext,
    IdentifierUserDirectory,
    LoggingTokenDelivery,
    RiskFactorProvider,
    StaticRiskFactorProvider,
    TokenDelivery,
    UserDirectory,
)
from app.services.rate_limiter import (
    InMemoryRateLimitBackend,
    RateLimitBackend,
    RateLimiter,
    RedisRateLimitBackend,
    RouteClass,
)
from app.services.recovery_sessions import (
    CompletionResult,
    RecoverySession,
    RecoverySessionManager,
    VerificationOutcome,
)
from app.services.risk_engine import RiskEngine, RiskFactors
from app.services.storage.adapter import RecordStore
from app.services.storage.database import SqlRecordStore
from app.services.storage.memory import InMemoryRecordStore
from app.services.token_store import Clock, TokenStats, TokenStore, utcnow
from app.utils.identifiers import normalize_identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    user_id: str | None = None


@dataclass(frozen=True)
class SweepResult:
    tokens: int
    sessions: int


class RecoveryService:
    """Entry point for the HTTP layer: one object per process, shared by all requests."""

    def __init__(
        self,
        store: RecordStore,
        tokens: TokenStore,
        sessions: RecoverySessionManager,
        rate_limiter: RateLimiter,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.rate_limiter = rate_limiter

    async def start_recovery(
        self,
        email: str | None = None,
        phone: str | None = None,
        client: ClientContext | None = None,
    ) -> RecoverySession:
        identifier = normalize_identifier(email=email, phone=phone)
        return await self.sessions.start(identifier, client or ClientContext())

    async def verify(self, session_id: str) -> VerificationOutcome:
        outcome = await self.sessions.verify(session_id)
        if outcome.blocked:
            raise RecoveryBlocked(
                session_id=session_id,
                risk_level=outcome.assessment.level.value,
                risk_score=outcome.assessment.score,
                recommendations=list(outcome.assessment.recommendations),
            )
        return outcome

    async def submit_answers(self, session_id: str, answers: Mapping[str, Any]) -> VerificationOutcome:
        if not answers:
            raise ValidationError("At least one answer is required")
        outcome = await self.sessions.submit_answers(session_id, answers)
        if outcome.blocked:
            raise RecoveryBlocked(
                session_id=session_id,
                risk_level=outcome.assessment.level.value,
                risk_score=outcome.assessment.score,
            )
        return outcome

    async def session_status(self, session_id: str) -> RecoverySession:
        return await self.sessions.get(session_id)

    async def validate_token(self, token: str) -> TokenValidation:
        if not token:
            raise ValidationError("Token is required")
        try:
            record = await self.tokens.peek(token)
        except (TokenError, ValidationError):
            return TokenValidation(valid=False)
        return TokenValidation(valid=True, user_id=record.user_id)

    async def complete_recovery(self, token: str) -> CompletionResult:
        if not token:
            raise ValidationError("Token is required")
        try:
            return await self.sessions.complete(token)
        except TokenError as exc:
            audit_event("recovery.failed", reason=exc.reason)
            raise

    async def revoke_user_tokens(self, user_id: str) -> int:
        revoked = await self.tokens.revoke_all(user_id)
        audit_event("recovery.revoked", revoked=revoked)
        return revoked

    async def token_store_stats(self) -> TokenStats:
        return await self.tokens.stats()

    async def check_rate(self, route_class: RouteClass, *identity: str) -> None:
        await self.rate_limiter.check(route_class, *identity)

    async def sweep(self) -> SweepResult:
        return SweepResult(
            tokens=await self.tokens.sweep_expired(),
            sessions=await self.sessions.sweep_expired(),
        )

    async def close(self) -> None:
        await self.rate_limiter.backend.close()
        await self.store.close()


def _default_store(settings: Settings) -> RecordStore:
    if settings.storage_backend == "database":
        from app.db.session import get_sessionmaker

        return SqlRecordStore(get_sessionmaker())
    return InMemoryRecordStore()


def _default_rate_limit_backend(settings: Settings) -> RateLimitBackend:
    if settings.rate_limit_backend == "redis":
        from app.utils.redis_client import get_redis_client

        return RedisRateLimitBackend(get_redis_client())
    return InMemoryRateLimitBackend()


def build_recovery_service(
    settings: Settings,
    *,
    store: RecordStore | None = None,
    rate_limit_backend: RateLimitBackend | None = None,
    factor_provider: RiskFactorProvider | None = None,
    user_directory: UserDirectory | None = None,
    delivery: TokenDelivery | None = None,
    clock: Clock | None = None,
) -> RecoveryService:
    clock = clock or utcnow
    store = store or _default_store(settings)
    tokens = TokenStore(
        store,
        ttl=timedelta(minutes=settings.token_ttl_minutes),
        hash_rounds=settings.token_hash_rounds,
        clock=clock,
    )
    sessions = RecoverySessionManager(
        store,
        tokens,
        RiskEngine(),
        factor_provider or StaticRiskFactorProvider(RiskFactors.uniform(settings.default_factor_score)),
        user_directory or IdentifierUserDirectory(),
        delivery or LoggingTokenDelivery(),
        ttl=timedelta(minutes=settings.session_ttl_minutes),
        clock=clock,
    )
    limiter = RateLimiter.from_settings(settings, rate_limit_backend or _default_rate_limit_backend(settings))
    logger.info(
        "Recovery service built storage=%s rate_limit=%s",
        store.backend,
        settings.rate_limit_backend,
    )
    return RecoveryService(store, tokens, sessions, limiter)
