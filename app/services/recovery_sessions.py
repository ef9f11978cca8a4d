from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping

from app.core.errors import (
    InvalidSessionState,
    RecoveryBlocked,
    SessionExpired,
    SessionNotFound,
    TokenAlreadyUsed,
    ValidationError,
)
from app.core.logging import audit_event
from app.core.security import split_token
from app.services.collaborators import ClientContext, RiskFactorProvider, TokenDelivery, UserDirectory
from app.services.risk_engine import AdaptiveQuestion, RiskAssessment, RiskEngine, RiskFactors
from app.services.storage.adapter import Criteria, Record, RecordStore
from app.services.token_store import Clock, IssuedToken, TokenStore, utcnow
from app.utils.identifiers import Identifier, mask_identifier
from app.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

SESSION_NAMESPACE = "session"
TOKEN_INDEX_NAMESPACE = "session_token"
MAX_SESSION_ID_LENGTH = 64
SESSION_RETENTION = timedelta(hours=1)


class SessionState(str, Enum):
    STARTED = "STARTED"
    AWAITING_ANSWERS = "AWAITING_ANSWERS"
    VERIFIED = "VERIFIED"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


TERMINAL_STATES = frozenset({SessionState.BLOCKED, SessionState.COMPLETED, SessionState.EXPIRED})


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class RecoverySession:
    session_id: str
    identifier: Identifier
    user_id: str | None
    client_ip: str
    factors: RiskFactors
    created_at: datetime
    expires_at: datetime
    state: SessionState = SessionState.STARTED
    assessment: RiskAssessment | None = None
    questions: tuple[AdaptiveQuestion, ...] = ()
    token_id: str | None = None
    verified_at: datetime | None = None
    completed_at: datetime | None = None
    confirmation_id: str | None = None
    version: int = field(default=0, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_record(self) -> Record:
        payload: dict[str, Any] = {
            "identifier": self.identifier.value,
            "identifier_kind": self.identifier.kind,
            "user_id": self.user_id,
            "client_ip": self.client_ip,
            "factors": self.factors.to_dict(),
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "state": self.state.value,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "questions": [q.to_dict() for q in self.questions],
            "token_id": self.token_id,
            "verified_at": _iso(self.verified_at),
            "completed_at": _iso(self.completed_at),
            "confirmation_id": self.confirmation_id,
        }
        return Record(
            namespace=SESSION_NAMESPACE,
            key=self.session_id,
            payload=payload,
            owner=self.user_id,
            expires_at=self.expires_at,
            version=self.version,
        )

    @classmethod
    def from_record(cls, record: Record) -> "RecoverySession":
        data = record.payload
        return cls(
            session_id=record.key,
            identifier=Identifier(data["identifier"], data["identifier_kind"]),
            user_id=data.get("user_id"),
            client_ip=data.get("client_ip") or "unknown",
            factors=RiskFactors.from_dict(data["factors"]),
            created_at=_parse(data["created_at"]),
            expires_at=_parse(data["expires_at"]),
            state=SessionState(data["state"]),
            assessment=RiskAssessment.from_dict(data["assessment"]) if data.get("assessment") else None,
            questions=tuple(AdaptiveQuestion.from_dict(q) for q in data.get("questions") or ()),
            token_id=data.get("token_id"),
            verified_at=_parse(data.get("verified_at")),
            completed_at=_parse(data.get("completed_at")),
            confirmation_id=data.get("confirmation_id"),
            version=record.version,
        )


@dataclass(frozen=True)
class VerificationOutcome:
    session: RecoverySession
    issued_token: IssuedToken | None = None

    @property
    def assessment(self) -> RiskAssessment | None:
        return self.session.assessment

    @property
    def blocked(self) -> bool:
        return self.session.state is SessionState.BLOCKED

    @property
    def questions(self) -> tuple[AdaptiveQuestion, ...]:
        return self.session.questions


@dataclass(frozen=True)
class CompletionResult:
    confirmation_id: str
    user_id: str
    completed_at: datetime
    session_id: str


class RecoverySessionManager:
    """Owns recovery sessions and drives them through the verification state machine.

    STARTED -> AWAITING_ANSWERS | VERIFIED | BLOCKED, AWAITING_ANSWERS ->
    VERIFIED | BLOCKED, VERIFIED -> COMPLETED, and any live state -> EXPIRED
    once its TTL elapses. Writes to one session are serialized by a per-id
    lock in this process and by compare-and-set in the record store across
    processes. A token is minted exactly once, on entry to VERIFIED.
    """

    def __init__(
        self,
        store: RecordStore,
        tokens: TokenStore,
        risk_engine: RiskEngine,
        factor_provider: RiskFactorProvider,
        user_directory: UserDirectory,
        delivery: TokenDelivery,
        *,
        ttl: timedelta,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._risk = risk_engine
        self._factors = factor_provider
        self._users = user_directory
        self._delivery = delivery
        self._ttl = ttl
        self._clock = clock
        self._locks = KeyedLock()

    # -- persistence helpers --

    async def _load(self, session_id: str) -> RecoverySession:
        if not session_id:
            raise ValidationError("Session ID is required")
        if len(session_id) > MAX_SESSION_ID_LENGTH:
            raise ValidationError("Invalid session ID")
        record = await self._store.get(SESSION_NAMESPACE, session_id)
        if record is None:
            raise SessionNotFound()
        return RecoverySession.from_record(record)

    async def _save(self, session: RecoverySession) -> RecoverySession:
        if not await self._store.replace(session.to_record(), expected_version=session.version):
            logger.error("Concurrent write rejected for session_id=%s", session.session_id)
            raise InvalidSessionState("Recovery session was modified concurrently")
        session.version += 1
        return session

    async def _expire_if_due(self, session: RecoverySession) -> bool:
        if session.is_terminal or self._clock() <= session.expires_at:
            return False
        session.state = SessionState.EXPIRED
        await self._save(session)
        logger.info("Recovery session expired session_id=%s", session.session_id)
        return True

    async def _ensure_live(self, session: RecoverySession) -> None:
        if session.state is SessionState.EXPIRED or await self._expire_if_due(session):
            raise SessionExpired()

    async def _enter_verified(self, session: RecoverySession) -> IssuedToken | None:
        session.state = SessionState.VERIFIED
        session.verified_at = self._clock()
        if session.user_id is None:
            # No account behind the identifier: look identical to callers, mint nothing.
            logger.info("No account for session_id=%s; no token issued", session.session_id)
            return None
        issued = await self._tokens.issue(session.user_id)
        session.token_id = issued.record.token_id
        return issued

    async def _after_verified(self, session: RecoverySession, issued: IssuedToken | None) -> None:
        if issued is None:
            return
        await self._store.put(
            Record(
                namespace=TOKEN_INDEX_NAMESPACE,
                key=issued.record.token_id,
                payload={"session_id": session.session_id},
                owner=session.session_id,
                expires_at=max(issued.expires_at, session.expires_at),
            )
        )
        await self._delivery.deliver(session.identifier, issued.token, issued.expires_at)

    def _audit_assessment(self, session: RecoverySession) -> None:
        assessment = session.assessment
        audit_event(
            "recovery.verification",
            session_id=session.session_id,
            identifier=mask_identifier(session.identifier.value),
            state=session.state.value,
            risk_level=assessment.level.value if assessment else None,
            risk_score=assessment.score if assessment else None,
            blocked=session.state is SessionState.BLOCKED,
        )
        if session.state is SessionState.BLOCKED:
            logger.warning(
                "Recovery blocked due to HIGH risk session_id=%s score=%s",
                session.session_id,
                assessment.score if assessment else None,
            )

    # -- operations --

    async def start(self, identifier: Identifier, client: ClientContext) -> RecoverySession:
        now = self._clock()
        session = RecoverySession(
            session_id=uuid.uuid4().hex,
            identifier=identifier,
            user_id=await self._users.resolve(identifier),
            client_ip=client.ip,
            factors=await self._factors.collect(identifier, client),
            created_at=now,
            expires_at=now + self._ttl,
        )
        stored = await self._store.put(session.to_record())
        session.version = stored.version
        audit_event(
            "recovery.attempt",
            session_id=session.session_id,
            identifier=mask_identifier(identifier.value),
            request_method=identifier.kind,
            user_exists=session.user_id is not None,
        )
        return session

    async def get(self, session_id: str) -> RecoverySession:
        async with self._locks.hold(session_id):
            session = await self._load(session_id)
            await self._expire_if_due(session)
            return session

    async def verify(self, session_id: str) -> VerificationOutcome:
        async with self._locks.hold(session_id):
            session = await self._load(session_id)
            await self._ensure_live(session)

            if session.state is SessionState.COMPLETED:
                raise InvalidSessionState("Recovery session already completed")
            if session.state is not SessionState.STARTED:
                # Already scored: hand back the stored outcome, never re-score or re-mint.
                return VerificationOutcome(session)

            assessment = self._risk.assess(session.factors, session.identifier.value)
            session.assessment = assessment
            issued = None
            if assessment.blocked:
                session.state = SessionState.BLOCKED
            elif assessment.needs_questions:
                session.state = SessionState.AWAITING_ANSWERS
                session.questions = assessment.pending_questions
            else:
                issued = await self._enter_verified(session)

            await self._save(session)
            await self._after_verified(session, issued)
            self._audit_assessment(session)
            return VerificationOutcome(session, issued)

    async def submit_answers(self, session_id: str, answers: Mapping[str, Any]) -> VerificationOutcome:
        async with self._locks.hold(session_id):
            session = await self._load(session_id)
            await self._ensure_live(session)

            if session.state is SessionState.VERIFIED:
                return VerificationOutcome(session)
            if session.state is SessionState.BLOCKED:
                raise RecoveryBlocked(risk_level=session.assessment.level.value if session.assessment else None)
            if session.state is not SessionState.AWAITING_ANSWERS:
                raise InvalidSessionState("Recovery session is not awaiting answers")

            # Unknown answer ids are ignored; a submission that matches no question
            # leaves the score as assessed and proceeds on that level.
            reassessed = self._risk.reassess(session.assessment, session.questions, answers)
            session.assessment = reassessed
            session.questions = ()
            issued = None
            if reassessed.blocked:
                session.state = SessionState.BLOCKED
            else:
                issued = await self._enter_verified(session)

            await self._save(session)
            await self._after_verified(session, issued)
            self._audit_assessment(session)
            return VerificationOutcome(session, issued)

    async def _session_for_token(self, token: str) -> str:
        try:
            token_id, _ = split_token(token)
        except ValueError as exc:
            raise ValidationError("Malformed recovery token") from exc
        index = await self._store.get(TOKEN_INDEX_NAMESPACE, token_id)
        if index is None:
            # Let the token store report the precise reason; a live token with no session is still unusable.
            await self._tokens.peek(token)
            raise SessionNotFound()
        return index.payload["session_id"]

    async def complete(self, token: str) -> CompletionResult:
        session_id = await self._session_for_token(token)
        async with self._locks.hold(session_id):
            session = await self._load(session_id)
            if session.state is SessionState.COMPLETED:
                raise TokenAlreadyUsed()
            await self._ensure_live(session)
            if session.state is not SessionState.VERIFIED:
                raise InvalidSessionState("Recovery session is not verified")

            user_id = await self._tokens.consume(token)

            now = self._clock()
            session.state = SessionState.COMPLETED
            session.completed_at = now
            session.confirmation_id = str(uuid.uuid4())
            await self._save(session)
            await self._store.delete(TOKEN_INDEX_NAMESPACE, session.token_id)
            audit_event(
                "recovery.completed",
                session_id=session.session_id,
                confirmation_id=session.confirmation_id,
            )
            return CompletionResult(
                confirmation_id=session.confirmation_id,
                user_id=user_id,
                completed_at=now,
                session_id=session.session_id,
            )

    async def sweep_expired(self) -> int:
        cutoff = Criteria(expires_before=self._clock() - SESSION_RETENTION)
        removed = await self._store.delete_where(SESSION_NAMESPACE, cutoff)
        await self._store.delete_where(TOKEN_INDEX_NAMESPACE, cutoff)
        if removed:
            logger.info("Swept %s expired recovery session(s)", removed)
        return removed
