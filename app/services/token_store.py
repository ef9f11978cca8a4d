from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from starlette.concurrency import run_in_threadpool

from app.core.errors import TokenAlreadyUsed, TokenExpired, TokenNotFound, ValidationError
from app.core.security import generate_token, hash_token_secret, split_token, verify_token_secret
from app.services.storage.adapter import Criteria, DuplicateKey, Record, RecordStore

logger = logging.getLogger(__name__)

TOKEN_NAMESPACE = "token"
ISSUE_ATTEMPTS = 3

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenRecord:
    token_id: str
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_payload(self) -> dict[str, Any]:
        return {
            "token_hash": self.token_hash,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "used": self.used,
            "used_at": self.used_at.isoformat() if self.used_at else None,
        }

    @classmethod
    def from_record(cls, record: Record) -> "TokenRecord":
        payload = record.payload
        used_at = payload.get("used_at")
        return cls(
            token_id=record.key,
            token_hash=payload["token_hash"],
            user_id=payload["user_id"],
            created_at=datetime.fromisoformat(payload["created_at"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            used=bool(payload.get("used")),
            used_at=datetime.fromisoformat(used_at) if used_at else None,
        )

    def to_record(self) -> Record:
        return Record(
            namespace=TOKEN_NAMESPACE,
            key=self.token_id,
            payload=self.to_payload(),
            owner=self.user_id,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    record: TokenRecord

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


@dataclass(frozen=True)
class TokenStats:
    total: int
    active: int
    used: int
    expired: int


class TokenStore:
    """Single-use recovery tokens, hashed at rest.

    A plaintext token is ``<token_id>.<secret>``. The token id is the storage
    key; the secret is only ever kept as a bcrypt digest. Consumption is a
    compare-and-set on the stored record, so of several concurrent
    ``consume`` calls on one token exactly one wins.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        ttl: timedelta,
        hash_rounds: int | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._hash_rounds = hash_rounds
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def _hash(self, secret: str) -> str:
        # bcrypt is deliberately slow; keep it off the event loop.
        return await run_in_threadpool(hash_token_secret, secret, self._hash_rounds)

    async def _verify(self, secret: str, token_hash: str | None) -> bool:
        return await run_in_threadpool(verify_token_secret, secret, token_hash, self._hash_rounds)

    async def issue(self, user_id: str) -> IssuedToken:
        if not user_id:
            raise ValidationError("User ID is required")
        for _ in range(ISSUE_ATTEMPTS):
            token_id, secret, plaintext = generate_token()
            created_at = self._clock()
            record = TokenRecord(
                token_id=token_id,
                token_hash=await self._hash(secret),
                user_id=user_id,
                created_at=created_at,
                expires_at=created_at + self._ttl,
            )
            try:
                await self._store.put(record.to_record())
            except DuplicateKey:
                logger.warning("Recovery token id collision; regenerating")
                continue
            logger.info("Recovery token issued token_id=%s expires_at=%s", token_id, record.expires_at.isoformat())
            return IssuedToken(token=plaintext, record=record)
        raise RuntimeError("Unable to allocate a unique recovery token id")

    async def _load(self, token: str) -> tuple[TokenRecord, int]:
        try:
            token_id, secret = split_token(token)
        except ValueError as exc:
            raise ValidationError("Malformed recovery token") from exc

        stored = await self._store.get(TOKEN_NAMESPACE, token_id)
        record = TokenRecord.from_record(stored) if stored is not None else None
        if not await self._verify(secret, record.token_hash if record else None):
            logger.warning("Token check failed: not found token_id=%s", token_id)
            raise TokenNotFound()
        return record, stored.version

    def _check_usable(self, record: TokenRecord) -> None:
        if record.is_expired(self._clock()):
            logger.warning("Token check failed: expired token_id=%s", record.token_id)
            raise TokenExpired()
        if record.used:
            logger.warning("Token check failed: already used token_id=%s", record.token_id)
            raise TokenAlreadyUsed()

    async def peek(self, token: str) -> TokenRecord:
        """Non-consuming validity check; raises the same errors as ``consume``."""
        record, _ = await self._load(token)
        self._check_usable(record)
        return record

    async def consume(self, token: str) -> str:
        record, version = await self._load(token)
        self._check_usable(record)

        spent = replace(record, used=True, used_at=self._clock())
        if await self._store.replace(spent.to_record(), expected_version=version):
            logger.info("Recovery token consumed token_id=%s", record.token_id)
            return record.user_id

        # Lost the race: another consumer won, or the token was revoked meanwhile.
        current = await self._store.get(TOKEN_NAMESPACE, record.token_id)
        if current is None:
            raise TokenNotFound()
        raise TokenAlreadyUsed()

    async def tokens_for_user(self, user_id: str) -> list[TokenRecord]:
        records = await self._store.find(TOKEN_NAMESPACE, Criteria(owner=user_id))
        return sorted((TokenRecord.from_record(r) for r in records), key=lambda t: t.created_at)

    async def revoke_all(self, user_id: str) -> int:
        if not user_id:
            raise ValidationError("User ID is required")
        revoked = await self._store.delete_where(TOKEN_NAMESPACE, Criteria(owner=user_id))
        logger.info("Revoked %s recovery token(s)", revoked)
        return revoked

    async def sweep_expired(self) -> int:
        removed = await self._store.delete_where(TOKEN_NAMESPACE, Criteria(expires_before=self._clock()))
        if removed:
            logger.info("Swept %s expired recovery token(s)", removed)
        return removed

    async def stats(self) -> TokenStats:
        now = self._clock()
        records = [TokenRecord.from_record(r) for r in await self._store.find(TOKEN_NAMESPACE)]
        used = sum(1 for r in records if r.used)
        expired = sum(1 for r in records if not r.used and r.is_expired(now))
        return TokenStats(total=len(records), active=len(records) - used - expired, used=used, expired=expired)
