from __future__ import annotations

import secrets
from functools import lru_cache

from passlib.context import CryptContext

from app.core.settings import settings

TOKEN_SELECTOR_BYTES = 12
TOKEN_SECRET_BYTES = 32
TOKEN_SEPARATOR = "."


@lru_cache(maxsize=8)
def get_token_context(rounds: int | None = None) -> CryptContext:
    return CryptContext(
        schemes=["bcrypt"],
        deprecated="auto",
        bcrypt__rounds=rounds or settings.token_hash_rounds,
    )


@lru_cache(maxsize=8)
def _dummy_hash(rounds: int | None = None) -> str:
    return get_token_context(rounds).hash(secrets.token_urlsafe(TOKEN_SECRET_BYTES))


def generate_token() -> tuple[str, str, str]:
    """Return ``(token_id, secret, plaintext)`` for a fresh recovery token.

    The token id is the public lookup half; only a bcrypt digest of the
    secret half is ever persisted.
    """
    token_id = secrets.token_urlsafe(TOKEN_SELECTOR_BYTES)
    secret = secrets.token_urlsafe(TOKEN_SECRET_BYTES)
    return token_id, secret, f"{token_id}{TOKEN_SEPARATOR}{secret}"


def split_token(token: str) -> tuple[str, str]:
    if not isinstance(token, str) or token.count(TOKEN_SEPARATOR) != 1:
        raise ValueError("Malformed recovery token")
    token_id, secret = token.split(TOKEN_SEPARATOR)
    if not token_id or not secret or len(token) > 256:
        raise ValueError("Malformed recovery token")
    return token_id, secret


def hash_token_secret(secret: str, rounds: int | None = None) -> str:
    return get_token_context(rounds).hash(secret)


def verify_token_secret(secret: str, token_hash: str | None, rounds: int | None = None) -> bool:
    if token_hash:
        return get_token_context(rounds).verify(secret, token_hash)
    # Dummy verification to equalize timing
    get_token_context(rounds).verify(secret, _dummy_hash(rounds))
    return False
