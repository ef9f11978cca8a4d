from __future__ import annotations

import re
from typing import Literal, NamedTuple

from app.core.errors import ValidationError

IdentifierKind = Literal["email", "phone"]

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
_PHONE_STRIP_RE = re.compile(r"[\s\-().]")
MAX_IDENTIFIER_LENGTH = 254


class Identifier(NamedTuple):
    value: str
    kind: IdentifierKind


def is_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value or ""))


def normalize_identifier(email: str | None = None, phone: str | None = None) -> Identifier:
    """Validate exactly one of email/phone and return its canonical form."""
    if not email and not phone:
        raise ValidationError("Either email or phone is required")
    if email and phone:
        raise ValidationError("Provide either email or phone, not both")

    if email:
        cleaned = email.strip().lower()
        if len(cleaned) > MAX_IDENTIFIER_LENGTH or not _EMAIL_RE.match(cleaned):
            raise ValidationError("Invalid email format")
        return Identifier(cleaned, "email")

    cleaned = _PHONE_STRIP_RE.sub("", phone or "")
    if not _PHONE_RE.match(cleaned):
        raise ValidationError("Invalid phone format")
    return Identifier(cleaned, "phone")


def mask_identifier(value: str | None) -> str:
    """Render an identifier safe for logs: ``j***@example.com`` / ``***4567``."""
    if not value:
        return "-"
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{value[-4:]}" if len(value) > 4 else "***"
