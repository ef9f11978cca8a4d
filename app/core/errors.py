from __future__ import annotations

import math
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

GENERIC_TOKEN_MESSAGE = "Invalid or expired recovery token"


class RecoveryError(Exception):
    """Base class for every failure the recovery engine reports to its callers."""

    status_code = 400
    code = "recovery_error"
    message = "Recovery request failed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details


class ValidationError(RecoveryError):
    status_code = 400
    code = "validation_error"
    message = "Invalid request"


class RateLimited(RecoveryError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests"

    def __init__(self, reset_after: float, *, limit: int | None = None, route_class: str | None = None) -> None:
        self.reset_after = reset_after
        self.limit = limit
        self.route_class = route_class
        super().__init__(
            f"Too many requests; retry in {self.retry_after_seconds} seconds",
            limit=limit,
            route_class=route_class,
            retry_after=self.retry_after_seconds,
        )

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.reset_after))


class TokenError(RecoveryError):
    """Token consumption failure; terminal and never retried."""

    status_code = 400
    code = "invalid_token"
    message = GENERIC_TOKEN_MESSAGE
    reason = "invalid"


class TokenNotFound(TokenError):
    reason = "not_found"


class TokenExpired(TokenError):
    reason = "expired"


class TokenAlreadyUsed(TokenError):
    reason = "already_used"


class SessionNotFound(RecoveryError):
    status_code = 404
    code = "session_not_found"
    message = "Recovery session not found"


class SessionExpired(RecoveryError):
    status_code = 410
    code = "session_expired"
    message = "Recovery session expired"


class InvalidSessionState(RecoveryError):
    status_code = 409
    code = "invalid_session_state"
    message = "Recovery session is not in a valid state for this operation"


class RecoveryBlocked(RecoveryError):
    status_code = 403
    code = "recovery_blocked"
    message = "Recovery attempt blocked due to security risk"


class StorageUnavailable(RecoveryError):
    status_code = 503
    code = "storage_unavailable"
    message = "Recovery storage is temporarily unavailable"


def _default_code(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        422: "unprocessable_entity",
        429: "rate_limited",
    }
    return mapping.get(status_code, "http_error")


def _default_message(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _normalize_details(details: Any) -> dict:
    if details is None:
        return {}
    if isinstance(details, dict):
        return details
    if isinstance(details, list):
        return {"errors": details}
    if isinstance(details, str):
        return {"detail": details}
    return {"detail": str(details)}


def _build_response(
    status_code: int,
    code: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    payload = {
        "code": code,
        "message": message,
        "data": None,
        "details": _normalize_details(details),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


def _parse_http_exception_detail(detail: Any, status_code: int) -> tuple[str, str, dict]:
    code = _default_code(status_code)
    message = _default_message(status_code)

    if isinstance(detail, dict):
        code = detail.get("code") or code
        message = detail.get("message") or detail.get("detail") or message
        remainder = {k: v for k, v in detail.items() if k not in {"code", "message", "detail"}}
        return code, message, remainder

    if isinstance(detail, list):
        return code, message, {"errors": detail}

    if isinstance(detail, str):
        return code, detail, {"detail": detail}

    return code, message, {"detail": str(detail)}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _parse_http_exception_detail(exc.detail, exc.status_code)
    return _build_response(exc.status_code, code, message, details)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    message = "Validation failed"
    if errors:
        first = errors[0] or {}
        loc = first.get("loc") or []
        msg = first.get("msg") or "Validation failed"
        # Drop the request section (body/query/path) from the location
        loc_parts = [str(part) for part in loc if part not in {"body", "query", "path"}]
        if loc_parts:
            message = f"{'.'.join(loc_parts)}: {msg}"
        else:
            message = str(msg)
    return _build_response(
        status_code=422,
        code="validation_error",
        message=message,
        details={"errors": errors},
    )


async def recovery_exception_handler(request: Request, exc: RecoveryError) -> JSONResponse:
    if isinstance(exc, TokenError):
        # One message for every token failure so the reason never leaks to callers.
        return _build_response(exc.status_code, TokenError.code, GENERIC_TOKEN_MESSAGE)
    details = {k: v for k, v in exc.details.items() if v is not None}
    response = _build_response(exc.status_code, exc.code, exc.message, details)
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    elif isinstance(exc, StorageUnavailable):
        response.headers["Retry-After"] = "1"
    return response


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return _build_response(
        status_code=500,
        code="internal_server_error",
        message="Internal server error",
        details={},
    )


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    details = getattr(exc, "detail", None)
    response = _build_response(
        status_code=429,
        code="rate_limited",
        message=_default_message(429),
        details=details,
    )
    headers = getattr(exc, "headers", None)
    if isinstance(headers, dict):
        response.headers.update(headers)
    return response


def register_exception_handlers(app) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(RecoveryError, recovery_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
