from __future__ import annotations

import json
from http import HTTPStatus
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

_SUCCESS_CODES = {200: "ok", 201: "created", 202: "accepted"}
_SKIPPED_HEADERS = {"content-length", "content-type"}


def success_envelope(data: Any, status_code: int = 200) -> dict[str, Any]:
    """Wrap a payload in the ``{code, message, data, details}`` shape errors also use."""
    try:
        message = HTTPStatus(status_code).phrase
    except ValueError:
        message = "Success"
    return {
        "code": _SUCCESS_CODES.get(status_code, "ok"),
        "message": message,
        "data": data,
        "details": {},
    }


def _is_enveloped(payload: Any) -> bool:
    return isinstance(payload, dict) and {"code", "message", "data", "details"} <= payload.keys()


def _rebuild(response: Response, content: dict[str, Any], status_code: int) -> JSONResponse:
    rebuilt = JSONResponse(status_code=status_code, content=content)
    for key, value in response.headers.items():
        if key.lower() not in _SKIPPED_HEADERS:
            rebuilt.headers[key] = value
    return rebuilt


class ResponseEnvelopeMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next) -> Response:
        response = await call_next(request)
        if not 200 <= response.status_code < 300:
            return response
        if response.status_code == 204:
            return _rebuild(response, success_envelope(None), 200)
        if response.headers.get("content-type", "").split(";")[0] != "application/json":
            return response

        # call_next hands back a streaming response; drain it to inspect the JSON.
        body = b"".join([chunk async for chunk in response.body_iterator])
        try:
            payload = json.loads(body) if body else None
        except ValueError:
            return Response(
                content=body,
                status_code=response.status_code,
                headers=dict(response.headers),
                media_type=response.media_type,
            )
        if _is_enveloped(payload):
            return _rebuild(response, payload, response.status_code)
        return _rebuild(response, success_envelope(payload, response.status_code), response.status_code)


def register_response_envelope(app) -> None:
    app.add_middleware(ResponseEnvelopeMiddleware)
