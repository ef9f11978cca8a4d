from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.core.settings import settings


class SecurityHeadersMiddleware:
    """Apply safe default security headers; recovery responses are never cached."""

    def __init__(self, app: ASGIApp, enable_hsts: bool = True) -> None:
        self.app = app
        self.enable_hsts = enable_hsts
        self._defaults: list[tuple[bytes, bytes]] = [
            (b"x-content-type-options", b"nosniff"),
            (b"x-frame-options", b"DENY"),
            (b"referrer-policy", b"no-referrer"),
            (b"cache-control", b"no-store"),
            (b"pragma", b"no-cache"),
            (b"cross-origin-resource-policy", b"same-origin"),
        ]
        if enable_hsts:
            self._defaults.append((b"strict-transport-security", b"max-age=63072000; includeSubDomains"))
        if settings.content_security_policy:
            header_name = (
                b"content-security-policy-report-only"
                if settings.content_security_policy_report_only
                else b"content-security-policy"
            )
            self._defaults.append((header_name, settings.content_security_policy.encode()))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                new_headers = list(message.get("headers", []))
                existing_keys = {key.lower() for key, _ in new_headers}
                new_headers.extend((key, value) for key, value in self._defaults if key not in existing_keys)
                message["headers"] = new_headers
            await send(message)

        await self.app(scope, receive, send_with_headers)
