from starlette.types import ASGIApp, Receive, Scope, Send


class TrustedProxiesMiddleware:
    """Resolve the caller's address behind ``proxies_count`` trusted reverse proxies.

    Rate-limit buckets are keyed by this address, so only the hop appended by
    the outermost trusted proxy is believed; anything further left in
    X-Forwarded-For is client supplied.
    """

    def __init__(self, app: ASGIApp, proxies_count: int = 1) -> None:
        self.app = app
        self.proxies_count = proxies_count

    def _forwarded_client(self, scope: Scope) -> str | None:
        headers = dict(scope.get("headers", []))
        forwarded = headers.get(b"x-forwarded-for", b"").decode("latin-1")
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if len(hops) < self.proxies_count:
            return None
        return hops[-self.proxies_count]

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and self.proxies_count > 0:
            real_ip = self._forwarded_client(scope)
            if real_ip:
                port = scope["client"][1] if scope.get("client") else 0
                scope["client"] = (real_ip, port)

        await self.app(scope, receive, send)
