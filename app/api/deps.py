from fastapi import Depends, Request

from app.core.context import set_client_ip
from app.services.collaborators import ClientContext
from app.services.rate_limiter import RouteClass
from app.services.recovery import RecoveryService


def get_recovery_service(request: Request) -> RecoveryService:
    return request.app.state.recovery


def get_client_context(request: Request) -> ClientContext:
    client_ip = request.client.host if request.client else "unknown"
    set_client_ip(client_ip)
    return ClientContext(ip=client_ip, user_agent=request.headers.get("user-agent"))


def rate_limit(route_class: RouteClass):
    """Dependency enforcing the per-IP quota of ``route_class`` before the handler runs."""

    async def dependency(
        client: ClientContext = Depends(get_client_context),
        service: RecoveryService = Depends(get_recovery_service),
    ) -> ClientContext:
        await service.check_rate(route_class, client.ip)
        return client

    return dependency
