from fastapi import APIRouter, Depends, Request

from app.api import deps
from app.core.health import live_payload, ready_payload
from app.core.limiter import limiter
from app.services.recovery import RecoveryService

router = APIRouter(tags=["health"])


@router.get("/health/live", summary="Service liveness check")
@limiter.exempt
async def health_live(request: Request) -> dict:
    return await live_payload()


@router.get("/health/ready", summary="Service readiness check")
@limiter.exempt
async def health_ready(
    request: Request,
    service: RecoveryService = Depends(deps.get_recovery_service),
) -> dict:
    return await ready_payload(service)
