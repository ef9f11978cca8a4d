from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from app.core.settings import settings
from app.services.recovery import RecoveryService
from app.utils.redis_client import get_redis_client

APP_VERSION = "0.1.0"


async def _check_storage(service: RecoveryService) -> dict[str, str]:
    try:
        await service.store.ping()
        return {"status": "ok", "backend": service.store.backend}
    except Exception as exc:
        return {"status": "error", "backend": service.store.backend, "error": exc.__class__.__name__}


async def _check_redis() -> dict[str, str]:
    if settings.rate_limit_backend != "redis":
        return {"status": "ok", "detail": "not configured"}
    try:
        await get_redis_client().ping()
        return {"status": "ok"}
    except Exception as exc:
        return {"status": "error", "error": exc.__class__.__name__}


def _overall_status(checks: dict[str, dict[str, Any]]) -> tuple[str, bool]:
    ready = all(check.get("status") == "ok" for check in checks.values())
    return ("ok" if ready else "degraded", ready)


async def live_payload() -> dict[str, str]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def ready_payload(service: RecoveryService) -> dict[str, Any]:
    checks = {
        "api": {"status": "ok", "version": APP_VERSION},
        "storage": await _check_storage(service),
        "redis": await _check_redis(),
    }
    overall, ready = _overall_status(checks)
    return {
        "status": overall,
        "ready": ready,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
