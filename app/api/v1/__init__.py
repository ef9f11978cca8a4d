from fastapi import APIRouter

from app.api.v1.routers import health, recovery

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(recovery.router)

__all__ = ["api_router"]
