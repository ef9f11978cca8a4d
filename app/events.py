import asyncio
import contextlib
import logging

from fastapi import FastAPI

from app.db.init_db import init_db
from app.core.settings import Settings
from app.services.recovery import RecoveryService

logger = logging.getLogger(__name__)


async def run_sweeper(service: RecoveryService, interval_seconds: float) -> None:
    """Reap expired tokens and sessions until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await service.sweep()
        except Exception:
            # Sweeping is retried next tick; one bad pass must not stop the loop.
            logger.exception("Recovery sweep failed")
            continue
        if result.tokens or result.sessions:
            logger.info("Recovery sweep removed tokens=%s sessions=%s", result.tokens, result.sessions)


def register_event_handlers(app: FastAPI, settings: Settings) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Application startup")
        if settings.storage_backend == "database":
            await init_db()
        if settings.sweep_interval_seconds > 0:
            app.state.sweeper = asyncio.create_task(
                run_sweeper(app.state.recovery, settings.sweep_interval_seconds)
            )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        sweeper = getattr(app.state, "sweeper", None)
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        await app.state.recovery.close()
