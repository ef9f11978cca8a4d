import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from app.db.base import Base
from app.db.session import get_engine
from app import models  # noqa: F401 - registers tables on Base.metadata

logger = logging.getLogger(__name__)


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Create the recovery tables if they do not exist yet.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Recovery tables ready")

if __name__ == "__main__":
    asyncio.run(init_db())
