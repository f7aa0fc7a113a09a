"""
Periodic cleanup of stale driver availability.

Started from the app lifespan when ``sweep_enabled`` is set. Each pass is
idempotent: rows already marked unavailable are left alone.
"""
import asyncio
import logging

from tripsalama.config import get_settings
from tripsalama.database import AsyncSessionLocal
from tripsalama.services.availability import deactivate_inactive

logger = logging.getLogger(__name__)
settings = get_settings()


async def sweep_once(session_factory=AsyncSessionLocal) -> int:
    async with session_factory() as db:
        return await deactivate_inactive(db)


async def run_sweeper(interval_seconds: int | None = None, session_factory=AsyncSessionLocal) -> None:
    interval = interval_seconds or settings.sweep_interval_seconds
    logger.info("Availability sweeper running every %ss", interval)
    while True:
        try:
            await sweep_once(session_factory)
        except Exception as exc:
            logger.error("Availability sweep failed: %s", exc, exc_info=True)
        await asyncio.sleep(interval)
