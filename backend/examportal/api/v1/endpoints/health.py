from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import logging
import time

from ....core.cache import cache
from ....core.database import get_async_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def get_health(db: AsyncSession = Depends(get_async_db)):
    """Basic health status - no authentication required"""
    services = {}

    try:
        await db.execute(text("SELECT 1"))
        services["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        services["database"] = "unhealthy"

    if cache.enabled:
        services["cache"] = "healthy" if await cache.ahealth_check() else "unhealthy"
    else:
        services["cache"] = "disabled"

    return {
        "status": "healthy" if services["database"] == "healthy" else "degraded",
        "timestamp": time.time(),
        "service": "examportal-api",
        "services": services,
    }
