from ..core.celery_app import celery_app
from ..core.cache import CacheManager
from ..core.database import AsyncSessionLocal, async_engine
from ..services.exam_service import ExamService
import asyncio
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="refresh_exam_statuses")
def refresh_exam_statuses():
    """Task moving exams between scheduled, active and expired"""
    try:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        try:
            return loop.run_until_complete(_run_refresh())
        finally:
            loop.close()

    except Exception as exc:
        logger.error(f"Error in refresh_exam_statuses: {exc}", exc_info=True)
        raise exc


async def _run_refresh():
    # redis clients and pooled connections are bound to the loop that created them
    cache = CacheManager()
    try:
        return await _refresh_statuses_internal(AsyncSessionLocal, cache)
    finally:
        await cache.aclose()
        await async_engine.dispose()


async def _refresh_statuses_internal(session_factory, cache=None):
    """Internal async function for the status refresh"""
    async with session_factory() as db:
        changed = await ExamService(db, cache).refresh_statuses()
    if changed:
        logger.info(f"Exam status refresh: {changed} exam(s) updated")
    return {'exams_updated': changed}
