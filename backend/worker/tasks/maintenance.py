"""Celery task for retention maintenance.

Runs daily at 3 AM (configured in beat_schedule) on top of the sampled
maintenance done by ticks:
1. Purge terminal executions older than the retention period
2. Delete retry rows whose execution is no longer waiting to retry
"""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.maintenance.run_maintenance",
    queue="default",
)
def run_maintenance():
    """Purge expired executions and orphaned retry state."""
    logger.info("Running daily maintenance")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_run_maintenance())
        logger.info("Daily maintenance completed: %s", result)
        return result
    except Exception as exc:
        logger.error("Daily maintenance failed: %s", exc, exc_info=True)
        return {"status": "error", "error": str(exc)}
    finally:
        loop.close()


async def _run_maintenance() -> dict:
    from app.config import get_settings
    from db.worker_session import worker_session_factory
    from workflow.retry_handler import RetryHandler

    settings = get_settings()
    async with worker_session_factory() as session_factory:
        handler = RetryHandler(session_factory, retention_days=settings.EXECUTION_RETENTION_DAYS)
        return await handler.run_maintenance()
