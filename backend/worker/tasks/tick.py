"""Celery task running one engine tick.

Beat fires it every minute. Each run builds its components on a
short-lived engine (see ``db.worker_session``) so that connections never
cross event loops in forked workers.
"""

import asyncio
import logging

from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.tick.run_tick",
    queue="ticks",
)
def run_tick(force_maintenance: bool = False):
    """Sweep schedules, retries and due waits, advancing what is ready."""
    logger.info("[tick] Starting workflow tick")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_run_tick(force_maintenance))
        logger.info("[tick] Done: %s", result)
        return result
    except Exception as exc:
        logger.error("[tick] Tick failed: %s", exc, exc_info=True)
        return {"status": "error", "error": str(exc)}
    finally:
        loop.close()


async def _run_tick(force_maintenance: bool) -> dict:
    from app.config import get_settings
    from db.worker_session import worker_session_factory
    from worker.tick import TickOrchestrator

    async with worker_session_factory() as session_factory:
        orchestrator = TickOrchestrator.build(session_factory, get_settings())
        return await orchestrator.run_tick(force_maintenance=force_maintenance)
