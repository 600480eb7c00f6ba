"""Tick orchestrator: the periodic entry point of the journey engine.

One tick:
1. Scheduler sweep and retry sweep run concurrently. Executions started by
   fired schedules and executions resumed from retries are advanced on a
   bounded worker pool (``asyncio.Semaphore(concurrency)``).
2. Due-wait sweep: waiting executions past their deadline, pending
   executions never claimed, and stranded ``waiting_retry`` executions are
   advanced on the same pool.
3. Maintenance runs on roughly one tick in ``maintenance_sample_rate``.

Ticks are stateless and may overlap; the conditional writes of the engine
and the scheduler's claim keep overlapping ticks from double-processing.
Errors are isolated per item and reported in the result; ``run_tick``
itself never raises for them.
"""

import asyncio
import random
from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings
from core.utils import utcnow
from workflow.collaborators import (
    AudienceResolver,
    ChannelSender,
    ContactResolver,
    GoalSink,
    InMemoryContactResolver,
    LoggingChannelSender,
    WebhookChannelSender,
)
from workflow.engine import AdvanceResult, EngineConfig, ExecutionEngine, StepOutcome
from workflow.retry_handler import RetryHandler
from workflow.scheduler import Scheduler

logger = structlog.get_logger(__name__)


class TickOrchestrator:
    """Runs scheduler, retry handler and engine for one tick."""

    def __init__(
        self,
        engine: ExecutionEngine,
        scheduler: Scheduler,
        retry_handler: RetryHandler,
        concurrency: int = 20,
        maintenance_sample_rate: int = 60,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.scheduler = scheduler
        self.retry_handler = retry_handler
        self.concurrency = max(1, concurrency)
        self.maintenance_sample_rate = max(1, maintenance_sample_rate)
        self.rng = rng or random.Random()
        self.clock = clock

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker,
        settings: Settings,
        channel: Optional[ChannelSender] = None,
        contacts: Optional[ContactResolver] = None,
        goal_sink: Optional[GoalSink] = None,
        audience: Optional[AudienceResolver] = None,
    ) -> "TickOrchestrator":
        """Wire the components from settings. Collaborators default to the
        webhook channel (or a logging one when no URL is configured)."""
        if channel is None:
            if settings.CHANNEL_WEBHOOK_URL:
                channel = WebhookChannelSender(
                    settings.CHANNEL_WEBHOOK_URL,
                    token=settings.CHANNEL_WEBHOOK_TOKEN,
                    timeout=settings.CHANNEL_TIMEOUT,
                )
            else:
                channel = LoggingChannelSender()

        engine = ExecutionEngine(
            session_factory,
            channel=channel,
            contacts=contacts or InMemoryContactResolver(),
            goal_sink=goal_sink,
            config=EngineConfig.from_settings(settings),
        )
        scheduler = Scheduler(session_factory, audience=audience, batch_size=settings.SCHEDULE_BATCH_SIZE)
        retry_handler = RetryHandler(
            session_factory,
            retention_days=settings.EXECUTION_RETENTION_DAYS,
            batch_size=settings.SCHEDULE_BATCH_SIZE,
        )
        return cls(
            engine,
            scheduler,
            retry_handler,
            concurrency=settings.TICK_CONCURRENCY,
            maintenance_sample_rate=settings.MAINTENANCE_SAMPLE_RATE,
        )

    async def run_tick(self, force_maintenance: bool = False) -> dict[str, Any]:
        """Run one tick.

        Returns:
            ``{"schedules": {"started", "skipped", "errors"}, "retries": {"processed", "errors"},
            "waits": {"resumed", "errors"}, "maintenance": dict | None}``
        """
        now = self.clock()
        semaphore = asyncio.Semaphore(self.concurrency)

        schedules, retries = await asyncio.gather(
            self._run_schedules(now, semaphore),
            self._run_retries(now, semaphore),
        )
        waits = await self._run_waits(now, semaphore)

        maintenance = None
        if force_maintenance or self.rng.random() < 1.0 / self.maintenance_sample_rate:
            try:
                maintenance = await self.retry_handler.run_maintenance(now)
            except Exception as e:
                logger.error("maintenance_failed", error=str(e), exc_info=True)
                maintenance = {"error": str(e)}

        result = {
            "schedules": schedules,
            "retries": retries,
            "waits": waits,
            "maintenance": maintenance,
        }
        logger.info(
            "tick_completed",
            schedules_started=schedules["started"],
            retries_processed=retries["processed"],
            waits_resumed=waits["resumed"],
            errors=len(schedules["errors"]) + len(retries["errors"]) + len(waits["errors"]),
            maintenance=maintenance is not None,
        )
        return result

    async def _run_schedules(self, now: datetime, semaphore: asyncio.Semaphore) -> dict[str, Any]:
        try:
            fired = await self.scheduler.process_due_schedules(now)
        except Exception as e:
            logger.error("schedule_sweep_failed", error=str(e), exc_info=True)
            return {"started": 0, "skipped": 0, "errors": [{"error": str(e)}]}

        _, advance_errors = await self._advance_many(fired.execution_ids, semaphore)
        return {"started": fired.started, "skipped": fired.skipped, "errors": fired.errors + advance_errors}

    async def _run_retries(self, now: datetime, semaphore: asyncio.Semaphore) -> dict[str, Any]:
        try:
            swept = await self.retry_handler.process_pending_retries(self.engine, now, semaphore)
        except Exception as e:
            logger.error("retry_sweep_failed", error=str(e), exc_info=True)
            return {"processed": 0, "errors": [{"error": str(e)}]}
        return {"processed": swept["processed"], "errors": swept["errors"]}

    async def _run_waits(self, now: datetime, semaphore: asyncio.Semaphore) -> dict[str, Any]:
        try:
            execution_ids = await self.retry_handler.get_due_waits(now)
        except Exception as e:
            logger.error("wait_sweep_failed", error=str(e), exc_info=True)
            return {"resumed": 0, "errors": [{"error": str(e)}]}

        results, errors = await self._advance_many(execution_ids, semaphore)
        resumed = sum(1 for r in results if r.outcome not in (StepOutcome.SKIPPED, StepOutcome.CONFLICT))
        return {"resumed": resumed, "errors": errors}

    async def _advance_many(
        self,
        execution_ids: list[str],
        semaphore: asyncio.Semaphore,
    ) -> tuple[list[AdvanceResult], list[dict[str, Any]]]:
        """Advance executions on the bounded pool, isolating failures per execution."""

        async def _advance(execution_id: str):
            async with semaphore:
                try:
                    return await self.engine.advance(execution_id), None
                except Exception as e:
                    logger.error("execution_advance_failed", execution_id=execution_id, error=str(e), exc_info=True)
                    return None, {"execution_id": execution_id, "error": str(e)}

        outcomes = await asyncio.gather(*(_advance(eid) for eid in execution_ids))
        results = [result for result, _ in outcomes if result is not None]
        errors = [error for _, error in outcomes if error is not None]
        return results, errors
