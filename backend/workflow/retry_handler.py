"""Retry handler: resumes executions parked after transient failures.

A RetryState row is consumed (deleted) before the execution is handed back
to the engine, so a crash between the two cannot replay the same retry
twice. If consumption succeeds but the resume never happens, the execution
is left in ``waiting_retry`` without a row; the due-wait sweep picks those
up. The engine's conditional writes remain the real guard against double
processing.

Also hosts the due-wait sweep and the retention maintenance pass.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.utils import utcnow
from db.models.retry_state import RetryState
from services.execution_log_service import ExecutionLogService
from services.execution_service import ExecutionService
from services.retry_state_service import RetryStateService

logger = structlog.get_logger(__name__)


class RetryHandler:
    """Sweeps due retries and waits, and purges old terminal executions and logs."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        retention_days: int = 90,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.retention_days = retention_days
        self.batch_size = batch_size
        self.clock = clock

    async def get_pending_retries(self, now: Optional[datetime] = None) -> list[RetryState]:
        """Retry rows whose ``next_retry_at`` has passed."""
        now = now or self.clock()
        async with self.session_factory() as session:
            return await RetryStateService(session).list_due(now, self.batch_size)

    async def mark_as_resumed(self, execution_id: str) -> bool:
        """Consume the execution's retry row.

        Returns:
            False if another worker consumed it first.
        """
        async with self.session_factory() as session, session.begin():
            return await RetryStateService(session).consume(execution_id)

    async def process_pending_retries(
        self,
        engine,
        now: Optional[datetime] = None,
        semaphore: Optional[asyncio.Semaphore] = None,
    ) -> dict[str, Any]:
        """Consume due retries and hand each execution back to the engine.

        Args:
            engine: ExecutionEngine used to advance resumed executions
            now: Sweep time (defaults to the handler clock)
            semaphore: Shared concurrency limit for engine invocations

        Returns:
            ``{"processed": int, "errors": [...], "results": [...]}``
        """
        pending = await self.get_pending_retries(now)
        semaphore = semaphore or asyncio.Semaphore(len(pending) or 1)

        async def _resume(retry: RetryState):
            async with semaphore:
                try:
                    if not await self.mark_as_resumed(retry.execution_id):
                        logger.debug("retry_already_consumed", execution_id=retry.execution_id)
                        return None, None
                    logger.info(
                        "retry_resuming",
                        execution_id=retry.execution_id,
                        node_id=retry.node_id,
                        retry_count=retry.retry_count,
                    )
                    return await engine.advance(retry.execution_id), None
                except Exception as e:
                    logger.error("retry_resume_failed", execution_id=retry.execution_id, error=str(e), exc_info=True)
                    return None, {"execution_id": retry.execution_id, "error": str(e)}

        outcomes = await asyncio.gather(*(_resume(retry) for retry in pending))

        results = [result for result, _ in outcomes if result is not None]
        errors = [error for _, error in outcomes if error is not None]
        return {
            "processed": len(results),
            "errors": errors,
            "results": [r.to_dict() for r in results],
        }

    async def get_due_waits(self, now: Optional[datetime] = None) -> list[str]:
        """Executions ready to be advanced outside the retry path.

        Waiting executions whose deadline passed (including step-budget
        yields), pending executions never claimed, and ``waiting_retry``
        executions whose retry row was consumed without a resume.
        """
        now = now or self.clock()
        async with self.session_factory() as session:
            executions = ExecutionService(session)
            due = await executions.list_due_waits(now, self.batch_size)
            pending = await executions.list_pending(self.batch_size)
            stranded = await executions.list_unscheduled_retries(self.batch_size)
        return list(dict.fromkeys([*due, *pending, *stranded]))

    async def run_maintenance(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Purge terminal executions and node logs past retention, and orphaned rows."""
        now = now or self.clock()
        cutoff = now - timedelta(days=self.retention_days)
        async with self.session_factory() as session, session.begin():
            execution_logs_deleted = await ExecutionLogService(session).purge(cutoff)
            executions_deleted = await ExecutionService(session).purge_terminal(cutoff)
            retry_states_deleted = await RetryStateService(session).purge_orphans()

        stats = {
            "executions_deleted": executions_deleted,
            "retry_states_deleted": retry_states_deleted,
            "execution_logs_deleted": execution_logs_deleted,
            "cutoff": cutoff.isoformat(),
        }
        logger.info("maintenance_completed", **stats)
        return stats
