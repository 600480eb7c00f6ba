"""Retry state service: parked transient failures awaiting back-off."""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ExecutionStatus
from db.models.execution import WorkflowExecution
from db.models.retry_state import RetryState
from services.base import BaseService


class RetryStateService(BaseService[RetryState]):
    """Service for RetryState rows (one per execution at most)."""

    def __init__(self, db: AsyncSession):
        super().__init__(RetryState, db)

    async def get_for_execution(self, execution_id: str) -> Optional[RetryState]:
        result = await self.db.execute(
            select(RetryState).where(RetryState.execution_id == execution_id)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        execution_id: str,
        organization_id: str,
        node_id: str,
        retry_count: int,
        next_retry_at: datetime,
        last_error: Optional[str] = None,
    ) -> RetryState:
        """Replace the execution's retry row with a fresh one."""
        await self.db.execute(
            delete(RetryState)
            .where(RetryState.execution_id == execution_id)
            .execution_options(synchronize_session=False)
        )
        return await self.create({
            "execution_id": execution_id,
            "organization_id": organization_id,
            "node_id": node_id,
            "retry_count": retry_count,
            "next_retry_at": next_retry_at,
            "last_error": last_error,
        })

    async def list_due(self, now: datetime, limit: int = 100) -> list[RetryState]:
        """Retry rows whose back-off window has elapsed, oldest first."""
        result = await self.db.execute(
            select(RetryState)
            .where(RetryState.next_retry_at <= now)
            .order_by(RetryState.next_retry_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def consume(self, execution_id: str) -> bool:
        """Delete the execution's retry row.

        Returns:
            True if this caller removed the row, False if it was already gone.
        """
        result = await self.db.execute(
            delete(RetryState)
            .where(RetryState.execution_id == execution_id)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    async def purge_orphans(self) -> int:
        """Delete retry rows whose execution is gone or no longer waiting to retry."""
        live = select(WorkflowExecution.id).where(
            WorkflowExecution.status == ExecutionStatus.WAITING_RETRY.value
        )
        result = await self.db.execute(
            delete(RetryState)
            .where(RetryState.execution_id.not_in(live))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
