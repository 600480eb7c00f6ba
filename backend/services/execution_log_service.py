"""Execution log service: per-node history of an execution."""

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import NodeLogStatus
from db.models.execution import WorkflowExecution
from db.models.execution_log import ExecutionLog
from services.base import BaseService


class ExecutionLogService(BaseService[ExecutionLog]):
    """Service for ExecutionLog rows, written by the engine in its transition transactions."""

    def __init__(self, db: AsyncSession):
        super().__init__(ExecutionLog, db)

    async def list_for_execution(self, execution_id: str) -> list[ExecutionLog]:
        """Log rows of one execution in evaluation order."""
        result = await self.db.execute(
            select(ExecutionLog)
            .where(ExecutionLog.execution_id == execution_id)
            .order_by(ExecutionLog.started_at.asc(), ExecutionLog.created_at.asc())
        )
        return list(result.scalars().all())

    async def summary(self, execution_id: str) -> dict[str, Any]:
        """Node counts per outcome and total evaluation time."""
        result = await self.db.execute(
            select(ExecutionLog.status, func.count(), func.coalesce(func.sum(ExecutionLog.duration_ms), 0))
            .where(ExecutionLog.execution_id == execution_id)
            .group_by(ExecutionLog.status)
        )
        counts = {status.value: 0 for status in NodeLogStatus}
        total_nodes = total_duration_ms = 0
        for status, count, duration_ms in result.all():
            counts[status] = count
            total_nodes += count
            total_duration_ms += int(duration_ms)
        return {"total_nodes": total_nodes, **counts, "total_duration_ms": total_duration_ms}

    async def purge(self, before: datetime) -> int:
        """Delete log rows older than ``before`` and rows whose execution is gone."""
        result = await self.db.execute(
            delete(ExecutionLog)
            .where(or_(
                ExecutionLog.started_at < before,
                ExecutionLog.execution_id.not_in(select(WorkflowExecution.id)),
            ))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
