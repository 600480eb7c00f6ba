"""Schedule service: due-schedule sweeps and claim-by-conditional-update."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import WorkflowStatus
from core.utils import utcnow
from db.models.schedule import WorkflowSchedule
from db.models.workflow import Workflow
from services.base import BaseService

IDLE_WORKFLOW_STATUSES = (WorkflowStatus.DRAFT.value, WorkflowStatus.PAUSED.value)


class ScheduleService(BaseService[WorkflowSchedule]):
    """Service for workflow schedules."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowSchedule, db)

    async def list_due(self, now: datetime, limit: int = 100) -> list[WorkflowSchedule]:
        """Active schedules whose next fire time has passed.

        Schedules of draft and paused workflows are left out so they do not
        crowd live schedules out of the batch.
        """
        result = await self.db.execute(
            select(WorkflowSchedule)
            .join(Workflow, Workflow.id == WorkflowSchedule.workflow_id, isouter=True)
            .where(
                or_(
                    Workflow.id == None,  # noqa: E711
                    Workflow.status.not_in(IDLE_WORKFLOW_STATUSES),
                ),
                WorkflowSchedule.is_active == True,  # noqa: E712
                WorkflowSchedule.next_execution_at != None,  # noqa: E711
                WorkflowSchedule.next_execution_at <= now,
            )
            .order_by(WorkflowSchedule.next_execution_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_for_workflow(self, workflow_id: str) -> list[WorkflowSchedule]:
        result = await self.db.execute(
            select(WorkflowSchedule).where(WorkflowSchedule.workflow_id == workflow_id)
        )
        return list(result.scalars().all())

    async def claim(self, schedule: WorkflowSchedule, values: dict[str, Any]) -> bool:
        """Advance a schedule only if no other tick has fired it meanwhile.

        The update is keyed on the ``next_execution_at`` and
        ``executions_count`` the caller read.
        """
        stmt = (
            update(WorkflowSchedule)
            .where(
                WorkflowSchedule.id == schedule.id,
                WorkflowSchedule.is_active == True,  # noqa: E712
                WorkflowSchedule.next_execution_at == schedule.next_execution_at,
                WorkflowSchedule.executions_count == schedule.executions_count,
            )
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def record_failure(
        self,
        schedule_id: str,
        error: str,
        deactivate: bool = False,
    ) -> None:
        values: dict[str, Any] = {
            "last_execution_status": "failed",
            "last_error": error[:2000],
            "updated_at": utcnow(),
        }
        if deactivate:
            values["is_active"] = False
        await self.db.execute(
            update(WorkflowSchedule)
            .where(WorkflowSchedule.id == schedule_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def deactivate(self, schedule_id: str) -> Optional[WorkflowSchedule]:
        return await self.update(schedule_id, {"is_active": False})

    async def deactivate_for_workflow(self, workflow_id: str) -> int:
        result = await self.db.execute(
            update(WorkflowSchedule)
            .where(
                WorkflowSchedule.workflow_id == workflow_id,
                WorkflowSchedule.is_active == True,  # noqa: E712
            )
            .values(is_active=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
