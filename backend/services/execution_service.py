"""Execution service: persistence and conditional writes for executions.

Every state transition goes through :meth:`ExecutionService.compare_and_set`,
which only applies when the row still carries the revision and status the
writer last observed. A lost write returns ``False`` and the caller
re-reads or gives up; it never overwrites a concurrent transition.
"""

from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ExecutionStatus, TERMINAL_STATUSES, TriggerType
from core.utils import utcnow
from db.models.execution import WorkflowExecution
from db.models.retry_state import RetryState
from services.base import BaseService


def _setting(settings: dict, *keys: str, default: Any) -> Any:
    for key in keys:
        if settings.get(key) is not None:
            return settings[key]
    return default


class ExecutionService(BaseService[WorkflowExecution]):
    """Service for workflow execution records."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowExecution, db)

    async def create_execution(
        self,
        workflow_id: str,
        workflow_version: int,
        organization_id: str,
        contact_id: str,
        trigger_node_id: str,
        trigger_type: str = TriggerType.EVENT.value,
        schedule_id: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> WorkflowExecution:
        """Create a pending execution positioned on the trigger node."""
        return await self.create({
            "workflow_id": workflow_id,
            "workflow_version": workflow_version,
            "organization_id": organization_id,
            "contact_id": contact_id,
            "trigger_type": trigger_type,
            "schedule_id": schedule_id,
            "status": ExecutionStatus.PENDING.value,
            "current_node_id": trigger_node_id,
            "execution_path": [],
            "context": dict(context or {}),
            "retry_count": 0,
            "revision": 0,
        })

    async def entry_refusal(self, workflow, contact_id: str) -> Optional[str]:
        """Why ``contact_id`` may not enter ``workflow`` now, or None if it may.

        A contact with no prior execution always enters. Otherwise the
        workflow must allow re-entry (``allowReentry``, off by default), the
        contact must have no execution still in flight, and its past
        executions must number fewer than ``maxExecutionsPerContact``
        (default 1).
        """
        result = await self.db.execute(
            select(WorkflowExecution.status, func.count())
            .where(
                WorkflowExecution.workflow_id == workflow.id,
                WorkflowExecution.contact_id == contact_id,
            )
            .group_by(WorkflowExecution.status)
        )
        counts = {status: count for status, count in result.all()}
        if not counts:
            return None

        settings = workflow.settings or {}
        if not _setting(settings, "allowReentry", "allow_reentry", default=False):
            return f"Contact {contact_id} already entered workflow {workflow.id}"
        if any(status not in TERMINAL_STATUSES for status in counts):
            return f"Contact {contact_id} has an active execution of workflow {workflow.id}"
        limit = int(_setting(settings, "maxExecutionsPerContact", "max_executions_per_contact", default=1))
        if sum(counts.values()) >= limit:
            return f"Contact {contact_id} reached {limit} executions of workflow {workflow.id}"
        return None

    async def get_status(self, execution_id: str) -> Optional[tuple[str, int]]:
        """Return ``(status, revision)`` without loading the full row."""
        result = await self.db.execute(
            select(WorkflowExecution.status, WorkflowExecution.revision)
            .where(WorkflowExecution.id == execution_id)
        )
        row = result.first()
        return (row.status, row.revision) if row else None

    async def compare_and_set(
        self,
        execution_id: str,
        expected_revision: int,
        expected_status: str | Iterable[str],
        values: dict[str, Any],
    ) -> bool:
        """Apply ``values`` only if revision and status are unchanged.

        The revision is incremented as part of the same statement.

        Returns:
            True if exactly one row was updated, False if the write lost.
        """
        statuses = [expected_status] if isinstance(expected_status, str) else list(expected_status)
        stmt = (
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution_id,
                WorkflowExecution.revision == expected_revision,
                WorkflowExecution.status.in_(statuses),
            )
            .values(
                **values,
                revision=expected_revision + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    # ─── Sweeps ────────────────────────────────────────────

    async def list_due_waits(self, now: datetime, limit: int = 100) -> list[str]:
        """IDs of waiting executions whose ``wait_until`` has passed."""
        result = await self.db.execute(
            select(WorkflowExecution.id)
            .where(
                WorkflowExecution.status == ExecutionStatus.WAITING.value,
                WorkflowExecution.wait_until <= now,
            )
            .order_by(WorkflowExecution.wait_until)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_pending(self, limit: int = 100) -> list[str]:
        """IDs of executions created but never claimed by the engine."""
        result = await self.db.execute(
            select(WorkflowExecution.id)
            .where(WorkflowExecution.status == ExecutionStatus.PENDING.value)
            .order_by(WorkflowExecution.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_unscheduled_retries(self, limit: int = 100) -> list[str]:
        """IDs of ``waiting_retry`` executions that have no RetryState row.

        Happens when a retry row was consumed but the resume never reached
        the engine (worker crash between the two).
        """
        has_retry = select(RetryState.id).where(RetryState.execution_id == WorkflowExecution.id)
        result = await self.db.execute(
            select(WorkflowExecution.id)
            .where(
                WorkflowExecution.status == ExecutionStatus.WAITING_RETRY.value,
                ~has_retry.exists(),
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_active_for_workflow(self, workflow_id: str) -> list[str]:
        """IDs of non-terminal executions of a workflow."""
        result = await self.db.execute(
            select(WorkflowExecution.id).where(
                WorkflowExecution.workflow_id == workflow_id,
                WorkflowExecution.status.not_in(TERMINAL_STATUSES),
            )
        )
        return list(result.scalars().all())

    async def count_by_status(self, workflow_id: Optional[str] = None) -> dict[str, int]:
        query = select(WorkflowExecution.status, func.count()).group_by(WorkflowExecution.status)
        if workflow_id is not None:
            query = query.where(WorkflowExecution.workflow_id == workflow_id)
        result = await self.db.execute(query)
        return {status: count for status, count in result.all()}

    # ─── Retention ─────────────────────────────────────────

    async def purge_terminal(self, before: datetime, batch_size: int = 500) -> int:
        """Delete terminal executions finished before ``before``.

        Retry rows of the deleted executions are removed first so the purge
        does not depend on the database enforcing the cascade.
        """
        finished_at = func.coalesce(WorkflowExecution.completed_at, WorkflowExecution.updated_at)
        deleted = 0
        while True:
            result = await self.db.execute(
                select(WorkflowExecution.id)
                .where(
                    WorkflowExecution.status.in_(TERMINAL_STATUSES),
                    finished_at < before,
                )
                .limit(batch_size)
            )
            ids: Sequence[str] = result.scalars().all()
            if not ids:
                break
            await self.db.execute(
                delete(RetryState)
                .where(RetryState.execution_id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            purged = await self.db.execute(
                delete(WorkflowExecution)
                .where(WorkflowExecution.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            deleted += purged.rowcount or 0
            if len(ids) < batch_size:
                break
        return deleted
