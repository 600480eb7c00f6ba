"""Workflow service: authoring lifecycle (draft, active, paused, archived)."""

from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import WorkflowStatus
from core.exceptions import ConflictError, ValidationError
from db.models.workflow import Workflow
from db.models.workflow_version import WorkflowVersion
from services.base import BaseService
from services.schedule_service import ScheduleService
from workflow.definition import WorkflowGraph

logger = structlog.get_logger(__name__)


class WorkflowService(BaseService[Workflow]):
    """Service for workflow management."""

    def __init__(self, db: AsyncSession):
        super().__init__(Workflow, db)

    async def create_workflow(
        self,
        organization_id: str,
        name: str,
        nodes: list[dict],
        edges: list[dict],
        description: str = "",
        settings: Optional[dict[str, Any]] = None,
    ) -> Workflow:
        """Create a draft workflow. The graph is validated before it is stored."""
        WorkflowGraph.load(nodes, edges)
        wf = await self.create({
            "organization_id": organization_id,
            "name": name,
            "description": description,
            "nodes": nodes,
            "edges": edges,
            "settings": settings or {},
            "status": WorkflowStatus.DRAFT.value,
            "version": 1,
        })
        await self._snapshot(wf)
        return wf

    async def update_definition(
        self,
        workflow_id: str,
        nodes: list[dict],
        edges: list[dict],
    ) -> Workflow:
        """Replace the node graph and bump the version."""
        wf = await self.get_or_404(workflow_id)
        if wf.status == WorkflowStatus.ARCHIVED.value:
            raise ConflictError(f"Workflow {workflow_id} is archived")
        graph = WorkflowGraph.load(nodes, edges)
        if wf.status == WorkflowStatus.ACTIVE.value:
            graph.check_integrity()
        wf = await self.update(workflow_id, {
            "nodes": nodes,
            "edges": edges,
            "version": wf.version + 1,
        })
        await self._snapshot(wf)
        logger.info("workflow_definition_updated", workflow_id=workflow_id, version=wf.version)
        return wf

    async def activate(self, workflow_id: str) -> Workflow:
        """Enable scheduling and triggers. Requires a structurally sound graph."""
        wf = await self.get_or_404(workflow_id)
        if wf.status == WorkflowStatus.ARCHIVED.value:
            raise ConflictError(f"Workflow {workflow_id} is archived")
        WorkflowGraph.from_workflow(wf).check_integrity()
        logger.info("workflow_activated", workflow_id=workflow_id, version=wf.version)
        return await self.update(workflow_id, {"status": WorkflowStatus.ACTIVE.value})

    async def pause(self, workflow_id: str) -> Workflow:
        """Stop schedules from firing; in-flight executions continue."""
        wf = await self.get_or_404(workflow_id)
        if wf.status != WorkflowStatus.ACTIVE.value:
            raise ConflictError(f"Workflow {workflow_id} is {wf.status}, not active")
        logger.info("workflow_paused", workflow_id=workflow_id)
        return await self.update(workflow_id, {"status": WorkflowStatus.PAUSED.value})

    async def archive(self, workflow_id: str) -> Workflow:
        """Terminal state: schedules are deactivated, existing executions drain."""
        await self.get_or_404(workflow_id)
        deactivated = await ScheduleService(self.db).deactivate_for_workflow(workflow_id)
        logger.info("workflow_archived", workflow_id=workflow_id, schedules_deactivated=deactivated)
        return await self.update(workflow_id, {"status": WorkflowStatus.ARCHIVED.value})

    async def graph_for_version(self, wf: Workflow, version: int) -> WorkflowGraph:
        """Load the graph an execution started on.

        Raises:
            ValidationError: the version has no snapshot or its graph is invalid
        """
        if version == wf.version:
            return WorkflowGraph.from_workflow(wf)
        result = await self.db.execute(
            select(WorkflowVersion).where(
                WorkflowVersion.workflow_id == wf.id,
                WorkflowVersion.version == version,
            )
        )
        snapshot = result.scalar_one_or_none()
        if snapshot is None:
            raise ValidationError(f"Workflow {wf.id} version {version} not found")
        return WorkflowGraph.load(snapshot.nodes, snapshot.edges)

    async def _snapshot(self, wf: Workflow) -> None:
        self.db.add(WorkflowVersion(
            workflow_id=wf.id,
            version=wf.version,
            nodes=wf.nodes,
            edges=wf.edges,
        ))
        await self.db.flush()
