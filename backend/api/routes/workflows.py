"""Workflow endpoints: create, get, replace definition, lifecycle, trigger events, cancel."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.common import ExecutionFilterParams, PaginationParams
from api.schemas.execution import (
    AdvanceResponse,
    ExecutionListResponse,
    ExecutionResponse,
    TriggerEventResponse,
)
from api.schemas.workflow import (
    CancelRequest,
    TriggerEventRequest,
    WorkflowCancelResponse,
    WorkflowCreate,
    WorkflowDefinitionUpdate,
    WorkflowResponse,
)
from app.dependencies import get_db, get_engine
from core.constants import TriggerType
from services.execution_service import ExecutionService
from services.workflow_service import WorkflowService
from workflow.engine import ExecutionEngine

router = APIRouter(tags=["workflows"])


@router.post("/", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreate,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Create a draft workflow. The graph is validated on the way in.
    """
    wf = await WorkflowService(db).create_workflow(
        organization_id=request.organization_id,
        name=request.name,
        nodes=request.nodes,
        edges=request.edges,
        description=request.description or "",
        settings=request.settings,
    )
    return WorkflowResponse.model_validate(wf)


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    wf = await WorkflowService(db).get_or_404(workflow_id)
    return WorkflowResponse.model_validate(wf)


@router.put("/{workflow_id}/definition", response_model=WorkflowResponse)
async def update_definition(
    workflow_id: str,
    request: WorkflowDefinitionUpdate,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Replace the node graph. The version is bumped; running executions keep
    following the graph by node id.
    """
    wf = await WorkflowService(db).update_definition(workflow_id, request.nodes, request.edges)
    return WorkflowResponse.model_validate(wf)


@router.post("/{workflow_id}/activate", response_model=WorkflowResponse)
async def activate_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Activate a workflow. Requires a single trigger and a fully reachable graph.
    """
    wf = await WorkflowService(db).activate(workflow_id)
    return WorkflowResponse.model_validate(wf)


@router.post("/{workflow_id}/pause", response_model=WorkflowResponse)
async def pause_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    wf = await WorkflowService(db).pause(workflow_id)
    return WorkflowResponse.model_validate(wf)


@router.post("/{workflow_id}/archive", response_model=WorkflowResponse)
async def archive_workflow(
    workflow_id: str,
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Archive a workflow. Its schedules are deactivated.
    """
    wf = await WorkflowService(db).archive(workflow_id)
    return WorkflowResponse.model_validate(wf)


@router.post(
    "/{workflow_id}/executions",
    response_model=TriggerEventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def trigger_workflow(
    workflow_id: str,
    request: TriggerEventRequest,
    engine: ExecutionEngine = Depends(get_engine),
) -> TriggerEventResponse:
    """
    Deliver an external trigger event: start a journey for one contact.
    """
    execution = await engine.start_execution(
        workflow_id,
        request.contact_id,
        trigger_type=TriggerType.EVENT.value,
        payload=request.payload,
    )
    advance = None
    if request.run_now:
        result = await engine.advance(execution.id)
        advance = AdvanceResponse(**result.to_dict())
    return TriggerEventResponse(
        execution=ExecutionResponse.model_validate(execution),
        advance=advance,
    )


@router.get("/{workflow_id}/executions", response_model=ExecutionListResponse)
async def list_workflow_executions(
    workflow_id: str,
    pagination: PaginationParams = Depends(),
    filters: ExecutionFilterParams = Depends(),
    db: AsyncSession = Depends(get_db),
) -> ExecutionListResponse:
    await WorkflowService(db).get_or_404(workflow_id)
    executions, total = await ExecutionService(db).list(
        offset=pagination.offset,
        limit=pagination.per_page,
        filters={**filters.as_filters(), "workflow_id": workflow_id},
    )
    return ExecutionListResponse(
        executions=[ExecutionResponse.model_validate(e) for e in executions],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.post("/{workflow_id}/cancel", response_model=WorkflowCancelResponse)
async def cancel_workflow(
    workflow_id: str,
    request: CancelRequest = CancelRequest(),
    engine: ExecutionEngine = Depends(get_engine),
) -> WorkflowCancelResponse:
    """
    Cancel every non-terminal execution of the workflow.
    """
    cancelled = await engine.cancel_workflow(workflow_id, request.reason)
    return WorkflowCancelResponse(workflow_id=workflow_id, cancelled=cancelled)
