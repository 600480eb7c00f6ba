"""Execution endpoints: inspect, cancel, resume."""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.execution import (
    AdvanceResponse,
    CancelExecutionResponse,
    ExecutionDetailResponse,
    ExecutionLogResponse,
    ExecutionLogSummary,
    ExecutionResponse,
)
from api.schemas.workflow import CancelRequest
from app.dependencies import get_db, get_engine
from services.execution_log_service import ExecutionLogService
from services.execution_service import ExecutionService
from workflow.engine import ExecutionEngine

router = APIRouter(tags=["executions"])


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    execution_id: str,
    db: AsyncSession = Depends(get_db),
) -> ExecutionDetailResponse:
    """
    Get execution state: status, current node, path, context and error,
    with the per-node log and its summary.
    """
    execution = await ExecutionService(db).get_or_404(execution_id)
    logs = ExecutionLogService(db)
    return ExecutionDetailResponse(
        **ExecutionResponse.model_validate(execution).model_dump(),
        logs=[ExecutionLogResponse.model_validate(log) for log in await logs.list_for_execution(execution_id)],
        summary=ExecutionLogSummary(**await logs.summary(execution_id)),
    )


@router.get("/{execution_id}/logs", response_model=List[ExecutionLogResponse])
async def get_execution_logs(
    execution_id: str,
    db: AsyncSession = Depends(get_db),
) -> List[ExecutionLogResponse]:
    """
    Get the per-node log of an execution, oldest first.
    """
    await ExecutionService(db).get_or_404(execution_id)
    logs = await ExecutionLogService(db).list_for_execution(execution_id)
    return [ExecutionLogResponse.model_validate(log) for log in logs]


@router.post("/{execution_id}/cancel", response_model=CancelExecutionResponse)
async def cancel_execution(
    execution_id: str,
    request: CancelRequest = CancelRequest(),
    engine: ExecutionEngine = Depends(get_engine),
) -> CancelExecutionResponse:
    """
    Cancel an execution. A run in flight stops before its next node.
    """
    cancelled = await engine.cancel_execution(execution_id, request.reason)
    return CancelExecutionResponse(execution_id=execution_id, cancelled=cancelled)


@router.post("/{execution_id}/resume", response_model=AdvanceResponse)
async def resume_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_engine),
) -> AdvanceResponse:
    """
    Resume a waiting execution ahead of its wait deadline.
    """
    result = await engine.resume_execution(execution_id)
    return AdvanceResponse(**result.to_dict())
