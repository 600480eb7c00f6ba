"""Execution schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecutionResponse(BaseModel):
    """Execution state response."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Execution ID")
    workflow_id: str = Field(description="Workflow ID")
    workflow_version: int = Field(description="Workflow version the execution started on")
    organization_id: str
    contact_id: str = Field(description="Contact traversing the workflow")
    trigger_type: str = Field(description="schedule, event or manual")
    schedule_id: Optional[str] = None
    status: str = Field(description="pending, running, waiting, waiting_retry, completed, failed, cancelled")
    current_node_id: Optional[str] = None
    execution_path: List[str] = Field(default=[], description="Nodes advanced to, in order")
    context: Dict[str, Any] = Field(default={}, description="Accumulated execution variables")
    retry_count: int = Field(default=0, description="Transient failures seen so far")
    error_message: Optional[str] = None
    error_node_id: Optional[str] = None
    wait_until: Optional[datetime] = None
    revision: int = Field(description="Incremented by every state transition")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ExecutionLogResponse(BaseModel):
    """One evaluated node of an execution."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Log entry ID")
    node_id: str
    node_type: str
    status: str = Field(description="completed, waiting, retrying or failed")
    port: Optional[str] = Field(default=None, description="Output port followed")
    error_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = Field(default=None, description="Retry count, goal name or wait deadline")
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0


class ExecutionLogSummary(BaseModel):
    """Node counts per outcome."""

    total_nodes: int = 0
    completed: int = 0
    waiting: int = 0
    retrying: int = 0
    failed: int = 0
    total_duration_ms: int = 0


class ExecutionDetailResponse(ExecutionResponse):
    """Execution state with its per-node log."""

    logs: List[ExecutionLogResponse] = Field(default=[], description="Evaluated nodes, oldest first")
    summary: ExecutionLogSummary = Field(default_factory=ExecutionLogSummary)


class ExecutionListResponse(BaseModel):
    """Paginated list of executions."""

    executions: List[ExecutionResponse] = Field(description="List of executions")
    total: int = Field(description="Total number of executions")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")


class AdvanceResponse(BaseModel):
    """Outcome of one engine invocation."""

    execution_id: str
    outcome: str = Field(description="completed, failed, waiting, waiting_retry, yielded, cancelled, conflict, skipped")
    status: Optional[str] = None
    steps: int = Field(default=0, description="Nodes evaluated in this invocation")
    node_id: Optional[str] = None
    error: Optional[str] = None


class TriggerEventResponse(BaseModel):
    """Execution created by a trigger event, with the first advance if run."""

    execution: ExecutionResponse
    advance: Optional[AdvanceResponse] = None


class CancelExecutionResponse(BaseModel):
    """Result of an execution cancel request."""

    execution_id: str
    cancelled: bool = Field(description="False when the execution was already terminal")
