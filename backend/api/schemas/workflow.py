"""Workflow schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WorkflowCreate(BaseModel):
    """Request to create a draft workflow."""

    organization_id: str = Field(min_length=1, description="Owning organization")
    name: str = Field(min_length=1, description="Workflow name")
    description: Optional[str] = Field(default="", description="Workflow description")
    nodes: List[Dict[str, Any]] = Field(description="Node definitions ({id, type, label, config})")
    edges: List[Dict[str, Any]] = Field(default=[], description="Edges ({id, sourceNodeId, sourcePort, targetNodeId})")
    settings: Dict[str, Any] = Field(default={}, description="Workflow settings, e.g. a retry preset")


class WorkflowDefinitionUpdate(BaseModel):
    """Request to replace a workflow's node graph."""

    nodes: List[Dict[str, Any]] = Field(description="Node definitions")
    edges: List[Dict[str, Any]] = Field(default=[], description="Edges")


class WorkflowResponse(BaseModel):
    """Workflow information response."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Workflow ID")
    organization_id: str = Field(description="Owning organization")
    name: str = Field(description="Workflow name")
    description: Optional[str] = Field(default="", description="Workflow description")
    status: str = Field(description="draft, active, paused or archived")
    version: int = Field(description="Definition version, bumped on every graph change")
    nodes: List[Dict[str, Any]] = Field(description="Node definitions")
    edges: List[Dict[str, Any]] = Field(description="Edges")
    settings: Optional[Dict[str, Any]] = Field(default=None, description="Workflow settings")
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")


class TriggerEventRequest(BaseModel):
    """External trigger event starting a journey for one contact."""

    contact_id: str = Field(min_length=1, description="Contact entering the workflow")
    payload: Dict[str, Any] = Field(default={}, description="Event data, stored under context['trigger']")
    run_now: bool = Field(default=True, description="Advance immediately instead of waiting for the next tick")


class CancelRequest(BaseModel):
    """Request to cancel executions."""

    reason: str = Field(default="Cancelled", description="Recorded as the error message")


class WorkflowCancelResponse(BaseModel):
    """Result of cancelling a workflow's executions."""

    workflow_id: str
    cancelled: int = Field(description="Executions moved to cancelled")
