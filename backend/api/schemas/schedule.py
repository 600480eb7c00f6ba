"""Schedule schemas."""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ScheduleCreate(BaseModel):
    """Request to schedule a workflow."""

    workflow_id: str = Field(min_length=1, description="Workflow to fire")
    name: str = Field(default="", description="Display name")
    schedule_type: Literal["once", "recurring", "cron"] = Field(description="Schedule type")
    schedule_config: Dict[str, Any] = Field(
        description="fireAt for once; interval/unit/startAt/endAt for recurring; "
                    "cronExpression for cron. contactIds lists the target contacts.",
    )
    timezone: str = Field(default="UTC", description="IANA timezone the config is read in")
    max_executions: Optional[int] = Field(default=None, ge=1, description="Deactivate after this many fires")


class ScheduleResponse(BaseModel):
    """Schedule information response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    organization_id: str
    name: str
    schedule_type: str
    schedule_config: Dict[str, Any]
    timezone: str
    next_execution_at: Optional[datetime] = None
    last_execution_at: Optional[datetime] = None
    last_execution_status: Optional[str] = None
    last_error: Optional[str] = None
    max_executions: Optional[int] = None
    executions_count: int
    is_active: bool
    created_at: datetime
    updated_at: datetime
