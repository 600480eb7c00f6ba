"""Workflow schedule model for the journey engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ScheduleType
from db.base import BaseModel, UTCDateTime


class WorkflowSchedule(BaseModel):
    """Time-trigger binding for a workflow.

    Attributes:
        id: Unique identifier (UUID string)
        workflow_id: Foreign key to Workflow
        organization_id: Owning organization
        name: Display name
        schedule_type: once, recurring or cron
        schedule_config: Type-specific config (fireAt / interval+unit / cronExpression)
        timezone: IANA timezone used for wall-clock arithmetic
        next_execution_at: Next fire time (None once exhausted)
        max_executions: Optional cap on fires
        executions_count: Fires so far
        is_active: Whether the scheduler considers this schedule
    """

    __tablename__ = "workflow_schedules"

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False, default="")
    schedule_type: Mapped[str] = mapped_column(
        nullable=False, default=ScheduleType.ONCE.value
    )
    schedule_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    timezone: Mapped[str] = mapped_column(nullable=False, default="UTC")
    next_execution_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    last_execution_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    last_execution_status: Mapped[Optional[str]] = mapped_column(nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(nullable=True)
    max_executions: Mapped[Optional[int]] = mapped_column(nullable=True)
    executions_count: Mapped[int] = mapped_column(default=0)
    is_active: Mapped[bool] = mapped_column(default=True)

    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="schedules", lazy="noload"
    )

    __table_args__ = (
        Index("ix_schedules_active_next", "is_active", "next_execution_at"),
    )
