"""Workflow execution model for the journey engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus, TERMINAL_STATUSES, TriggerType
from db.base import BaseModel, UTCDateTime


class WorkflowExecution(BaseModel):
    """One contact's run through a workflow's node graph.

    Attributes:
        id: Unique identifier (UUID string)
        workflow_id: Foreign key to Workflow
        workflow_version: Workflow version the execution started on
        organization_id: Owning organization
        contact_id: Contact traversing the workflow
        status: pending, running, waiting, waiting_retry, completed, failed, cancelled
        current_node_id: Node the execution is positioned on (None when terminal)
        execution_path: Append-only list of visited node ids
        context: Accumulated variables (split branches, goal flags, wait deadlines)
        retry_count: Transient failures seen so far
        error_message: Failure reason for failed/cancelled executions
        error_node_id: Node that produced the failure
        wait_until: Due time of a waiting execution
        revision: Incremented by every conditional write
    """

    __tablename__ = "workflow_executions"

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workflow_version: Mapped[int] = mapped_column(default=1)
    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    contact_id: Mapped[str] = mapped_column(nullable=False, index=True)
    trigger_type: Mapped[str] = mapped_column(default=TriggerType.EVENT.value)
    schedule_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        default=ExecutionStatus.PENDING.value, index=True
    )
    current_node_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    execution_path: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    context: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    retry_count: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    error_node_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    wait_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    revision: Mapped[int] = mapped_column(default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="executions", lazy="noload"
    )

    __table_args__ = (
        Index("ix_executions_status_wait_until", "status", "wait_until"),
        Index("ix_executions_status_completed_at", "status", "completed_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
