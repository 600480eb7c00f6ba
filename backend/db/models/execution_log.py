"""ExecutionLog model: one row per evaluated node."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import NodeLogStatus
from db.base import BaseModel, UTCDateTime


class ExecutionLog(BaseModel):
    """Outcome of evaluating one node of an execution.

    Attributes:
        id: Unique identifier (UUID string)
        execution_id: Foreign key to WorkflowExecution
        organization_id: Owning organization
        node_id: Evaluated node
        node_type: Node type at evaluation time
        status: Node outcome (completed, waiting, retrying, failed)
        port: Output port followed, for completed nodes
        error_message: Failure reason, for retrying and failed nodes
        details: JSON extras (retry count, goal name, wait deadline)
        started_at: When evaluation began
        completed_at: When the outcome was recorded
        duration_ms: Evaluation time in milliseconds
    """

    __tablename__ = "execution_logs"

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    node_id: Mapped[str] = mapped_column(nullable=False)
    node_type: Mapped[str] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        default=NodeLogStatus.COMPLETED.value, index=True
    )
    port: Mapped[Optional[str]] = mapped_column(nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True, default=dict)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    completed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    duration_ms: Mapped[int] = mapped_column(default=0)
