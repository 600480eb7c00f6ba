"""Retry state model: a parked, retryable node failure."""

from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel, UTCDateTime


class RetryState(BaseModel):
    """Retry bookkeeping for an execution in ``waiting_retry``.

    Created by the execution engine when a node fails transiently and
    consumed (deleted) by the retry handler before the execution resumes.
    """

    __tablename__ = "retry_states"

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    node_id: Mapped[str] = mapped_column(nullable=False)
    retry_count: Mapped[int] = mapped_column(default=0)
    next_retry_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, index=True
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
