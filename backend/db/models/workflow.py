"""Workflow model for the journey engine."""

from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import WorkflowStatus
from db.base import BaseModel


class Workflow(BaseModel):
    """Workflow model representing a versioned automation journey.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning organization
        name: Workflow name
        description: Workflow description
        status: Lifecycle status (draft, active, paused, archived)
        version: Monotonic structural version
        nodes: JSON list of node definitions
        edges: JSON list of edge definitions
        settings: Free-form execution settings
    """

    __tablename__ = "workflows"

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    status: Mapped[str] = mapped_column(
        default=WorkflowStatus.DRAFT.value, index=True
    )
    version: Mapped[int] = mapped_column(default=1)
    nodes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    edges: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    settings: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True, default=dict)

    # Relationships
    executions: Mapped[list["WorkflowExecution"]] = relationship(
        "WorkflowExecution",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="noload",
    )
    schedules: Mapped[list["WorkflowSchedule"]] = relationship(
        "WorkflowSchedule",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="noload",
    )
