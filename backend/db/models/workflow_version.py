"""Workflow version model: the node graph as it stood at one version."""

from sqlalchemy import JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class WorkflowVersion(BaseModel):
    """Immutable snapshot of a workflow's graph.

    Written whenever the definition changes. Executions stay on the version
    they started with, so in-flight journeys are unaffected by later edits.

    Attributes:
        workflow_id: Owning workflow
        version: Version number the snapshot belongs to
        nodes: JSON list of node definitions
        edges: JSON list of edge definitions
    """

    __tablename__ = "workflow_versions"
    __table_args__ = (
        UniqueConstraint("workflow_id", "version", name="uq_workflow_versions_workflow_version"),
    )

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version: Mapped[int] = mapped_column(nullable=False)
    nodes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    edges: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
