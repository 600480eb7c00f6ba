"""Database models for the journey engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import Workflow
from db.models.execution import WorkflowExecution
from db.models.schedule import WorkflowSchedule
from db.models.retry_state import RetryState
from db.models.workflow_version import WorkflowVersion
from db.models.execution_log import ExecutionLog

__all__ = [
    "Workflow",
    "WorkflowExecution",
    "WorkflowSchedule",
    "RetryState",
    "WorkflowVersion",
    "ExecutionLog",
]
