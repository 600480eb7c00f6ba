"""Constants and enums for the journey engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Workflow lifecycle status."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    WAITING_RETRY = "waiting_retry"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
})

# Statuses from which the engine may claim an execution and move it to running
CLAIMABLE_STATUSES = frozenset({
    ExecutionStatus.PENDING.value,
    ExecutionStatus.WAITING.value,
    ExecutionStatus.WAITING_RETRY.value,
})


class TriggerType(str, Enum):
    """How an execution was started."""

    SCHEDULE = "schedule"
    EVENT = "event"
    MANUAL = "manual"


class NodeType(str, Enum):
    """Workflow node types understood by the evaluator."""

    TRIGGER = "trigger"
    MESSAGE = "message"
    SPLIT = "split"
    CONDITION = "condition"
    WAIT = "wait"
    GOAL = "goal"
    ACTION = "action"


class ScheduleType(str, Enum):
    """Schedule trigger type."""

    ONCE = "once"
    RECURRING = "recurring"
    CRON = "cron"


class FailureKind(str, Enum):
    """Classification of a node failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class NodeLogStatus(str, Enum):
    """Outcome of one node evaluation in the execution log."""

    COMPLETED = "completed"
    WAITING = "waiting"
    RETRYING = "retrying"
    FAILED = "failed"


DEFAULT_PORT = "default"
