"""Workflow Execution Engine: per-contact journey state machine.

Drives one WorkflowExecution through its workflow's node graph:

    pending ──► running ──► waiting ──────► running   (due-wait sweep / external resume)
                   │    ──► waiting_retry ► running   (retry handler)
                   └──────► completed | failed | cancelled

Each invocation of :meth:`ExecutionEngine.advance` claims the execution
with a conditional write, then evaluates nodes one at a time:

- Advance / RecordAndAdvance: follow the edge for the returned port. A
  missing edge means the graph leaf was reached and the execution completes.
- WaitUntil: park as ``waiting`` with ``wait_until`` set.
- Fail(transient): bump ``retry_count``; park as ``waiting_retry`` with a
  RetryState row, or fail once the retry ceiling is exceeded or the error
  is not in the workflow's ``retryable_errors``.
- Fail(permanent): fail immediately with the reason recorded.

Each evaluated node also leaves an ExecutionLog row, written in the same
transaction as the transition it caused.

Every transition is a compare-and-set on ``(revision, status)``. A writer
that loses the race stops and reports ``conflict``; it never overwrites a
concurrent transition. Before each node the engine re-reads the status so
that a cancellation stops the run cooperatively.

At most ``step_budget`` nodes are evaluated per invocation. A longer chain
is parked as ``waiting`` with ``wait_until = now`` and the next tick's
due-wait sweep picks it up again.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    ExecutionStatus,
    FailureKind,
    NodeLogStatus,
    TriggerType,
    WorkflowStatus,
)
from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.utils import utcnow
from db.models.execution import WorkflowExecution
from services.execution_log_service import ExecutionLogService
from services.execution_service import ExecutionService
from services.retry_state_service import RetryStateService
from services.workflow_service import WorkflowService
from workflow.collaborators import ChannelSender, ContactResolver, GoalEvent, GoalSink, LoggingGoalSink
from workflow.definition import WorkflowGraph
from workflow.evaluator import (
    Advance,
    ExecutionState,
    Fail,
    NodeEvaluator,
    RecordAndAdvance,
    WaitUntil,
)
from workflow.retry_strategies import RetryStrategy, is_transient_error

logger = structlog.get_logger(__name__)


class StepOutcome(str, Enum):
    """How one engine invocation ended."""
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"
    WAITING_RETRY = "waiting_retry"
    YIELDED = "yielded"
    CANCELLED = "cancelled"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


@dataclass
class AdvanceResult:
    """Result of :meth:`ExecutionEngine.advance`."""
    execution_id: str
    outcome: StepOutcome
    status: Optional[str] = None
    steps: int = 0
    node_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data


@dataclass
class EngineConfig:
    """Engine tuning, passed explicitly instead of read from globals."""
    step_budget: int = 50
    retry: RetryStrategy = field(default_factory=RetryStrategy.exponential)

    @classmethod
    def from_settings(cls, settings) -> "EngineConfig":
        return cls(
            step_budget=settings.STEP_BUDGET,
            retry=RetryStrategy.from_settings(settings),
        )


class ExecutionEngine:
    """Advances workflow executions node by node."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        channel: ChannelSender,
        contacts: ContactResolver,
        goal_sink: Optional[GoalSink] = None,
        config: Optional[EngineConfig] = None,
        evaluator: Optional[NodeEvaluator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.goal_sink = goal_sink or LoggingGoalSink()
        self.config = config or EngineConfig()
        self.evaluator = evaluator or NodeEvaluator(channel, contacts)
        self.clock = clock

    # ─── Entry points ──────────────────────────────────────

    async def start_execution(
        self,
        workflow_id: str,
        contact_id: str,
        trigger_type: str = TriggerType.EVENT.value,
        schedule_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Create a pending execution at the workflow's trigger node.

        External trigger events and manual starts come through here; the
        scheduler creates its executions the same way inside its claim
        transaction.

        Raises:
            NotFoundError: unknown workflow
            ConflictError: workflow is not active, or the contact may not enter it
        """
        async with self.session_factory() as session, session.begin():
            workflow = await WorkflowService(session).get_or_404(workflow_id)
            if workflow.status != WorkflowStatus.ACTIVE.value:
                raise ConflictError(f"Workflow {workflow_id} is {workflow.status}, not active")
            executions = ExecutionService(session)
            refusal = await executions.entry_refusal(workflow, contact_id)
            if refusal is not None:
                logger.info(
                    "execution_entry_refused", workflow_id=workflow_id, contact_id=contact_id, reason=refusal,
                )
                raise ConflictError(refusal)
            trigger = WorkflowGraph.from_workflow(workflow).trigger_node()
            execution = await executions.create_execution(
                workflow_id=workflow.id,
                workflow_version=workflow.version,
                organization_id=workflow.organization_id,
                contact_id=contact_id,
                trigger_node_id=trigger.id,
                trigger_type=trigger_type,
                schedule_id=schedule_id,
                context={"trigger": payload} if payload else {},
            )

        logger.info(
            "execution_created",
            execution_id=execution.id,
            workflow_id=workflow_id,
            contact_id=contact_id,
            trigger_type=trigger_type,
        )
        return execution

    async def advance(self, execution_id: str) -> AdvanceResult:
        """Claim an execution and run it until it suspends or terminates."""
        with structlog.contextvars.bound_contextvars(execution_id=execution_id):
            return await self._advance(execution_id)

    async def cancel_execution(self, execution_id: str, reason: str = "Cancelled") -> bool:
        """Cancel a non-terminal execution.

        A run in flight finishes the node it is on and stops before the next.

        Returns:
            True if this call cancelled it, False if it was already terminal.

        Raises:
            NotFoundError: unknown execution
            ConflictError: lost against concurrent writers repeatedly
        """
        for _ in range(3):
            async with self.session_factory() as session, session.begin():
                executions = ExecutionService(session)
                execution = await executions.get_or_404(execution_id)
                if execution.status in TERMINAL_STATUSES:
                    return False
                cancelled = await executions.compare_and_set(
                    execution_id,
                    execution.revision,
                    execution.status,
                    {
                        "status": ExecutionStatus.CANCELLED.value,
                        "error_message": reason,
                        "error_node_id": execution.current_node_id,
                        "current_node_id": None,
                        "wait_until": None,
                        "completed_at": self.clock(),
                    },
                )
                if cancelled:
                    await RetryStateService(session).consume(execution_id)
            if cancelled:
                logger.info("execution_cancelled", execution_id=execution_id, reason=reason)
                return True
        raise ConflictError(f"Execution {execution_id} is changing too fast to cancel")

    async def resume_execution(self, execution_id: str) -> AdvanceResult:
        """Resume a waiting execution now, ahead of its wait deadline.

        Raises:
            NotFoundError: unknown execution
            ConflictError: execution is not waiting, or changed concurrently
        """
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            executions = ExecutionService(session)
            execution = await executions.get_or_404(execution_id)
            if execution.status != ExecutionStatus.WAITING.value:
                raise ConflictError(f"Execution {execution_id} is {execution.status}, not waiting")
            context = dict(execution.context or {})
            wait_key = f"wait:{execution.current_node_id}"
            if wait_key in context:
                context[wait_key] = now.isoformat()
            updated = await executions.compare_and_set(
                execution_id,
                execution.revision,
                ExecutionStatus.WAITING.value,
                {"wait_until": now, "context": context},
            )
        if not updated:
            raise ConflictError(f"Execution {execution_id} changed while resuming")
        logger.info("execution_resume_requested", execution_id=execution_id)
        return await self.advance(execution_id)

    async def cancel_workflow(self, workflow_id: str, reason: str = "Workflow cancelled") -> int:
        """Cancel every non-terminal execution of a workflow."""
        async with self.session_factory() as session:
            await WorkflowService(session).get_or_404(workflow_id)
            execution_ids = await ExecutionService(session).list_active_for_workflow(workflow_id)

        cancelled = 0
        for execution_id in execution_ids:
            try:
                if await self.cancel_execution(execution_id, reason):
                    cancelled += 1
            except (NotFoundError, ConflictError) as e:
                logger.warning("execution_cancel_skipped", execution_id=execution_id, error=str(e))
        logger.info("workflow_cancelled", workflow_id=workflow_id, executions_cancelled=cancelled)
        return cancelled

    # ─── State machine ─────────────────────────────────────

    async def _advance(self, execution_id: str) -> AdvanceResult:
        workflow = graph = None
        graph_error: Optional[str] = None
        async with self.session_factory() as session:
            execution = await ExecutionService(session).get_by_id(execution_id)
            if execution is not None and execution.status in CLAIMABLE_STATUSES:
                workflows = WorkflowService(session)
                workflow = await workflows.get_by_id(execution.workflow_id)
                if workflow is None:
                    graph_error = f"Workflow {execution.workflow_id} not found"
                else:
                    try:
                        graph = await workflows.graph_for_version(workflow, execution.workflow_version)
                    except ValidationError as e:
                        graph_error = e.message

        if execution is None:
            return AdvanceResult(execution_id, StepOutcome.SKIPPED, error="Execution not found")
        if execution.status not in CLAIMABLE_STATUSES:
            return AdvanceResult(execution_id, StepOutcome.SKIPPED, status=execution.status)

        state = ExecutionState.from_model(execution)
        claim: dict[str, Any] = {"status": ExecutionStatus.RUNNING.value, "wait_until": None}
        if execution.started_at is None:
            claim["started_at"] = self.clock()
        if not await self._write(state, state.status, claim):
            logger.info("execution_claim_lost", execution_id=execution_id)
            return await self._lost(state, 0)
        state.status = ExecutionStatus.RUNNING.value

        if graph_error is not None:
            return await self._fail(state, state.current_node_id, graph_error, 0)

        strategy = RetryStrategy.resolve((workflow.settings or {}).get("retry"), self.config.retry)
        visited: set[str] = set()
        steps = 0

        while True:
            if steps >= self.config.step_budget:
                return await self._yield(state, steps)

            # Cooperative cancellation and lost-ownership check
            async with self.session_factory() as session:
                current = await ExecutionService(session).get_status(state.id)
            if current is None or current[1] != state.revision:
                return await self._lost(state, steps)

            node = graph.node(state.current_node_id)
            if node is None:
                return await self._fail(
                    state, state.current_node_id,
                    f"Node {state.current_node_id!r} not found in workflow {state.workflow_id}",
                    steps,
                )
            if node.id in visited:
                return await self._fail(
                    state, node.id,
                    f"Cycle detected: node {node.id!r} revisited within one invocation",
                    steps,
                )
            visited.add(node.id)

            now = self.clock()
            try:
                decision = await self.evaluator.evaluate(node, state, now)
            except Exception as e:
                logger.warning("node_evaluation_error", node_id=node.id, error=str(e), exc_info=True)
                kind = FailureKind.TRANSIENT if is_transient_error(e) else FailureKind.PERMANENT
                decision = Fail(kind, f"{type(e).__name__}: {e}", error=e)
            steps += 1

            if isinstance(decision, RecordAndAdvance):
                await self._record_goal(state, decision.goal)

            if isinstance(decision, (Advance, RecordAndAdvance)):
                details = {"goal_name": decision.goal.goal_name} if isinstance(decision, RecordAndAdvance) else {}
                log = self._node_log(state, node, now, NodeLogStatus.COMPLETED, port=decision.port, **details)
                finished = await self._follow(
                    state, graph, node.id, decision.port, decision.context_updates, steps, log,
                )
                if finished is not None:
                    return finished
                continue

            if isinstance(decision, WaitUntil):
                log = self._node_log(state, node, now, NodeLogStatus.WAITING, wait_until=decision.at.isoformat())
                return await self._wait(state, node.id, decision, steps, log)

            log = self._node_log(state, node, now, NodeLogStatus.FAILED, error=decision.reason)
            if decision.transient:
                return await self._retry_later(state, node.id, decision, strategy, steps, log)
            return await self._fail(state, node.id, decision.reason, steps, decision.context_updates, log=log)

    async def _follow(
        self,
        state: ExecutionState,
        graph: WorkflowGraph,
        node_id: str,
        port: str,
        updates: dict[str, Any],
        steps: int,
        log: Optional[dict[str, Any]] = None,
    ) -> Optional[AdvanceResult]:
        context = {**state.context, **updates}
        next_id = graph.next_node_id(node_id, port)

        if next_id is None:
            completed = await self._write(state, ExecutionStatus.RUNNING.value, {
                "status": ExecutionStatus.COMPLETED.value,
                "current_node_id": None,
                "context": context,
                "error_message": None,
                "error_node_id": None,
                "completed_at": self.clock(),
            }, log=log)
            if not completed:
                return await self._lost(state, steps)
            logger.info("execution_completed", last_node_id=node_id, port=port, steps=steps)
            return AdvanceResult(state.id, StepOutcome.COMPLETED, ExecutionStatus.COMPLETED.value, steps, node_id)

        path = state.execution_path + [next_id]
        moved = await self._write(state, ExecutionStatus.RUNNING.value, {
            "current_node_id": next_id,
            "execution_path": path,
            "context": context,
        }, log=log)
        if not moved:
            return await self._lost(state, steps)
        logger.debug("execution_advanced", from_node_id=node_id, port=port, to_node_id=next_id)
        state.current_node_id = next_id
        state.execution_path = path
        state.context = context
        return None

    async def _wait(
        self,
        state: ExecutionState,
        node_id: str,
        decision: WaitUntil,
        steps: int,
        log: Optional[dict[str, Any]] = None,
    ) -> AdvanceResult:
        context = {**state.context, **decision.context_updates}
        parked = await self._write(state, ExecutionStatus.RUNNING.value, {
            "status": ExecutionStatus.WAITING.value,
            "wait_until": decision.at,
            "context": context,
        }, log=log)
        if not parked:
            return await self._lost(state, steps)
        logger.info("execution_waiting", node_id=node_id, wait_until=decision.at.isoformat())
        return AdvanceResult(state.id, StepOutcome.WAITING, ExecutionStatus.WAITING.value, steps, node_id)

    async def _yield(self, state: ExecutionState, steps: int) -> AdvanceResult:
        parked = await self._write(state, ExecutionStatus.RUNNING.value, {
            "status": ExecutionStatus.WAITING.value,
            "wait_until": self.clock(),
        })
        if not parked:
            return await self._lost(state, steps)
        logger.info("execution_yielded", node_id=state.current_node_id, steps=steps)
        return AdvanceResult(state.id, StepOutcome.YIELDED, ExecutionStatus.WAITING.value, steps, state.current_node_id)

    async def _retry_later(
        self,
        state: ExecutionState,
        node_id: str,
        decision: Fail,
        strategy: RetryStrategy,
        steps: int,
        log: Optional[dict[str, Any]] = None,
    ) -> AdvanceResult:
        retry_count = state.retry_count + 1
        if not strategy.should_retry(retry_count, decision.error):
            if strategy.should_retry(retry_count):
                reason = f"Not retryable under the workflow retry policy: {decision.reason}"
            else:
                reason = f"Retries exhausted after {retry_count} attempts: {decision.reason}"
            if log is not None:
                log = {**log, "error_message": reason}
                log["details"] = {**log["details"], "retry_count": retry_count}
            return await self._fail(
                state, node_id, reason, steps, decision.context_updates, retry_count=retry_count, log=log,
            )

        if log is not None:
            log = {**log, "status": NodeLogStatus.RETRYING.value}
            log["details"] = {**log["details"], "retry_count": retry_count}
        next_retry_at = self.clock() + timedelta(seconds=strategy.backoff(retry_count))
        parked = await self._write(
            state,
            ExecutionStatus.RUNNING.value,
            {
                "status": ExecutionStatus.WAITING_RETRY.value,
                "retry_count": retry_count,
                "error_message": decision.reason,
                "error_node_id": node_id,
                "context": {**state.context, **decision.context_updates},
            },
            retry={
                "execution_id": state.id,
                "organization_id": state.organization_id,
                "node_id": node_id,
                "retry_count": retry_count,
                "next_retry_at": next_retry_at,
                "last_error": decision.reason,
            },
            log=log,
        )
        if not parked:
            return await self._lost(state, steps)
        state.retry_count = retry_count
        logger.warning(
            "execution_retry_scheduled",
            node_id=node_id,
            retry_count=retry_count,
            next_retry_at=next_retry_at.isoformat(),
            error=decision.reason,
        )
        return AdvanceResult(
            state.id, StepOutcome.WAITING_RETRY, ExecutionStatus.WAITING_RETRY.value,
            steps, node_id, decision.reason,
        )

    async def _fail(
        self,
        state: ExecutionState,
        node_id: Optional[str],
        reason: str,
        steps: int,
        updates: Optional[dict[str, Any]] = None,
        retry_count: Optional[int] = None,
        log: Optional[dict[str, Any]] = None,
    ) -> AdvanceResult:
        values: dict[str, Any] = {
            "status": ExecutionStatus.FAILED.value,
            "error_message": reason,
            "error_node_id": node_id,
            "current_node_id": None,
            "wait_until": None,
            "context": {**state.context, **(updates or {})},
            "completed_at": self.clock(),
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        if not await self._write(state, ExecutionStatus.RUNNING.value, values, log=log):
            return await self._lost(state, steps)
        logger.warning("execution_failed", node_id=node_id, error=reason)
        return AdvanceResult(state.id, StepOutcome.FAILED, ExecutionStatus.FAILED.value, steps, node_id, reason)

    async def _lost(self, state: ExecutionState, steps: int) -> AdvanceResult:
        """Report why this invocation no longer owns the execution."""
        async with self.session_factory() as session:
            current = await ExecutionService(session).get_status(state.id)
        if current is not None and current[0] == ExecutionStatus.CANCELLED.value:
            logger.info("execution_stopped_cancelled", node_id=state.current_node_id)
            return AdvanceResult(
                state.id, StepOutcome.CANCELLED, ExecutionStatus.CANCELLED.value, steps, state.current_node_id,
            )
        return AdvanceResult(
            state.id, StepOutcome.CONFLICT, current[0] if current else None, steps, state.current_node_id,
        )

    def _node_log(
        self,
        state: ExecutionState,
        node,
        started_at: datetime,
        status: NodeLogStatus,
        port: Optional[str] = None,
        error: Optional[str] = None,
        **details: Any,
    ) -> dict[str, Any]:
        completed_at = self.clock()
        return {
            "execution_id": state.id,
            "organization_id": state.organization_id,
            "node_id": node.id,
            "node_type": node.type,
            "status": status.value,
            "port": port,
            "error_message": error,
            "details": details,
            "started_at": started_at,
            "completed_at": completed_at,
            "duration_ms": max(0, int((completed_at - started_at).total_seconds() * 1000)),
        }

    async def _record_goal(self, state: ExecutionState, goal: GoalEvent) -> None:
        try:
            await self.goal_sink.record_goal(state.id, goal)
        except Exception as e:
            logger.warning("goal_record_failed", node_id=goal.node_id, goal_type=goal.goal_type, error=str(e))

    async def _write(
        self,
        state: ExecutionState,
        expected_status: str,
        values: dict[str, Any],
        retry: Optional[dict[str, Any]] = None,
        log: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Conditional write keyed on the revision this invocation last saw.

        The retry row and the node log entry, when given, commit with the
        transition or not at all.
        """
        async with self.session_factory() as session, session.begin():
            written = await ExecutionService(session).compare_and_set(
                state.id, state.revision, expected_status, values,
            )
            if written and retry is not None:
                await RetryStateService(session).upsert(**retry)
            if written and log is not None:
                await ExecutionLogService(session).create(log)
        if written:
            state.revision += 1
        return written
