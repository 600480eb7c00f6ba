"""Node evaluator: turns one node plus execution state into a Decision.

Decisions:
- Advance(port): follow the edge leaving the node through ``port``
- WaitUntil(at): park the execution until ``at``
- RecordAndAdvance(goal, port): emit a goal record, then advance
- Fail(kind, reason): transient failures are retried, permanent ones are final

Every decision carries ``context_updates`` that the engine persists in the
same write as the resulting transition. Split branches, wait deadlines and
goal flags live there, which is what makes re-evaluating a node after a
retry or resume return the same answer.

Template placeholders in message text and action values:
    {{ contact.first_name }}   attribute from the ContactResolver
    {{ variables.coupon }}     value from the node's ``variables`` map
    {{ context.split:s1 }}     value from the execution context
    {{ coupon }}               ``variables`` first, then the execution context
"""

import random
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

import structlog

from core.constants import DEFAULT_PORT, FailureKind
from core.utils import add_interval, parse_datetime
from workflow.collaborators import ChannelSender, ContactResolver, GoalEvent, MessageContent
from workflow.definition import (
    ActionNode,
    ConditionNode,
    GoalNode,
    MessageNode,
    SplitNode,
    TriggerNode,
    WaitNode,
)
from workflow.retry_strategies import is_transient_error

logger = structlog.get_logger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*([\w.:\-]+)\s*\}\}")


# ─── Decisions ─────────────────────────────────────────────────

@dataclass
class Advance:
    port: str = DEFAULT_PORT
    context_updates: dict[str, Any] = field(default_factory=dict)


@dataclass
class WaitUntil:
    at: datetime
    context_updates: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordAndAdvance:
    goal: GoalEvent
    port: str = DEFAULT_PORT
    context_updates: dict[str, Any] = field(default_factory=dict)


@dataclass
class Fail:
    kind: FailureKind
    reason: str
    context_updates: dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = field(default=None, repr=False, compare=False)

    @property
    def transient(self) -> bool:
        return self.kind == FailureKind.TRANSIENT


Decision = Union[Advance, WaitUntil, RecordAndAdvance, Fail]


@dataclass
class ExecutionState:
    """Working copy of an execution inside one engine invocation."""
    id: str
    workflow_id: str
    organization_id: str
    contact_id: str
    status: str
    current_node_id: Optional[str]
    revision: int
    retry_count: int = 0
    context: dict[str, Any] = field(default_factory=dict)
    execution_path: list[str] = field(default_factory=list)

    @classmethod
    def from_model(cls, execution) -> "ExecutionState":
        return cls(
            id=execution.id,
            workflow_id=execution.workflow_id,
            organization_id=execution.organization_id,
            contact_id=execution.contact_id,
            status=execution.status,
            current_node_id=execution.current_node_id,
            revision=execution.revision,
            retry_count=execution.retry_count or 0,
            context=dict(execution.context or {}),
            execution_path=list(execution.execution_path or []),
        )


# ─── Helpers ───────────────────────────────────────────────────

def resolve_path(namespace: Any, path: str) -> Any:
    """Resolve a dot path like ``fields.plan`` against nested dicts/lists.

    Returns None when any segment is missing. A top-level key equal to the
    whole path is matched before the path is split.
    """
    if isinstance(namespace, dict) and path in namespace:
        return namespace[path]

    current = namespace
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict, tuple, set)) and not value)


def _normalize(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if actual is None or expected is None:
        return False
    a, b = _number(actual), _number(expected)
    if a is not None and b is not None:
        return a == b
    return _normalize(actual) == _normalize(expected)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        wanted = _normalize(expected)
        return any(_normalize(item) == wanted for item in actual)
    if isinstance(actual, dict):
        return _normalize(expected) in actual
    return _normalize(expected).lower() in _normalize(actual).lower()


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply a condition operator. Text ``contains`` is case-insensitive."""
    if operator == "is_empty":
        return _is_empty(actual)
    if operator == "is_not_empty":
        return not _is_empty(actual)
    if operator == "equals":
        return _equals(actual, expected)
    if operator == "not_equals":
        return not _equals(actual, expected)
    if operator == "contains":
        return _contains(actual, expected)
    if operator == "not_contains":
        return not _contains(actual, expected)
    if operator in ("greater_than", "less_than"):
        a, b = _number(actual), _number(expected)
        if a is None or b is None:
            return False
        return a > b if operator == "greater_than" else a < b
    raise ValueError(f"Unknown operator: {operator}")


def _stored_deadline(context: dict, key: str) -> Optional[datetime]:
    raw = context.get(key)
    return parse_datetime(raw) if raw else None


# ─── Evaluator ─────────────────────────────────────────────────

class NodeEvaluator:
    """Evaluates nodes for the execution engine.

    Side effects are limited to the channel sender (message nodes) and
    contact lookups; everything else is returned in the Decision.
    """

    def __init__(
        self,
        channel: ChannelSender,
        contacts: ContactResolver,
        rng: Optional[random.Random] = None,
    ):
        self.channel = channel
        self.contacts = contacts
        self.rng = rng or random.Random()
        self._handlers = {
            "trigger": self._evaluate_trigger,
            "message": self._evaluate_message,
            "split": self._evaluate_split,
            "condition": self._evaluate_condition,
            "wait": self._evaluate_wait,
            "goal": self._evaluate_goal,
            "action": self._evaluate_action,
        }

    async def evaluate(self, node, state: ExecutionState, now: datetime) -> Decision:
        handler = self._handlers.get(node.type)
        if handler is None:
            return Fail(FailureKind.PERMANENT, f"Unsupported node type: {node.type}")
        return await handler(node, state, now)

    # ─── Lookups and rendering ───

    async def lookup(self, path: str, state: ExecutionState) -> Any:
        """Resolve a field reference against the context, then the contact."""
        if path.startswith("contact."):
            return await self.contacts.resolve(state.contact_id, path[len("contact."):])
        if path.startswith("context."):
            return resolve_path(state.context, path[len("context."):])
        value = resolve_path(state.context, path)
        if value is None:
            value = await self.contacts.resolve(state.contact_id, path)
        return value

    async def render(self, template: str, variables: dict[str, Any], state: ExecutionState) -> str:
        """Substitute ``{{ ... }}`` placeholders; unknown names render empty."""
        values = {}
        for name in set(PLACEHOLDER.findall(template)):
            values[name] = await self._placeholder(name, variables, state)
        return PLACEHOLDER.sub(
            lambda m: "" if values.get(m.group(1)) is None else _normalize(values[m.group(1)]),
            template,
        )

    async def _placeholder(self, name: str, variables: dict[str, Any], state: ExecutionState) -> Any:
        if name.startswith("contact."):
            return await self.contacts.resolve(state.contact_id, name[len("contact."):])
        if name.startswith("variables."):
            return resolve_path(variables, name[len("variables."):])
        if name.startswith("context."):
            return resolve_path(state.context, name[len("context."):])
        value = resolve_path(variables, name)
        if value is None:
            value = resolve_path(state.context, name)
        return value

    @staticmethod
    def choose_branch(weights: list[tuple[str, float]], draw: float) -> str:
        """Pick the first branch whose cumulative share exceeds ``draw``.

        ``draw`` is in [0, 100). Weights are normalized by their total, so
        percentages that do not sum to 100 still always select a branch.
        """
        total = sum(weight for _, weight in weights)
        cumulative = 0.0
        for branch_id, weight in weights:
            cumulative += weight / total * 100.0
            if cumulative > draw:
                return branch_id
        # Float rounding can leave the last cumulative a hair under 100
        return next(branch_id for branch_id, weight in reversed(weights) if weight > 0)

    # ─── Node handlers ───

    async def _evaluate_trigger(self, node: TriggerNode, state: ExecutionState, now: datetime) -> Decision:
        return Advance(DEFAULT_PORT)

    async def _evaluate_message(self, node: MessageNode, state: ExecutionState, now: datetime) -> Decision:
        config = node.config
        recipient = await self.lookup(config.recipient_field, state)
        if _is_empty(recipient):
            return Fail(FailureKind.PERMANENT, f"Missing recipient field {config.recipient_field!r}")

        variables = {}
        for key, value in config.variables.items():
            variables[key] = await self.render(value, config.variables, state) if isinstance(value, str) else value
        content = MessageContent(
            text=await self.render(config.text, variables, state) if config.text else None,
            template_id=config.template_id,
            variables=variables,
            media_url=config.media_url,
        )

        try:
            receipt = await self.channel.send(str(recipient), content)
        except Exception as e:
            kind = FailureKind.TRANSIENT if is_transient_error(e) else FailureKind.PERMANENT
            return Fail(kind, f"Message send failed: {e}", error=e)

        return Advance(DEFAULT_PORT, {f"message:{node.id}": receipt.message_id})

    async def _evaluate_split(self, node: SplitNode, state: ExecutionState, now: datetime) -> Decision:
        key = f"split:{node.id}"
        assigned = state.context.get(key)
        if assigned is not None:
            return Advance(assigned)

        config = node.config
        if config.split_type == "field_based":
            value = await self.lookup(config.field_name, state)
            branch = None
            if value is not None:
                branch = config.field_values.get(_normalize(value))
                if branch is None:
                    lowered = {k.lower(): v for k, v in config.field_values.items()}
                    branch = lowered.get(_normalize(value).lower())
            if branch is None:
                branch = config.default_branch
            if branch is None:
                return Fail(
                    FailureKind.PERMANENT,
                    f"Split {node.id}: unmapped field value {value!r} for {config.field_name!r}",
                )
        else:
            branch = self.choose_branch(config.weights(), self.rng.random() * 100.0)

        logger.debug("split_assigned", execution_id=state.id, node_id=node.id, branch=branch)
        return Advance(branch, {key: branch})

    async def _evaluate_condition(self, node: ConditionNode, state: ExecutionState, now: datetime) -> Decision:
        config = node.config
        if config.delay is not None:
            key = f"wait:{node.id}"
            deadline = _stored_deadline(state.context, key)
            if deadline is None:
                deadline = add_interval(now, config.delay.amount, config.delay.unit, config.timezone)
                if deadline > now:
                    return WaitUntil(deadline, {key: deadline.isoformat()})
            elif deadline > now:
                return WaitUntil(deadline)

        rules = config.rules()
        if not rules:
            return Advance(DEFAULT_PORT)

        result: Optional[bool] = None
        for rule in rules:
            outcome = compare(await self.lookup(rule.field, state), rule.operator, rule.value)
            if result is None:
                result = outcome
            elif rule.logical_operator == "OR":
                result = result or outcome
            else:
                result = result and outcome

        return Advance("true" if result else "false", {f"condition:{node.id}": bool(result)})

    async def _evaluate_wait(self, node: WaitNode, state: ExecutionState, now: datetime) -> Decision:
        key = f"wait:{node.id}"
        deadline = _stored_deadline(state.context, key)
        if deadline is not None:
            return Advance(DEFAULT_PORT) if deadline <= now else WaitUntil(deadline)

        config = node.config
        if config.until is not None:
            deadline = parse_datetime(config.until, config.timezone)
        else:
            deadline = add_interval(now, config.amount, config.unit, config.timezone)

        if deadline <= now:
            return Advance(DEFAULT_PORT, {key: deadline.isoformat()})
        return WaitUntil(deadline, {key: deadline.isoformat()})

    async def _evaluate_goal(self, node: GoalNode, state: ExecutionState, now: datetime) -> Decision:
        key = f"goal:{node.id}"
        if key in state.context:
            return Advance(DEFAULT_PORT)

        config = node.config
        goal = GoalEvent(
            node_id=node.id,
            goal_type=config.goal_type,
            goal_name=config.goal_name or node.label,
            revenue_amount=config.revenue_amount,
            currency=config.currency,
            metrics=dict(config.metrics),
            contact_id=state.contact_id,
            workflow_id=state.workflow_id,
            recorded_at=now,
        )
        record = {
            "goalType": goal.goal_type,
            "goalName": goal.goal_name,
            "achievedAt": now.isoformat(),
        }
        if goal.revenue_amount is not None:
            record["revenueAmount"] = goal.revenue_amount
            record["currency"] = goal.currency
        return RecordAndAdvance(goal, DEFAULT_PORT, {key: record})

    async def _evaluate_action(self, node: ActionNode, state: ExecutionState, now: datetime) -> Decision:
        config = node.config
        value = config.value
        if isinstance(value, str):
            value = await self.render(value, {}, state)

        if config.action_type == "add_tag":
            tags = list(state.context.get("tags") or [])
            if config.tag not in tags:
                tags.append(config.tag)
            return Advance(DEFAULT_PORT, {"tags": tags})
        if config.action_type == "remove_tag":
            tags = [t for t in state.context.get("tags") or [] if t != config.tag]
            return Advance(DEFAULT_PORT, {"tags": tags})
        if config.action_type == "update_field":
            fields = dict(state.context.get("fields") or {})
            fields[config.field] = value
            return Advance(DEFAULT_PORT, {"fields": fields})
        return Advance(DEFAULT_PORT, {config.field: value})
