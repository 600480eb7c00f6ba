"""Workflow graph definition.

Node configs are a tagged union keyed by ``node.type``; every config is
validated when the graph is loaded, not when the node is evaluated.

Stored JSON may use either snake_case or camelCase keys::

    {
        "nodes": [
            {"id": "t1", "type": "trigger"},
            {"id": "m1", "type": "message", "config": {"text": "Hi {{ contact.first_name }}"}},
            {"id": "s1", "type": "split", "config": {
                "splitType": "percentage",
                "branches": [{"id": "A", "percentage": 50}, {"id": "B", "percentage": 50}]
            }}
        ],
        "edges": [
            {"sourceNodeId": "t1", "targetNodeId": "m1"},
            {"sourceNodeId": "m1", "targetNodeId": "s1"},
            {"sourceNodeId": "s1", "sourcePort": "A", "targetNodeId": "g1"}
        ]
    }
"""

from collections import deque
from datetime import datetime
from functools import cached_property
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator
from pydantic.alias_generators import to_camel

from core.constants import DEFAULT_PORT, NodeType
from core.exceptions import GraphIntegrityError, ValidationError

DelayUnit = Literal["minutes", "hours", "days", "weeks"]
Operator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
]

# Percentage splits must add up to 100 within this tolerance at activation
PERCENTAGE_TOLERANCE = 0.01


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ─── Node configs ──────────────────────────────────────────


class SplitBranch(_Model):
    id: str
    label: str = ""
    percentage: float = Field(default=0.0, ge=0)


class SplitConfig(_Model):
    split_type: Literal["random", "percentage", "field_based"] = "percentage"
    branches: list[SplitBranch] = Field(default_factory=list)
    field_name: Optional[str] = None
    field_values: dict[str, str] = Field(default_factory=dict)
    default_branch: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self):
        if self.split_type == "field_based":
            if not self.field_name:
                raise ValueError("field_based split requires field_name")
            if not self.field_values:
                raise ValueError("field_based split requires a non-empty field_values mapping")
            return self
        if not self.branches:
            raise ValueError(f"{self.split_type} split requires at least one branch")
        ids = [b.id for b in self.branches]
        if len(ids) != len(set(ids)):
            raise ValueError("split branch ids must be unique")
        if self.split_type == "percentage" and self.total_weight <= 0:
            raise ValueError("percentage split requires a positive total weight")
        return self

    @property
    def total_weight(self) -> float:
        return sum(b.percentage for b in self.branches)

    def weights(self) -> list[tuple[str, float]]:
        """Branch weights in declaration order.

        A random split with no percentages at all gets equal weights.
        """
        if self.split_type == "random" and self.total_weight <= 0:
            return [(b.id, 1.0) for b in self.branches]
        return [(b.id, b.percentage) for b in self.branches]

    def ports(self) -> set[str]:
        if self.split_type == "field_based":
            ports = set(self.field_values.values())
            if self.default_branch:
                ports.add(self.default_branch)
            return ports
        return {b.id for b in self.branches}


class MessageConfig(_Model):
    template_id: Optional[str] = None
    text: Optional[str] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    media_url: Optional[str] = None
    recipient_field: str = "phone"

    @model_validator(mode="after")
    def _check_content(self):
        if not self.template_id and not self.text:
            raise ValueError("message node requires template_id or text")
        return self


class ConditionRule(_Model):
    field: str
    operator: Operator = "equals"
    value: Any = None
    logical_operator: Literal["AND", "OR"] = "AND"


class DelaySpec(_Model):
    amount: int = Field(ge=0)
    unit: DelayUnit = "minutes"


class ConditionConfig(_Model):
    field: Optional[str] = None
    operator: Operator = "equals"
    value: Any = None
    conditions: list[ConditionRule] = Field(default_factory=list)
    delay: Optional[DelaySpec] = None
    timezone: Optional[str] = None

    @model_validator(mode="after")
    def _check_predicate(self):
        if not self.field and not self.conditions and self.delay is None:
            raise ValueError("condition node requires a field, conditions or a delay")
        return self

    def rules(self) -> list[ConditionRule]:
        if self.conditions:
            return list(self.conditions)
        if self.field:
            return [ConditionRule(field=self.field, operator=self.operator, value=self.value)]
        return []


class WaitConfig(_Model):
    amount: Optional[int] = Field(default=None, ge=0)
    unit: DelayUnit = "minutes"
    until: Optional[datetime] = None
    timezone: Optional[str] = None

    @model_validator(mode="after")
    def _check_mode(self):
        if (self.amount is None) == (self.until is None):
            raise ValueError("wait node requires exactly one of amount or until")
        return self


class GoalConfig(_Model):
    goal_type: Literal["conversion", "engagement", "revenue", "custom"] = "conversion"
    goal_name: str = ""
    revenue_amount: Optional[float] = None
    currency: str = "USD"
    metrics: dict[str, Any] = Field(default_factory=dict)


class ActionConfig(_Model):
    action_type: Literal["add_tag", "remove_tag", "update_field", "set_variable"]
    tag: Optional[str] = None
    field: Optional[str] = None
    value: Any = None

    @model_validator(mode="after")
    def _check_target(self):
        if self.action_type in ("add_tag", "remove_tag") and not self.tag:
            raise ValueError(f"{self.action_type} action requires a tag")
        if self.action_type in ("update_field", "set_variable") and not self.field:
            raise ValueError(f"{self.action_type} action requires a field")
        return self


# ─── Nodes ─────────────────────────────────────────────────


class _NodeBase(_Model):
    id: str = Field(min_length=1)
    label: str = ""
    is_valid: bool = True

    def ports(self) -> set[str]:
        """Output ports this node can route through."""
        return {DEFAULT_PORT}


class TriggerNode(_NodeBase):
    type: Literal["trigger"] = NodeType.TRIGGER.value
    config: dict[str, Any] = Field(default_factory=dict)


class MessageNode(_NodeBase):
    type: Literal["message"] = NodeType.MESSAGE.value
    config: MessageConfig


class SplitNode(_NodeBase):
    type: Literal["split"] = NodeType.SPLIT.value
    config: SplitConfig

    def ports(self) -> set[str]:
        return self.config.ports()


class ConditionNode(_NodeBase):
    type: Literal["condition"] = NodeType.CONDITION.value
    config: ConditionConfig

    def ports(self) -> set[str]:
        if self.config.rules():
            return {"true", "false"}
        return {DEFAULT_PORT}


class WaitNode(_NodeBase):
    type: Literal["wait"] = NodeType.WAIT.value
    config: WaitConfig


class GoalNode(_NodeBase):
    type: Literal["goal"] = NodeType.GOAL.value
    config: GoalConfig = Field(default_factory=GoalConfig)


class ActionNode(_NodeBase):
    type: Literal["action"] = NodeType.ACTION.value
    config: ActionConfig


Node = Annotated[
    Union[TriggerNode, MessageNode, SplitNode, ConditionNode, WaitNode, GoalNode, ActionNode],
    Field(discriminator="type"),
]


class Edge(_Model):
    id: Optional[str] = None
    source_node_id: str
    source_port: str = DEFAULT_PORT
    target_node_id: str


# ─── Graph ─────────────────────────────────────────────────


class WorkflowGraph(_Model):
    """Validated node graph of a workflow version."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self):
        ids = [node.id for node in self.nodes]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"duplicate node ids: {sorted(duplicates)}")

        known = set(ids)
        seen_routes: set[tuple[str, str]] = set()
        for edge in self.edges:
            if edge.source_node_id not in known:
                raise ValueError(f"edge references unknown source node {edge.source_node_id!r}")
            if edge.target_node_id not in known:
                raise ValueError(f"edge references unknown target node {edge.target_node_id!r}")
            route = (edge.source_node_id, edge.source_port)
            if route in seen_routes:
                raise ValueError(
                    f"ambiguous routing: more than one edge from {edge.source_node_id!r} "
                    f"port {edge.source_port!r}"
                )
            seen_routes.add(route)
        return self

    @classmethod
    def load(cls, nodes: Any, edges: Any) -> "WorkflowGraph":
        """Parse stored node/edge JSON, raising ValidationError on any defect."""
        try:
            return cls.model_validate({"nodes": nodes or [], "edges": edges or []})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid workflow graph: {_summarize(exc)}") from exc

    @classmethod
    def from_workflow(cls, workflow) -> "WorkflowGraph":
        return cls.load(workflow.nodes, workflow.edges)

    @cached_property
    def node_index(self) -> dict[str, Any]:
        return {node.id: node for node in self.nodes}

    @cached_property
    def route_index(self) -> dict[tuple[str, str], str]:
        return {(e.source_node_id, e.source_port): e.target_node_id for e in self.edges}

    def node(self, node_id: Optional[str]):
        if node_id is None:
            return None
        return self.node_index.get(node_id)

    def triggers(self) -> list[TriggerNode]:
        return [node for node in self.nodes if node.type == NodeType.TRIGGER.value]

    def trigger_node(self) -> TriggerNode:
        triggers = self.triggers()
        if not triggers:
            raise GraphIntegrityError("workflow has no trigger node")
        if len(triggers) > 1:
            raise GraphIntegrityError("workflow has more than one trigger node")
        return triggers[0]

    def next_node_id(self, node_id: str, port: str) -> Optional[str]:
        """Target of the edge leaving ``node_id`` through ``port``, if any."""
        return self.route_index.get((node_id, port))

    def successors(self, node_id: str) -> list[str]:
        return [target for (source, _), target in self.route_index.items() if source == node_id]

    def check_integrity(self) -> None:
        """Structural checks required before a workflow may be activated.

        Raises:
            GraphIntegrityError: if the graph has no single trigger, has nodes
                unreachable from it, routes through ports a node never emits,
                or has a percentage split whose weights do not sum to 100.
        """
        trigger = self.trigger_node()

        reachable = {trigger.id}
        queue = deque([trigger.id])
        while queue:
            for target in self.successors(queue.popleft()):
                if target not in reachable:
                    reachable.add(target)
                    queue.append(target)
        unreachable = sorted(set(self.node_index) - reachable)
        if unreachable:
            raise GraphIntegrityError(f"nodes unreachable from trigger: {unreachable}")

        for edge in self.edges:
            source = self.node_index[edge.source_node_id]
            if edge.source_port not in source.ports():
                raise GraphIntegrityError(
                    f"edge from {source.id!r} uses unknown port {edge.source_port!r}"
                )

        for node in self.nodes:
            if isinstance(node, SplitNode) and node.config.split_type == "percentage":
                total = node.config.total_weight
                if abs(total - 100.0) > PERCENTAGE_TOLERANCE:
                    raise GraphIntegrityError(
                        f"split {node.id!r} branch percentages sum to {total:g}, expected 100"
                    )


def _summarize(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    return "; ".join(parts)
