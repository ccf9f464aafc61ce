"""Flow definition validation.

Validation is a pure function over the raw definition (as loaded from JSON/YAML or
produced by the editor), so malformed input is reported instead of raising.
Errors make a flow invalid; warnings are advisory.

Cycles are only a warning: loops with external break conditions are legal, and the
execution coordinator never dispatches a node twice in one run.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from numbers import Real
from typing import Any

import networkx as nx
from pydantic import ValidationError

from agentflow.core.graph_schema import (
    FlowDefinition,
    NodeType,
    is_action_type,
    is_trigger_type,
)

logger = logging.getLogger(__name__)

CYCLE_WARNING = "Flow contains cycles which may cause infinite loops"


@dataclass
class ValidationResult:
    """Outcome of validating a flow definition."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


# ========== Per-type configuration rules ==========

NodeRule = Callable[[str, Mapping[str, Any], list[str], list[str]], None]


def _gmail_trigger(node_id, data, errors, warnings):
    if not data.get("filter") and not data.get("labels"):
        warnings.append(f"Gmail trigger {node_id} should have email filters or labels configured")


def _slack_trigger(node_id, data, errors, warnings):
    if not data.get("channel") and not data.get("eventType"):
        warnings.append(f"Slack trigger {node_id} should have channel or event type configured")


def _webhook_trigger(node_id, data, errors, warnings):
    if not data.get("endpoint"):
        errors.append(f"Webhook trigger {node_id} must have an endpoint configured")


def _scheduler_trigger(node_id, data, errors, warnings):
    if not data.get("cron"):
        errors.append(f"Scheduler trigger {node_id} must have a cron expression configured")


def _llm_prompt(node_id, data, errors, warnings):
    if not data.get("prompt"):
        errors.append(f"LLM prompt node {node_id} must have a prompt configured")
    if not data.get("model"):
        warnings.append(f"LLM prompt node {node_id} should specify a model")


def _memory_prompt(node_id, data, errors, warnings):
    if not data.get("query"):
        errors.append(f"Memory search node {node_id} must have a query configured")


def _slack_action(node_id, data, errors, warnings):
    if not data.get("channel") and not data.get("user"):
        errors.append(f"Slack action {node_id} must have a channel or user specified")
    if not data.get("message"):
        errors.append(f"Slack action {node_id} must have a message configured")


def _notion_action(node_id, data, errors, warnings):
    if not data.get("database") and not data.get("page"):
        errors.append(f"Notion action {node_id} must specify a database or page")


def _email_action(node_id, data, errors, warnings):
    if not data.get("to"):
        errors.append(f"Email action {node_id} must have recipient(s) specified")
    if not data.get("subject"):
        warnings.append(f"Email action {node_id} should have a subject")


def _webhook_action(node_id, data, errors, warnings):
    if not data.get("url"):
        errors.append(f"Webhook action {node_id} must have a URL configured")


def _condition(node_id, data, errors, warnings):
    if not data.get("condition"):
        errors.append(f"Condition node {node_id} must have a condition configured")


def _transformer(node_id, data, errors, warnings):
    if not data.get("script"):
        errors.append(f"Transformer node {node_id} must have a transformation script")


NODE_RULES: dict[str, NodeRule] = {
    NodeType.TRIGGER_GMAIL.value: _gmail_trigger,
    NodeType.TRIGGER_SLACK.value: _slack_trigger,
    NodeType.TRIGGER_WEBHOOK.value: _webhook_trigger,
    NodeType.TRIGGER_SCHEDULER.value: _scheduler_trigger,
    NodeType.PROMPT_LLM.value: _llm_prompt,
    NodeType.PROMPT_MEMORY.value: _memory_prompt,
    NodeType.ACTION_SLACK.value: _slack_action,
    NodeType.ACTION_NOTION.value: _notion_action,
    NodeType.ACTION_EMAIL.value: _email_action,
    NodeType.ACTION_WEBHOOK.value: _webhook_action,
    NodeType.CONDITION.value: _condition,
    NodeType.TRANSFORMER.value: _transformer,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


class FlowValidator:
    """
    Validates flow definitions before they are saved, activated or queued.

    Rules are looked up in a type-indexed table so new node kinds only need
    a new entry. Types without an entry are not checked further.
    """

    def __init__(self, rules: Mapping[str, NodeRule] | None = None):
        self.rules = dict(NODE_RULES if rules is None else rules)

    def validate(self, definition: FlowDefinition | Mapping[str, Any] | None) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        if isinstance(definition, FlowDefinition):
            definition = definition.to_dict()

        if not definition:
            errors.append("Flow definition is required")
            return ValidationResult(valid=False, errors=errors, warnings=warnings)

        nodes = definition.get("nodes") if isinstance(definition, Mapping) else None
        edges = definition.get("edges") if isinstance(definition, Mapping) else None

        if not isinstance(nodes, list):
            errors.append("Nodes must be an array")
        if not isinstance(edges, list):
            errors.append("Edges must be an array")
        if errors:
            return ValidationResult(valid=False, errors=errors, warnings=warnings)

        nodes = [_as_mapping(n) for n in nodes]
        edges = [_as_mapping(e) for e in edges]

        self._validate_nodes(nodes, errors, warnings)
        self._validate_edges(edges, nodes, errors)
        self._validate_flow_logic(nodes, edges, warnings)
        if not errors:
            self._validate_shape(definition, errors)

        if errors:
            logger.debug(f"Flow validation failed with {len(errors)} error(s)")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    @staticmethod
    def _validate_shape(definition: Mapping[str, Any], errors: list[str]) -> None:
        """Field types the graph model requires (labels are text, data is an object)."""
        try:
            FlowDefinition.model_validate(definition)
        except ValidationError as e:
            for err in e.errors():
                loc = ".".join(str(x) for x in err["loc"])
                errors.append(f"Invalid value at {loc}: {err['msg']}")

    def _validate_nodes(
        self, nodes: list[Mapping[str, Any]], errors: list[str], warnings: list[str]
    ) -> None:
        seen_ids: set[str] = set()

        for index, node in enumerate(nodes):
            node_id = node.get("id")
            if not node_id or not isinstance(node_id, str):
                errors.append(f"Node at index {index} is missing an ID")
                continue

            if node_id in seen_ids:
                errors.append(f"Duplicate node ID: {node_id}")
            seen_ids.add(node_id)

            self._validate_node(node, index, errors, warnings)

        trigger_count = sum(1 for n in nodes if is_trigger_type(n.get("type")))
        if trigger_count == 0:
            errors.append("Flow must have at least one trigger node")
        elif trigger_count > 1:
            warnings.append("Multiple trigger nodes detected. Only one will be active at a time.")

    def _validate_node(
        self, node: Mapping[str, Any], index: int, errors: list[str], warnings: list[str]
    ) -> None:
        node_id = node.get("id")
        node_type = node.get("type")

        if not node_type:
            errors.append(f"Node at index {index} is missing a type")

        if not node.get("label"):
            warnings.append(f"Node {node_id} is missing a label")

        position = node.get("position")
        if (
            not isinstance(position, Mapping)
            or not _is_number(position.get("x"))
            or not _is_number(position.get("y"))
        ):
            errors.append(f"Node {node_id} has invalid position coordinates")

        rule = self.rules.get(node_type) if isinstance(node_type, str) else None
        if rule is not None:
            rule(node_id, _as_mapping(node.get("data")), errors, warnings)

    def _validate_edges(
        self,
        edges: list[Mapping[str, Any]],
        nodes: list[Mapping[str, Any]],
        errors: list[str],
    ) -> None:
        node_ids = {n.get("id") for n in nodes if isinstance(n.get("id"), str)}
        seen_ids: set[str] = set()

        for index, edge in enumerate(edges):
            edge_id = edge.get("id")
            if not edge_id or not isinstance(edge_id, str):
                errors.append(f"Edge at index {index} is missing an ID")
                continue

            if edge_id in seen_ids:
                errors.append(f"Duplicate edge ID: {edge_id}")
            seen_ids.add(edge_id)

            source = edge.get("source")
            target = edge.get("target")
            if not isinstance(source, str) or source not in node_ids:
                errors.append(f"Edge {edge_id} references non-existent source node: {source}")
            if not isinstance(target, str) or target not in node_ids:
                errors.append(f"Edge {edge_id} references non-existent target node: {target}")

    def _validate_flow_logic(
        self,
        nodes: list[Mapping[str, Any]],
        edges: list[Mapping[str, Any]],
        warnings: list[str],
    ) -> None:
        has_incoming = {e.get("target") for e in edges if isinstance(e.get("target"), str)}
        has_outgoing = {e.get("source") for e in edges if isinstance(e.get("source"), str)}

        for node in nodes:
            node_id = node.get("id")
            if not node_id or not isinstance(node_id, str):
                continue
            node_type = node.get("type")

            if node_id not in has_incoming and not is_trigger_type(node_type):
                warnings.append(
                    f"Node {node_id} has no incoming connections and is not a trigger"
                )
            if node_id not in has_outgoing and not is_action_type(node_type):
                warnings.append(
                    f"Node {node_id} has no outgoing connections and is not an action"
                )

        if self._has_cycle(nodes, edges):
            warnings.append(CYCLE_WARNING)

    @staticmethod
    def _has_cycle(nodes: list[Mapping[str, Any]], edges: list[Mapping[str, Any]]) -> bool:
        """Depth-first search over the whole source->target adjacency."""
        G = nx.DiGraph()
        node_ids = [n.get("id") for n in nodes if isinstance(n.get("id"), str) and n.get("id")]
        G.add_nodes_from(node_ids)
        known = set(node_ids)
        for edge in edges:
            source, target = edge.get("source"), edge.get("target")
            # Edges from unknown sources are reported above and never traversed
            if source in known and isinstance(target, str):
                G.add_edge(source, target)

        try:
            nx.find_cycle(G)
        except nx.NetworkXNoCycle:
            return False
        return True


def validate_flow(definition: FlowDefinition | Mapping[str, Any] | None) -> ValidationResult:
    """Validate a flow definition with the default rule table."""
    return FlowValidator().validate(definition)
