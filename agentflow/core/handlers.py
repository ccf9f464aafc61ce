"""Node handlers and the registry that dispatches nodes to them.

Each node kind maps to exactly one handler. Adding a node kind is a registry entry:

    registry = default_registry(integrations)
    registry.register("action_sms", SmsHandler(client))

Handlers receive the node's configuration after variable resolution, parsed into
its typed model for built-in kinds, and return a ``NodeResult``.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from agentflow.core.errors import ConfigurationError, HandlerError
from agentflow.core.graph_schema import (
    ConditionConfig,
    EmailActionConfig,
    LLMPromptConfig,
    MemoryPromptConfig,
    NodeType,
    NotionActionConfig,
    SlackActionConfig,
    TransformerConfig,
    WebhookActionConfig,
    parse_node_config,
)
from agentflow.core.integrations import IntegrationClient

logger = logging.getLogger(__name__)

BUILTIN_NODE_TYPES = frozenset(t.value for t in NodeType)


@dataclass
class NodeResult:
    """Output of one node plus optional resource usage."""

    output: Any
    tokens_used: int | None = None
    cost: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RunContext:
    """Read-only view of the run handed to each handler."""

    execution_id: str
    node_id: str
    node_type: str
    trigger: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    outputs: Mapping[str, Any] = field(default_factory=dict)
    test_mode: bool = False


@runtime_checkable
class NodeHandler(Protocol):
    async def execute(self, config: Any, run_context: RunContext) -> NodeResult: ...


class FunctionHandler:
    """Adapts a plain function (sync or async) to the handler interface."""

    def __init__(self, fn: Callable[[Any, RunContext], Any]):
        self.fn = fn

    async def execute(self, config: Any, run_context: RunContext) -> NodeResult:
        if inspect.iscoroutinefunction(self.fn):
            result = await self.fn(config, run_context)
        else:
            result = self.fn(config, run_context)
        return result


def _as_node_result(result: Any) -> NodeResult:
    if isinstance(result, NodeResult):
        return result
    return NodeResult(output=result)


class HandlerRegistry:
    """
    Registry mapping node type -> handler.

    Built-in node kinds get their configuration parsed into the typed model
    before dispatch; custom kinds receive the resolved ``data`` dict as-is.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, NodeHandler] = {}

    def register(self, node_type: str | NodeType, handler: NodeHandler | Callable) -> None:
        key = node_type.value if isinstance(node_type, NodeType) else node_type
        if not isinstance(handler, NodeHandler):
            handler = FunctionHandler(handler)
        self._handlers[key] = handler

    def get(self, node_type: str) -> NodeHandler:
        if node_type not in self._handlers:
            raise ConfigurationError(f"Unknown node type: {node_type}")
        return self._handlers[node_type]

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._handlers

    def types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(
        self, node_type: str, data: Mapping[str, Any], run_context: RunContext
    ) -> NodeResult:
        """Execute one node.

        Raises:
            ConfigurationError: Unknown type or invalid configuration
            HandlerError: The handler failed
        """
        handler = self.get(node_type)
        try:
            if node_type in BUILTIN_NODE_TYPES:
                config = parse_node_config(node_type, dict(data))
            else:
                config = dict(data)

            result = await handler.execute(config, run_context)
        except HandlerError as e:
            if e.node_id is None:
                e.node_id = run_context.node_id
            raise
        except Exception as e:
            raise HandlerError(f"{node_type} failed: {e}", node_id=run_context.node_id) from e

        return _as_node_result(result)


# ========== Built-in handlers ==========


class TriggerHandler:
    """Trigger nodes pass the trigger payload through as their output."""

    async def execute(self, config: Any, run_context: RunContext) -> NodeResult:
        return NodeResult(output=dict(run_context.trigger))


class _IntegrationHandler:
    def __init__(self, integrations: IntegrationClient):
        self.integrations = integrations


class LLMPromptHandler(_IntegrationHandler):
    async def execute(self, config: LLMPromptConfig, run_context: RunContext) -> NodeResult:
        try:
            result = await self.integrations.call_llm(
                prompt=config.prompt,
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            )
        except Exception as e:
            raise HandlerError(f"LLM execution failed: {e}") from e

        return NodeResult(
            output={"response": result.get("response"), "model": result.get("model", config.model)},
            tokens_used=result.get("tokens_used"),
            cost=result.get("cost"),
        )


class MemorySearchHandler(_IntegrationHandler):
    async def execute(self, config: MemoryPromptConfig, run_context: RunContext) -> NodeResult:
        try:
            results = await self.integrations.search_memory(
                query=config.query, top_k=config.top_k, threshold=config.threshold
            )
        except Exception as e:
            raise HandlerError(f"Memory search failed: {e}") from e

        results = list(results or [])
        return NodeResult(output={"results": results, "query": config.query, "count": len(results)})


class SlackActionHandler(_IntegrationHandler):
    async def execute(self, config: SlackActionConfig, run_context: RunContext) -> NodeResult:
        destination = config.channel or config.user
        try:
            result = await self.integrations.send_slack_message(
                channel=destination, message=config.message, thread_reply=config.thread_reply
            )
        except Exception as e:
            raise HandlerError(f"Slack message failed: {e}") from e

        try:
            timestamp = float(result.get("timestamp") or 0)
        except (TypeError, ValueError):
            timestamp = 0.0
        return NodeResult(
            output={
                "message_id": result.get("message_id"),
                "channel": destination,
                "timestamp": timestamp,
            }
        )


class NotionActionHandler(_IntegrationHandler):
    async def execute(self, config: NotionActionConfig, run_context: RunContext) -> NodeResult:
        try:
            result = await self.integrations.create_notion_page(
                database=config.database or config.page,
                title=config.title,
                properties=config.properties,
            )
        except Exception as e:
            raise HandlerError(f"Notion page creation failed: {e}") from e

        return NodeResult(
            output={"page_id": result.get("page_id"), "url": result.get("url"), "title": config.title}
        )


class EmailActionHandler(_IntegrationHandler):
    async def execute(self, config: EmailActionConfig, run_context: RunContext) -> NodeResult:
        try:
            result = await self.integrations.send_email(
                to=config.recipients, subject=config.subject, body=config.body, html=config.html
            )
        except Exception as e:
            raise HandlerError(f"Email sending failed: {e}") from e

        return NodeResult(
            output={
                "message_id": result.get("message_id"),
                "to": config.recipients,
                "subject": config.subject,
            }
        )


class WebhookActionHandler(_IntegrationHandler):
    async def execute(self, config: WebhookActionConfig, run_context: RunContext) -> NodeResult:
        try:
            result = await self.integrations.call_webhook(
                url=config.url, method=config.method, headers=config.headers, body=config.body
            )
        except Exception as e:
            raise HandlerError(f"Webhook call failed: {e}") from e

        return NodeResult(
            output={"status": result.get("status"), "response": result.get("response"), "url": config.url}
        )


def _comparable(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise HandlerError(f"Cannot compare non-numeric value: {value!r}") from None


def evaluate_condition(condition: Any, operator: str, expected: Any) -> bool:
    """Evaluate a structured comparison.

    ``equals``/``not_equals`` compare loosely, so ``"5"`` equals ``5`` and
    ``"true"`` equals ``True``.
    """
    if operator == "equals":
        return condition == expected or _comparable(condition) == _comparable(expected)
    if operator == "not_equals":
        return not evaluate_condition(condition, "equals", expected)
    if operator == "contains":
        if isinstance(condition, (list, tuple, set)):
            return expected in condition or _comparable(expected) in map(_comparable, condition)
        return _comparable(expected) in _comparable(condition)
    if operator == "greater_than":
        return _to_number(condition) > _to_number(expected)
    if operator == "less_than":
        return _to_number(condition) < _to_number(expected)
    raise ConfigurationError(f"Unknown operator: {operator}")


class ConditionHandler:
    async def execute(self, config: ConditionConfig, run_context: RunContext) -> NodeResult:
        result = evaluate_condition(config.condition, config.operator, config.value)
        return NodeResult(
            output={
                "condition": result,
                "value": config.condition,
                "operator": config.operator,
                "expected": config.value,
            }
        )


class TransformerHandler:
    async def execute(self, config: TransformerConfig, run_context: RunContext) -> NodeResult:
        if config.transformation == "json":
            if not isinstance(config.script, str):
                return NodeResult(output=config.script)
            try:
                return NodeResult(output=json.loads(config.script))
            except json.JSONDecodeError as e:
                raise HandlerError(f"Transformation failed: {e}") from e

        if config.transformation == "mapping":
            if not isinstance(config.script, Mapping):
                raise ConfigurationError("Transformation failed: mapping script must be an object")
            return NodeResult(output=dict(config.script))

        return NodeResult(output=config.script if isinstance(config.script, str) else str(config.script))


def default_registry(integrations: IntegrationClient) -> HandlerRegistry:
    """Registry with a handler for every built-in node type."""
    registry = HandlerRegistry()
    trigger = TriggerHandler()
    for node_type in (
        NodeType.TRIGGER_GMAIL,
        NodeType.TRIGGER_SLACK,
        NodeType.TRIGGER_WEBHOOK,
        NodeType.TRIGGER_SCHEDULER,
    ):
        registry.register(node_type, trigger)

    registry.register(NodeType.PROMPT_LLM, LLMPromptHandler(integrations))
    registry.register(NodeType.PROMPT_MEMORY, MemorySearchHandler(integrations))
    registry.register(NodeType.ACTION_SLACK, SlackActionHandler(integrations))
    registry.register(NodeType.ACTION_NOTION, NotionActionHandler(integrations))
    registry.register(NodeType.ACTION_EMAIL, EmailActionHandler(integrations))
    registry.register(NodeType.ACTION_WEBHOOK, WebhookActionHandler(integrations))
    registry.register(NodeType.CONDITION, ConditionHandler())
    registry.register(NodeType.TRANSFORMER, TransformerHandler())
    return registry
