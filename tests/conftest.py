# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the agentflow test suite.

This module provides foundational fixtures used across all test modules:
- Test databases (sqlite in a temporary directory)
- Sample flow definitions in the editor's raw JSON shape
- Dry-run integrations and handler registries
- Helpers that create the flow/execution rows step records hang off

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from agentflow.config import EngineConfig, RetryConfig
from agentflow.core.graph_schema import FlowDefinition
from agentflow.core.handlers import HandlerRegistry, default_registry
from agentflow.core.integrations import DryRunIntegrations
from agentflow.core.models import Execution, FlowRecord, FlowStatus
from agentflow.core.service import ExecutionService
from agentflow.core.state import Database


# =============================================================================
# Flow Builders
# =============================================================================


def make_node(
    node_id: str,
    node_type: str,
    data: dict[str, Any] | None = None,
    label: str | None = None,
    x: float = 0,
    y: float = 0,
) -> dict[str, Any]:
    """Build a raw editor node."""
    return {
        "id": node_id,
        "type": node_type,
        "label": label if label is not None else node_id.replace("_", " ").title(),
        "position": {"x": x, "y": y},
        "data": data or {},
    }


def make_edge(
    source: str, target: str, handle: str | None = None, edge_id: str | None = None
) -> dict[str, Any]:
    """Build a raw editor edge."""
    edge: dict[str, Any] = {
        "id": edge_id or f"e-{source}-{target}" + (f"-{handle}" if handle else ""),
        "source": source,
        "target": target,
    }
    if handle is not None:
        edge["sourceHandle"] = handle
    return edge


def webhook_trigger(node_id: str = "trigger") -> dict[str, Any]:
    return make_node(node_id, "trigger_webhook", {"endpoint": "/hooks/incoming"})


@pytest.fixture
def webhook_llm_flow() -> dict[str, Any]:
    """Webhook trigger -> LLM prompt using the trigger text."""
    return {
        "nodes": [
            webhook_trigger("t1"),
            make_node(
                "llm1",
                "prompt_llm",
                {"prompt": "Summarize: {{trigger.text}}", "model": "gpt-4"},
                x=200,
            ),
        ],
        "edges": [make_edge("t1", "llm1")],
    }


@pytest.fixture
def condition_flow() -> dict[str, Any]:
    """Trigger -> condition on priority -> email (true) / slack (false)."""
    return {
        "nodes": [
            webhook_trigger("t1"),
            make_node(
                "check",
                "condition",
                {"condition": "{{trigger.priority}}", "operator": "equals", "value": "high"},
            ),
            make_node(
                "email",
                "action_email",
                {"to": "oncall@example.com", "subject": "Urgent", "body": "{{trigger.text}}"},
            ),
            make_node(
                "slack",
                "action_slack",
                {"channel": "#general", "message": "FYI: {{trigger.text}}"},
            ),
        ],
        "edges": [
            make_edge("t1", "check"),
            make_edge("check", "email", handle="true"),
            make_edge("check", "slack", handle="false"),
        ],
    }


@pytest.fixture
def failing_action_flow() -> dict[str, Any]:
    """Trigger -> slack action -> email action (slack is made to fail in tests)."""
    return {
        "nodes": [
            webhook_trigger("t1"),
            make_node("notify", "action_slack", {"channel": "#ops", "message": "hello"}),
            make_node(
                "followup",
                "action_email",
                {"to": "ops@example.com", "subject": "Done", "body": "sent"},
            ),
        ],
        "edges": [make_edge("t1", "notify"), make_edge("notify", "followup")],
    }


# =============================================================================
# Database and Service Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh sqlite database in a temporary directory."""
    return Database(tmp_path / "state.db")


@pytest.fixture
def integrations() -> DryRunIntegrations:
    """Dry-run integrations that record every call."""
    return DryRunIntegrations()


@pytest.fixture
def registry(integrations: DryRunIntegrations) -> HandlerRegistry:
    return default_registry(integrations)


@pytest.fixture
def fast_config(tmp_path: Path) -> EngineConfig:
    """Engine config with zero backoff so retries happen immediately."""
    return EngineConfig(
        db_path=tmp_path / "state.db",
        retry=RetryConfig(max_attempts=3, initial_delay=0.0, jitter=0.0),
    )


@pytest.fixture
def service(test_db: Database, registry: HandlerRegistry, fast_config: EngineConfig) -> ExecutionService:
    return ExecutionService(test_db, registry, config=fast_config)


@pytest.fixture
def make_execution(test_db: Database) -> Callable[..., Execution]:
    """Factory that stores a flow and a pending execution for it.

    Example:
        def test_something(make_execution, webhook_llm_flow):
            execution = make_execution(webhook_llm_flow, trigger_data={"text": "hi"})
    """

    def _make(
        definition: dict[str, Any],
        trigger_data: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        test_mode: bool = False,
    ) -> Execution:
        flow_id = f"flow-{uuid.uuid4().hex[:8]}"
        test_db.save_flow(
            FlowRecord(
                id=flow_id,
                name=flow_id,
                status=FlowStatus.ACTIVE,
                definition=FlowDefinition.model_validate(definition),
            )
        )
        return test_db.create_execution(
            Execution(
                id=str(uuid.uuid4()),
                flow_id=flow_id,
                trigger_data=trigger_data or {},
                context=context or {},
                test_mode=test_mode,
            )
        )

    return _make
