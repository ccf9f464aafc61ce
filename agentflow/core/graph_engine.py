"""Flow execution coordinator.

Walks a flow graph from its trigger node(s) and executes one node at a time:

- Depth-first, pre-order traversal driven by an explicit stack
- A per-execution visited set: no node is dispatched twice in one run, which makes
  cyclic graphs safe to execute
- Condition nodes only follow the edge whose ``sourceHandle`` matches their result
- The first node failure aborts the whole run (no partial success)

The coordinator owns its run state (visited set, step counter, outputs) for the
lifetime of one run; nothing here is shared between executions.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agentflow.core.errors import ConfigurationError, ExecutionCancelled, HandlerError
from agentflow.core.graph_schema import FlowDefinition, FlowEdge, FlowNode, NodeType
from agentflow.core.handlers import HandlerRegistry, NodeResult, RunContext
from agentflow.core.models import ExecutionStep, StepStatus
from agentflow.core.state import Database
from agentflow.core.variables import VariableResolver

logger = logging.getLogger(__name__)

TRUE_HANDLE = "true"
FALSE_HANDLE = "false"


@dataclass
class RunResult:
    """Summary of one coordinator run."""

    steps_executed: int
    results: dict[str, Any] = field(default_factory=dict)
    final_context: dict[str, Any] = field(default_factory=dict)


@dataclass
class _RunState:
    execution_id: str
    trigger: dict[str, Any]
    context: dict[str, Any]
    test_mode: bool
    step_number: int = 0
    steps_executed: int = 0
    visited: set[str] = field(default_factory=set)
    outputs: dict[str, Any] = field(default_factory=dict)


class FlowExecutor:
    """
    Executes one flow run to completion on the calling task.

    Step records are written through ``db`` as each node starts and finishes;
    execution status transitions belong to the caller (the queue worker).
    """

    def __init__(self, db: Database, registry: HandlerRegistry):
        self.db = db
        self.registry = registry

    async def run(
        self,
        execution_id: str,
        flow: FlowDefinition,
        trigger_payload: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        test_mode: bool = False,
        should_cancel: Callable[[], bool] | None = None,
        step_offset: int = 0,
    ) -> RunResult:
        """
        Run the flow starting from every trigger node.

        Args:
            execution_id: Execution that owns the step records
            flow: Validated flow definition
            trigger_payload: Data delivered by the trigger (``{{trigger.*}}``)
            context: Ambient context (``{{context.*}}``)
            test_mode: Run originates from the editor
            should_cancel: Polled before every node dispatch
            step_offset: Last step number already recorded (retried attempts)

        Raises:
            ConfigurationError: Flow has no trigger node
            HandlerError: A node failed; the run is aborted
            ExecutionCancelled: Cancellation was requested between nodes
        """
        node_map = flow.node_map()
        outgoing = flow.outgoing_edges()

        triggers = flow.trigger_nodes()
        if not triggers:
            raise ConfigurationError("No trigger nodes found in flow")

        state = _RunState(
            execution_id=execution_id,
            trigger=dict(trigger_payload or {}),
            context=dict(context or {}),
            test_mode=test_mode,
            step_number=step_offset,
        )

        # Reversed so the first trigger (and first outgoing edge) is popped first,
        # matching the order of a recursive walk.
        stack: list[FlowNode] = list(reversed(triggers))
        while stack:
            node = stack.pop()
            if node.id in state.visited:
                continue

            if should_cancel is not None and should_cancel():
                logger.info(f"Execution {execution_id} cancelled before node {node.id}")
                raise ExecutionCancelled(f"Execution '{execution_id}' was cancelled")

            result = await self._execute_node(state, node)

            successors = self._next_nodes(node, result, outgoing, node_map)
            stack.extend(reversed([n for n in successors if n.id not in state.visited]))

        return RunResult(
            steps_executed=state.steps_executed,
            results=dict(state.outputs),
            final_context={
                "execution_id": execution_id,
                "trigger": state.trigger,
                "context": state.context,
                "test_mode": test_mode,
            },
        )

    async def _execute_node(self, state: _RunState, node: FlowNode) -> NodeResult:
        """Dispatch a single node and record its step."""
        state.visited.add(node.id)
        state.step_number += 1
        step_number = state.step_number

        logger.info(
            f"Executing node {node.id} ({node.type}) "
            f"[execution={state.execution_id}, step={step_number}]"
        )

        resolver = VariableResolver(
            trigger=state.trigger, context=state.context, outputs=state.outputs
        )
        resolved = resolver.resolve(node.data)

        self.db.append_step(
            ExecutionStep(
                execution_id=state.execution_id,
                node_id=node.id,
                node_type=node.type,
                step_number=step_number,
                status=StepStatus.RUNNING,
                input=resolved,
            )
        )
        state.steps_executed += 1

        run_context = RunContext(
            execution_id=state.execution_id,
            node_id=node.id,
            node_type=node.type,
            trigger=state.trigger,
            context=state.context,
            outputs=dict(state.outputs),
            test_mode=state.test_mode,
        )

        start = time.monotonic()
        try:
            result = await self.registry.dispatch(node.type, resolved, run_context)
        except HandlerError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.error(f"Node {node.id} failed: {e}")
            self.db.complete_step(
                state.execution_id,
                step_number,
                StepStatus.FAILED,
                error=str(e),
                duration_ms=duration_ms,
            )
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        state.outputs[node.id] = result.output
        self.db.complete_step(
            state.execution_id,
            step_number,
            StepStatus.COMPLETED,
            output=result.output,
            duration_ms=duration_ms,
            tokens_used=result.tokens_used,
            cost=result.cost,
        )
        return result

    def _next_nodes(
        self,
        node: FlowNode,
        result: NodeResult,
        outgoing: dict[str, list[FlowEdge]],
        node_map: dict[str, FlowNode],
    ) -> list[FlowNode]:
        """Successor nodes in edge order.

        Condition nodes follow only edges whose source handle matches the boolean
        result; edges without a handle are not followed. The result is either the
        output itself or its ``condition`` key.
        """
        edges = outgoing.get(node.id, [])

        if node.type == NodeType.CONDITION.value:
            output = result.output
            passed = output.get("condition") if isinstance(output, dict) else output
            handle = TRUE_HANDLE if passed else FALSE_HANDLE
            edges = [e for e in edges if e.source_handle == handle]
            logger.debug(f"Condition {node.id} evaluated {handle}: following {len(edges)} edge(s)")

        return [node_map[e.target] for e in edges if e.target in node_map]
