"""Rich tables for execution status and step history.

All user-controlled strings (labels, outputs, errors, ids) are escaped to prevent
Rich markup injection.
"""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agentflow.core.graph_schema import FlowDefinition
from agentflow.core.models import Execution, ExecutionStatus, ExecutionStep, StepStatus

STATUS_STYLES = {
    ExecutionStatus.PENDING.value: "[dim]○ Pending[/]",
    ExecutionStatus.RUNNING.value: "[blue]⟳ Running[/]",
    ExecutionStatus.COMPLETED.value: "[green]✓ Completed[/]",
    ExecutionStatus.FAILED.value: "[red]✗ Failed[/]",
    ExecutionStatus.CANCELLED.value: "[yellow]⊘ Cancelled[/]",
}

MAX_CELL = 40


def status_text(status: ExecutionStatus | StepStatus | str) -> str:
    value = status.value if hasattr(status, "value") else str(status)
    return STATUS_STYLES.get(value, escape(value))


def _cell(value: Any, width: int = MAX_CELL) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = escape(text)
    if len(text) > width:
        text = text[: width - 3] + "..."
    return text


class StepTableRenderer:
    """Renders an execution and its steps as Rich tables."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_steps(
        self,
        execution_id: str,
        steps: list[ExecutionStep],
        flow: FlowDefinition | None = None,
    ) -> Table:
        """One row per step, in step order. Labels come from ``flow`` when given."""
        labels = {n.id: n.label for n in flow.nodes if n.label} if flow else {}
        table = Table(title=f"Execution: {escape(execution_id[:8])}...")

        table.add_column("#", justify="right")
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Duration", justify="right")
        table.add_column("Output", max_width=MAX_CELL)

        for step in steps:
            duration = f"{step.duration_ms}ms" if step.duration_ms is not None else ""
            detail = step.error if step.status == StepStatus.FAILED else step.output
            table.add_row(
                str(step.step_number),
                escape(labels.get(step.node_id, step.node_id)),
                escape(step.node_type),
                status_text(step.status),
                duration,
                _cell(detail),
            )
        return table

    def render_execution(self, execution: Execution) -> Table:
        table = Table(title="Execution Status", show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")

        table.add_row("ID", escape(execution.id))
        table.add_row("Flow", escape(execution.flow_id))
        table.add_row("Status", status_text(execution.status))
        table.add_row("Trigger", escape(execution.trigger_type))
        table.add_row("Test mode", "yes" if execution.test_mode else "no")
        table.add_row("Created", execution.created_at.isoformat())
        if execution.started_at:
            table.add_row("Started", execution.started_at.isoformat())
        if execution.completed_at:
            table.add_row("Completed", execution.completed_at.isoformat())
        if execution.error:
            table.add_row("Error", f"[red]{escape(execution.error)}[/]")
        return table

    def print_steps(
        self,
        execution_id: str,
        steps: list[ExecutionStep],
        flow: FlowDefinition | None = None,
    ) -> None:
        self.console.print(self.render_steps(execution_id, steps, flow))
