"""Terminal rendering for executions and step history."""

from agentflow.cli_ui.step_table import StepTableRenderer

__all__ = ["StepTableRenderer"]
