"""CLI entry point for the agentflow engine.

Commands:
- agentflow validate: Validate a flow file
- agentflow run: Execute a flow file through the run queue
- agentflow status: Show an execution's status
- agentflow steps: Show an execution's step history
- agentflow version: Show version information
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console

from agentflow.cli_ui.step_table import StepTableRenderer, status_text
from agentflow.config import ConfigError, EngineConfig, load_config
from agentflow.core.errors import AgentflowError, FlowValidationError
from agentflow.core.graph_schema import FlowDefinition
from agentflow.core.integrations import DryRunIntegrations, IntegrationClient
from agentflow.core.models import ExecutionStatus, FlowStatus
from agentflow.core.service import create_service
from agentflow.core.state import Database
from agentflow.core.validation import FlowValidator

console = Console()


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_flow_file(flow_file: str) -> dict[str, Any]:
    """Read a YAML or JSON flow file (JSON is valid YAML)."""
    try:
        with open(flow_file) as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing flow file '{flow_file}':[/red]")
        console.print(f"  {e}")
        sys.exit(1)

    # Editor exports wrap the graph as {"definition": {...}}
    if isinstance(content, dict) and isinstance(content.get("definition"), dict):
        content = content["definition"]

    if not isinstance(content, dict):
        console.print(
            f"[red]Error: Invalid content in '{flow_file}'. "
            f"Expected a mapping, got {type(content).__name__}.[/red]"
        )
        sys.exit(1)
    return content


def _parse_json_option(value: str | None, option: str) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=option) from e
    if not isinstance(parsed, dict):
        raise click.BadParameter("must be a JSON object", param_hint=option)
    return parsed


def _load_integrations(spec: str) -> IntegrationClient:
    """Import ``module:attr`` and call it if it is a factory."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise click.BadParameter("expected 'module:attribute'", param_hint="--integrations")
    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise click.BadParameter(f"cannot load {spec}: {e}", param_hint="--integrations") from e
    is_factory = isinstance(target, type) or not isinstance(target, IntegrationClient)
    if callable(target) and is_factory:
        target = target()
    if not isinstance(target, IntegrationClient):
        raise click.BadParameter(
            f"{spec} does not provide an integration client", param_hint="--integrations"
        )
    return target


def _print_validation(errors: list[str], warnings: list[str]) -> None:
    if errors:
        console.print("[red]Validation errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
    if warnings:
        console.print("[yellow]Warnings:[/yellow]")
        for warning in warnings:
            console.print(f"  - {warning}")


def _open_database(config: EngineConfig) -> Database:
    if not config.db_path.exists():
        console.print(f"[yellow]No agentflow database found at {config.db_path}[/yellow]")
        sys.exit(1)
    return Database(config.db_path)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """agentflow - flow validation and graph execution engine."""
    try:
        config = load_config(get_repo_path())
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    _configure_logging("DEBUG" if verbose else config.log_level)
    ctx.obj = config


@main.command()
@click.argument("flow_file", type=click.Path(exists=True))
def validate(flow_file: str) -> None:
    """Validate a flow definition file."""
    definition = _load_flow_file(flow_file)
    result = FlowValidator().validate(definition)
    _print_validation(result.errors, result.warnings)

    if not result.valid:
        sys.exit(1)

    console.print("[green]Flow validation passed[/green]")
    console.print(f"  Nodes: {len(definition.get('nodes', []))}")
    console.print(f"  Edges: {len(definition.get('edges', []))}")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True))
@click.option("--flow-id", help="Flow ID (defaults to the file name)")
@click.option("--trigger", "trigger_json", help="Trigger payload as a JSON object")
@click.option("--context", "context_json", help="Execution context as a JSON object")
@click.option("--test-mode", is_flag=True, help="Run as an editor test (single attempt)")
@click.option("--dry-run", is_flag=True, help="Use synthetic integrations (no external calls)")
@click.option("--integrations", "integrations_spec", help="Integration client as module:attribute")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the run")
@click.pass_obj
def run(
    config: EngineConfig,
    flow_file: str,
    flow_id: str | None,
    trigger_json: str | None,
    context_json: str | None,
    test_mode: bool,
    dry_run: bool,
    integrations_spec: str | None,
    timeout: float | None,
) -> None:
    """Execute a flow file and print its step history."""
    trigger = _parse_json_option(trigger_json, "--trigger")
    context = _parse_json_option(context_json, "--context")

    if dry_run:
        integrations: IntegrationClient = DryRunIntegrations()
    elif integrations_spec:
        integrations = _load_integrations(integrations_spec)
    else:
        raise click.UsageError("No integrations configured: pass --dry-run or --integrations")

    raw = _load_flow_file(flow_file)
    flow_id = flow_id or Path(flow_file).stem
    service = create_service(config, integrations)

    try:
        service.save_flow(flow_id, flow_id, raw, status=FlowStatus.ACTIVE)
    except FlowValidationError as e:
        _print_validation(e.errors, e.warnings)
        sys.exit(1)

    async def execute() -> str:
        await service.start()
        try:
            execution_id = service.enqueue_execution(
                flow_id,
                trigger_payload=trigger,
                context=context,
                test_mode=test_mode,
            )
            console.print(f"[blue]Started execution: {execution_id}[/blue]")
            await service.wait_for(execution_id, timeout=timeout)
            return execution_id
        finally:
            await service.stop()

    try:
        execution_id = asyncio.run(execute())
    except TimeoutError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except AgentflowError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    execution = service.get_execution(execution_id)
    renderer = StepTableRenderer(console)
    renderer.print_steps(
        execution_id, service.list_steps(execution_id), service.get_flow(flow_id).definition
    )

    if execution.status == ExecutionStatus.COMPLETED:
        console.print("[green]Flow completed successfully[/green]")
    else:
        console.print(f"Flow {status_text(execution.status)}")
        if execution.error:
            console.print(f"  {execution.error}")
        sys.exit(1)


@main.command()
@click.argument("execution_id")
@click.pass_obj
def status(config: EngineConfig, execution_id: str) -> None:
    """Show the status of an execution."""
    db = _open_database(config)
    execution = db.get_execution(execution_id)
    if execution is None:
        click.secho(f"Execution '{execution_id}' not found", fg="red")
        sys.exit(1)

    console.print(StepTableRenderer(console).render_execution(execution))


@main.command()
@click.argument("execution_id")
@click.pass_obj
def steps(config: EngineConfig, execution_id: str) -> None:
    """Show the step history of an execution."""
    db = _open_database(config)
    execution = db.get_execution(execution_id)
    if execution is None:
        click.secho(f"Execution '{execution_id}' not found", fg="red")
        sys.exit(1)

    flow: FlowDefinition | None = None
    try:
        record = db.get_flow(execution.flow_id)
        flow = record.definition if record else None
    except pydantic.ValidationError:
        flow = None

    StepTableRenderer(console).print_steps(execution_id, db.list_steps(execution_id), flow)


@main.command()
def version() -> None:
    """Show version information."""
    from agentflow import __version__

    console.print(f"agentflow v{__version__}")
    console.print("Flow validation and graph execution engine")


if __name__ == "__main__":
    main()
