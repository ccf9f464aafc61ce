"""Tests for CLI commands.

Tests all agentflow CLI commands using Click's CliRunner:
- validate: Validate a flow file
- run: Execute a flow file (dry-run integrations)
- status: Show execution status
- steps: Show execution step history
- version: Show version information
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from agentflow.cli import main
from agentflow.core.models import ExecutionStatus
from agentflow.core.state import Database
from conftest import make_edge, make_node, webhook_trigger


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def isolated_fs(cli_runner):
    """Create an isolated filesystem for CLI tests."""
    with cli_runner.isolated_filesystem():
        yield Path.cwd()


@pytest.fixture
def flow_file(isolated_fs) -> Path:
    """Write a small YAML flow: webhook -> LLM prompt."""
    definition = {
        "nodes": [
            make_node("t1", "trigger_webhook", {"endpoint": "/hook"}, label="Hook"),
            make_node(
                "llm1",
                "prompt_llm",
                {"prompt": "Summarize {{trigger.text}}", "model": "gpt-4"},
                label="Summarize",
            ),
        ],
        "edges": [make_edge("t1", "llm1")],
    }
    path = isolated_fs / "summarize.yaml"
    path.write_text(yaml.safe_dump(definition))
    return path


def _latest_execution(flow_id: str):
    db = Database(Path(".agentflow") / "state.db")
    return db.list_executions(flow_id)[0]


class TestVersionCommand:
    def test_version(self, cli_runner, isolated_fs):
        result = cli_runner.invoke(main, ["version"])
        assert result.exit_code == 0
        assert "agentflow v0.1.0" in result.output

    def test_version_option(self, cli_runner):
        result = cli_runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestValidateCommand:
    def test_valid_flow(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["validate", str(flow_file)])
        assert result.exit_code == 0
        assert "Flow validation passed" in result.output
        assert "Nodes: 2" in result.output

    def test_json_flow_file(self, cli_runner, isolated_fs):
        path = isolated_fs / "flow.json"
        path.write_text(json.dumps({"nodes": [webhook_trigger("t1")], "edges": []}))

        result = cli_runner.invoke(main, ["validate", path.name])

        assert result.exit_code == 0
        assert "Warnings:" in result.output

    def test_editor_export_wrapper(self, cli_runner, isolated_fs):
        path = isolated_fs / "export.json"
        path.write_text(
            json.dumps({"name": "x", "definition": {"nodes": [webhook_trigger("t1")], "edges": []}})
        )

        result = cli_runner.invoke(main, ["validate", path.name])

        assert result.exit_code == 0

    def test_invalid_flow(self, cli_runner, isolated_fs):
        path = isolated_fs / "bad.yaml"
        path.write_text(yaml.safe_dump({"nodes": [], "edges": []}))

        result = cli_runner.invoke(main, ["validate", path.name])

        assert result.exit_code == 1
        assert "Validation errors" in result.output
        assert "trigger" in result.output

    def test_malformed_yaml(self, cli_runner, isolated_fs):
        path = isolated_fs / "broken.yaml"
        path.write_text("nodes: [\n")

        result = cli_runner.invoke(main, ["validate", path.name])

        assert result.exit_code == 1
        assert "Error parsing flow file" in result.output

    def test_non_mapping_content(self, cli_runner, isolated_fs):
        path = isolated_fs / "list.yaml"
        path.write_text("- a\n- b\n")

        result = cli_runner.invoke(main, ["validate", path.name])

        assert result.exit_code == 1
        assert "Expected a mapping" in result.output

    def test_missing_file(self, cli_runner, isolated_fs):
        result = cli_runner.invoke(main, ["validate", "nope.yaml"])
        assert result.exit_code == 2


class TestRunCommand:
    def test_dry_run_completes(self, cli_runner, flow_file):
        result = cli_runner.invoke(
            main,
            ["run", str(flow_file), "--dry-run", "--test-mode", "--trigger", '{"text": "hello"}'],
        )

        assert result.exit_code == 0, result.output
        assert "Started execution" in result.output
        assert "Flow completed successfully" in result.output

        execution = _latest_execution("summarize")
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.trigger_data == {"text": "hello"}

    def test_integrations_option(self, cli_runner, flow_file):
        result = cli_runner.invoke(
            main,
            [
                "run",
                str(flow_file),
                "--test-mode",
                "--flow-id",
                "custom-id",
                "--integrations",
                "agentflow.core.integrations:DryRunIntegrations",
            ],
        )

        assert result.exit_code == 0, result.output
        assert _latest_execution("custom-id").status == ExecutionStatus.COMPLETED

    def test_requires_integrations(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["run", str(flow_file)])
        assert result.exit_code == 2
        assert "No integrations configured" in result.output

    def test_bad_integrations_spec(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["run", str(flow_file), "--integrations", "nomodule"])
        assert result.exit_code == 2

    def test_trigger_must_be_json_object(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["run", str(flow_file), "--dry-run", "--trigger", "[1]"])
        assert result.exit_code == 2
        assert "must be a JSON object" in result.output

    def test_invalid_flow_not_run(self, cli_runner, isolated_fs):
        path = isolated_fs / "bad.yaml"
        path.write_text(yaml.safe_dump({"nodes": [], "edges": []}))

        result = cli_runner.invoke(main, ["run", str(path), "--dry-run"])

        assert result.exit_code == 1
        assert "Validation errors" in result.output

    def test_failed_run_exits_nonzero(self, cli_runner, isolated_fs):
        definition = {
            "nodes": [
                webhook_trigger("t1"),
                make_node("t", "transformer", {"transformation": "json", "script": "{oops"}),
            ],
            "edges": [make_edge("t1", "t")],
        }
        path = isolated_fs / "broken_transform.yaml"
        path.write_text(yaml.safe_dump(definition))

        result = cli_runner.invoke(main, ["run", str(path), "--dry-run", "--test-mode"])

        assert result.exit_code == 1
        assert "Transformation failed" in result.output
        assert _latest_execution("broken_transform").status == ExecutionStatus.FAILED


class TestStatusAndSteps:
    def test_status_and_steps_after_run(self, cli_runner, flow_file):
        run = cli_runner.invoke(
            main, ["run", str(flow_file), "--dry-run", "--test-mode", "--trigger", '{"text": "x"}']
        )
        assert run.exit_code == 0, run.output
        execution_id = _latest_execution("summarize").id

        status = cli_runner.invoke(main, ["status", execution_id])
        assert status.exit_code == 0
        assert "Completed" in status.output
        assert "summarize" in status.output

        steps = cli_runner.invoke(main, ["steps", execution_id])
        assert steps.exit_code == 0
        assert "Hook" in steps.output
        assert "Summarize" in steps.output
        assert "prompt_llm" in steps.output

    def test_status_without_database(self, cli_runner, isolated_fs):
        result = cli_runner.invoke(main, ["status", "abc"])
        assert result.exit_code == 1
        assert "No agentflow database found" in result.output

    def test_unknown_execution(self, cli_runner, flow_file):
        cli_runner.invoke(main, ["run", str(flow_file), "--dry-run", "--test-mode"])

        result = cli_runner.invoke(main, ["steps", "missing-id"])

        assert result.exit_code == 1
        assert "not found" in result.output
