"""Tests for engine configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from agentflow.config import (
    DEFAULT_CONFIG_YAML,
    ConfigError,
    EngineConfig,
    RetryConfig,
    load_config,
)
from agentflow.core.queue import RetryPolicy


def _write_config(repo: Path, content: str) -> None:
    config_dir = repo / ".agentflow"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "config.yaml").write_text(content)


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path):
        config = load_config(tmp_path, environ={})
        assert config.workers == 1
        assert config.retry.max_attempts == 3
        assert config.job_timeout is None
        assert config.remove_on_complete == 10
        assert config.remove_on_fail == 5
        assert config.log_level == "INFO"
        assert config.db_path == tmp_path / ".agentflow" / "state.db"

    def test_yaml_values(self, tmp_path):
        _write_config(
            tmp_path,
            yaml.safe_dump(
                {
                    "db_path": "data/runs.db",
                    "workers": 4,
                    "retry": {"max_attempts": 5, "initial_delay": 1.0},
                    "job_timeout": 30,
                    "log_level": "debug",
                }
            ),
        )

        config = load_config(tmp_path, environ={})

        assert config.workers == 4
        assert config.retry.max_attempts == 5
        assert config.retry.initial_delay == 1.0
        assert config.retry.backoff_multiplier == 2.0
        assert config.job_timeout == 30
        assert config.log_level == "DEBUG"
        assert config.db_path == tmp_path / "data" / "runs.db"

    def test_default_template_is_loadable(self, tmp_path):
        _write_config(tmp_path, DEFAULT_CONFIG_YAML)
        config = load_config(tmp_path, environ={})
        assert config == EngineConfig(db_path=tmp_path / ".agentflow" / "state.db")

    def test_environment_overrides(self, tmp_path):
        _write_config(tmp_path, "workers: 2\n")
        environ = {
            "AGENTFLOW_DB_PATH": str(tmp_path / "env.db"),
            "AGENTFLOW_WORKERS": "8",
            "AGENTFLOW_LOG_LEVEL": "warning",
        }

        config = load_config(tmp_path, environ=environ)

        assert config.workers == 8
        assert config.log_level == "WARNING"
        assert config.db_path == tmp_path / "env.db"

    def test_empty_file_uses_defaults(self, tmp_path):
        _write_config(tmp_path, "")
        assert load_config(tmp_path, environ={}).workers == 1

    def test_malformed_yaml(self, tmp_path):
        _write_config(tmp_path, "workers: [1, 2\n")
        with pytest.raises(ConfigError, match="Error parsing"):
            load_config(tmp_path, environ={})

    def test_non_mapping_yaml(self, tmp_path):
        _write_config(tmp_path, "- just\n- a list\n")
        with pytest.raises(ConfigError, match="expected a mapping"):
            load_config(tmp_path, environ={})

    @pytest.mark.parametrize(
        "content",
        ["workers: 0\n", "log_level: LOUD\n", "retry:\n  max_attempts: 0\n", "unknown_key: 1\n"],
    )
    def test_invalid_values(self, tmp_path, content):
        _write_config(tmp_path, content)
        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(tmp_path, environ={})


class TestRetryConfig:
    def test_to_policy(self):
        policy = RetryConfig(max_attempts=4, initial_delay=0.5, jitter=0.0).to_policy()
        assert isinstance(policy, RetryPolicy)
        assert policy.max_attempts == 4
        assert policy.get_delay(1) == 1.0
