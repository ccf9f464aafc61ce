"""Engine configuration.

Loaded from ``.agentflow/config.yaml`` in the project directory, then overridden by
``AGENTFLOW_*`` environment variables.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from agentflow.core.queue import RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_DIR = ".agentflow"
CONFIG_FILE = "config.yaml"

ENV_DB_PATH = "AGENTFLOW_DB_PATH"
ENV_WORKERS = "AGENTFLOW_WORKERS"
ENV_LOG_LEVEL = "AGENTFLOW_LOG_LEVEL"

DEFAULT_CONFIG_YAML = """# agentflow engine configuration

# SQLite database holding flows, executions and step history
db_path: .agentflow/state.db

# Concurrent run-queue workers
workers: 1

# Retry policy for failed runs (test-mode runs are never retried)
retry:
  max_attempts: 3
  initial_delay: 2.0
  backoff_multiplier: 2.0
  max_delay: 60.0
  jitter: 0.1

# Per-attempt timeout in seconds (null = unlimited)
job_timeout: null

# Finished jobs kept in queue history
remove_on_complete: 10
remove_on_fail: 5

log_level: INFO
"""


class ConfigError(Exception):
    """Invalid or unreadable configuration file."""

    pass


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=60.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.model_dump())


class EngineConfig(BaseModel):
    """Runtime settings for the execution service."""

    model_config = ConfigDict(extra="forbid")

    db_path: Path = Path(CONFIG_DIR) / "state.db"
    workers: int = Field(default=1, ge=1)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    job_timeout: float | None = Field(default=None, gt=0)
    remove_on_complete: int = Field(default=10, ge=0)
    remove_on_fail: int = Field(default=5, ge=0)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if environ.get(ENV_DB_PATH):
        overrides["db_path"] = environ[ENV_DB_PATH]
    if environ.get(ENV_WORKERS):
        overrides["workers"] = environ[ENV_WORKERS]
    if environ.get(ENV_LOG_LEVEL):
        overrides["log_level"] = environ[ENV_LOG_LEVEL]
    return overrides


def load_config(
    repo_path: Path | None = None, environ: Mapping[str, str] | None = None
) -> EngineConfig:
    """Load engine config for a project directory.

    A relative ``db_path`` is resolved against ``repo_path``.

    Raises:
        ConfigError: The YAML file is malformed or has invalid values
    """
    repo_path = repo_path or Path.cwd()
    environ = os.environ if environ is None else environ
    config_path = repo_path / CONFIG_DIR / CONFIG_FILE

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing {config_path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(
                f"Invalid config in {config_path}: expected a mapping, "
                f"got {type(loaded).__name__}"
            )
        raw = loaded or {}
    else:
        logger.debug(f"No config file at {config_path}, using defaults")

    raw.update(_env_overrides(environ))

    try:
        config = EngineConfig.model_validate(raw)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid config: {details}") from e

    if not config.db_path.is_absolute():
        config.db_path = repo_path / config.db_path
    return config
