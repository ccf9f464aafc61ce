"""SQLite persistence for flows, executions and execution steps.

Executions and their steps are history: a step row is inserted when the node starts
and only its completion fields are written afterwards. Execution status changes go
through a guarded transition so a terminal status is never overwritten.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from agentflow.core.errors import ExecutionNotFoundError, InvalidTransitionError
from agentflow.core.graph_schema import FlowDefinition
from agentflow.core.models import (
    Execution,
    ExecutionStatus,
    ExecutionStep,
    FlowRecord,
    FlowStatus,
    StepStatus,
    _utc_now,
    can_transition,
)

logger = logging.getLogger(__name__)


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Pydantic models and Paths.

    Node outputs come from third-party integrations, so anything else is stored
    via ``str()`` rather than failing the step.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        if isinstance(obj, (set, frozenset, tuple)):
            return list(obj)
        return str(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


def _json_or_none(value: Any) -> str | None:
    return None if value is None else _safe_json_dumps(value)


def _load_json(value: str | None, default: Any = None) -> Any:
    return json.loads(value) if value is not None else default


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """SQLite store for flow definitions and execution history."""

    SCHEMA = """
    -- Flow definitions (stored as JSON)
    CREATE TABLE IF NOT EXISTS flows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT CHECK(status IN ('draft', 'active', 'paused')) DEFAULT 'draft',
        definition JSON NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- One row per run of a flow
    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        flow_id TEXT NOT NULL,
        status TEXT CHECK(status IN ('pending', 'running', 'completed', 'failed', 'cancelled')),
        trigger_type TEXT NOT NULL,
        trigger_data JSON,
        context JSON,
        test_mode INTEGER DEFAULT 0,
        priority INTEGER DEFAULT 0,
        metadata JSON,
        error TEXT,
        cancel_requested INTEGER DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        started_at TIMESTAMP,
        completed_at TIMESTAMP,
        FOREIGN KEY (flow_id) REFERENCES flows(id)
    );

    -- Append-only per-node step log
    CREATE TABLE IF NOT EXISTS execution_steps (
        execution_id TEXT NOT NULL,
        step_number INTEGER NOT NULL,
        node_id TEXT NOT NULL,
        node_type TEXT NOT NULL,
        status TEXT CHECK(status IN ('running', 'completed', 'failed')),
        input JSON,
        output JSON,
        error TEXT,
        duration_ms INTEGER,
        tokens_used INTEGER,
        cost REAL,
        started_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP,
        PRIMARY KEY (execution_id, step_number),
        FOREIGN KEY (execution_id) REFERENCES executions(id)
    );

    CREATE INDEX IF NOT EXISTS idx_executions_flow ON executions(flow_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);
    """

    def __init__(self, db_path: str | Path = ".agentflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Write transaction that takes the write lock up front (BEGIN IMMEDIATE)."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    # --- Flows ---

    def save_flow(self, record: FlowRecord) -> FlowRecord:
        """Insert or update a flow definition.

        Uses ON CONFLICT DO UPDATE instead of REPLACE to keep created_at and the
        foreign key references from executions.
        """
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO flows (id, name, status, definition, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    status = excluded.status,
                    definition = excluded.definition,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.name,
                    record.status.value,
                    _safe_json_dumps(record.definition.to_dict()),
                    record.created_at.isoformat(),
                    now.isoformat(),
                ),
            )
        return self.get_flow(record.id)  # type: ignore[return-value]

    def get_flow(self, flow_id: str) -> FlowRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM flows WHERE id=?", (flow_id,)).fetchone()
        if not row:
            return None
        return FlowRecord(
            id=row["id"],
            name=row["name"],
            status=FlowStatus(row["status"]),
            definition=FlowDefinition.model_validate(json.loads(row["definition"])),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def set_flow_status(self, flow_id: str, status: FlowStatus) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE flows SET status=?, updated_at=? WHERE id=?",
                (status.value, _utc_now().isoformat(), flow_id),
            )
            return result.rowcount > 0

    # --- Executions ---

    def create_execution(self, execution: Execution) -> Execution:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executions (id, flow_id, status, trigger_type, trigger_data, context,
                                        test_mode, priority, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.flow_id,
                    execution.status.value,
                    execution.trigger_type,
                    _safe_json_dumps(execution.trigger_data),
                    _safe_json_dumps(execution.context),
                    int(execution.test_mode),
                    execution.priority,
                    _safe_json_dumps(execution.metadata),
                    execution.created_at.isoformat(),
                ),
            )
        return execution

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM executions WHERE id=?", (execution_id,)).fetchone()
        return self._row_to_execution(row) if row else None

    def list_executions(self, flow_id: str, limit: int = 20, offset: int = 0) -> list[Execution]:
        """Executions of one flow, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM executions WHERE flow_id=? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (flow_id, limit, offset),
            ).fetchall()
        return [self._row_to_execution(r) for r in rows]

    def update_execution_status(
        self, execution_id: str, status: ExecutionStatus, error: str | None = None
    ) -> Execution:
        """Apply a state-machine transition.

        Stamps started_at when entering RUNNING and completed_at when entering a
        terminal status.

        Raises:
            ExecutionNotFoundError: Unknown execution id
            InvalidTransitionError: Transition not allowed from the current status
        """
        now = _utc_now().isoformat()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM executions WHERE id=?", (execution_id,)
            ).fetchone()
            if not row:
                raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")

            current = ExecutionStatus(row["status"])
            if not can_transition(current, status):
                raise InvalidTransitionError(
                    f"Execution '{execution_id}' cannot move from {current.value} to {status.value}"
                )

            if status == ExecutionStatus.RUNNING:
                conn.execute(
                    "UPDATE executions SET status=?, started_at=? WHERE id=?",
                    (status.value, now, execution_id),
                )
            else:
                conn.execute(
                    "UPDATE executions SET status=?, completed_at=?, error=? WHERE id=?",
                    (status.value, now, error, execution_id),
                )

        logger.info(f"Execution status updated: {execution_id} -> {status.value}")
        return self.get_execution(execution_id)  # type: ignore[return-value]

    def request_cancel(self, execution_id: str) -> bool:
        """Flag a running execution for cooperative cancellation."""
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE executions SET cancel_requested=1 WHERE id=?", (execution_id,)
            )
            return result.rowcount > 0

    def is_cancel_requested(self, execution_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT cancel_requested FROM executions WHERE id=?", (execution_id,)
            ).fetchone()
            return bool(row and row[0])

    def _row_to_execution(self, row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            flow_id=row["flow_id"],
            status=ExecutionStatus(row["status"]),
            trigger_type=row["trigger_type"],
            trigger_data=_load_json(row["trigger_data"], {}),
            context=_load_json(row["context"], {}),
            test_mode=bool(row["test_mode"]),
            priority=row["priority"],
            metadata=_load_json(row["metadata"], {}),
            error=row["error"],
            cancel_requested=bool(row["cancel_requested"]),
            created_at=_parse_ts(row["created_at"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    # --- Steps ---

    def append_step(self, step: ExecutionStep) -> ExecutionStep:
        """Insert a step record (status RUNNING, input snapshot)."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO execution_steps (execution_id, step_number, node_id, node_type,
                                             status, input, started_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    step.execution_id,
                    step.step_number,
                    step.node_id,
                    step.node_type,
                    step.status.value,
                    _json_or_none(step.input),
                    step.started_at.isoformat(),
                ),
            )
        return step

    def complete_step(
        self,
        execution_id: str,
        step_number: int,
        status: StepStatus,
        output: Any = None,
        error: str | None = None,
        duration_ms: int | None = None,
        tokens_used: int | None = None,
        cost: float | None = None,
    ) -> bool:
        """Write the completion fields of a RUNNING step.

        Returns True if the update was applied, False if the step was not running.
        """
        if status == StepStatus.RUNNING:
            raise ValueError("complete_step requires a terminal step status")

        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE execution_steps
                SET status=?, output=?, error=?, duration_ms=?, tokens_used=?, cost=?,
                    completed_at=?
                WHERE execution_id=? AND step_number=? AND status='running'
                """,
                (
                    status.value,
                    _json_or_none(output),
                    error,
                    duration_ms,
                    tokens_used,
                    cost,
                    _utc_now().isoformat(),
                    execution_id,
                    step_number,
                ),
            )
            return result.rowcount > 0

    def fail_running_steps(self, execution_id: str, error: str) -> int:
        """Close steps left RUNNING by an interrupted attempt."""
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE execution_steps SET status='failed', error=?, completed_at=?
                WHERE execution_id=? AND status='running'
                """,
                (error, _utc_now().isoformat(), execution_id),
            )
            return result.rowcount

    def list_steps(self, execution_id: str) -> list[ExecutionStep]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_steps WHERE execution_id=? ORDER BY step_number",
                (execution_id,),
            ).fetchall()
        return [self._row_to_step(r) for r in rows]

    def max_step_number(self, execution_id: str) -> int:
        """Highest step number recorded for an execution (0 if none)."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(step_number) FROM execution_steps WHERE execution_id=?",
                (execution_id,),
            ).fetchone()
            return row[0] or 0

    def _row_to_step(self, row: sqlite3.Row) -> ExecutionStep:
        return ExecutionStep(
            execution_id=row["execution_id"],
            node_id=row["node_id"],
            node_type=row["node_type"],
            step_number=row["step_number"],
            status=StepStatus(row["status"]),
            input=_load_json(row["input"]),
            output=_load_json(row["output"]),
            error=row["error"],
            duration_ms=row["duration_ms"],
            tokens_used=row["tokens_used"],
            cost=row["cost"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )
