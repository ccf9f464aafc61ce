"""Execution record models.

Uses Pydantic for the persisted Execution / ExecutionStep shapes.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from agentflow.core.graph_schema import FlowDefinition


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Status of a flow execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

# pending -> running -> {completed | failed | cancelled}; pending may be cancelled directly
ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.RUNNING: TERMINAL_STATUSES,
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


def can_transition(current: ExecutionStatus, new: ExecutionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


class StepStatus(str, Enum):
    """Status of a single node step within an execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FlowStatus(str, Enum):
    """Lifecycle of a stored flow definition."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class FlowRecord(BaseModel):
    """A stored flow definition."""

    id: str
    name: str
    status: FlowStatus = FlowStatus.DRAFT
    definition: FlowDefinition
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class Execution(BaseModel):
    """One run of a flow."""

    id: str
    flow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_type: str = "manual"
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    test_mode: bool = False
    priority: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=_utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ExecutionStep(BaseModel):
    """One node's outcome within an execution."""

    execution_id: str
    node_id: str
    node_type: str
    step_number: int
    status: StepStatus = StepStatus.RUNNING
    input: Any = None
    output: Any = None
    error: str | None = None
    duration_ms: int | None = None
    tokens_used: int | None = None
    cost: float | None = None
    started_at: datetime = Field(default_factory=_utc_now)
    completed_at: datetime | None = None
