"""Core modules for the agentflow engine."""

from agentflow.core.errors import (
    AgentflowError,
    ConfigurationError,
    FlowValidationError,
    HandlerError,
)
from agentflow.core.graph_schema import FlowDefinition, FlowEdge, FlowNode, NodeType
from agentflow.core.models import Execution, ExecutionStatus, ExecutionStep, StepStatus
from agentflow.core.state import Database
from agentflow.core.validation import FlowValidator, ValidationResult, validate_flow

__all__ = [
    "AgentflowError",
    "ConfigurationError",
    "Database",
    "Execution",
    "ExecutionStatus",
    "ExecutionStep",
    "FlowDefinition",
    "FlowEdge",
    "FlowNode",
    "FlowValidationError",
    "FlowValidator",
    "HandlerError",
    "NodeType",
    "StepStatus",
    "ValidationResult",
    "validate_flow",
]
