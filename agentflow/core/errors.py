"""Exception hierarchy for flow validation and execution.

Validation errors never reach the queue. Handler and configuration errors abort the
current execution and may be retried by the run queue. Cancellation is not a failure.
"""


class AgentflowError(Exception):
    """Base class for engine errors."""

    pass


class FlowValidationError(AgentflowError):
    """Flow definition is structurally or semantically invalid."""

    def __init__(self, errors: list[str], warnings: list[str] | None = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__(f"Invalid flow definition: {'; '.join(self.errors)}")


class HandlerError(AgentflowError):
    """A node's effect failed while executing."""

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        self.message = message
        super().__init__(message)


class ConfigurationError(HandlerError):
    """Required node configuration was missing at dispatch time."""

    pass


class ExecutionCancelled(AgentflowError):
    """Execution stopped because cancellation was requested."""

    pass


class FlowNotFoundError(AgentflowError):
    """No flow definition stored under the given id."""

    pass


class FlowInactiveError(AgentflowError):
    """Flow is not active and the run is not in test mode."""

    pass


class ExecutionNotFoundError(AgentflowError):
    """No execution stored under the given id."""

    pass


class InvalidTransitionError(AgentflowError):
    """Execution status change not allowed by the state machine."""

    pass
