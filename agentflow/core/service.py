"""Execution service: the inbound API of the engine.

Builds and owns the run queue, worker and coordinator for one process. Flows are
validated when saved and again when a run is enqueued; invalid flows are never
queued.
"""

import asyncio
import logging
import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from agentflow.config import EngineConfig
from agentflow.core.errors import (
    ExecutionNotFoundError,
    FlowInactiveError,
    FlowNotFoundError,
    FlowValidationError,
)
from agentflow.core.graph_engine import FlowExecutor
from agentflow.core.graph_schema import FlowDefinition
from agentflow.core.handlers import HandlerRegistry, default_registry
from agentflow.core.integrations import DryRunIntegrations, IntegrationClient
from agentflow.core.models import (
    Execution,
    ExecutionStatus,
    ExecutionStep,
    FlowRecord,
    FlowStatus,
)
from agentflow.core.queue import JobOptions, RunQueue
from agentflow.core.state import Database
from agentflow.core.validation import FlowValidator
from agentflow.core.worker import ExecutionWorker

logger = logging.getLogger(__name__)


class ExecutionService:
    """
    Flow storage, run enqueueing and cancellation.

    Usage:
        service = create_service(config, integrations)
        await service.start()
        execution_id = service.enqueue_execution("flow-1", trigger_payload={...})
        execution = await service.wait_for(execution_id)
        await service.stop()
    """

    def __init__(
        self,
        db: Database,
        registry: HandlerRegistry,
        config: EngineConfig | None = None,
        validator: FlowValidator | None = None,
    ):
        self.db = db
        self.registry = registry
        self.config = config or EngineConfig()
        self.validator = validator or FlowValidator()
        self.executor = FlowExecutor(db, registry)
        self.worker = ExecutionWorker(db, self.executor, self.validator)
        self.queue = RunQueue(self.worker.process, concurrency=self.config.workers)

    # ========== Lifecycle ==========

    async def start(self) -> None:
        await self.queue.start()

    async def stop(self) -> None:
        await self.queue.stop()

    # ========== Flows ==========

    def save_flow(
        self,
        flow_id: str,
        name: str,
        definition: FlowDefinition | Mapping[str, Any],
        status: FlowStatus | str = FlowStatus.DRAFT,
    ) -> FlowRecord:
        """Validate and store a flow definition.

        Raises:
            FlowValidationError: The definition has validation errors
        """
        validation = self.validator.validate(definition)
        if not validation.valid:
            raise FlowValidationError(validation.errors, validation.warnings)
        for warning in validation.warnings:
            logger.warning(f"Flow {flow_id}: {warning}")

        if not isinstance(definition, FlowDefinition):
            try:
                definition = FlowDefinition.model_validate(definition)
            except ValidationError as e:
                problems = [
                    f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ]
                raise FlowValidationError(problems, validation.warnings) from e

        existing = self.db.get_flow(flow_id)
        record = FlowRecord(
            id=flow_id,
            name=name,
            status=FlowStatus(status),
            definition=definition,
        )
        if existing is not None:
            record.created_at = existing.created_at
        return self.db.save_flow(record)

    def activate_flow(self, flow_id: str) -> FlowRecord:
        return self._set_flow_status(flow_id, FlowStatus.ACTIVE)

    def pause_flow(self, flow_id: str) -> FlowRecord:
        return self._set_flow_status(flow_id, FlowStatus.PAUSED)

    def _set_flow_status(self, flow_id: str, status: FlowStatus) -> FlowRecord:
        if not self.db.set_flow_status(flow_id, status):
            raise FlowNotFoundError(f"Flow '{flow_id}' not found")
        logger.info(f"Flow {flow_id} -> {status.value}")
        return self.db.get_flow(flow_id)  # type: ignore[return-value]

    def get_flow(self, flow_id: str) -> FlowRecord:
        flow = self.db.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(f"Flow '{flow_id}' not found")
        return flow

    # ========== Executions ==========

    def enqueue_execution(
        self,
        flow_id: str,
        trigger_type: str = "manual",
        trigger_payload: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        test_mode: bool = False,
        priority: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create a pending execution and queue it.

        Raises:
            FlowNotFoundError: Unknown flow
            FlowInactiveError: Flow is not active and this is not a test run
            FlowValidationError: Stored definition no longer validates
        """
        flow = self.get_flow(flow_id)
        if flow.status != FlowStatus.ACTIVE and not test_mode:
            raise FlowInactiveError(f"Flow '{flow_id}' is not active")

        definition = flow.definition.to_dict()
        validation = self.validator.validate(definition)
        if not validation.valid:
            raise FlowValidationError(validation.errors, validation.warnings)

        execution = self.db.create_execution(
            Execution(
                id=str(uuid.uuid4()),
                flow_id=flow_id,
                trigger_type=trigger_type,
                trigger_data=trigger_payload or {},
                context=context or {},
                test_mode=test_mode,
                priority=priority,
                metadata=metadata or {},
            )
        )

        options = JobOptions.for_run(
            test_mode,
            priority=priority,
            retry=self.config.retry.to_policy(),
            timeout=self.config.job_timeout,
            remove_on_complete=self.config.remove_on_complete,
            remove_on_fail=self.config.remove_on_fail,
        )
        self.queue.add(
            execution.id,
            {
                "execution_id": execution.id,
                "flow_id": flow_id,
                "flow_definition": definition,
                "trigger_data": execution.trigger_data,
                "context": execution.context,
                "test_mode": test_mode,
            },
            options,
        )
        logger.info(
            f"Queued execution {execution.id} for flow {flow_id} "
            f"(trigger={trigger_type}, test_mode={test_mode}, priority={priority})"
        )
        return execution.id

    def cancel_execution(self, execution_id: str) -> Execution:
        """Cancel an execution.

        An execution whose job is queued or waiting out a retry delay is removed from
        the queue and cancelled at once. A running one is flagged and stops before
        its next node.
        """
        execution = self.get_execution(execution_id)
        if execution.status.is_terminal:
            return execution

        if self.queue.remove(execution_id) or (
            execution.status == ExecutionStatus.PENDING and self.queue.get_job(execution_id) is None
        ):
            return self.db.update_execution_status(execution_id, ExecutionStatus.CANCELLED)

        self.db.request_cancel(execution_id)
        logger.info(f"Cancellation requested for execution {execution_id}")
        return self.get_execution(execution_id)

    def get_execution(self, execution_id: str) -> Execution:
        execution = self.db.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")
        return execution

    def list_steps(self, execution_id: str) -> list[ExecutionStep]:
        return self.db.list_steps(execution_id)

    def list_executions(self, flow_id: str, limit: int = 20, offset: int = 0) -> list[Execution]:
        return self.db.list_executions(flow_id, limit=limit, offset=offset)

    async def wait_for(
        self,
        execution_id: str,
        poll_interval: float = 0.05,
        timeout: float | None = None,
    ) -> Execution:
        """Poll until the execution reaches a terminal status.

        Raises:
            TimeoutError: Still not terminal after ``timeout`` seconds
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            execution = self.get_execution(execution_id)
            if execution.status.is_terminal:
                return execution
            if deadline is not None and loop.time() >= deadline:
                raise TimeoutError(
                    f"Execution '{execution_id}' still {execution.status.value} after {timeout}s"
                )
            await asyncio.sleep(poll_interval)


def create_service(
    config: EngineConfig | None = None,
    integrations: IntegrationClient | None = None,
    registry: HandlerRegistry | None = None,
) -> ExecutionService:
    """Build a service with the default handler registry."""
    config = config or EngineConfig()
    if registry is None:
        registry = default_registry(integrations or DryRunIntegrations())
    return ExecutionService(Database(config.db_path), registry, config=config)
