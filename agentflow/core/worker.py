"""Queue worker that runs execution jobs.

Each job carries the execution id and a snapshot of the flow definition taken at
enqueue time. The worker owns the execution's status transitions:

- pending -> running when the first attempt starts
- running -> completed / cancelled / failed when the run ends
- a failed attempt that the queue will retry leaves the execution running
"""

import asyncio
import logging
from typing import Any

import pydantic

from agentflow.core.errors import ExecutionCancelled
from agentflow.core.graph_engine import FlowExecutor
from agentflow.core.graph_schema import FlowDefinition
from agentflow.core.models import ExecutionStatus
from agentflow.core.queue import Job, UnrecoverableError
from agentflow.core.state import Database
from agentflow.core.validation import FlowValidator

logger = logging.getLogger(__name__)


class ExecutionWorker:
    """
    Job processor for the run queue.

    Design:
    - Re-validates the flow snapshot before running (never runs an invalid flow)
    - Checks the execution's cancel flag between node dispatches
    - Continues step numbering across retried attempts
    """

    def __init__(
        self,
        db: Database,
        executor: FlowExecutor,
        validator: FlowValidator | None = None,
    ):
        self.db = db
        self.executor = executor
        self.validator = validator or FlowValidator()

    async def process(self, job: Job) -> dict[str, Any]:
        execution_id = job.data["execution_id"]
        execution = self.db.get_execution(execution_id)
        if execution is None:
            raise UnrecoverableError(f"Execution '{execution_id}' not found")

        if execution.status.is_terminal:
            logger.info(f"Skipping execution {execution_id}: already {execution.status.value}")
            return {"status": execution.status.value}

        if execution.cancel_requested:
            self.db.update_execution_status(execution_id, ExecutionStatus.CANCELLED)
            return {"status": ExecutionStatus.CANCELLED.value}

        raw_definition = job.data.get("flow_definition")
        flow = self._load_flow(execution_id, raw_definition)

        if execution.status == ExecutionStatus.PENDING:
            self.db.update_execution_status(execution_id, ExecutionStatus.RUNNING)

        logger.info(
            f"Processing execution {execution_id} "
            f"(attempt {job.attempts_made + 1}/{job.options.attempts}, test_mode={execution.test_mode})"
        )

        run = self.executor.run(
            execution_id,
            flow,
            trigger_payload=execution.trigger_data,
            context=execution.context,
            test_mode=execution.test_mode,
            should_cancel=lambda: self.db.is_cancel_requested(execution_id),
            step_offset=self.db.max_step_number(execution_id),
        )

        try:
            if job.options.timeout:
                result = await asyncio.wait_for(run, timeout=job.options.timeout)
            else:
                result = await run
        except ExecutionCancelled:
            self.db.update_execution_status(execution_id, ExecutionStatus.CANCELLED)
            return {"status": ExecutionStatus.CANCELLED.value}
        except TimeoutError:
            message = f"Execution timed out after {job.options.timeout}s"
            self.db.fail_running_steps(execution_id, message)
            self._record_failure(job, execution_id, message)
            raise
        except Exception as e:
            self._record_failure(job, execution_id, str(e))
            raise

        self.db.update_execution_status(execution_id, ExecutionStatus.COMPLETED)
        logger.info(f"Execution completed: {execution_id} ({result.steps_executed} steps)")
        return {
            "status": ExecutionStatus.COMPLETED.value,
            "steps_executed": result.steps_executed,
            "results": result.results,
        }

    def _load_flow(self, execution_id: str, raw_definition: Any) -> FlowDefinition:
        validation = self.validator.validate(raw_definition)
        if not validation.valid:
            message = f"Invalid flow definition: {'; '.join(validation.errors)}"
            self._fail_now(execution_id, message)
            raise UnrecoverableError(message)

        try:
            return FlowDefinition.model_validate(raw_definition)
        except pydantic.ValidationError as e:
            message = f"Invalid flow definition: {e}"
            self._fail_now(execution_id, message)
            raise UnrecoverableError(message) from e

    def _fail_now(self, execution_id: str, message: str) -> None:
        execution = self.db.get_execution(execution_id)
        if execution.status == ExecutionStatus.PENDING:
            self.db.update_execution_status(execution_id, ExecutionStatus.RUNNING)
        self.db.update_execution_status(execution_id, ExecutionStatus.FAILED, error=message)

    def _record_failure(self, job: Job, execution_id: str, message: str) -> None:
        if job.is_final_attempt:
            logger.error(f"Execution failed: {execution_id}: {message}")
            self.db.update_execution_status(execution_id, ExecutionStatus.FAILED, error=message)
        else:
            logger.warning(
                f"Execution {execution_id} attempt {job.attempts_made + 1} failed: {message}"
            )
