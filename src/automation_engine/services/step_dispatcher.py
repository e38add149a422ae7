import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List
from automation_engine.api.exceptions import AgentDispatchError
from automation_engine.clients.agent_client import AgentWebhookClient
from automation_engine.clients.agent_response import decode_step_output
from automation_engine.config.logging import get_logger
from automation_engine.config.settings import Settings
from automation_engine.database.connection import Database
from automation_engine.database.repositories import AutomationRepository, FlowExecutionRepository
from automation_engine.models.flow_execution import ExecutionStatus, FlowExecution, StepResultStatus
from automation_engine.services.execution_state import (
    ExecutionStateMachine,
    find_result,
    step_content,
)
from automation_engine.services.recurrence import RecurrenceEngine

logger = get_logger("dispatch")


class DispatchOutcome(str, Enum):
    COMPLETED = "completed"
    ADVANCED = "advanced"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class StepDispatcher:
    """Runs at most one step of one execution per call.

    Used by the scheduler tick and by the queue worker. Every write is
    conditional, so concurrent callers on the same execution dispatch each
    step once and the losers return ``SKIPPED``.
    """

    def __init__(self, database: Database, agent_client: AgentWebhookClient, settings: Settings):
        self.database = database
        self.agent_client = agent_client
        self.settings = settings
        self.execution_timeout = timedelta(minutes=settings.execution_timeout_minutes)

    async def process(self, execution_id: str) -> DispatchOutcome:
        async with self.database.session() as session:
            repository = FlowExecutionRepository(session)
            machine = ExecutionStateMachine(repository)

            execution = await repository.get_by_id(execution_id)
            if execution is None or execution.is_terminal:
                return DispatchOutcome.SKIPPED

            if self._exceeded_execution_timeout(execution):
                message = (f"Execution exceeded maximum time limit "
                           f"({self.settings.execution_timeout_minutes} minutes)")
                logger.warning("Execution timed out", execution_id=execution.id,
                               started_at=(execution.started_at or execution.created_at).isoformat())
                if await machine.fail(execution, message):
                    await self._schedule_next(repository, execution)
                    return DispatchOutcome.TIMED_OUT
                return DispatchOutcome.SKIPPED

            if not await AutomationRepository(session).is_enabled(execution.automation_id):
                logger.info("Automation disabled, cancelling execution",
                            execution_id=execution.id, automation_id=execution.automation_id)
                if await machine.cancel(execution, "Automation is disabled"):
                    return DispatchOutcome.CANCELLED
                return DispatchOutcome.SKIPPED

            if execution.status == ExecutionStatus.SCHEDULED.value:
                if not await machine.promote_scheduled(execution):
                    return DispatchOutcome.SKIPPED

            return await self.run_step(machine, execution)

    def _exceeded_execution_timeout(self, execution: FlowExecution) -> bool:
        if execution.status == ExecutionStatus.SCHEDULED.value:
            return False
        started = execution.started_at or execution.created_at
        return started is not None and datetime.utcnow() - started > self.execution_timeout

    async def run_step(self, machine: ExecutionStateMachine, execution: FlowExecution) -> DispatchOutcome:
        """Dispatch the next step of a pending or running execution and persist its result."""
        if execution.status not in (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value):
            return DispatchOutcome.SKIPPED

        steps = execution.steps or []
        if execution.current_step >= len(steps):
            if await machine.complete(execution):
                await self._schedule_next(machine.repository, execution)
                return DispatchOutcome.COMPLETED
            return DispatchOutcome.SKIPPED

        step_number = execution.current_step + 1
        content = step_content(steps[execution.current_step])

        existing = find_result(execution.results, step_number)
        if existing is not None and existing.get("status") == StepResultStatus.PENDING.value:
            logger.info("Step already being dispatched, skipping",
                        execution_id=execution.id, step_number=step_number)
            return DispatchOutcome.SKIPPED

        if not await machine.claim_step(execution, step_number, content):
            return DispatchOutcome.SKIPPED

        payload = self.build_payload(execution, step_number, content)
        logger.info("Dispatching step",
                    execution_id=execution.id,
                    automation_id=execution.automation_id,
                    step_number=step_number,
                    total_steps=len(steps),
                    webhook_call_id=payload["webhook_call_id"])

        try:
            body = await self.agent_client.dispatch(payload)
        except AgentDispatchError as e:
            logger.error("Step dispatch failed", execution_id=execution.id,
                         step_number=step_number, error=str(e))
            return await self._record_failure(machine, execution, step_number, content,
                                              str(e), f"Step {step_number} failed: {e}")
        except Exception as e:
            logger.error("Unexpected error while dispatching step", execution_id=execution.id,
                         step_number=step_number, error=str(e), exc_info=True)
            return await self._record_failure(machine, execution, step_number, content,
                                              str(e), f"Step {step_number} failed: {e}")

        output = decode_step_output(body)
        if output.is_error:
            logger.warning("Agent reported step error", execution_id=execution.id,
                           step_number=step_number, error=output.content)
            return await self._record_failure(machine, execution, step_number, content,
                                              output.content, output.content, output)

        if not await machine.record_step_success(execution, step_number, content, output):
            return DispatchOutcome.SKIPPED

        if execution.status == ExecutionStatus.COMPLETED.value:
            logger.info("Execution completed", execution_id=execution.id, total_steps=len(steps))
            await self._schedule_next(machine.repository, execution)
            return DispatchOutcome.COMPLETED

        logger.info("Step completed", execution_id=execution.id,
                    step_number=step_number, total_steps=len(steps))
        return DispatchOutcome.ADVANCED

    async def _record_failure(
        self,
        machine: ExecutionStateMachine,
        execution: FlowExecution,
        step_number: int,
        content: str,
        error: str,
        error_message: str,
        output=None,
    ) -> DispatchOutcome:
        if not await machine.record_step_failure(execution, step_number, content, error, error_message, output):
            return DispatchOutcome.SKIPPED
        await self._schedule_next(machine.repository, execution)
        return DispatchOutcome.FAILED

    async def _schedule_next(self, repository: FlowExecutionRepository, execution: FlowExecution) -> None:
        if not execution.is_recurring:
            return
        engine = RecurrenceEngine(repository, fallback_minutes=self.settings.recurrence_fallback_minutes)
        try:
            await engine.schedule_next(execution)
        except Exception as e:
            logger.error("Failed to schedule next occurrence",
                         execution_id=execution.id, error=str(e), exc_info=True)

    def build_payload(self, execution: FlowExecution, step_number: int, content: str) -> Dict[str, Any]:
        steps = execution.steps or []
        previous_steps: List[Dict[str, Any]] = [
            {
                "step_number": r.get("step_number"),
                "content": r.get("content"),
                "response": r.get("response"),
                "status": r.get("status"),
            }
            for r in execution.results or []
            if r.get("step_number", 0) < step_number
        ]
        return {
            "thread_id": execution.execution_thread_id or execution.thread_id,
            "automation_id": execution.automation_id,
            "user_id": execution.user_id,
            "step_content": content,
            "step_number": step_number,
            "current_step": execution.current_step,
            "total_steps": len(steps),
            "project_context": execution.project_context or "",
            "execution_id": execution.id,
            "timestamp": datetime.utcnow().isoformat(),
            "webhook_call_id": str(uuid.uuid4()),
            "previous_steps": previous_steps,
            "all_steps": [
                {"step_number": i + 1, "content": step_content(step)}
                for i, step in enumerate(steps)
            ],
        }
