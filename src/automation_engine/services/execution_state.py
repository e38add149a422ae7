"""Execution state machine.

Owns every status transition of a flow execution and the step result
bookkeeping that goes with it. Writes are conditional on the status and
version last read; a rejected write means another actor advanced the row,
and the caller simply stops.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from automation_engine.clients.agent_response import StepOutput
from automation_engine.config.logging import get_logger
from automation_engine.database.repositories import FlowExecutionRepository
from automation_engine.models.flow_execution import (
    ExecutionStatus,
    FlowExecution,
    StepResultStatus,
)

logger = get_logger("dispatch")

ALLOWED_TRANSITIONS = {
    ExecutionStatus.SCHEDULED: {ExecutionStatus.PENDING, ExecutionStatus.PAUSED,
                                ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED,
                              ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
    ExecutionStatus.RUNNING: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED,
                              ExecutionStatus.CANCELLED, ExecutionStatus.STOPPED},
    ExecutionStatus.PAUSED: {ExecutionStatus.SCHEDULED, ExecutionStatus.CANCELLED},
    ExecutionStatus.STOPPED: {ExecutionStatus.CANCELLED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
    ExecutionStatus.CANCELLED: set(),
}

MAX_TERMINATE_ATTEMPTS = 3


def can_transition(current: str, target: ExecutionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(ExecutionStatus(current), set())


def find_result(results: List[Dict[str, Any]], step_number: int) -> Optional[Dict[str, Any]]:
    for result in results or []:
        if result.get("step_number") == step_number:
            return result
    return None


def make_step_result(
    step_number: int,
    content: str,
    status: StepResultStatus,
    response: Optional[str] = None,
    error: Optional[str] = None,
    raw_response: Optional[str] = None,
) -> Dict[str, Any]:
    record = {
        "step_number": step_number,
        "content": content,
        "response": response,
        "status": status.value,
        "timestamp": datetime.utcnow().isoformat(),
        "error": error,
    }
    if raw_response is not None:
        record["raw_response"] = raw_response
    return record


def replace_result(results: List[Dict[str, Any]], record: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Copy of ``results`` with ``record`` in place of the entry for the same step."""
    updated = [dict(r) for r in results or [] if r.get("step_number") != record["step_number"]]
    updated.append(record)
    return sorted(updated, key=lambda r: r["step_number"])


def close_pending_results(results: List[Dict[str, Any]], error: str) -> List[Dict[str, Any]]:
    closed = []
    for result in results or []:
        result = dict(result)
        if result.get("status") == StepResultStatus.PENDING.value:
            result["status"] = StepResultStatus.FAILED.value
            result["error"] = error
            result["timestamp"] = datetime.utcnow().isoformat()
        closed.append(result)
    return closed


def step_content(step: Any) -> str:
    if isinstance(step, dict):
        return str(step.get("content", ""))
    return str(step)


class ExecutionStateMachine:
    def __init__(self, repository: FlowExecutionRepository):
        self.repository = repository

    async def reload(self, execution: FlowExecution) -> Optional[FlowExecution]:
        return await self.repository.get_by_id(execution.id)

    async def promote_scheduled(self, execution: FlowExecution) -> bool:
        """scheduled -> pending, stamping started_at."""
        ok = await self.repository.conditional_update(
            execution.id,
            expected_status=ExecutionStatus.SCHEDULED,
            expected_version=execution.version,
            status=ExecutionStatus.PENDING,
            started_at=datetime.utcnow(),
        )
        if ok:
            await self.reload(execution)
            logger.info("Promoted scheduled execution to pending", execution_id=execution.id)
        else:
            logger.info("Scheduled execution was changed by another actor", execution_id=execution.id)
        return ok

    async def claim_step(self, execution: FlowExecution, step_number: int, content: str) -> bool:
        """Persist the pending marker for ``step_number`` and move the run to running.

        Succeeds only if nobody wrote the row since it was read, and the
        re-read row carries our marker as the only pending record for the step.
        """
        results = replace_result(
            execution.results,
            make_step_result(step_number, content, StepResultStatus.PENDING),
        )
        values = {"results": results, "status": ExecutionStatus.RUNNING}
        if execution.started_at is None:
            values["started_at"] = datetime.utcnow()

        ok = await self.repository.conditional_update(
            execution.id,
            expected_status=[ExecutionStatus.PENDING, ExecutionStatus.RUNNING],
            expected_version=execution.version,
            **values
        )
        if not ok:
            logger.info("Step claim rejected, execution advanced by another actor",
                        execution_id=execution.id, step_number=step_number)
            return False

        expected_version = execution.version + 1
        refreshed = await self.reload(execution)
        # No transaction may stay open across the agent call
        await self.repository.release()
        if refreshed is None or refreshed.status != ExecutionStatus.RUNNING.value \
                or refreshed.version != expected_version:
            logger.info("Execution changed right after claim, abandoning step",
                        execution_id=execution.id, step_number=step_number)
            return False

        marker = find_result(refreshed.results, step_number)
        return marker is not None and marker.get("status") == StepResultStatus.PENDING.value

    async def record_step_success(
        self, execution: FlowExecution, step_number: int, content: str, output: StepOutput
    ) -> bool:
        record = make_step_result(
            step_number, content, StepResultStatus.COMPLETED,
            response=output.content, raw_response=output.raw,
        )
        values = {
            "results": replace_result(execution.results, record),
            "current_step": step_number,
        }
        if step_number >= len(execution.steps or []):
            values["status"] = ExecutionStatus.COMPLETED
            values["completed_at"] = datetime.utcnow()
        return await self._write_step_result(execution, step_number, values)

    async def record_step_failure(
        self,
        execution: FlowExecution,
        step_number: int,
        content: str,
        error: str,
        error_message: str,
        output: Optional[StepOutput] = None,
    ) -> bool:
        record = make_step_result(
            step_number, content, StepResultStatus.FAILED,
            response=output.content if output else None,
            error=error,
            raw_response=output.raw if output else None,
        )
        values = {
            "results": replace_result(execution.results, record),
            "current_step": step_number,
            "status": ExecutionStatus.FAILED,
            "error_message": error_message,
            "completed_at": datetime.utcnow(),
        }
        return await self._write_step_result(execution, step_number, values)

    async def _write_step_result(self, execution: FlowExecution, step_number: int, values: Dict[str, Any]) -> bool:
        ok = await self.repository.conditional_update(
            execution.id,
            expected_status=ExecutionStatus.RUNNING,
            expected_version=execution.version,
            **values
        )
        if ok:
            await self.reload(execution)
        else:
            logger.warning("Step result discarded, execution changed while the agent was working",
                           execution_id=execution.id, step_number=step_number)
        return ok

    async def complete(self, execution: FlowExecution) -> bool:
        return await self._terminate(execution, ExecutionStatus.COMPLETED, None)

    async def fail(self, execution: FlowExecution, message: str) -> bool:
        return await self._terminate(execution, ExecutionStatus.FAILED, message)

    async def cancel(self, execution: FlowExecution, message: str, **values: Any) -> bool:
        return await self._terminate(execution, ExecutionStatus.CANCELLED, message, **values)

    async def _terminate(
        self, execution: FlowExecution, target: ExecutionStatus, message: Optional[str], **extra: Any
    ) -> bool:
        current = execution
        for _ in range(MAX_TERMINATE_ATTEMPTS):
            if not can_transition(current.status, target):
                logger.info("Transition not allowed",
                            execution_id=current.id, status=current.status, target=target.value)
                return False

            values = {"status": target, "completed_at": datetime.utcnow(), **extra}
            if message is not None:
                values["error_message"] = message
                values["results"] = close_pending_results(current.results, message)

            ok = await self.repository.conditional_update(
                current.id,
                expected_status=current.status,
                expected_version=current.version,
                **values
            )
            refreshed = await self.reload(current)
            if ok:
                logger.info("Execution transitioned",
                            execution_id=current.id, status=target.value, error_message=message)
                return True
            if refreshed is None:
                return False
            current = refreshed
        return False

    async def transition(self, execution: FlowExecution, target: ExecutionStatus, **values: Any) -> bool:
        """Non-terminal transition used by schedule management (pause, resume)."""
        if not can_transition(execution.status, target):
            return False
        ok = await self.repository.conditional_update(
            execution.id,
            expected_status=execution.status,
            expected_version=execution.version,
            status=target,
            **values
        )
        if ok:
            await self.reload(execution)
        return ok
