from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from automation_engine.api.exceptions import (
    AccessDeniedError,
    AutomationDisabledError,
    AutomationNotFoundError,
    ExecutionConflictError,
    ExecutionNotFoundError,
    InvalidScheduleError,
)
from automation_engine.config.logging import get_logger
from automation_engine.config.settings import Settings
from automation_engine.database.repositories import AutomationRepository, FlowExecutionRepository
from automation_engine.jobs.base import AutomationJob, JobQueue
from automation_engine.models.automation import Automation
from automation_engine.models.flow_execution import ExecutionStatus, FlowExecution
from automation_engine.services.execution_state import ExecutionStateMachine
from automation_engine.services.recurrence import RecurrenceEngine, next_fire_time

logger = get_logger("automation_api")


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class AutomationService:
    """Entry-point operations: create, inspect, stop and manage executions.

    Nothing here dispatches steps; new work is picked up by the next scheduler
    tick or, in queue mode, by a worker.
    """

    def __init__(self, session: AsyncSession, settings: Settings, job_queue: Optional[JobQueue] = None):
        self.session = session
        self.settings = settings
        self.job_queue = job_queue
        self.executions = FlowExecutionRepository(session)
        self.automations = AutomationRepository(session)
        self.state = ExecutionStateMachine(self.executions)

    async def _validate_can_start(self, automation_id: str) -> Automation:
        automation = await self.automations.get_by_id(automation_id)
        if automation is None:
            raise AutomationNotFoundError()
        if not automation.enabled:
            raise AutomationDisabledError()

        existing = await self.executions.get_non_terminal_for_automation(automation_id)
        if existing is not None:
            logger.info("Rejecting request, automation already has a live execution",
                        automation_id=automation_id,
                        execution_id=existing.id,
                        status=existing.status)
            raise ExecutionConflictError("Automation already running or scheduled", execution_id=existing.id)
        return automation

    async def execute_now(
        self,
        thread_id: str,
        automation_id: str,
        user_id: str,
        steps: List[Dict[str, Any]],
        project_context: Optional[str] = None,
    ) -> FlowExecution:
        await self._validate_can_start(automation_id)

        execution = await self.executions.create(
            thread_id=thread_id,
            automation_id=automation_id,
            user_id=user_id,
            status=ExecutionStatus.PENDING,
            steps=steps,
            project_context=project_context,
            current_step=0,
            results=[],
            is_scheduled=False,
        )
        logger.info("Execution created", execution_id=execution.id,
                    automation_id=automation_id, total_steps=len(steps))

        if self.job_queue is not None and self.settings.uses_job_queue:
            await self.job_queue.enqueue(AutomationJob.for_execution(execution))
            logger.info("Execution enqueued", execution_id=execution.id, queue=self.job_queue.name)
        return execution

    async def schedule(
        self,
        thread_id: str,
        automation_id: str,
        user_id: str,
        steps: List[Dict[str, Any]],
        project_context: Optional[str] = None,
        cron_expression: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
        has_end_time: bool = False,
        end_time: Optional[datetime] = None,
    ) -> FlowExecution:
        if not cron_expression and scheduled_for is None:
            raise InvalidScheduleError("Either cronExpression or scheduledFor is required")

        fields: Dict[str, Any] = {}
        if cron_expression:
            try:
                fields["next_scheduled_run"] = next_fire_time(cron_expression, datetime.utcnow())
            except ValueError as e:
                raise InvalidScheduleError(f"Invalid cron expression: {e}")
            fields["cron_expression"] = cron_expression
        else:
            fields["scheduled_for"] = _to_naive_utc(scheduled_for)

        if has_end_time and end_time is None:
            raise InvalidScheduleError("endTime is required when hasEndTime is set")

        await self._validate_can_start(automation_id)

        execution = await self.executions.create(
            thread_id=thread_id,
            automation_id=automation_id,
            user_id=user_id,
            status=ExecutionStatus.SCHEDULED,
            steps=steps,
            project_context=project_context,
            current_step=0,
            results=[],
            is_scheduled=True,
            has_end_time=has_end_time,
            end_time=_to_naive_utc(end_time) if end_time else None,
            **fields
        )
        logger.info("Execution scheduled",
                    execution_id=execution.id,
                    automation_id=automation_id,
                    cron_expression=cron_expression,
                    fire_time=execution.fire_time.isoformat())
        return execution

    async def get_execution(self, execution_id: str) -> FlowExecution:
        execution = await self.executions.get_by_id(execution_id)
        if execution is None:
            raise ExecutionNotFoundError()
        return execution

    async def force_stop(self, execution_id: str, user_id: Optional[str] = None) -> FlowExecution:
        execution = await self.get_execution(execution_id)
        if user_id and execution.user_id != user_id:
            raise AccessDeniedError("You do not have permission to stop this execution")

        if execution.status not in (ExecutionStatus.RUNNING.value, ExecutionStatus.PENDING.value):
            raise ExecutionConflictError(
                f"Execution cannot be stopped, it is currently {execution.status}",
                execution_id=execution.id,
            )

        if not await self.state.cancel(execution, "Force stopped by user"):
            raise ExecutionConflictError(
                f"Execution cannot be stopped, it is currently {execution.status}",
                execution_id=execution.id,
            )
        logger.info("Execution force stopped", execution_id=execution.id)

        if execution.is_recurring:
            engine = RecurrenceEngine(self.executions, fallback_minutes=self.settings.recurrence_fallback_minutes)
            await engine.schedule_next(execution)
        return execution

    async def pause_schedule(self, execution_id: str) -> FlowExecution:
        execution = await self.get_execution(execution_id)
        if not await self.state.transition(execution, ExecutionStatus.PAUSED):
            raise ExecutionConflictError(
                f"Only scheduled executions can be paused, this one is {execution.status}",
                execution_id=execution.id,
            )
        logger.info("Schedule paused", execution_id=execution.id)
        return execution

    async def resume_schedule(self, execution_id: str) -> FlowExecution:
        execution = await self.get_execution(execution_id)
        values: Dict[str, Any] = {}
        if execution.is_recurring:
            # Skip occurrences missed while paused
            values["next_scheduled_run"] = next_fire_time(execution.cron_expression, datetime.utcnow())

        if not await self.state.transition(execution, ExecutionStatus.SCHEDULED, **values):
            raise ExecutionConflictError(
                f"Only paused executions can be resumed, this one is {execution.status}",
                execution_id=execution.id,
            )
        logger.info("Schedule resumed", execution_id=execution.id, fire_time=execution.fire_time)
        return execution

    async def delete_schedule(self, execution_id: str) -> FlowExecution:
        execution = await self.get_execution(execution_id)
        if not await self.state.cancel(execution, "Schedule deleted by user",
                                       is_scheduled=False, next_scheduled_run=None):
            raise ExecutionConflictError(
                f"Execution cannot be deleted, it is currently {execution.status}",
                execution_id=execution.id,
            )
        logger.info("Schedule deleted", execution_id=execution.id)
        return execution

    async def list_schedules(self, user_id: str) -> List[FlowExecution]:
        return await self.executions.get_scheduled_for_user(user_id)

    async def register_automation(
        self, automation_id: str, thread_id: str, user_id: str, name: Optional[str] = None, enabled: bool = True
    ) -> Automation:
        automation = await self.automations.upsert(automation_id, thread_id, user_id, name=name, enabled=enabled)
        logger.info("Automation registered", automation_id=automation_id, enabled=enabled)
        return automation

    async def set_automation_enabled(self, automation_id: str, enabled: bool) -> Automation:
        if not await self.automations.set_enabled(automation_id, enabled):
            raise AutomationNotFoundError()
        logger.info("Automation enabled flag changed", automation_id=automation_id, enabled=enabled)
        return await self.automations.get_by_id(automation_id)
