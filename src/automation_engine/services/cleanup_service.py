"""Sweeps that reclaim executions a crashed or stuck dispatcher left behind."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from automation_engine.config.logging import get_logger
from automation_engine.config.settings import Settings
from automation_engine.database.connection import Database
from automation_engine.database.repositories import FlowExecutionRepository
from automation_engine.services.execution_state import ExecutionStateMachine
from automation_engine.services.recurrence import RecurrenceEngine

logger = get_logger("scheduler")


@dataclass
class CleanupSummary:
    stale_running: int = 0
    stale_scheduled: int = 0


class CleanupService:
    def __init__(self, database: Database, settings: Settings):
        self.database = database
        self.settings = settings

    async def run(self, now: Optional[datetime] = None) -> CleanupSummary:
        now = now or datetime.utcnow()
        summary = CleanupSummary()

        try:
            summary.stale_running = await self.sweep_stale_running(now)
        except Exception as e:
            logger.error("Stale running sweep failed", error=str(e), exc_info=True)

        try:
            summary.stale_scheduled = await self.sweep_stale_scheduled(now)
        except Exception as e:
            logger.error("Stale scheduled sweep failed", error=str(e), exc_info=True)

        if summary.stale_running or summary.stale_scheduled:
            logger.info("Cleanup completed",
                        stale_running=summary.stale_running,
                        stale_scheduled=summary.stale_scheduled)
        return summary

    async def sweep_stale_running(self, now: datetime) -> int:
        """Fail ``running`` executions created more than the running timeout ago."""
        cutoff = now - timedelta(minutes=self.settings.running_timeout_minutes)
        cleaned = 0

        async with self.database.session() as session:
            repository = FlowExecutionRepository(session)
            machine = ExecutionStateMachine(repository)

            for execution in await repository.get_stale_running(cutoff):
                elapsed_minutes = int((now - execution.created_at).total_seconds() // 60)
                message = (f"Execution timed out after {elapsed_minutes} minutes "
                           f"and was automatically cleaned up")
                if await machine.fail(execution, message):
                    cleaned += 1
                    logger.warning("Cleaned up stale running execution",
                                   execution_id=execution.id,
                                   automation_id=execution.automation_id,
                                   current_step=execution.current_step,
                                   elapsed_minutes=elapsed_minutes)
                    await self._schedule_next(repository, execution)
        return cleaned

    async def sweep_stale_scheduled(self, now: datetime) -> int:
        """Fail ``scheduled`` executions that are too old and never fired."""
        cutoff = now - timedelta(minutes=self.settings.scheduled_timeout_minutes)
        cleaned = 0

        async with self.database.session() as session:
            repository = FlowExecutionRepository(session)
            machine = ExecutionStateMachine(repository)

            for execution in await repository.get_stale_scheduled(cutoff):
                if await machine.fail(execution, "Scheduled execution was too old and automatically cleaned up"):
                    cleaned += 1
                    logger.warning("Cleaned up stale scheduled execution",
                                   execution_id=execution.id,
                                   automation_id=execution.automation_id,
                                   fire_time=execution.fire_time.isoformat() if execution.fire_time else None)
                    await self._schedule_next(repository, execution)
        return cleaned

    async def _schedule_next(self, repository: FlowExecutionRepository, execution) -> None:
        if not execution.is_recurring:
            return
        engine = RecurrenceEngine(repository, fallback_minutes=self.settings.recurrence_fallback_minutes)
        try:
            await engine.schedule_next(execution)
        except Exception as e:
            logger.error("Failed to schedule next occurrence after cleanup",
                         execution_id=execution.id, error=str(e))
