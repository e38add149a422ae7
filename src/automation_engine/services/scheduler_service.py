import asyncio
from collections import Counter, OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from automation_engine.api.exceptions import StoreUnavailableError
from automation_engine.config.logging import get_logger
from automation_engine.config.settings import Settings
from automation_engine.database.connection import Database
from automation_engine.database.repositories import FlowExecutionRepository
from automation_engine.jobs.base import AutomationJob, JobQueue
from automation_engine.models.flow_execution import ExecutionStatus, FlowExecution
from automation_engine.services.cleanup_service import CleanupService
from automation_engine.services.step_dispatcher import DispatchOutcome, StepDispatcher

logger = get_logger("scheduler")


@dataclass
class TickSummary:
    processed: int = 0
    automations: int = 0
    stale_running: int = 0
    stale_scheduled: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return asdict(self)


def is_ready(execution: FlowExecution, now: datetime) -> bool:
    if execution.status == ExecutionStatus.SCHEDULED.value:
        fire_time = execution.fire_time
        return fire_time is not None and now >= fire_time
    return execution.status in (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)


def select_per_automation(executions: List[FlowExecution], now: datetime) -> List[FlowExecution]:
    """Oldest ready execution per automation; ``executions`` must be ordered by creation time."""
    selected: "OrderedDict[str, FlowExecution]" = OrderedDict()
    for execution in executions:
        if execution.automation_id in selected:
            continue
        if is_ready(execution, now):
            selected[execution.automation_id] = execution
    return list(selected.values())


class SchedulerService:
    """Periodic driver: sweep stale rows, pick ready work, dispatch one step per automation."""

    def __init__(
        self,
        database: Database,
        dispatcher: StepDispatcher,
        settings: Settings,
        job_queue: Optional[JobQueue] = None,
    ):
        self.database = database
        self.dispatcher = dispatcher
        self.settings = settings
        self.job_queue = job_queue
        self.cleanup = CleanupService(database, settings)
        self.running = False
        self.tick_interval = settings.tick_interval_seconds
        self.current_cycle = 0
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_dispatches)
        # Dispatches started by the periodic loop, keyed by execution id
        self._in_flight: Dict[str, asyncio.Task] = {}

    async def start(self):
        """Tick on a fixed period without waiting for the dispatches a tick starts."""
        self.running = True
        logger.info("Starting scheduler", interval=self.tick_interval,
                    max_concurrent_dispatches=self.settings.max_concurrent_dispatches)

        while self.running:
            cycle_start_time = datetime.now()
            self.current_cycle += 1

            try:
                await self.tick(wait=False)
            except Exception as e:
                logger.error("Error during scheduler tick", cycle=self.current_cycle, error=str(e))

            cycle_duration = (datetime.now() - cycle_start_time).total_seconds()
            logger.info("Scheduler tick completed",
                        cycle=self.current_cycle,
                        duration_seconds=round(cycle_duration, 2))

            await asyncio.sleep(self.tick_interval)

    def stop(self):
        self.running = False
        logger.info("Stopping scheduler")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight dispatches, cancelling those still running after ``timeout``."""
        if not self._in_flight:
            return
        _, pending = await asyncio.wait(set(self._in_flight.values()), timeout=timeout)
        if pending:
            logger.warning("Cancelling unfinished dispatches", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def tick(self, now: Optional[datetime] = None, wait: bool = True) -> TickSummary:
        """One pass: sweep, select ready work, dispatch or enqueue it.

        With ``wait=False`` the dispatches run as background tasks and the
        summary reports how many were started. Executions this scheduler is
        already dispatching are not started again.
        """
        now = now or datetime.utcnow()
        summary = TickSummary()

        cleanup = await self.cleanup.run(now)
        summary.stale_running = cleanup.stale_running
        summary.stale_scheduled = cleanup.stale_scheduled

        try:
            async with self.database.session() as session:
                executions = await FlowExecutionRepository(session).get_active_executions()
        except Exception as e:
            logger.error("Failed to select executions", error=str(e))
            raise StoreUnavailableError(f"Failed to fetch executions: {e}") from e

        selected = select_per_automation(executions, now)
        summary.automations = len(selected)
        if not selected:
            logger.debug("No ready executions this tick", active=len(executions))
            return summary

        logger.info("Processing ready executions",
                    active=len(executions),
                    selected=len(selected),
                    automations=summary.automations)

        if self.job_queue is not None and self.settings.uses_job_queue:
            for execution in selected:
                await self.job_queue.enqueue(AutomationJob.for_execution(execution))
            summary.processed = len(selected)
            summary.outcomes = {"enqueued": len(selected)}
            return summary

        if not wait:
            started = 0
            for execution in selected:
                if execution.id in self._in_flight:
                    continue
                self._launch(execution)
                started += 1
            summary.processed = started
            summary.outcomes = {"dispatched": started}
            logger.info("Tick dispatches started", started=started, in_flight=self.in_flight)
            return summary

        results = await asyncio.gather(
            *(self._dispatch(execution.id) for execution in selected),
            return_exceptions=True
        )

        outcomes = Counter()
        for execution, result in zip(selected, results):
            if isinstance(result, Exception):
                logger.error("Failed to process execution",
                             execution_id=execution.id,
                             automation_id=execution.automation_id,
                             error=str(result))
                outcomes["error"] += 1
            else:
                outcomes[result.value] += 1

        summary.processed = len(selected)
        summary.outcomes = dict(outcomes)
        logger.info("Tick dispatch finished", processed=summary.processed, outcomes=summary.outcomes)
        return summary

    async def _dispatch(self, execution_id: str) -> DispatchOutcome:
        async with self._semaphore:
            return await self.dispatcher.process(execution_id)

    def _launch(self, execution: FlowExecution) -> None:
        execution_id = execution.id
        task = asyncio.create_task(self._run_dispatch(execution_id, execution.automation_id),
                                   name=f"dispatch_{execution_id}")
        self._in_flight[execution_id] = task
        task.add_done_callback(lambda _: self._in_flight.pop(execution_id, None))

    async def _run_dispatch(self, execution_id: str, automation_id: str) -> Optional[DispatchOutcome]:
        try:
            outcome = await self._dispatch(execution_id)
        except Exception as e:
            logger.error("Failed to process execution",
                         execution_id=execution_id,
                         automation_id=automation_id,
                         error=str(e),
                         exc_info=True)
            return None
        logger.info("Dispatch finished", execution_id=execution_id, outcome=outcome.value)
        return outcome
