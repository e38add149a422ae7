import asyncio
from typing import Optional, Set
from automation_engine.config.logging import get_logger
from automation_engine.jobs.base import AutomationJob, JobQueue
from automation_engine.services.step_dispatcher import DispatchOutcome, StepDispatcher

logger = get_logger("worker")

# Outcomes after which the execution needs another step from this worker
CONTINUE_OUTCOMES = (DispatchOutcome.ADVANCED,)


class AutomationWorker:
    """Consumes automation jobs and drives each execution to a stopping point.

    The enqueuer decides readiness. The worker runs the same dispatcher as the
    scheduler tick, one step at a time, so both paths can act on the same rows.
    """

    def __init__(self, job_queue: JobQueue, dispatcher: StepDispatcher, concurrency: int = 5,
                 poll_timeout: float = 1.0):
        self.job_queue = job_queue
        self.dispatcher = dispatcher
        self.concurrency = concurrency
        self.poll_timeout = poll_timeout
        self.running = False
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Set[asyncio.Task] = set()

    async def start(self):
        self.running = True
        logger.info("Starting automation worker", queue=self.job_queue.name, concurrency=self.concurrency)

        while self.running:
            await self._semaphore.acquire()
            try:
                job = await self.job_queue.dequeue(timeout=self.poll_timeout)
            except Exception as e:
                self._semaphore.release()
                logger.error("Failed to read from job queue", queue=self.job_queue.name, error=str(e))
                await asyncio.sleep(self.poll_timeout)
                continue

            if job is None:
                self._semaphore.release()
                continue

            task = asyncio.create_task(self._run_job(job), name=f"job_{job.execution_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def stop(self):
        self.running = False
        logger.info("Stopping automation worker")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight jobs to finish, cancelling those still running after ``timeout``.

        A cancelled job leaves its pending marker behind; the stale-running
        sweep fails the execution later.
        """
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Cancelling unfinished jobs", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _run_job(self, job: AutomationJob) -> Optional[DispatchOutcome]:
        try:
            return await self.process_job(job)
        except Exception as e:
            logger.error("Job failed", execution_id=job.execution_id, error=str(e), exc_info=True)
            return None
        finally:
            self._semaphore.release()

    async def process_job(self, job: AutomationJob) -> DispatchOutcome:
        logger.info("Processing job", execution_id=job.execution_id, automation_id=job.automation_id)

        steps_run = 0
        while True:
            outcome = await self.dispatcher.process(job.execution_id)
            steps_run += 1
            if outcome not in CONTINUE_OUTCOMES:
                break

        logger.info("Job finished",
                    execution_id=job.execution_id,
                    outcome=outcome.value,
                    dispatcher_calls=steps_run)
        return outcome
