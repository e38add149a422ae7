"""In-process job queue, used in single-process deployments and tests."""
import asyncio
from typing import Optional
from automation_engine.jobs.base import AutomationJob, JobQueue


class InMemoryJobQueue(JobQueue):
    def __init__(self, name: str = "automation-scheduler"):
        super().__init__(name)
        self._queue: "asyncio.Queue[AutomationJob]" = asyncio.Queue()

    async def enqueue(self, job: AutomationJob) -> None:
        await self._queue.put(job)

    async def dequeue(self, timeout: float = 1.0) -> Optional[AutomationJob]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def size(self) -> int:
        return self._queue.qsize()
