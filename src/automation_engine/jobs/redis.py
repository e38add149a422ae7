"""Redis list-backed job queue for multi-process workers."""
from typing import Optional
import redis.asyncio as redis
from pydantic import ValidationError
from automation_engine.config.logging import get_logger
from automation_engine.jobs.base import AutomationJob, JobQueue

logger = get_logger("worker")


class RedisJobQueue(JobQueue):
    """Jobs are LPUSHed and BRPOPed, so the list behaves as a FIFO."""

    def __init__(self, redis_url: str, name: str = "automation-scheduler", client: Optional[redis.Redis] = None):
        super().__init__(name)
        self.redis_url = redis_url
        self.key = f"jobs:{name}"
        self._redis: Optional[redis.Redis] = client

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.Redis.from_url(self.redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("Connected to job queue", queue=self.name)

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def enqueue(self, job: AutomationJob) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.key, job.to_json())
        logger.debug("Job enqueued", queue=self.name, execution_id=job.execution_id)

    async def dequeue(self, timeout: float = 1.0) -> Optional[AutomationJob]:
        if not self._redis:
            await self.connect()
        result = await self._redis.brpop([self.key], timeout=timeout)
        if not result:
            return None

        _, message = result
        try:
            return AutomationJob.from_json(message)
        except ValidationError as e:
            logger.error("Dropping malformed job", queue=self.name, error=str(e))
            return None

    async def size(self) -> int:
        if not self._redis:
            await self.connect()
        return await self._redis.llen(self.key)
