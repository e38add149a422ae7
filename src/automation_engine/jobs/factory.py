from automation_engine.config.settings import Settings
from automation_engine.jobs.base import JobQueue
from automation_engine.jobs.inmemory import InMemoryJobQueue


def get_job_queue(settings: Settings) -> JobQueue:
    backend = settings.job_queue_backend.lower()

    if backend == "memory":
        return InMemoryJobQueue(settings.job_queue_name)
    elif backend == "redis":
        from automation_engine.jobs.redis import RedisJobQueue

        return RedisJobQueue(settings.redis_url, settings.job_queue_name)
    else:
        raise ValueError(f"Unsupported job queue backend: {backend}")
