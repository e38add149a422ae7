import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI
from automation_engine.api.exceptions import (
    AutomationEngineException,
    automation_engine_exception_handler,
    general_exception_handler,
)
from automation_engine.api.routes import create_router
from automation_engine.clients.agent_client import AgentWebhookClient
from automation_engine.config.logging import get_logger
from automation_engine.config.settings import Settings
from automation_engine.database.connection import Database
from automation_engine.jobs.base import JobQueue
from automation_engine.jobs.factory import get_job_queue
from automation_engine.services.scheduler_service import SchedulerService
from automation_engine.services.step_dispatcher import StepDispatcher
from automation_engine.services.worker_service import AutomationWorker

logger = get_logger("automation_api")


async def _stop_task(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def create_app(
    settings: Settings,
    database: Optional[Database] = None,
    agent_client: Optional[AgentWebhookClient] = None,
    job_queue: Optional[JobQueue] = None,
    start_background: bool = True,
) -> FastAPI:
    """Build the API with explicitly owned handles.

    The database, agent client and job queue are opened by the lifespan and
    closed when it exits. ``start_background`` controls the periodic
    scheduler loop and the queue worker.
    """
    database = database or Database(settings.database_url, echo=settings.debug)
    agent_client = agent_client or AgentWebhookClient.from_settings(settings)
    if job_queue is None and (settings.uses_job_queue or settings.enable_worker):
        job_queue = get_job_queue(settings)

    dispatcher = StepDispatcher(database, agent_client, settings)
    scheduler = SchedulerService(database, dispatcher, settings, job_queue=job_queue)
    worker = None
    if job_queue is not None:
        worker = AutomationWorker(job_queue, dispatcher, concurrency=settings.worker_concurrency)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Automation Engine",
                    dispatch_mode=settings.dispatch_mode,
                    job_queue=job_queue.name if job_queue else None)

        await database.init_db()
        if job_queue is not None:
            await job_queue.connect()

        tasks: List[asyncio.Task] = []
        if start_background and settings.enable_scheduler:
            tasks.append(asyncio.create_task(scheduler.start(), name="scheduler"))
        if start_background and settings.enable_worker and worker is not None:
            tasks.append(asyncio.create_task(worker.start(), name="worker"))

        try:
            yield
        finally:
            logger.info("Shutting down Automation Engine")
            scheduler.stop()
            if worker is not None:
                worker.stop()
            for task in tasks:
                await _stop_task(task)
            # Nothing may still use the client or the store once they are closed
            await scheduler.drain(timeout=settings.agent_request_timeout_seconds)
            if worker is not None:
                await worker.drain(timeout=settings.agent_request_timeout_seconds)

            await agent_client.aclose()
            if job_queue is not None:
                await job_queue.disconnect()
            await database.dispose()

    app = FastAPI(
        title="Automation Engine",
        description="Executes multi-step automations against an external execution agent",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.database = database
    app.state.agent_client = agent_client
    app.state.job_queue = job_queue
    app.state.dispatcher = dispatcher
    app.state.scheduler = scheduler
    app.state.worker = worker

    app.add_exception_handler(AutomationEngineException, automation_engine_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    app.include_router(create_router())

    return app
