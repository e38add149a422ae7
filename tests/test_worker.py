import asyncio
import json
import httpx
import pytest
from automation_engine.jobs.base import AutomationJob
from automation_engine.jobs.factory import get_job_queue
from automation_engine.jobs.inmemory import InMemoryJobQueue
from automation_engine.models.flow_execution import ExecutionStatus
from automation_engine.services.step_dispatcher import DispatchOutcome, StepDispatcher
from automation_engine.services.worker_service import AutomationWorker
from conftest import (
    FakeAgent,
    create_execution,
    load_execution,
    make_agent_client,
    minutes_ago,
    register_automation,
)


def test_job_serializes_with_camel_case_keys():
    job = AutomationJob(execution_id="e-1", automation_id="a-1", steps=[{"content": "x"}], is_recurring=True)

    data = json.loads(job.to_json())

    assert data["executionId"] == "e-1"
    assert data["automationId"] == "a-1"
    assert data["isRecurring"] is True
    assert AutomationJob.from_json(job.to_json()) == job


def test_job_queue_factory(settings):
    assert isinstance(get_job_queue(settings), InMemoryJobQueue)
    with pytest.raises(ValueError, match="Unsupported job queue backend"):
        get_job_queue(settings.model_copy(update={"job_queue_backend": "kafka"}))


@pytest.mark.asyncio
async def test_in_memory_queue_is_fifo():
    queue = InMemoryJobQueue()
    await queue.enqueue(AutomationJob(execution_id="first"))
    await queue.enqueue(AutomationJob(execution_id="second"))

    assert await queue.size() == 2
    assert (await queue.dequeue()).execution_id == "first"
    assert (await queue.dequeue()).execution_id == "second"
    assert await queue.dequeue(timeout=0.01) is None


@pytest.mark.asyncio
async def test_process_job_runs_execution_to_completion(database, settings):
    await register_automation(database)
    execution = await create_execution(database, steps=3)
    agent = FakeAgent()
    worker = AutomationWorker(InMemoryJobQueue(), StepDispatcher(database, agent.client(), settings))

    outcome = await worker.process_job(AutomationJob.for_execution(execution))

    assert outcome == DispatchOutcome.COMPLETED
    finished = await load_execution(database, execution.id)
    assert finished.status == "completed"
    assert len(finished.results) == 3
    assert len(agent.calls) == 3


@pytest.mark.asyncio
async def test_process_job_stops_on_pending_marker(database, settings):
    await register_automation(database)
    execution = await create_execution(
        database, status=ExecutionStatus.RUNNING, started_at=minutes_ago(1),
        results=[{"step_number": 1, "content": "Step 1", "status": "pending"}],
    )
    agent = FakeAgent()
    worker = AutomationWorker(InMemoryJobQueue(), StepDispatcher(database, agent.client(), settings))

    assert await worker.process_job(AutomationJob.for_execution(execution)) == DispatchOutcome.SKIPPED
    assert agent.calls == []


@pytest.mark.asyncio
async def test_worker_consumes_queued_jobs(database, settings):
    await register_automation(database)
    await register_automation(database, automation_id="auto-2")
    first = await create_execution(database, steps=2)
    second = await create_execution(database, automation_id="auto-2", steps=1)
    queue = InMemoryJobQueue()
    agent = FakeAgent()
    worker = AutomationWorker(queue, StepDispatcher(database, agent.client(), settings),
                              concurrency=2, poll_timeout=0.01)

    await queue.enqueue(AutomationJob.for_execution(first))
    await queue.enqueue(AutomationJob.for_execution(second))
    task = asyncio.create_task(worker.start())

    for _ in range(200):
        statuses = [(await load_execution(database, e.id)).status for e in (first, second)]
        if statuses == ["completed", "completed"]:
            break
        await asyncio.sleep(0.01)

    worker.stop()
    await asyncio.wait_for(task, timeout=1)
    await worker.drain()

    assert statuses == ["completed", "completed"]
    assert len(agent.calls) == 3


@pytest.mark.asyncio
async def test_drain_cancels_jobs_that_outlive_the_timeout(database, settings):
    await register_automation(database)
    execution = await create_execution(database, steps=1)
    reached = asyncio.Event()
    never = asyncio.Event()

    async def hanging_handler(request):
        reached.set()
        await never.wait()
        return httpx.Response(200, text="unreachable")

    queue = InMemoryJobQueue()
    worker = AutomationWorker(queue, StepDispatcher(database, make_agent_client(hanging_handler), settings),
                              poll_timeout=0.01)
    await queue.enqueue(AutomationJob.for_execution(execution))
    loop = asyncio.create_task(worker.start())

    await asyncio.wait_for(reached.wait(), timeout=1)
    assert worker.in_flight == 1

    worker.stop()
    await asyncio.wait_for(loop, timeout=1)
    await worker.drain(timeout=0.05)

    assert worker.in_flight == 0
    # The claimed step is left for the stale-running sweep
    assert (await load_execution(database, execution.id)).status == "running"
