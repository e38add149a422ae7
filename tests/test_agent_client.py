import json
import httpx
import pytest
from automation_engine.api.exceptions import AgentDispatchError, AgentTaskFailedError
from automation_engine.utils.backoff import AttemptBackoff
from conftest import AGENT_URL, make_agent_client

PAYLOAD = {"step_number": 1, "step_content": "Do it", "execution_id": "exec-1"}


class ScriptedAgent:
    """Replays queued responses for POSTs and status polls, recording every request."""

    def __init__(self, posts, polls=None):
        self.posts = list(posts)
        self.polls = list(polls or [])
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            response = self.posts.pop(0)
        else:
            response = self.polls.pop(0) if self.polls else httpx.Response(200, json={"status": "running"})
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def post_bodies(self):
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]

    @property
    def poll_urls(self):
        return [str(r.url) for r in self.requests if r.method == "GET"]


@pytest.mark.asyncio
async def test_plain_body_is_synchronous_result():
    agent = ScriptedAgent(posts=[httpx.Response(200, text="step done")])

    async with make_agent_client(agent.handler) as client:
        result = await client.dispatch(PAYLOAD)

    assert result == "step done"
    body = agent.post_bodies[0]
    assert body["async"] is True
    assert body["return_task_id"] is True
    assert body["step_content"] == "Do it"


@pytest.mark.asyncio
async def test_task_id_is_polled_until_completed():
    agent = ScriptedAgent(
        posts=[httpx.Response(200, json={"taskId": "t-9"})],
        polls=[
            httpx.Response(200, json={"status": "pending"}),
            httpx.Response(200, json={"status": "running"}),
            httpx.Response(200, json={"status": "completed", "result": "final answer"}),
        ],
    )

    async with make_agent_client(agent.handler) as client:
        result = await client.dispatch(PAYLOAD)

    assert result == "final answer"
    assert agent.poll_urls == [f"{AGENT_URL}/status/t-9"] * 3


@pytest.mark.asyncio
async def test_poll_errors_are_retried_within_the_loop():
    agent = ScriptedAgent(
        posts=[httpx.Response(200, json={"task_id": "t-1"})],
        polls=[
            httpx.ConnectError("connection reset"),
            httpx.Response(502, text="bad gateway"),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json={"status": "completed", "response": "ok"}),
        ],
    )

    async with make_agent_client(agent.handler) as client:
        result = await client.dispatch(PAYLOAD)

    assert result == "ok"
    assert len(agent.post_bodies) == 1


@pytest.mark.asyncio
async def test_failed_task_is_not_retried():
    agent = ScriptedAgent(
        posts=[httpx.Response(200, json={"task_id": "t-1"})],
        polls=[httpx.Response(200, json={"status": "failed", "error": "agent crashed"})],
    )

    async with make_agent_client(agent.handler) as client:
        with pytest.raises(AgentTaskFailedError, match="agent crashed"):
            await client.dispatch(PAYLOAD)

    assert len(agent.post_bodies) == 1


@pytest.mark.asyncio
async def test_final_attempt_falls_back_to_synchronous_call():
    agent = ScriptedAgent(posts=[
        httpx.Response(500, text="error"),
        httpx.ConnectTimeout("timed out"),
        httpx.Response(504, text="gateway timeout"),
        httpx.Response(200, text="sync result"),
    ])

    async with make_agent_client(agent.handler, max_attempts=3) as client:
        result = await client.dispatch(PAYLOAD)

    assert result == "sync result"
    bodies = agent.post_bodies
    assert len(bodies) == 4
    assert all(b.get("async") is True for b in bodies[:3])
    assert "async" not in bodies[3]


@pytest.mark.asyncio
async def test_poll_envelope_expiry_counts_as_failed_attempt():
    agent = ScriptedAgent(posts=[
        httpx.Response(200, json={"task_id": "slow"}),
        httpx.Response(200, text="sync result"),
    ])

    async with make_agent_client(agent.handler, max_attempts=1, poll_interval=0.01,
                                 max_poll_seconds=0.05) as client:
        result = await client.dispatch(PAYLOAD)

    assert result == "sync result"
    assert len(agent.poll_urls) >= 1


@pytest.mark.asyncio
async def test_synchronous_fallback_failure_raises():
    agent = ScriptedAgent(posts=[
        httpx.Response(500, text="error"),
        httpx.Response(500, text="still broken"),
    ])

    async with make_agent_client(agent.handler, max_attempts=1) as client:
        with pytest.raises(AgentDispatchError, match="status 500"):
            await client.dispatch(PAYLOAD)


def test_backoff_grows_with_attempt_and_is_capped():
    backoff = AttemptBackoff(base_delay=2.0, max_delay=5.0)

    assert backoff.delay_for(1) == 2.0
    assert backoff.delay_for(2) == 4.0
    assert backoff.delay_for(3) == 5.0


@pytest.mark.asyncio
async def test_zero_backoff_does_not_sleep():
    await AttemptBackoff(base_delay=0).wait(3)
