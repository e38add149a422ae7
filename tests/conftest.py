import json
from datetime import datetime, timedelta
import httpx
import pytest
import pytest_asyncio
from automation_engine.clients.agent_client import AgentWebhookClient
from automation_engine.config.settings import Settings
from automation_engine.database.connection import Database
from automation_engine.database.repositories import AutomationRepository, FlowExecutionRepository
from automation_engine.models.flow_execution import ExecutionStatus
from automation_engine.utils.backoff import AttemptBackoff

AGENT_URL = "http://agent.test/webhook"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        agent_webhook_url=AGENT_URL,
        agent_poll_interval_seconds=0,
        agent_retry_base_delay_seconds=0,
        enable_scheduler=False,
        enable_worker=False,
        dispatch_mode="tick",
        api_key=None,
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.init_db()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def session(database):
    async with database.session() as session:
        yield session


class FakeAgent:
    """Execution agent double answering each step from a per-step response table."""

    def __init__(self, responses=None, default="ok"):
        self.responses = responses or {}
        self.default = default
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append(payload)
        response = self.responses.get(payload.get("step_number"), self.default)
        if isinstance(response, httpx.Response):
            return httpx.Response(response.status_code, content=response.content)
        if isinstance(response, (dict, list)):
            return httpx.Response(200, json=response)
        return httpx.Response(200, text=response)

    def client(self, **kwargs) -> AgentWebhookClient:
        return make_agent_client(self.handler, **kwargs)


def make_agent_client(handler, **kwargs) -> AgentWebhookClient:
    options = dict(
        webhook_url=AGENT_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        poll_interval=0,
        backoff=AttemptBackoff(base_delay=0),
    )
    options.update(kwargs)
    return AgentWebhookClient(**options)


@pytest.fixture
def fake_agent():
    return FakeAgent()


async def register_automation(database, automation_id="auto-1", enabled=True):
    async with database.session() as session:
        return await AutomationRepository(session).upsert(
            automation_id, thread_id=f"thread-{automation_id}", user_id="user-1", name="Test", enabled=enabled
        )


async def create_execution(database, automation_id="auto-1", steps=3, **fields):
    values = dict(
        thread_id=f"thread-{automation_id}",
        automation_id=automation_id,
        user_id="user-1",
        status=ExecutionStatus.PENDING,
        steps=[{"content": f"Step {i + 1}"} for i in range(steps)],
        project_context="Test project",
        results=[],
    )
    values.update(fields)
    async with database.session() as session:
        return await FlowExecutionRepository(session).create(**values)


async def load_execution(database, execution_id):
    async with database.session() as session:
        return await FlowExecutionRepository(session).get_by_id(execution_id)


def minutes_ago(minutes):
    return datetime.utcnow() - timedelta(minutes=minutes)
