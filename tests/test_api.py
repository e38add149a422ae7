import pytest
from fastapi.testclient import TestClient
from automation_engine.api.main import create_app
from automation_engine.database.connection import Database
from conftest import FakeAgent


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def make_client(settings, agent):
    def build(**overrides):
        app_settings = settings.model_copy(update=overrides) if overrides else settings
        app = create_app(
            app_settings,
            database=Database(app_settings.database_url),
            agent_client=agent.client(),
            start_background=False,
        )
        return TestClient(app)
    return build


@pytest.fixture
def client(make_client):
    with make_client() as test_client:
        yield test_client


def register(client, automation_id="auto-1", enabled=True):
    response = client.post("/automations", json={
        "automationId": automation_id,
        "threadId": f"thread-{automation_id}",
        "userId": "user-1",
        "name": "Daily report",
        "enabled": enabled,
    })
    assert response.status_code == 200
    return response.json()


def execution_body(automation_id="auto-1", **extra):
    body = {
        "threadId": f"thread-{automation_id}",
        "automationId": automation_id,
        "userId": "user-1",
        "steps": [{"content": "Collect data"}, {"content": "Write summary"}],
        "projectContext": "Quarterly report",
    }
    body.update(extra)
    return body


def test_execute_now_creates_pending_execution(client):
    register(client)

    response = client.post("/executions", json=execution_body())

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["status"] == "pending"

    status = client.get(f"/executions/{data['executionId']}").json()
    assert status["status"] == "pending"
    assert status["totalSteps"] == 2
    assert status["currentStep"] == 0
    assert status["results"] == []


def test_second_start_conflicts_with_live_execution(client):
    register(client)
    first = client.post("/executions", json=execution_body()).json()

    response = client.post("/executions", json=execution_body())

    assert response.status_code == 400
    assert response.json() == {
        "error": "Automation already running or scheduled",
        "executionId": first["executionId"],
    }


def test_unknown_and_disabled_automations_are_rejected(client):
    register(client, automation_id="auto-off", enabled=False)

    missing = client.post("/executions", json=execution_body(automation_id="nope"))
    disabled = client.post("/executions", json=execution_body(automation_id="auto-off"))

    assert missing.status_code == 400
    assert missing.json()["error"] == "Automation not found"
    assert disabled.status_code == 400
    assert disabled.json()["error"] == "This automation is disabled"


def test_request_without_steps_is_invalid(client):
    register(client)

    response = client.post("/executions", json=execution_body(steps=[]))

    assert response.status_code == 422


def test_schedule_recurring(client):
    register(client)

    response = client.post("/schedules", json=execution_body(cronExpression="*/5 * * * *"))

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "scheduled"
    assert data["isRecurring"] is True
    assert data["nextScheduledRun"] is not None
    assert data["scheduledFor"] is None


def test_schedule_one_time(client):
    register(client)

    response = client.post("/schedules", json=execution_body(scheduledFor="2030-01-01T09:00:00Z"))

    assert response.status_code == 200
    data = response.json()
    assert data["isRecurring"] is False
    assert data["scheduledFor"].startswith("2030-01-01T09:00:00")


def test_schedule_validation(client):
    register(client)

    invalid_cron = client.post("/schedules", json=execution_body(cronExpression="every day"))
    no_time = client.post("/schedules", json=execution_body())
    no_end = client.post("/schedules", json=execution_body(cronExpression="0 9 * * *", hasEndTime=True))

    assert invalid_cron.status_code == 400
    assert invalid_cron.json()["error"].startswith("Invalid cron expression")
    assert no_time.status_code == 400
    assert no_end.status_code == 400


def test_unknown_execution_is_404(client):
    response = client.get("/executions/does-not-exist")

    assert response.status_code == 404
    assert response.json() == {"error": "Execution not found"}


def test_trigger_runs_one_tick(client, agent):
    register(client)
    execution_id = client.post("/executions", json=execution_body()).json()["executionId"]

    response = client.post("/trigger")

    assert response.status_code == 200
    data = response.json()
    assert data["processed"] == 1
    assert data["automations"] == 1
    assert data["outcomes"] == {"advanced": 1}
    assert len(agent.calls) == 1

    status = client.get(f"/executions/{execution_id}").json()
    assert status["status"] == "running"
    assert status["results"][0]["status"] == "completed"


def test_force_stop(client):
    register(client)
    execution_id = client.post("/executions", json=execution_body()).json()["executionId"]

    response = client.post(f"/executions/{execution_id}/stop", json={"userId": "user-1"})

    assert response.status_code == 200
    data = response.json()
    assert data["previousStatus"] == "pending"
    assert data["status"] == "cancelled"

    again = client.post(f"/executions/{execution_id}/stop")
    assert again.status_code == 400


def test_force_stop_by_other_user_is_denied(client):
    register(client)
    execution_id = client.post("/executions", json=execution_body()).json()["executionId"]

    response = client.post(f"/executions/{execution_id}/stop", json={"userId": "someone-else"})

    assert response.status_code == 403
    assert client.get(f"/executions/{execution_id}").json()["status"] == "pending"


def test_pause_resume_and_delete_schedule(client):
    register(client)
    execution_id = client.post(
        "/schedules", json=execution_body(cronExpression="0 9 * * *")
    ).json()["executionId"]

    assert client.post(f"/schedules/{execution_id}/pause").json()["status"] == "paused"
    assert client.post(f"/schedules/{execution_id}/pause").status_code == 400
    assert client.post(f"/schedules/{execution_id}/resume").json()["status"] == "scheduled"

    schedules = client.get("/users/user-1/schedules").json()["executions"]
    assert [s["id"] for s in schedules] == [execution_id]

    deleted = client.post(f"/schedules/{execution_id}/delete")
    assert deleted.json()["status"] == "cancelled"
    assert client.get("/users/user-1/schedules").json()["executions"] == []


def test_disabling_automation(client):
    register(client)

    response = client.post("/automations/auto-1/enabled", json={"enabled": False})

    assert response.status_code == 200
    assert response.json()["enabled"] is False
    assert client.post("/executions", json=execution_body()).status_code == 400
    assert client.post("/automations/missing/enabled", json={"enabled": True}).status_code == 400


def test_cleanup_endpoint(client):
    response = client.post("/admin/cleanup")

    assert response.status_code == 200
    assert response.json() == {"staleRunning": 0, "staleScheduled": 0}


def test_api_key_protects_mutating_routes(make_client):
    with make_client(api_key="secret") as client:
        assert client.get("/health").status_code == 200
        assert client.post("/trigger").status_code == 401
        assert client.post("/trigger", headers={"Authorization": "Bearer wrong"}).status_code == 401

        response = client.post("/trigger", headers={"Authorization": "Bearer secret"})
        assert response.status_code == 200


def test_health_reports_database_and_queue(make_client):
    with make_client(dispatch_mode="queue") as client:
        data = client.get("/health").json()

    assert data["status"] == "healthy"
    assert data["database"] == {"is_healthy": True}
    assert data["jobQueue"]["size"] == 0
