from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from nexus_bridge.api.main import create_app
from nexus_bridge.app import BridgeApplication
from nexus_bridge.config.settings import Settings
from nexus_bridge.errors import RemoteUnavailable
from nexus_bridge.remote.schemas import RemoteResult
from nexus_bridge.storage.memory import InMemoryResourceStateStore
from tests.fakes import VALID_PASSWORD, FakeRemoteService

EMAIL = "ops@example.com"


@pytest.fixture
def bridge(
    settings: Settings, remote: FakeRemoteService, store: InMemoryResourceStateStore
) -> BridgeApplication:
    return BridgeApplication(settings, store=store, remote=remote)


@pytest.fixture
def http(bridge: BridgeApplication) -> Iterator[TestClient]:
    with TestClient(create_app(bridge)) as test_client:
        yield test_client


def _login(http: TestClient) -> dict:
    response = http.post("/auth/login", json={"email": EMAIL, "password": VALID_PASSWORD})
    assert response.status_code == 200
    return response.json()


def test_health_and_startup_without_credentials(http: TestClient) -> None:
    health = http.get("/health")
    assert health.status_code == 200
    assert health.json() == {"status": "ok", "authenticated": False}

    status = http.get("/status").json()
    assert status["started"] is True
    assert status["auth"]["state"] == "failed"
    assert status["startup_error"]["code"] == "no_credentials_available"
    assert status["client"]["authenticated"] is False


def test_login_provisions_and_status_reports_it(http: TestClient) -> None:
    outcome = _login(http)

    assert outcome["source"] == "api"
    assert outcome["action"] == "login"
    assert len(outcome["provisioning"]["workers_created"]) == 4

    status = http.get("/status").json()
    assert status["auth"]["state"] == "authenticated"
    assert status["client"]["group_id"] is not None
    assert status["active_counts"] == {"sessions": 1, "groups": 1, "workers": 4, "pipelines": 2, "tasks": 0}
    assert status["stored_counts"]["workers"] == 4


def test_register_forwards_display_name(http: TestClient, remote: FakeRemoteService) -> None:
    response = http.post(
        "/auth/register",
        json={"email": EMAIL, "password": VALID_PASSWORD, "full_name": "Ops Team"},
    )

    assert response.status_code == 200
    assert response.json()["action"] == "register"
    assert remote.calls_for("register_user")[0]["full_name"] == "Ops Team"


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ({"email": "not-an-email", "password": VALID_PASSWORD}, 422),
        ({"email": EMAIL, "password": "wrong"}, 401),
        ({"email": EMAIL}, 422),
    ],
)
def test_login_errors_map_to_http_status(http: TestClient, body: dict, expected: int) -> None:
    response = http.post("/auth/login", json=body)

    assert response.status_code == expected


def test_login_remote_unavailable_maps_to_503(http: TestClient, remote: FakeRemoteService) -> None:
    remote.script("login_user", RemoteUnavailable("connection refused"))

    response = http.post("/auth/login", json={"email": EMAIL, "password": VALID_PASSWORD})

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "remote_unavailable"


def test_task_routes_require_authentication(http: TestClient) -> None:
    response = http.post("/tasks", json={"task": "analyze spend"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "not_authenticated"


def test_task_lifecycle(http: TestClient, remote: FakeRemoteService) -> None:
    _login(http)

    created = http.post("/tasks", json={"task": "rebalance budget", "priority": "critical"})
    assert created.status_code == 200
    task = created.json()
    assert task["priority"] == "critical"
    assert task["status"] == "pending"

    remote.task_statuses[task["task_id"]] = {"status": "running"}
    fetched = http.get(f"/tasks/{task['task_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "running"

    missing = http.get("/tasks/task-does-not-exist")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "task_not_found"


def test_task_rejection_maps_to_502(http: TestClient, remote: FakeRemoteService) -> None:
    _login(http)
    remote.script("orchestrate_task", RemoteResult.failed("insufficient credits"))

    response = http.post("/tasks", json={"task": "rebalance budget"})

    assert response.status_code == 502


def test_pipeline_execution(http: TestClient) -> None:
    _login(http)

    started = http.post("/pipelines/campaign-optimization/execute", json={"input_data": {"budget": 500}})
    assert started.status_code == 200
    assert started.json()["pipeline_id"] == "wf-campaign-optimization"

    without_body = http.post("/pipelines/anomaly-detection/execute")
    assert without_body.status_code == 200

    missing = http.post("/pipelines/weekly-report/execute", json={})
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "pipeline_not_found"


def test_logout_clears_state(http: TestClient, store: InMemoryResourceStateStore) -> None:
    _login(http)

    response = http.post("/auth/logout")

    assert response.status_code == 200
    assert store.get_active_session() is None
    assert http.get("/health").json()["authenticated"] is False


def test_startup_restores_persisted_session(
    settings: Settings, store: InMemoryResourceStateStore
) -> None:
    first_remote = FakeRemoteService()
    with TestClient(create_app(BridgeApplication(settings, store=store, remote=first_remote))) as http:
        _login(http)

    second_remote = FakeRemoteService()
    with TestClient(create_app(BridgeApplication(settings, store=store, remote=second_remote))) as http:
        status = http.get("/status").json()

    assert status["auth"]["source"] == "persisted_session"
    assert status["client"]["restored"] is True
    assert second_remote.calls == []
