"""HTTP-level tests for the /v1 routes and health check."""

import asyncio

import pytest
from fastapi.testclient import TestClient

import sundaykit.app as app_module
from sundaykit.service.errors import WorkspaceApiError
from sundaykit.service.runtime import reset_runtime_for_tests
from sundaykit.storage.models import ProjectStatus, SampleCounts


@pytest.fixture
def client(runtime):
    with TestClient(app_module.app) as test_client:
        yield test_client


def _ready_workspace(store, user_id="u1"):
    store.ensure_workspace(user_id, email="a@example.com", display_name="Ada")
    store.update_workspace(user_id, project_status=ProjectStatus.INITIATED, encryption_key="k" * 32)
    return store.update_workspace(
        user_id,
        project_status=ProjectStatus.READY,
        project_id="p1",
        workspace_url="https://ws.example.com",
    )


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["data"] == {"status": "healthy", "store": "memory", "redis_enabled": False}
    assert body["request_id"]


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_provision_accepted(client, platform):
    response = client.post(
        "/v1/workspaces/provision",
        json={"user_id": "u1", "display_name": "Ada Lovelace", "email": "A@Example.com"},
    )

    assert response.status_code == 202
    data = response.json()["data"]
    assert data["state"] == "started"
    assert data["workspace"]["user_id"] == "u1"
    assert data["workspace"]["monitoring_active"] is True
    assert platform.template_runs[0]["user_email"] == "a@example.com"


def test_provision_rejects_bad_email(client, platform):
    response = client.post(
        "/v1/workspaces/provision",
        json={"user_id": "u1", "display_name": "Ada", "email": "not-an-email"},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "validation_error"
    assert platform.template_runs == []


def test_provision_missing_fields(client):
    response = client.post("/v1/workspaces/provision", json={"user_id": "u1"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_status_unknown_user(client):
    response = client.get("/v1/workspaces/ghost/status")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_status_of_ready_workspace(client, runtime):
    _ready_workspace(runtime.store)

    response = client.get("/v1/workspaces/u1/status")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "ready"
    assert data["url"] == "https://ws.example.com"
    assert data["workspace_ready"] is True
    assert "encryption_key" not in data
    assert "api_key" not in data


def test_database_setup(client, runtime):
    _ready_workspace(runtime.store)

    response = client.post("/v1/workspaces/u1/database/setup")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["ok"] is True
    assert data["stage"] == "complete"
    assert data["credential_id"] == "cred-1"


def test_database_setup_failure_reports_stage(client, runtime, workspace_api):
    _ready_workspace(runtime.store)
    workspace_api.credentials = [WorkspaceApiError("credential creation returned 500")]

    response = client.post("/v1/workspaces/u1/database/setup")

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["code"] == "upstream_error"
    assert error["details"] == {"stage": "credential", "schema_initialized": True}


def test_database_setup_not_ready(client, runtime):
    runtime.store.ensure_workspace("u1", email="a@example.com")
    runtime.store.update_workspace("u1", project_status=ProjectStatus.INITIATED, project_id="p1")

    response = client.post("/v1/workspaces/u1/database/setup")

    assert response.status_code == 400
    assert response.json()["error"]["details"]["reason"] == "not_ready"


def test_training_below_threshold(client, runtime):
    runtime.store.ensure_workspace("u1")
    runtime.store.update_workspace("u1", project_id="p1", good_count=6, bad_count=3)

    response = client.post("/v1/training/u1")

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "validation_error"
    assert error["details"]["shortfall"] == {"total": 1}


def test_training_start_status_and_conflict(client, runtime, platform):
    platform.job_gate = asyncio.Event()
    runtime.store.ensure_workspace("u1")
    runtime.store.update_workspace("u1", project_id="p1", good_count=6, bad_count=4)

    started = client.post("/v1/training/u1")
    assert started.status_code == 202
    assert started.json()["data"]["status"] == "training"

    conflict = client.post("/v1/training/u1")
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "conflict"

    status = client.get("/v1/training/u1")
    assert status.status_code == 200
    assert status.json()["data"]["stats"]["total"] == 10


def test_cancel_when_idle(client, runtime):
    runtime.store.ensure_workspace("u1")

    response = client.delete("/v1/training/u1")

    assert response.status_code == 400
    assert response.json()["error"]["details"] == {"status": "idle"}


def test_sync_counts(client, runtime, user_db):
    runtime.store.ensure_workspace("u1")
    runtime.store.update_workspace("u1", project_id="p1")
    user_db.counts = SampleCounts(good=5, bad=5, mcl=2)

    response = client.post("/v1/training/u1/sync-counts")

    assert response.status_code == 200
    assert response.json()["data"] == {"good": 5, "bad": 5, "mcl": 2, "total": 12}


def test_bearer_token_required_when_configured(monkeypatch, platform, workspace_api, user_db, clock):
    monkeypatch.setenv("INTERNAL_API_TOKEN", "internal-secret")
    runtime = reset_runtime_for_tests(
        platform=platform, workspace_api=workspace_api, user_db=user_db, sleep=clock.sleep, clock=clock
    )
    runtime.store.ensure_workspace("u1")

    with TestClient(app_module.app) as client:
        missing = client.get("/v1/workspaces/u1/status")
        wrong = client.get("/v1/workspaces/u1/status", headers={"Authorization": "Bearer nope"})
        ok = client.get("/v1/workspaces/u1/status", headers={"Authorization": "Bearer internal-secret"})
        health = client.get("/healthz")

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "unauthorized"
    assert wrong.status_code == 401
    assert ok.status_code == 200
    assert health.status_code == 200
