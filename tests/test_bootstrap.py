"""Tests for per-user database bootstrap."""

import pytest

from sundaykit.service.errors import NotFoundError, PlatformError, ValidationError, WorkspaceApiError
from sundaykit.storage.models import ProjectStatus


def _ready_workspace(store, user_id="u1", **fields):
    store.ensure_workspace(user_id, email="a@example.com", display_name="Ada")
    store.update_workspace(user_id, project_status=ProjectStatus.INITIATED, encryption_key="k" * 32)
    values = dict(
        project_status=ProjectStatus.READY,
        project_id="p1",
        workspace_url="https://ws.example.com",
        api_key="n8n_key",
    )
    values.update(fields)
    return store.update_workspace(user_id, **values)


async def test_bootstrap_creates_schema_and_credential(runtime, workspace_api, user_db):
    _ready_workspace(runtime.store)

    result = await runtime.bootstrap.run("u1")

    assert result.ok
    assert result.stage == "complete"
    assert result.credential_id == "cred-1"
    workspace = runtime.store.get_workspace("u1")
    assert workspace.postgres_schema_initialized
    assert workspace.n8n_credential_id == "cred-1"
    assert workspace.postgres_setup_at is not None
    assert workspace.database_ready
    url, email, password, host, schema = workspace_api.credential_calls[0]
    assert (url, email, host, schema) == (
        "https://ws.example.com",
        "a@example.com",
        "pg.internal",
        "user_data_schema",
    )
    assert password == "7On" + "k" * 32


async def test_credential_failure_keeps_schema(runtime, workspace_api, user_db):
    _ready_workspace(runtime.store)
    workspace_api.credentials = [WorkspaceApiError("credential creation returned 500"), "cred-2"]

    first = await runtime.bootstrap.run("u1")

    assert not first.ok
    assert first.stage == "credential"
    assert first.schema_initialized
    workspace = runtime.store.get_workspace("u1")
    assert workspace.postgres_schema_initialized
    assert workspace.n8n_credential_id is None
    assert "credential creation returned 500" in workspace.setup_error

    second = await runtime.bootstrap.run("u1")

    assert second.ok
    assert second.credential_id == "cred-2"
    # The schema step is not repeated
    assert user_db.schema_calls == 1
    assert runtime.store.get_workspace("u1").setup_error is None


async def test_schema_failure_reports_stage(runtime, user_db, workspace_api):
    _ready_workspace(runtime.store)
    user_db.schema_error = RuntimeError("permission denied for database")

    result = await runtime.bootstrap.run("u1")

    assert not result.ok
    assert result.stage == "schema"
    assert not result.schema_initialized
    assert workspace_api.credential_calls == []
    assert not runtime.store.get_workspace("u1").postgres_schema_initialized


async def test_connection_unavailable(runtime, platform):
    _ready_workspace(runtime.store)
    platform.connection = None

    result = await runtime.bootstrap.run("u1")

    assert not result.ok
    assert result.stage == "schema"
    assert "connection details are unavailable" in result.error


async def test_connection_failure_after_schema_is_credential_stage(runtime, platform):
    _ready_workspace(runtime.store, postgres_schema_initialized=True)
    platform.connection_error = PlatformError("addons lookup failed")

    result = await runtime.bootstrap.run("u1")

    assert result.stage == "credential"
    assert result.schema_initialized


async def test_already_initialized_is_noop(runtime, user_db, workspace_api):
    _ready_workspace(runtime.store, postgres_schema_initialized=True, n8n_credential_id="cred-9")

    result = await runtime.bootstrap.run("u1")

    assert result.ok
    assert result.stage == "already_initialized"
    assert result.credential_id == "cred-9"
    assert user_db.schema_calls == 0
    assert workspace_api.credential_calls == []
    assert workspace_api.verify_calls == [("https://ws.example.com", "cred-9")]


async def test_credential_deleted_in_workspace_is_registered_again(runtime, user_db, workspace_api):
    _ready_workspace(runtime.store, postgres_schema_initialized=True, n8n_credential_id="cred-9")
    workspace_api.credential_present = [False]

    result = await runtime.bootstrap.run("u1")

    assert result.ok
    assert result.stage == "complete"
    assert result.credential_id == "cred-1"
    assert user_db.schema_calls == 0
    assert len(workspace_api.credential_calls) == 1
    assert runtime.store.get_workspace("u1").n8n_credential_id == "cred-1"


async def test_preconditions(runtime):
    with pytest.raises(NotFoundError):
        await runtime.bootstrap.run("ghost")

    runtime.store.ensure_workspace("u1", email="a@example.com")
    with pytest.raises(ValidationError) as exc_info:
        await runtime.bootstrap.run("u1")
    assert exc_info.value.detail["reason"] == "no_project"

    runtime.store.update_workspace("u1", project_status=ProjectStatus.INITIATED, project_id="p1")
    with pytest.raises(ValidationError) as exc_info:
        await runtime.bootstrap.run("u1")
    assert exc_info.value.detail["reason"] == "not_ready"

    runtime.store.update_workspace("u1", project_status=ProjectStatus.READY)
    with pytest.raises(ValidationError) as exc_info:
        await runtime.bootstrap.run("u1")
    assert exc_info.value.detail["reason"] == "missing_credentials"
    assert set(exc_info.value.detail["missing"]) == {"workspace_url", "encryption_key"}
