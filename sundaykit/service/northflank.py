from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from sundaykit.logging import get_logger, sanitize_error_message
from sundaykit.service.connection_info import (
    ConnectionInfo,
    extract_addons,
    extract_connection_info,
    extract_items,
    extract_project_id,
    extract_secret_values,
    find_postgres_addon,
)
from sundaykit.service.errors import PlatformError

logger = get_logger(__name__)

WORKSPACE_SECRET_GROUP = "n8n-secrets"
WORKSPACE_HOST_KEY = "N8N_HOST"
TEMPLATE_PLACEHOLDER = "${refs."

_JOB_STATUS_MAP = {
    "RUNNING": "running",
    "SUCCEEDED": "succeeded",
    "COMPLETED": "succeeded",
    "FAILED": "failed",
    "CANCELLED": "cancelled",
}


def normalize_job_status(raw: Optional[str]) -> str:
    """Collapse platform job states into pending/running/succeeded/failed/cancelled."""
    return _JOB_STATUS_MAP.get((raw or "").upper(), "pending")


@dataclass
class JobRunStatus:
    run_id: Optional[str]
    status: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in {"succeeded", "failed", "cancelled"}


@dataclass
class WorkspaceHost:
    url: str
    secrets: Dict[str, Any] = field(default_factory=dict)


class NorthflankClient:
    """Async client for the Northflank REST API.

    Lookups return ``None`` on 404; any other non-2xx response or transport
    failure raises :class:`PlatformError`. Retrying is left to the callers'
    poll loops.
    """

    def __init__(
        self,
        api_token: Optional[str],
        base_url: str = "https://api.northflank.com/v1",
        *,
        template_id: str = "sunday",
        region: str = "asia-southeast",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.template_id = template_id
        self.region = region
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        allow_not_found: bool = False,
    ) -> Optional[Any]:
        if not self.is_configured:
            raise PlatformError("NORTHFLANK_API_TOKEN is not configured")
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            logger.warning("northflank_timeout", method=method, path=path)
            raise PlatformError(f"platform request timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "northflank_transport_error",
                method=method,
                path=path,
                error=sanitize_error_message(exc),
            )
            raise PlatformError(f"platform request failed: {method} {path}") from exc

        if response.status_code == 404 and allow_not_found:
            return None
        if response.is_error:
            body = sanitize_error_message(response.text or "")
            logger.warning(
                "northflank_error_response",
                method=method,
                path=path,
                status_code=response.status_code,
                body=body,
            )
            raise PlatformError(
                f"platform returned {response.status_code} for {method} {path}: {body}",
                upstream_status=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise PlatformError(f"platform returned malformed JSON for {method} {path}") from exc

    # -- projects ---------------------------------------------------------

    async def get_project(self, project_id: str) -> Optional[dict]:
        body = await self._request("GET", f"/projects/{project_id}", allow_not_found=True)
        if body is None:
            return None
        return body.get("data") or body

    async def create_project(self, name: str, *, description: str = "") -> dict:
        body = await self._request(
            "POST",
            "/projects",
            json={"name": name, "description": description, "region": self.region},
        )
        project = body.get("data") or body
        if not project.get("id"):
            raise PlatformError("platform did not return a project id")
        return project

    async def get_project_settings(self, project_id: str) -> Optional[dict]:
        body = await self._request(
            "GET", f"/projects/{project_id}/settings", allow_not_found=True
        )
        if body is None:
            return None
        return body.get("data") or {}

    async def patch_project_settings(self, project_id: str, settings: dict) -> None:
        await self._request("PATCH", f"/projects/{project_id}/settings", json=settings)

    # -- template runs ----------------------------------------------------

    async def trigger_template_run(self, arguments: Dict[str, Any]) -> dict:
        body = await self._request(
            "POST",
            f"/templates/{self.template_id}/runs",
            json={"arguments": arguments},
        )
        run = body.get("data") or {}
        if not run.get("id"):
            raise PlatformError("platform did not return a template run id")
        return run

    async def get_template_run(self, run_id: str) -> Optional[dict]:
        return await self._request(
            "GET", f"/templates/{self.template_id}/runs/{run_id}", allow_not_found=True
        )

    # -- secret groups ----------------------------------------------------

    async def list_secret_groups(self, project_id: str) -> List[dict]:
        body = await self._request(
            "GET", f"/projects/{project_id}/secrets", allow_not_found=True
        )
        return extract_items(body, "secrets")

    async def get_secret_group(self, project_id: str, secret_id: str) -> Optional[dict]:
        return await self._request(
            "GET", f"/projects/{project_id}/secrets/{secret_id}", allow_not_found=True
        )

    # -- addons -----------------------------------------------------------

    async def list_addons(self, project_id: str) -> List[dict]:
        body = await self._request(
            "GET", f"/projects/{project_id}/addons", allow_not_found=True
        )
        return extract_addons(body)

    async def get_addon(self, project_id: str, addon_id: str) -> Optional[dict]:
        return await self._request(
            "GET", f"/projects/{project_id}/addons/{addon_id}", allow_not_found=True
        )

    async def get_addon_credentials(self, project_id: str, addon_id: str) -> Optional[dict]:
        return await self._request(
            "GET",
            f"/projects/{project_id}/addons/{addon_id}/credentials",
            allow_not_found=True,
        )

    async def resume_addon(self, project_id: str, addon_id: str) -> None:
        await self._request("POST", f"/projects/{project_id}/addons/{addon_id}/resume")

    # -- services ---------------------------------------------------------

    async def list_services(self, project_id: str) -> List[dict]:
        body = await self._request(
            "GET", f"/projects/{project_id}/services", allow_not_found=True
        )
        return extract_items(body, "services")

    async def patch_service_env(
        self, project_id: str, service_id: str, env: Dict[str, str]
    ) -> None:
        await self._request(
            "PATCH",
            f"/projects/{project_id}/services/{service_id}/env",
            json={"env": env},
        )

    # -- jobs -------------------------------------------------------------

    async def trigger_job_run(
        self, project_id: str, job_name: str, environment: Dict[str, str]
    ) -> str:
        body = await self._request(
            "POST",
            f"/projects/{project_id}/jobs/{job_name}/runs",
            json={"environmentOverrides": environment},
        )
        run_id = (body.get("data") or {}).get("id")
        if not run_id:
            raise PlatformError("platform did not return a job run id")
        return run_id

    async def get_job_run(
        self, project_id: str, job_name: str, run_id: str
    ) -> Optional[JobRunStatus]:
        body = await self._request(
            "GET",
            f"/projects/{project_id}/jobs/{job_name}/runs/{run_id}",
            allow_not_found=True,
        )
        if body is None:
            return None
        run = body.get("data") or {}
        return JobRunStatus(
            run_id=run.get("id", run_id),
            status=normalize_job_status(run.get("status")),
            started_at=run.get("startedAt"),
            completed_at=run.get("completedAt"),
            exit_code=run.get("exitCode"),
            error=run.get("error") or run.get("failureReason"),
        )

    async def get_job_run_logs(
        self, project_id: str, job_name: str, run_id: str, *, tail: int = 500
    ) -> str:
        body = await self._request(
            "GET",
            f"/projects/{project_id}/jobs/{job_name}/runs/{run_id}/logs",
            params={"tail": tail},
            allow_not_found=True,
        )
        if not body:
            return ""
        logs = (body.get("data") or {}).get("logs") or ""
        if isinstance(logs, list):
            # Some revisions return one entry per line
            logs = "\n".join(
                entry.get("log", "") if isinstance(entry, dict) else str(entry)
                for entry in logs
            )
        return logs

    async def cancel_job_run(self, project_id: str, job_name: str, run_id: str) -> None:
        await self._request(
            "POST", f"/projects/{project_id}/jobs/{job_name}/runs/{run_id}/cancel"
        )

    # -- higher-level lookups ---------------------------------------------

    async def resolve_project_id(self, template_run_id: str) -> Optional[str]:
        """Project id created by a template run, once the run has reached that step."""
        body = await self.get_template_run(template_run_id)
        if body is None:
            return None
        return extract_project_id(body)

    async def find_workspace_host(self, project_id: str) -> Optional[WorkspaceHost]:
        """Return the workspace URL once its host secret holds a real value."""
        groups = await self.list_secret_groups(project_id)
        group = next((g for g in groups if g.get("name") == WORKSPACE_SECRET_GROUP), None)
        if group is None:
            logger.debug("workspace_secret_group_missing", project_id=project_id)
            return None
        details = await self.get_secret_group(project_id, group.get("id") or WORKSPACE_SECRET_GROUP)
        values = extract_secret_values(details)
        host = values.get(WORKSPACE_HOST_KEY)
        if not host or TEMPLATE_PLACEHOLDER in host:
            return None
        url = host if host.startswith(("http://", "https://")) else f"https://{host}"
        return WorkspaceHost(url=url.rstrip("/"), secrets=dict(values))

    async def resolve_postgres_connection(
        self, project_id: str, *, settle_seconds: float = 30.0
    ) -> Optional[ConnectionInfo]:
        """Live connection details for the project's Postgres addon.

        A paused addon is resumed first and given ``settle_seconds`` before its
        credentials are read.
        """
        addons = await self.list_addons(project_id)
        addon = find_postgres_addon(addons)
        if addon is None:
            logger.warning(
                "postgres_addon_missing",
                project_id=project_id,
                addon_count=len(addons),
            )
            return None
        addon_id = addon.get("id")
        status = str(addon.get("status") or "").lower()
        if status == "paused":
            logger.info("postgres_addon_resuming", project_id=project_id, addon_id=addon_id)
            await self.resume_addon(project_id, addon_id)
            await self._sleep(settle_seconds)

        credentials = await self.get_addon_credentials(project_id, addon_id)
        info = extract_connection_info(credentials) if credentials else None
        if info is None:
            details = await self.get_addon(project_id, addon_id)
            info = extract_connection_info(details) if details else None
        if info is None:
            logger.warning("postgres_connection_unresolved", project_id=project_id, addon_id=addon_id)
        return info

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
