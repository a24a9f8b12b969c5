from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

import httpx

from sundaykit.logging import get_logger, sanitize_error_message
from sundaykit.service.connection_info import ConnectionInfo, extract_api_key
from sundaykit.service.errors import WorkspaceApiError

logger = get_logger(__name__)


def derive_workspace_password(prefix: str, encryption_key: str) -> str:
    """Owner password the workspace template sets from its encryption key."""
    return f"{prefix}{encryption_key}"


class N8nClient:
    """Client for a user's n8n workspace REST API.

    Every call takes the workspace base URL since each user has their own
    instance. Session-authenticated calls log in on a short-lived client so
    cookies never leak between workspaces.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    def _session(self, base_url: str, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            headers={"Content-Type": "application/json"},
            transport=self._transport,
            **kwargs,
        )

    async def health(self, url: str) -> bool:
        try:
            async with self._session(url) as client:
                response = await client.get("/healthz")
        except httpx.HTTPError as exc:
            logger.debug("workspace_health_unreachable", url=url, error=str(exc))
            return False
        return response.is_success

    async def create_api_key(self, url: str, email: str, password: str) -> str:
        """Mint a non-expiring API key using basic auth as the workspace owner."""
        try:
            async with self._session(url, auth=httpx.BasicAuth(email, password)) as client:
                response = await client.post(
                    "/rest/api-key",
                    json={
                        "name": f"auto-generated-{int(time.time() * 1000)}",
                        "expiresAt": None,
                    },
                )
        except httpx.HTTPError as exc:
            raise WorkspaceApiError(
                f"workspace unreachable: {sanitize_error_message(exc)}"
            ) from exc
        if response.is_error:
            raise WorkspaceApiError(
                f"api key creation returned {response.status_code}",
                upstream_status=response.status_code,
            )
        try:
            api_key = extract_api_key(response.json())
        except ValueError:
            api_key = None
        if not api_key:
            raise WorkspaceApiError("workspace response did not contain an api key")
        return api_key

    async def _login(self, client: httpx.AsyncClient, email: str, password: str) -> None:
        response = await client.post(
            "/rest/login",
            json={"emailOrLdapLoginId": email, "password": password},
        )
        if response.is_error:
            raise WorkspaceApiError(
                f"workspace login returned {response.status_code}",
                upstream_status=response.status_code,
            )
        if not client.cookies:
            raise WorkspaceApiError("workspace login did not return a session cookie")

    @asynccontextmanager
    async def _authenticated(
        self, url: str, email: str, password: str
    ) -> AsyncIterator[httpx.AsyncClient]:
        try:
            async with self._session(url) as client:
                await self._login(client, email, password)
                yield client
        except httpx.HTTPError as exc:
            raise WorkspaceApiError(
                f"workspace request failed: {sanitize_error_message(exc)}"
            ) from exc

    async def login(self, url: str, email: str, password: str) -> httpx.Cookies:
        """Log in and return the session cookies."""
        async with self._authenticated(url, email, password) as client:
            return httpx.Cookies(client.cookies)

    async def create_postgres_credential(
        self,
        url: str,
        email: str,
        password: str,
        connection: ConnectionInfo,
        *,
        schema: str = "user_data_schema",
    ) -> str:
        payload = {
            "name": f"User Postgres DB - {datetime.utcnow().isoformat()[:16]}",
            "type": "postgres",
            "data": {
                "host": connection.host,
                "port": connection.port,
                "database": connection.database,
                "user": connection.user,
                "password": connection.password,
                "schema": schema,
                "ssl": {"rejectUnauthorized": False},
                "connectionTimeout": 30000,
            },
        }
        async with self._authenticated(url, email, password) as client:
            response = await client.post("/rest/credentials", json=payload)
        if response.is_error:
            raise WorkspaceApiError(
                f"credential creation returned {response.status_code}: "
                f"{sanitize_error_message(response.text or '')}",
                upstream_status=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise WorkspaceApiError("credential creation returned malformed JSON") from exc
        data = body.get("data") if isinstance(body, dict) else None
        credential_id = (data or {}).get("id") if isinstance(data, dict) else None
        credential_id = credential_id or (body.get("id") if isinstance(body, dict) else None)
        if not credential_id:
            raise WorkspaceApiError("credential creation did not return an id")
        logger.info("workspace_credential_created", url=url, credential_id=credential_id)
        return str(credential_id)

    async def verify_credential(
        self, url: str, email: str, password: str, credential_id: str
    ) -> bool:
        """False only when the workspace reports the credential as gone.

        An unreachable or failing workspace is not proof of absence, so it
        counts as present; re-registering would leave a duplicate behind.
        """
        try:
            async with self._authenticated(url, email, password) as client:
                response = await client.get(f"/rest/credentials/{credential_id}")
        except WorkspaceApiError as exc:
            logger.warning("workspace_credential_verify_failed", url=url, error=exc.message)
            return True
        if response.status_code == 404:
            logger.info("workspace_credential_missing", url=url, credential_id=credential_id)
            return False
        return True

    async def close(self) -> None:
        """Sessions are per call; nothing is held open."""
        return None
