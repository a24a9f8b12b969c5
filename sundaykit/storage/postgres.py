from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sundaykit.logging import get_logger
from sundaykit.storage.common import (
    SecretCipher,
    apply_workspace_update,
    reset_provisioning_fields,
)
from sundaykit.storage.models import (
    SECRET_FIELDS,
    MonitorClaim,
    ProjectStatus,
    TrainingStatus,
    UserWorkspace,
)

_WORKSPACE_COLUMNS = [
    name
    for name in UserWorkspace.__dataclass_fields__
    if name != "user_id"
]


class PostgresStore:
    """Postgres-backed credential store: one ``user_workspace`` row per user."""

    def __init__(self, dsn: str, *, secret_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(secret_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the store tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_workspace (
                    user_id TEXT PRIMARY KEY,
                    email TEXT,
                    display_name TEXT,
                    project_id TEXT,
                    project_name TEXT,
                    project_status TEXT NOT NULL DEFAULT 'uninitiated',
                    template_run_id TEXT,
                    workspace_url TEXT,
                    encryption_key TEXT,
                    api_key TEXT,
                    secret_snapshot JSONB,
                    postgres_schema_initialized BOOLEAN NOT NULL DEFAULT FALSE,
                    n8n_credential_id TEXT,
                    setup_error TEXT,
                    postgres_setup_at TIMESTAMP,
                    template_completed_at TIMESTAMP,
                    training_status TEXT NOT NULL DEFAULT 'idle',
                    training_error TEXT,
                    adapter_version TEXT,
                    training_job_id TEXT,
                    training_run_id TEXT,
                    last_trained_at TIMESTAMP,
                    good_count INTEGER NOT NULL DEFAULT 0,
                    bad_count INTEGER NOT NULL DEFAULT 0,
                    mcl_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
                    updated_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS monitor_claim (
                    kind TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    claimed_at TIMESTAMP NOT NULL,
                    expires_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (kind, user_id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS user_workspace_status_idx ON user_workspace (project_status)"
            )

    # -- row mapping ------------------------------------------------------

    def _row_to_workspace(self, row: Dict[str, Any]) -> UserWorkspace:
        values = {k: row.get(k) for k in UserWorkspace.__dataclass_fields__ if k in row}
        for name in SECRET_FIELDS:
            values[name] = self._cipher.decrypt(values.get(name))
        values["project_status"] = ProjectStatus(values.get("project_status") or "uninitiated")
        values["training_status"] = TrainingStatus(values.get("training_status") or "idle")
        return UserWorkspace(**values)

    def _workspace_params(self, workspace: UserWorkspace) -> Dict[str, Any]:
        params: Dict[str, Any] = {name: getattr(workspace, name) for name in _WORKSPACE_COLUMNS}
        for name in SECRET_FIELDS:
            params[name] = self._cipher.encrypt(params[name])
        params["project_status"] = workspace.project_status.value
        params["training_status"] = workspace.training_status.value
        params["secret_snapshot"] = (
            json.dumps(workspace.secret_snapshot) if workspace.secret_snapshot is not None else None
        )
        params["user_id"] = workspace.user_id
        return params

    def _write_workspace(self, conn, workspace: UserWorkspace) -> None:
        params = self._workspace_params(workspace)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name))
            for name in _WORKSPACE_COLUMNS
            if name != "created_at"
        )
        conn.execute(
            sql.SQL("UPDATE user_workspace SET {} WHERE user_id = %(user_id)s").format(assignments),
            params,
        )

    # -- workspaces -------------------------------------------------------

    def get_workspace(self, user_id: str) -> Optional[UserWorkspace]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_workspace WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_workspace(row) if row else None

    def ensure_workspace(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> UserWorkspace:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_workspace (user_id, email, display_name)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET email = COALESCE(user_workspace.email, EXCLUDED.email),
                    display_name = COALESCE(user_workspace.display_name, EXCLUDED.display_name)
                RETURNING *
                """,
                (user_id, email, display_name),
            ).fetchone()
        return self._row_to_workspace(row)

    def update_workspace(self, user_id: str, **fields: Any) -> UserWorkspace:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM user_workspace WHERE user_id = %s FOR UPDATE",
                    (user_id,),
                ).fetchone()
                if not row:
                    raise KeyError(f"workspace not found for user {user_id}")
                workspace = apply_workspace_update(self._row_to_workspace(row), fields)
                self._write_workspace(conn, workspace)
        return workspace

    def reset_workspace(self, user_id: str) -> UserWorkspace:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM user_workspace WHERE user_id = %s FOR UPDATE",
                    (user_id,),
                ).fetchone()
                if not row:
                    raise KeyError(f"workspace not found for user {user_id}")
                workspace = reset_provisioning_fields(self._row_to_workspace(row))
                self._write_workspace(conn, workspace)
        return workspace

    def list_workspaces(
        self,
        *,
        project_status: Optional[ProjectStatus | str] = None,
        training_status: Optional[TrainingStatus | str] = None,
    ) -> List[UserWorkspace]:
        clauses: List[str] = []
        params: List[Any] = []
        if project_status:
            clauses.append("project_status = %s")
            params.append(ProjectStatus(project_status).value)
        if training_status:
            clauses.append("training_status = %s")
            params.append(TrainingStatus(training_status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM user_workspace {where} ORDER BY created_at",
                params,
            ).fetchall()
        return [self._row_to_workspace(row) for row in rows]

    # -- monitor claims ---------------------------------------------------

    def claim_monitor(
        self, kind: str, user_id: str, owner: str, ttl_seconds: float
    ) -> bool:
        now = datetime.utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO monitor_claim (kind, user_id, owner, claimed_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (kind, user_id) DO UPDATE
                SET owner = EXCLUDED.owner,
                    claimed_at = EXCLUDED.claimed_at,
                    expires_at = EXCLUDED.expires_at
                WHERE monitor_claim.expires_at <= %s OR monitor_claim.owner = EXCLUDED.owner
                RETURNING owner
                """,
                (kind, user_id, owner, now, expires_at, now),
            ).fetchone()
        return bool(row and row.get("owner") == owner)

    def release_monitor(self, kind: str, user_id: str, owner: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM monitor_claim WHERE kind = %s AND user_id = %s AND owner = %s",
                (kind, user_id, owner),
            )

    def get_monitor_claim(self, kind: str, user_id: str) -> Optional[MonitorClaim]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT kind, user_id, owner, claimed_at, expires_at
                FROM monitor_claim
                WHERE kind = %s AND user_id = %s AND expires_at > %s
                """,
                (kind, user_id, datetime.utcnow()),
            ).fetchone()
        if not row:
            return None
        return MonitorClaim(**row)

    def close(self) -> None:
        try:
            self.pool.close()
        except Exception as exc:
            self.logger.warning("postgres_pool_close_failed", error=str(exc))
