from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from sundaykit.logging import get_logger
from sundaykit.service.connection_info import ConnectionInfo
from sundaykit.storage.models import RunStatus, SampleCounts, TrainingRun

logger = get_logger(__name__)

# Channel table -> approval column set when a row is cleared for training
SAMPLE_CHANNELS = (
    ("good", "stm_good", "approved_for_consolidation"),
    ("bad", "stm_bad", "approved_for_shadow_learning"),
    ("mcl", "mcl_chains", "approved_for_training"),
)

_SCHEMA_STATEMENTS = (
    "CREATE EXTENSION IF NOT EXISTS vector",
    "CREATE SCHEMA IF NOT EXISTS {schema}",
    """
    CREATE TABLE IF NOT EXISTS {schema}.memories (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        content TEXT NOT NULL,
        metadata JSONB DEFAULT '{{}}'::jsonb,
        embedding vector(1536),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.conversations (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        title TEXT,
        messages JSONB DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.stm_good (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        content TEXT NOT NULL,
        metadata JSONB DEFAULT '{{}}'::jsonb,
        quality_score REAL,
        approved_for_consolidation BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.stm_bad (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        content TEXT NOT NULL,
        counterfactual TEXT,
        metadata JSONB DEFAULT '{{}}'::jsonb,
        quality_score REAL,
        approved_for_shadow_learning BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.mcl_chains (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        chain JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        quality_score REAL,
        approved_for_training BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.stm_review (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        content TEXT NOT NULL,
        reason TEXT,
        created_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS {schema}.training_jobs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT NOT NULL,
        job_id TEXT NOT NULL UNIQUE,
        job_name TEXT,
        run_id TEXT,
        adapter_version TEXT NOT NULL,
        status TEXT NOT NULL,
        dataset_composition JSONB NOT NULL DEFAULT '{{}}'::jsonb,
        total_samples INTEGER NOT NULL DEFAULT 0,
        metadata JSONB,
        started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ,
        error_message TEXT,
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_created ON {schema}.memories (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_memories_metadata ON {schema}.memories USING GIN (metadata)",
    """
    CREATE OR REPLACE FUNCTION {schema}.update_updated_at_column()
    RETURNS TRIGGER AS $$
    BEGIN
        NEW.updated_at = NOW();
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS update_memories_updated_at ON {schema}.memories",
    """
    CREATE TRIGGER update_memories_updated_at
        BEFORE UPDATE ON {schema}.memories
        FOR EACH ROW EXECUTE FUNCTION {schema}.update_updated_at_column()
    """,
    "DROP TRIGGER IF EXISTS update_conversations_updated_at ON {schema}.conversations",
    """
    CREATE TRIGGER update_conversations_updated_at
        BEFORE UPDATE ON {schema}.conversations
        FOR EACH ROW EXECUTE FUNCTION {schema}.update_updated_at_column()
    """,
)


class UserDatabase:
    """Gateway to a user's own Postgres, reached through addon credentials."""

    def __init__(self, *, schema: str = "user_data_schema", connect_timeout: int = 30) -> None:
        self.schema = schema
        self.connect_timeout = connect_timeout

    async def _connect(self, connection: ConnectionInfo) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(
            connection.connection_string,
            connect_timeout=self.connect_timeout,
            row_factory=dict_row,
        )

    def _table(self, name: str) -> sql.Composed:
        return sql.SQL("{}.{}").format(sql.Identifier(self.schema), sql.Identifier(name))

    async def initialize_schema(self, connection: ConnectionInfo) -> None:
        """Create the per-user schema; every statement is safe to repeat."""
        schema = sql.Identifier(self.schema)
        async with await self._connect(connection) as conn:
            async with conn.transaction():
                for statement in _SCHEMA_STATEMENTS:
                    await conn.execute(sql.SQL(statement).format(schema=schema))
        logger.info("user_schema_initialized", schema=self.schema, host=connection.host)

    async def auto_approve(
        self, connection: ConnectionInfo, user_id: str, *, min_quality: float
    ) -> SampleCounts:
        """Approve unapproved rows meeting the quality bar; returns rows approved per channel."""
        approved: Dict[str, int] = {}
        async with await self._connect(connection) as conn:
            async with conn.transaction():
                for channel, table, column in SAMPLE_CHANNELS:
                    cur = await conn.execute(
                        sql.SQL(
                            "UPDATE {table} SET {column} = TRUE "
                            "WHERE user_id = %s AND {column} = FALSE "
                            "AND COALESCE(quality_score, 0) >= %s"
                        ).format(table=self._table(table), column=sql.Identifier(column)),
                        (user_id, min_quality),
                    )
                    approved[channel] = max(cur.rowcount, 0)
        counts = SampleCounts(**approved)
        logger.info("training_samples_auto_approved", user_id=user_id, **counts.as_dict())
        return counts

    async def count_samples(self, connection: ConnectionInfo, user_id: str) -> SampleCounts:
        counts: Dict[str, int] = {}
        async with await self._connect(connection) as conn:
            for channel, table, _column in SAMPLE_CHANNELS:
                cur = await conn.execute(
                    sql.SQL("SELECT COUNT(*) AS count FROM {table} WHERE user_id = %s").format(
                        table=self._table(table)
                    ),
                    (user_id,),
                )
                row = await cur.fetchone()
                counts[channel] = int((row or {}).get("count") or 0)
        return SampleCounts(**counts)

    async def log_training_run(
        self, connection: ConnectionInfo, run: TrainingRun, *, job_name: str
    ) -> None:
        async with await self._connect(connection) as conn:
            await conn.execute(
                sql.SQL(
                    "INSERT INTO {table} (user_id, job_id, job_name, run_id, adapter_version, "
                    "status, dataset_composition, total_samples, started_at) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)"
                ).format(table=self._table("training_jobs")),
                (
                    run.user_id,
                    run.job_id,
                    job_name,
                    run.run_id,
                    run.adapter_version,
                    run.status.value,
                    Jsonb(run.dataset_composition.as_dict()),
                    run.total_samples,
                    run.started_at,
                ),
            )

    async def update_training_run(
        self,
        connection: ConnectionInfo,
        job_id: str,
        *,
        status: Optional[RunStatus] = None,
        run_id: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Targeted column update; only the arguments given are written."""
        columns: Dict[str, Any] = {}
        if status is not None:
            columns["status"] = RunStatus(status).value
        if run_id is not None:
            columns["run_id"] = run_id
        if completed_at is not None:
            columns["completed_at"] = completed_at
        if error_message is not None:
            columns["error_message"] = error_message
        if metadata is not None:
            columns["metadata"] = Jsonb(metadata)
        if not columns:
            return
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in columns
        )
        async with await self._connect(connection) as conn:
            await conn.execute(
                sql.SQL("UPDATE {table} SET {assignments}, updated_at = NOW() WHERE job_id = %s").format(
                    table=self._table("training_jobs"), assignments=assignments
                ),
                (*columns.values(), job_id),
            )
