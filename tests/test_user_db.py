"""Unit tests for the per-user database gateway with a recorded connection."""

from contextlib import asynccontextmanager

from sundaykit.service.connection_info import ConnectionInfo
from sundaykit.service.user_db import _SCHEMA_STATEMENTS, SAMPLE_CHANNELS, UserDatabase
from sundaykit.storage.models import RunStatus, SampleCounts, TrainingRun

_CONNECTION = ConnectionInfo.from_parts(
    host="pg.internal", port=5432, database="sunday", user="admin", password="secret"
)


class _Cursor:
    def __init__(self, rowcount=0, row=None):
        self.rowcount = rowcount
        self._row = row

    async def fetchone(self):
        return self._row


class RecordingConnection:
    def __init__(self, cursors=None):
        self.executed = []
        self.transactions = 0
        self._cursors = list(cursors or [])

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield

    async def execute(self, query, params=None):
        self.executed.append((query, params))
        return self._cursors.pop(0) if self._cursors else _Cursor()


def _gateway(conn):
    gateway = UserDatabase(schema="user_data_schema")
    connects = []

    async def connect(connection):
        connects.append(connection)
        return conn

    gateway._connect = connect
    return gateway, connects


def test_schema_statements_are_idempotent():
    for statement in _SCHEMA_STATEMENTS:
        head = " ".join(statement.split()[:4]).upper()
        assert (
            "IF NOT EXISTS" in statement.upper()
            or head.startswith("CREATE OR REPLACE")
            or head.startswith("DROP TRIGGER IF EXISTS")
            or head.startswith("CREATE TRIGGER")
        )


def test_channel_tables():
    assert [channel for channel, _, _ in SAMPLE_CHANNELS] == ["good", "bad", "mcl"]


async def test_initialize_schema_runs_in_one_transaction():
    conn = RecordingConnection()
    gateway, connects = _gateway(conn)

    await gateway.initialize_schema(_CONNECTION)

    assert connects == [_CONNECTION]
    assert conn.transactions == 1
    assert len(conn.executed) == len(_SCHEMA_STATEMENTS)


async def test_auto_approve_counts_rows_per_channel():
    conn = RecordingConnection([_Cursor(rowcount=3), _Cursor(rowcount=0), _Cursor(rowcount=-1)])
    gateway, _ = _gateway(conn)

    counts = await gateway.auto_approve(_CONNECTION, "u1", min_quality=0.7)

    assert counts == SampleCounts(good=3, bad=0, mcl=0)
    assert all(params == ("u1", 0.7) for _, params in conn.executed)


async def test_count_samples():
    conn = RecordingConnection(
        [_Cursor(row={"count": 6}), _Cursor(row={"count": 4}), _Cursor(row=None)]
    )
    gateway, _ = _gateway(conn)

    counts = await gateway.count_samples(_CONNECTION, "u1")

    assert counts == SampleCounts(good=6, bad=4, mcl=0)


async def test_log_training_run():
    conn = RecordingConnection()
    gateway, _ = _gateway(conn)
    run = TrainingRun(
        job_id="train-u1-v1",
        user_id="u1",
        adapter_version="v1",
        dataset_composition=SampleCounts(good=6, bad=4),
    )

    await gateway.log_training_run(_CONNECTION, run, job_name="user-lora-training")

    _, params = conn.executed[0]
    assert params[:6] == ("u1", "train-u1-v1", "user-lora-training", None, "v1", "running")
    assert params[7] == 10


async def test_update_training_run_writes_only_given_columns():
    conn = RecordingConnection()
    gateway, connects = _gateway(conn)

    await gateway.update_training_run(_CONNECTION, "train-u1-v1")
    assert connects == []

    await gateway.update_training_run(
        _CONNECTION, "train-u1-v1", status=RunStatus.FAILED, error_message="oom"
    )

    _, params = conn.executed[0]
    assert params == ("failed", "oom", "train-u1-v1")
