import asyncio
import importlib.util
from pathlib import Path

from sundaykit.service.northflank import JobRunStatus, WorkspaceHost
from sundaykit.storage.models import ProjectStatus, TrainingStatus

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "resume_monitors.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("resume_monitors", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _seed(store):
    store.ensure_workspace("u1", email="a@example.com")
    store.update_workspace(
        "u1",
        project_status=ProjectStatus.INITIATED,
        encryption_key="k" * 32,
        api_key="n8n_fallback",
        template_run_id="run-1",
    )
    store.ensure_workspace("u2", email="b@example.com")
    store.update_workspace(
        "u2",
        project_id="p2",
        training_status=TrainingStatus.TRAINING,
        training_job_id="train-u2-v1",
        training_run_id="jobrun-1",
    )


def test_dry_run_lists_inflight(runtime):
    _seed(runtime.store)
    script = _load_script()

    assert script.list_inflight() == {"provisioning": ["u1"], "training": ["u2"]}


def test_resume_and_wait(runtime, platform):
    _seed(runtime.store)
    platform.project_ids = ["p1"]
    platform.hosts = [WorkspaceHost(url="https://ws.example.com")]
    platform.job_runs = [JobRunStatus(run_id="jobrun-1", status="succeeded")]
    script = _load_script()

    resumed = asyncio.run(script.resume_and_wait())

    assert resumed == {"provisioning": 1, "training": 1}
    assert runtime.store.get_workspace("u1").project_status == ProjectStatus.READY
    assert runtime.store.get_workspace("u2").training_status == TrainingStatus.COMPLETED
