#!/usr/bin/env python3
"""Resume provisioning and training monitors left in flight by a dead process.

Reads the credential store, relaunches a monitor for every workspace still in
``initiated``/``deploying`` and every training run still marked ``training``,
and waits for all of them to finish. Leases stop a second copy of this script
(or a running web process) from watching the same user twice.

Usage:
    python scripts/resume_monitors.py            # resume and wait
    python scripts/resume_monitors.py --dry-run  # list what would be resumed
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def list_inflight() -> dict:
    from sundaykit.service.runtime import get_runtime
    from sundaykit.storage.models import ProjectStatus, TrainingStatus

    store = get_runtime().store
    provisioning = [
        w.user_id
        for status in (ProjectStatus.INITIATED, ProjectStatus.DEPLOYING)
        for w in store.list_workspaces(project_status=status)
    ]
    training = [w.user_id for w in store.list_workspaces(training_status=TrainingStatus.TRAINING)]
    return {"provisioning": provisioning, "training": training}


async def resume_and_wait() -> dict:
    from sundaykit.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        resumed = await runtime.resume_monitors()
        print(
            f"Resumed {resumed['provisioning']} provisioning and "
            f"{resumed['training']} training monitors; waiting for completion..."
        )
        await runtime.monitors.wait_all()
        return resumed
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Resume in-flight sundaykit monitors",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List in-flight work without resuming it",
    )
    args = parser.parse_args()

    try:
        if args.dry_run:
            inflight = list_inflight()
            print(f"Provisioning in flight: {', '.join(inflight['provisioning']) or 'none'}")
            print(f"Training in flight: {', '.join(inflight['training']) or 'none'}")
            return
        asyncio.run(resume_and_wait())
        print("All monitors finished.")
    except KeyboardInterrupt:
        print("Interrupted; unfinished monitors keep their leases until they expire.")
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
