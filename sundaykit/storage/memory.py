from __future__ import annotations

import copy
import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sundaykit.logging import get_logger
from sundaykit.storage.common import (
    SecretCipher,
    apply_workspace_update,
    deserialize_workspace,
    reset_provisioning_fields,
    serialize_workspace,
)
from sundaykit.storage.models import (
    MonitorClaim,
    ProjectStatus,
    TrainingStatus,
    UserWorkspace,
)


class MemoryStore:
    """In-memory credential store persisted to a JSON file under ``fs_root``."""

    def __init__(
        self,
        fs_root: str = "/tmp/sundaykit",
        *,
        secret_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.workspaces: Dict[str, UserWorkspace] = {}
        self.monitor_claims: Dict[tuple[str, str], MonitorClaim] = {}
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        self._cipher = SecretCipher(
            secret_key or os.getenv("SECRET_KEY") or "sundaykit-memory-store"
        )
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "workspace_store.json"

    # -- workspaces -------------------------------------------------------

    def get_workspace(self, user_id: str) -> Optional[UserWorkspace]:
        with self._data_lock:
            workspace = self.workspaces.get(user_id)
            # Callers get a snapshot; mutations go through update_workspace
            return copy.deepcopy(workspace) if workspace else None

    def ensure_workspace(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> UserWorkspace:
        with self._data_lock:
            workspace = self.workspaces.get(user_id)
            if workspace is None:
                workspace = UserWorkspace(
                    user_id=user_id, email=email, display_name=display_name
                )
                self.workspaces[user_id] = workspace
                self._persist_state()
            elif (email and not workspace.email) or (
                display_name and not workspace.display_name
            ):
                workspace.email = workspace.email or email
                workspace.display_name = workspace.display_name or display_name
                workspace.updated_at = datetime.utcnow()
                self._persist_state()
            return copy.deepcopy(workspace)

    def update_workspace(self, user_id: str, **fields: Any) -> UserWorkspace:
        with self._data_lock:
            workspace = self.workspaces.get(user_id)
            if workspace is None:
                raise KeyError(f"workspace not found for user {user_id}")
            # Validate against a copy so a rejected write leaves no partial state
            updated = apply_workspace_update(copy.deepcopy(workspace), fields)
            self.workspaces[user_id] = updated
            self._persist_state()
            return copy.deepcopy(updated)

    def reset_workspace(self, user_id: str) -> UserWorkspace:
        with self._data_lock:
            workspace = self.workspaces.get(user_id)
            if workspace is None:
                raise KeyError(f"workspace not found for user {user_id}")
            reset_provisioning_fields(workspace)
            self._persist_state()
            return copy.deepcopy(workspace)

    def list_workspaces(
        self,
        *,
        project_status: Optional[ProjectStatus | str] = None,
        training_status: Optional[TrainingStatus | str] = None,
    ) -> List[UserWorkspace]:
        with self._data_lock:
            results = []
            for workspace in self.workspaces.values():
                if project_status and workspace.project_status != ProjectStatus(project_status):
                    continue
                if training_status and workspace.training_status != TrainingStatus(
                    training_status
                ):
                    continue
                results.append(copy.deepcopy(workspace))
            results.sort(key=lambda w: w.created_at)
            return results

    # -- monitor claims ---------------------------------------------------

    def claim_monitor(
        self, kind: str, user_id: str, owner: str, ttl_seconds: float
    ) -> bool:
        with self._data_lock:
            key = (kind, user_id)
            existing = self.monitor_claims.get(key)
            if existing and existing.owner != owner and not existing.is_expired():
                return False
            self.monitor_claims[key] = MonitorClaim.new(kind, user_id, owner, ttl_seconds)
            self._persist_state()
            return True

    def release_monitor(self, kind: str, user_id: str, owner: str) -> None:
        with self._data_lock:
            key = (kind, user_id)
            existing = self.monitor_claims.get(key)
            if existing and existing.owner == owner:
                del self.monitor_claims[key]
                self._persist_state()

    def get_monitor_claim(self, kind: str, user_id: str) -> Optional[MonitorClaim]:
        with self._data_lock:
            claim = self.monitor_claims.get((kind, user_id))
            if claim and claim.is_expired():
                return None
            return copy.deepcopy(claim) if claim else None

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "workspaces": [
                serialize_workspace(w, self._cipher) for w in self.workspaces.values()
            ],
            "monitor_claims": [
                {
                    "kind": c.kind,
                    "user_id": c.user_id,
                    "owner": c.owner,
                    "claimed_at": c.claimed_at.isoformat(),
                    "expires_at": c.expires_at.isoformat(),
                }
                for c in self.monitor_claims.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        if not self.persist:
            return False
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.workspaces = {
            w["user_id"]: deserialize_workspace(w, self._cipher)
            for w in data.get("workspaces", [])
        }
        self.monitor_claims = {}
        for raw in data.get("monitor_claims", []):
            claim = MonitorClaim(
                kind=raw["kind"],
                user_id=raw["user_id"],
                owner=raw["owner"],
                claimed_at=datetime.fromisoformat(raw["claimed_at"]),
                expires_at=datetime.fromisoformat(raw["expires_at"]),
            )
            self.monitor_claims[(claim.kind, claim.user_id)] = claim
        self.logger.info("workspace_store_loaded", workspaces=len(self.workspaces))
        return True

    def close(self) -> None:
        return None
