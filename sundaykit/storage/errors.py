from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class InvalidStatusTransition(ConstraintViolation):
    """Raised when a write would move a workspace status backwards or out of a terminal state."""

    def __init__(self, user_id: str, current: str, target: str):
        super().__init__(
            f"cannot move workspace from {current} to {target}",
            {"user_id": user_id, "current": current, "target": target},
        )
        self.current = current
        self.target = target


__all__ = ["ConstraintViolation", "InvalidStatusTransition"]
