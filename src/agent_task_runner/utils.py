"""Provide utility helpers for timestamps."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .errors import TaskValidationError


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        if not isinstance(value, str):
            value = str(value)
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def _parse_task_id(value: object) -> int:
    """Parse a user-supplied task id, rejecting anything but a positive integer."""
    try:
        task_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise TaskValidationError(f"Invalid task ID '{value}' - must be a number") from None
    if task_id < 1:
        raise TaskValidationError(f"Invalid task ID '{value}' - must be a positive number")
    return task_id
