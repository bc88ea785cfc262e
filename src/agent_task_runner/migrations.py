"""Versioned migration pipelines for persisted documents.

Loading goes ``raw -> detect version -> apply each step in order -> validate``.
Each step is a pure function from one schema version's payload to the next.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from .constants import CONFIG_SCHEMA_VERSION, ITERATION_SCHEMA_VERSION, TASK_SCHEMA_VERSION
from .errors import ConfigError, TaskRunnerError, TaskValidationError
from .models import TaskStatus

MigrationStep = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class Migration:
    source: str
    target: str
    apply: MigrationStep


def _version_key(version: str) -> tuple[int, ...]:
    try:
        return tuple(int(part) for part in version.split("."))
    except ValueError:
        return (0,)


class MigrationPipeline:
    """Upgrade documents of one kind to the current schema version."""

    def __init__(
        self,
        name: str,
        current_version: str,
        migrations: list[Migration],
        *,
        initial_version: str = "1.0",
        error_cls: type[TaskRunnerError] = TaskValidationError,
    ):
        self.name = name
        self.current_version = current_version
        self.initial_version = initial_version
        self.error_cls = error_cls
        self._steps = {m.source: m for m in migrations}

    def detect_version(self, raw: dict[str, Any]) -> str:
        version = raw.get("version")
        if version in (None, ""):
            return self.initial_version
        return str(version)

    def migrate(self, raw: dict[str, Any]) -> tuple[dict[str, Any], bool]:
        """Return ``(payload, changed)`` with ``payload`` at the current version.

        Raises:
            TaskRunnerError: (``error_cls``) when the version is newer than this
                build understands or no step leads from it.
        """
        version = self.detect_version(raw)
        if _version_key(version) > _version_key(self.current_version):
            raise self.error_cls(
                f"{self.name} version {version} is newer than supported version {self.current_version}"
            )
        data = dict(raw)
        changed = False
        while version != self.current_version:
            step = self._steps.get(version)
            if step is None:
                raise self.error_cls(f"No {self.name} migration from version {version}")
            data = step.apply(dict(data))
            data["version"] = step.target
            version = step.target
            changed = True
        if data.get("version") != self.current_version:
            data["version"] = self.current_version
            changed = True
        return data, changed


# ---------------------------------------------------------------------------
# Task records
# ---------------------------------------------------------------------------

_LEGACY_STATUS = {
    "new": TaskStatus.NEW,
    "in_progress": TaskStatus.IN_PROGRESS,
    "running": TaskStatus.IN_PROGRESS,
    "iterating": TaskStatus.ITERATING,
    "completed": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "merged": TaskStatus.MERGED,
    "pushed": TaskStatus.PUSHED,
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def migrate_status(value: Any) -> TaskStatus:
    """Map a legacy free-text status onto the current enum; unknown values become NEW."""
    normalized = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    return _LEGACY_STATUS.get(normalized, TaskStatus.NEW)


def _task_1_0_to_1_1(data: dict[str, Any]) -> dict[str, Any]:
    out = {_snake(key): value for key, value in data.items()}
    status = migrate_status(out.get("status"))
    out["status"] = status.value
    task_id = out.get("id")
    if isinstance(task_id, str) and task_id.isdigit():
        task_id = int(task_id)
        out["id"] = task_id
    out.setdefault("uuid", str(uuid.uuid5(uuid.NAMESPACE_URL, f"agent-task-{task_id}")))
    out.setdefault("inputs", {})
    if not out.get("inputs") and out.get("description"):
        out["inputs"] = {"description": out["description"]}
    out.setdefault("workflow_name", "swe")
    out["iterations"] = out.get("iterations") or 1
    out["restart_count"] = out.get("restart_count") or 0
    for key in ("worktree_path", "branch_name", "container_id", "execution_status"):
        out[key] = out.get(key) or ""
    if status == TaskStatus.NEW:
        out["container_id"] = ""
    return out


TASK_MIGRATIONS = MigrationPipeline(
    "task",
    TASK_SCHEMA_VERSION,
    [Migration("1.0", "1.1", _task_1_0_to_1_1)],
)

ITERATION_MIGRATIONS = MigrationPipeline("iteration", ITERATION_SCHEMA_VERSION, [])


# ---------------------------------------------------------------------------
# Project configuration
# ---------------------------------------------------------------------------


def _config_1_0_to_1_1(data: dict[str, Any]) -> dict[str, Any]:
    out = {_snake(key): value for key, value in data.items()}
    sandbox = dict(out.pop("sandbox", None) or {})
    sandbox = {_snake(key): value for key, value in sandbox.items()}
    for key in ("agent_image", "init_script"):
        value = out.pop(key, None)
        if value and key not in sandbox:
            sandbox[key] = value
    if sandbox:
        out["sandbox"] = sandbox
    for key in ("languages", "mcps", "package_managers"):
        out.setdefault(key, [])
    return out


def _config_1_1_to_1_2(data: dict[str, Any]) -> dict[str, Any]:
    out = dict(data)
    if "taskManagers" not in out:
        out.setdefault("task_managers", [])
    out.setdefault("attribution", True)
    return out


CONFIG_MIGRATIONS = MigrationPipeline(
    "project config",
    CONFIG_SCHEMA_VERSION,
    [
        Migration("1.0", "1.1", _config_1_0_to_1_1),
        Migration("1.1", "1.2", _config_1_1_to_1_2),
    ],
    error_cls=ConfigError,
)
