"""Define the persisted task and iteration records and their status machine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Optional

from .constants import ITERATION_SCHEMA_VERSION, TASK_SCHEMA_VERSION
from .errors import InvalidTransitionError, TaskValidationError
from .utils import _now_iso, _parse_iso


class TaskStatus(str, Enum):
    """Represent where a task sits in its lifecycle."""

    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    ITERATING = "ITERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    MERGED = "MERGED"
    PUSHED = "PUSHED"


class IterationState(str, Enum):
    """Status values the agent writes to an iteration's ``status.json``."""

    INITIALIZING = "initializing"
    INSTALLING = "installing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses reached once the agent finished its work.
FINISHED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.MERGED, TaskStatus.PUSHED})
# Statuses with a live (or expected) sandbox.
ACTIVE_STATUSES = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.ITERATING})

_START_SOURCES = frozenset({TaskStatus.NEW, TaskStatus.FAILED})
_ITERATE_SOURCES = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.FAILED})
_PUBLISH_SOURCES = FINISHED_STATUSES


@dataclass
class IterationMeta:
    """Metadata recorded when a task goes through an iteration."""

    timestamp: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


@dataclass
class TaskRecord:
    """Durable state for one task.

    Transition methods only validate and mutate this object; persisting the
    result is the caller's job (see ``TaskStore.save``).
    """

    id: int
    uuid: str
    title: str
    description: str
    status: TaskStatus = TaskStatus.NEW
    created_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    last_iteration_at: Optional[str] = None
    last_status_check: Optional[str] = None

    iterations: int = 1
    workflow_name: str = ""
    inputs: dict[str, str] = field(default_factory=dict)
    agent: Optional[str] = None
    source_branch: Optional[str] = None

    worktree_path: str = ""
    branch_name: str = ""

    container_id: str = ""
    execution_status: str = ""
    running_at: Optional[str] = None
    error_at: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    restart_count: int = 0
    last_restart_at: Optional[str] = None

    version: str = TASK_SCHEMA_VERSION
    extra: dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_new(self) -> bool:
        return self.status == TaskStatus.NEW

    def is_in_progress(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def is_completed(self) -> bool:
        return self.status in FINISHED_STATUSES

    def is_failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    def has_workspace(self) -> bool:
        return bool(self.worktree_path)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require(self, allowed: frozenset[TaskStatus], target: TaskStatus, hint: Optional[str] = None) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(self.id, self.status.value, target.value, hint=hint)

    def mark_in_progress(self, timestamp: Optional[str] = None) -> None:
        """Move a NEW or FAILED task to IN_PROGRESS.

        Raises:
            InvalidTransitionError: When the task is already running or finished.
        """
        self._require(_START_SOURCES, TaskStatus.IN_PROGRESS, hint=f"stop task {self.id} first")
        timestamp = timestamp or _now_iso()
        self.status = TaskStatus.IN_PROGRESS
        if not self.started_at:
            self.started_at = timestamp
        self.running_at = timestamp

    def mark_iterating(self, meta: Optional[IterationMeta] = None) -> None:
        """Open a new iteration on a running, completed or failed task."""
        self._require(_ITERATE_SOURCES, TaskStatus.ITERATING)
        meta = meta or IterationMeta()
        self.status = TaskStatus.ITERATING
        self.iterations += 1
        self._apply_meta(meta)

    def update_iteration(self, meta: Optional[IterationMeta] = None) -> None:
        """Record iteration metadata and return the task to IN_PROGRESS.

        A task that is IN_PROGRESS passes through ITERATING; a task already
        ITERATING completes the loop back to IN_PROGRESS.
        """
        self._require(ACTIVE_STATUSES, TaskStatus.ITERATING)
        self.status = TaskStatus.ITERATING
        self._apply_meta(meta or IterationMeta())
        self.status = TaskStatus.IN_PROGRESS

    def _apply_meta(self, meta: IterationMeta) -> None:
        self.last_iteration_at = meta.timestamp or _now_iso()
        if meta.title:
            self.title = meta.title
        if meta.description:
            self.description = meta.description

    def mark_completed(self, timestamp: Optional[str] = None) -> None:
        self._require(ACTIVE_STATUSES, TaskStatus.COMPLETED)
        self.status = TaskStatus.COMPLETED
        if not self.completed_at:
            self.completed_at = timestamp or _now_iso()

    def mark_failed(self, reason: str, timestamp: Optional[str] = None) -> None:
        self._require(ACTIVE_STATUSES, TaskStatus.FAILED)
        timestamp = timestamp or _now_iso()
        self.status = TaskStatus.FAILED
        if not self.completed_at:
            self.completed_at = timestamp
        self.failed_at = timestamp
        self.error = reason

    def mark_merged(self) -> None:
        """Record that the task branch was merged. ``completed_at`` is left as is."""
        self._require(_PUBLISH_SOURCES, TaskStatus.MERGED, hint="only completed tasks can be merged")
        self.status = TaskStatus.MERGED

    def mark_pushed(self) -> None:
        """Record that the task branch was pushed. ``completed_at`` is left as is."""
        self._require(_PUBLISH_SOURCES, TaskStatus.PUSHED, hint="only completed tasks can be pushed")
        self.status = TaskStatus.PUSHED

    def mark_restarted(self, timestamp: Optional[str] = None) -> None:
        """Count a restart and open the iteration it will run as."""
        self._require(_START_SOURCES, TaskStatus.IN_PROGRESS, hint=f"stop task {self.id} first")
        timestamp = timestamp or _now_iso()
        self.restart_count += 1
        self.last_restart_at = timestamp
        self.iterations += 1
        self.last_iteration_at = timestamp

    def reset_to_new(self) -> None:
        """Drop every runtime binding so the task can be started again.

        ``iterations`` and ``completed_at`` are history and survive the reset.
        """
        self.status = TaskStatus.NEW
        self.container_id = ""
        self.execution_status = ""
        self.worktree_path = ""
        self.branch_name = ""
        self.running_at = None

    def set_workspace(self, worktree_path: str, branch_name: str) -> None:
        self.worktree_path = worktree_path
        self.branch_name = branch_name

    def set_container_info(self, container_id: str, execution_status: str) -> None:
        self.container_id = container_id
        self.execution_status = execution_status

    def record_error(self, message: str, exit_code: Optional[int] = None) -> None:
        """Keep the last execution error without changing the status."""
        self.error = message
        self.error_at = _now_iso()
        if exit_code is not None:
            self.exit_code = exit_code

    def update_details(self, *, title: Optional[str] = None, description: Optional[str] = None) -> None:
        if self.status not in {TaskStatus.NEW, TaskStatus.IN_PROGRESS}:
            raise InvalidTransitionError(
                self.id,
                self.status.value,
                self.status.value,
                hint="title and description can only change while NEW or IN_PROGRESS",
            )
        if title is not None:
            self.title = title
        if description is not None:
            self.description = description

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        extra = data.pop("extra", {}) or {}
        for key, value in extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRecord":
        """Build a record from an already-migrated payload.

        Raises:
            TaskValidationError: If required fields are missing or malformed.
        """
        errors = validate_task_dict(data)
        if errors:
            raise TaskValidationError(
                "Invalid task record: " + "; ".join(errors),
                task_id=data.get("id") if isinstance(data.get("id"), int) else None,
            )
        known = {f.name for f in fields(cls)} - {"extra"}
        payload = {key: value for key, value in data.items() if key in known}
        extra = {key: value for key, value in data.items() if key not in known}
        payload["status"] = TaskStatus(data["status"])
        payload["inputs"] = {str(k): str(v) for k, v in (data.get("inputs") or {}).items()}
        for key in ("worktree_path", "branch_name", "container_id", "execution_status"):
            payload[key] = payload.get(key) or ""
        return cls(**payload, extra=extra)


_TIMESTAMP_FIELDS = (
    "created_at",
    "started_at",
    "completed_at",
    "failed_at",
    "last_iteration_at",
    "last_status_check",
    "running_at",
    "error_at",
    "last_restart_at",
)


def validate_task_dict(data: dict[str, Any]) -> list[str]:
    """Return a list of problems with a task payload (empty when valid)."""
    errors: list[str] = []
    task_id = data.get("id")
    if not isinstance(task_id, int) or isinstance(task_id, bool) or task_id < 1:
        errors.append("id must be a positive integer")
    for key in ("uuid", "title", "description"):
        if not isinstance(data.get(key), str):
            errors.append(f"{key} must be a string")
    if isinstance(data.get("title"), str) and not data["title"].strip():
        errors.append("title must not be empty")
    status = data.get("status")
    if status not in {s.value for s in TaskStatus}:
        errors.append(f"status {status!r} is not one of {', '.join(s.value for s in TaskStatus)}")
    iterations = data.get("iterations")
    if not isinstance(iterations, int) or iterations < 1:
        errors.append("iterations must be an integer >= 1")
    inputs = data.get("inputs", {})
    if not isinstance(inputs, dict):
        errors.append("inputs must be an object")
    if not data.get("created_at"):
        errors.append("created_at is required")
    for key in _TIMESTAMP_FIELDS:
        value = data.get(key)
        if value and _parse_iso(value) is None:
            errors.append(f"{key} must be an ISO datetime")
    if status == TaskStatus.NEW.value and data.get("container_id"):
        errors.append("a NEW task cannot have a container_id")
    return errors


@dataclass
class IterationRecord:
    """One execution attempt of a task, stored in ``iterations/<n>/iteration.json``."""

    task_id: int
    iteration: int
    title: str
    description: str
    created_at: str = field(default_factory=_now_iso)
    inputs: dict[str, str] = field(default_factory=dict)
    previous_context: dict[str, Any] = field(default_factory=dict)
    version: str = ITERATION_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IterationRecord":
        errors: list[str] = []
        if not isinstance(data.get("iteration"), int) or data["iteration"] < 1:
            errors.append("iteration must be at least 1")
        if not data.get("title"):
            errors.append("title is required")
        if not isinstance(data.get("description"), str):
            errors.append("description is required")
        if _parse_iso(data.get("created_at")) is None:
            errors.append("created_at must be a valid ISO date string")
        if errors:
            raise TaskValidationError("Iteration config validation error: " + ", ".join(errors))
        return cls(
            task_id=int(data.get("task_id") or data.get("id") or 0),
            iteration=int(data["iteration"]),
            title=str(data["title"]),
            description=str(data["description"]),
            created_at=str(data["created_at"]),
            inputs={str(k): str(v) for k, v in (data.get("inputs") or {}).items()},
            previous_context=dict(data.get("previous_context") or {}),
            version=str(data.get("version") or ITERATION_SCHEMA_VERSION),
        )


@dataclass
class IterationStatus:
    """Progress report the agent writes while an iteration runs."""

    status: IterationState
    progress: int = 0
    current_step: str = ""
    error: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IterationStatus":
        raw = str(data.get("status", "")).lower()
        try:
            status = IterationState(raw)
        except ValueError:
            raise TaskValidationError(f"Unknown iteration status {raw!r}") from None
        return cls(
            status=status,
            progress=int(data.get("progress") or 0),
            current_step=str(data.get("current_step") or data.get("currentStep") or ""),
            error=data.get("error"),
            started_at=data.get("started_at") or data.get("startedAt"),
            updated_at=data.get("updated_at") or data.get("updatedAt"),
            completed_at=data.get("completed_at") or data.get("completedAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
