"""Exception hierarchy shared by the store, orchestrator and merge flow."""

from __future__ import annotations

from typing import Optional


class TaskRunnerError(Exception):
    """Base class for every error surfaced to CLI callers.

    ``hint`` carries an actionable next step (for example a command to run)
    that interactive callers print below the message.
    """

    def __init__(self, message: str, *, task_id: Optional[int] = None, hint: Optional[str] = None):
        super().__init__(message)
        self.task_id = task_id
        self.hint = hint


class TaskNotFoundError(TaskRunnerError):
    """Referenced task id has no persisted record."""

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found", task_id=task_id)


class TaskValidationError(TaskRunnerError):
    """A record, id or input failed validation before any side effect."""


class DuplicateTaskError(TaskRunnerError):
    """A record already exists for the requested id."""

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} already exists", task_id=task_id)


class InvalidTransitionError(TaskValidationError):
    """The requested status change is not allowed from the current status."""

    def __init__(self, task_id: int, current: str, target: str, *, hint: Optional[str] = None):
        super().__init__(
            f"Task {task_id} cannot move from {current} to {target}",
            task_id=task_id,
            hint=hint,
        )
        self.current = current
        self.target = target


class WorkspaceError(TaskRunnerError):
    """A git worktree, branch, commit or merge command failed."""

    def __init__(self, message: str, *, stderr: str = "", **kwargs):
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message, **kwargs)
        self.stderr = stderr


class MergeConflictError(WorkspaceError):
    """A merge stopped with unmerged paths."""

    def __init__(self, files: list[str], **kwargs):
        super().__init__(f"Merge conflicts in {', '.join(files)}", **kwargs)
        self.files = files


class SandboxError(TaskRunnerError):
    """The container runtime is unavailable or a container command failed."""


class AgentError(TaskRunnerError):
    """An AI agent invocation failed or returned an unusable answer."""


class ConfigError(TaskRunnerError):
    """Project configuration could not be loaded, migrated or validated."""


class WorkflowError(TaskRunnerError):
    """Workflow definition is unknown or the provided inputs are incomplete."""
