"""Read sandbox logs of a task iteration.

Only the current iteration has a live container. Logs of earlier iterations
are served from the ``container.log`` copy taken when their container was
removed.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

from .constants import ITERATION_LOG_FILE
from .errors import SandboxError, TaskRunnerError, TaskValidationError
from .io_utils import _read_text, _read_text_tail
from .models import TaskRecord
from .sandbox import SandboxRunner
from .task_store import TaskStore


@dataclass
class LogSelection:
    task: TaskRecord
    iteration: int
    container_id: str
    cache_path: Path

    @property
    def is_live(self) -> bool:
        return bool(self.container_id)


def select_iteration(store: TaskStore, task_id: int, iteration: Optional[int] = None) -> LogSelection:
    """Pick the iteration whose logs to show (default: the task's current one).

    Raises:
        TaskNotFoundError: If the task does not exist.
        TaskValidationError: If the task has no iterations or ``iteration``
            is not one of them; the hint lists the available ones.
    """
    task = store.load(task_id)
    numbers = store.iteration_numbers(task_id)
    if not numbers:
        raise TaskValidationError(f"Task {task_id} has no iterations", task_id=task_id)
    if iteration is None:
        iteration = task.iterations if task.iterations in numbers else numbers[-1]
    elif iteration not in numbers:
        raise TaskValidationError(
            f"Iteration {iteration} not found for task {task_id}",
            task_id=task_id,
            hint="available iterations: " + ", ".join(str(n) for n in numbers),
        )
    container_id = task.container_id if iteration == task.iterations else ""
    return LogSelection(
        task=task,
        iteration=iteration,
        container_id=container_id,
        cache_path=store.iteration_dir(task_id, iteration) / ITERATION_LOG_FILE,
    )


def cache_logs(store: TaskStore, sandbox: SandboxRunner, task: TaskRecord) -> None:
    """Copy the live container's logs into the current iteration directory.

    Best effort: a sandbox that cannot produce logs leaves no copy behind.
    """
    if not task.container_id:
        return
    try:
        text = sandbox.logs(task.container_id)
    except TaskRunnerError as exc:
        logger.debug("No logs cached for task {}: {}", task.id, exc)
        return
    path = store.iteration_dir(task.id, task.iterations) / ITERATION_LOG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def read_logs(
    store: TaskStore,
    sandbox: SandboxRunner,
    task_id: int,
    iteration: Optional[int] = None,
    *,
    max_chars: Optional[int] = None,
) -> str:
    selection = select_iteration(store, task_id, iteration)
    if selection.is_live:
        text = sandbox.logs(selection.container_id)
        return text[-max_chars:] if max_chars else text
    if selection.cache_path.exists():
        if max_chars:
            return _read_text_tail(selection.cache_path, max_chars=max_chars)
        return _read_text(selection.cache_path) or ""
    raise SandboxError(
        f"No logs available for task {task_id} iteration {selection.iteration}",
        task_id=task_id,
        hint=f"agent-tasks start {task_id}" if selection.task.is_new() else None,
    )


def follow_logs(
    store: TaskStore,
    sandbox: SandboxRunner,
    task_id: int,
    iteration: Optional[int] = None,
) -> Iterator[str]:
    """Stream log lines of a running iteration until its container exits."""
    selection = select_iteration(store, task_id, iteration)
    if not selection.is_live:
        raise SandboxError(
            f"Task {task_id} iteration {selection.iteration} is not running",
            task_id=task_id,
            hint=f"agent-tasks logs {task_id} --iteration {selection.iteration}",
        )
    return sandbox.follow_logs(selection.container_id)
