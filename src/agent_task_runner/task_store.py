"""File-backed storage for task and iteration records.

Layout under the project's ``.agent-tasks/`` directory::

    tasks/<id>/description.json
    tasks/<id>/iterations/<n>/iteration.json   (+ status.json, summary.md, plan.md)
    tasks/<id>/workspace/                      (git worktree)
    locks/<id>.lock

Every write replaces the whole document atomically. Mutating callers take
:meth:`TaskStore.lock` so two invocations never write the same task at once.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from filelock import FileLock, Timeout
from loguru import logger

from .constants import (
    ITERATION_FILE,
    ITERATION_PLAN_FILE,
    ITERATION_SCRATCH_FILES,
    ITERATION_STATUS_FILE,
    ITERATION_SUMMARY_FILE,
    ITERATIONS_DIR,
    STATE_DIR_NAME,
    TASK_FILE,
    TASKS_DIR,
    WORKSPACE_DIR,
)
from .errors import DuplicateTaskError, TaskNotFoundError, TaskRunnerError, TaskValidationError
from .io_utils import _atomic_write_json, _load_data_with_error, _read_text, _remove_tree
from .migrations import ITERATION_MIGRATIONS, TASK_MIGRATIONS
from .models import IterationRecord, IterationStatus, TaskRecord

LOCK_TIMEOUT = 30  # seconds


class TaskStore:
    """Read and write task records for one project."""

    def __init__(self, project_dir: Path, state_dir: Optional[Path] = None):
        self.project_dir = Path(project_dir)
        self.state_dir = Path(state_dir) if state_dir else self.project_dir / STATE_DIR_NAME
        self.tasks_dir = self.state_dir / TASKS_DIR
        self.locks_dir = self.state_dir / "locks"

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def task_dir(self, task_id: int) -> Path:
        return self.tasks_dir / str(task_id)

    def task_path(self, task_id: int) -> Path:
        return self.task_dir(task_id) / TASK_FILE

    def iterations_dir(self, task_id: int) -> Path:
        return self.task_dir(task_id) / ITERATIONS_DIR

    def iteration_dir(self, task_id: int, iteration: int) -> Path:
        return self.iterations_dir(task_id) / str(iteration)

    def workspace_path(self, task_id: int) -> Path:
        return self.task_dir(task_id) / WORKSPACE_DIR

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, task_id: int, timeout: float = LOCK_TIMEOUT) -> Iterator[None]:
        """Hold the advisory lock for ``task_id`` for the duration of the block."""
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.locks_dir / f"{task_id}.lock"))
        try:
            lock.acquire(timeout=timeout)
        except Timeout:
            raise TaskRunnerError(
                f"Task {task_id} is locked by another operation",
                task_id=task_id,
                hint="wait for the other command to finish and retry",
            ) from None
        try:
            yield
        finally:
            lock.release()

    # ------------------------------------------------------------------
    # Task records
    # ------------------------------------------------------------------

    def exists(self, task_id: int) -> bool:
        return self.task_path(task_id).exists()

    def create(self, record: TaskRecord) -> TaskRecord:
        """Create the task directory and persist ``record`` for the first time.

        Raises:
            DuplicateTaskError: If a record already exists for ``record.id``.
        """
        task_dir = self.task_dir(record.id)
        if self.exists(record.id):
            raise DuplicateTaskError(record.id)
        task_dir.mkdir(parents=True, exist_ok=True)
        self.iterations_dir(record.id).mkdir(exist_ok=True)
        self.save(record)
        return record

    def save(self, record: TaskRecord) -> None:
        _atomic_write_json(self.task_path(record.id), record.to_dict())

    def load(self, task_id: int) -> TaskRecord:
        """Load, migrate and validate a task record.

        Raises:
            TaskNotFoundError: If no record exists.
            TaskValidationError: If the stored document is unreadable or invalid.
        """
        path = self.task_path(task_id)
        if not path.exists():
            raise TaskNotFoundError(task_id)
        raw, err = _load_data_with_error(path, {})
        if err:
            raise TaskValidationError(f"Task {task_id} record is unreadable: {err}", task_id=task_id)
        data, migrated = TASK_MIGRATIONS.migrate(raw)
        record = TaskRecord.from_dict(data)
        if record.id != task_id:
            raise TaskValidationError(
                f"Task record at {path} has id {record.id}, expected {task_id}",
                task_id=task_id,
            )
        if migrated:
            logger.debug("Migrated task {} record to version {}", task_id, record.version)
            self.save(record)
        return record

    def task_ids(self) -> list[int]:
        if not self.tasks_dir.exists():
            return []
        ids: list[int] = []
        for entry in self.tasks_dir.iterdir():
            if entry.is_dir() and entry.name.isdigit() and (entry / TASK_FILE).exists():
                ids.append(int(entry.name))
        return sorted(ids)

    def list_tasks(self) -> list[TaskRecord]:
        """Return every loadable task, sorted by id. Invalid records are logged and skipped."""
        records: list[TaskRecord] = []
        for task_id in self.task_ids():
            try:
                records.append(self.load(task_id))
            except TaskValidationError as exc:
                logger.warning("Skipping task {}: {}", task_id, exc)
        return records

    def delete(self, task_id: int) -> None:
        """Remove the task's whole directory tree (record, iterations and workspace)."""
        _remove_tree(self.task_dir(task_id))

    # ------------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------------

    def iteration_numbers(self, task_id: int) -> list[int]:
        base = self.iterations_dir(task_id)
        if not base.exists():
            return []
        return sorted(int(entry.name) for entry in base.iterdir() if entry.is_dir() and entry.name.isdigit())

    def create_iteration(
        self,
        record: TaskRecord,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        previous_context: Optional[dict] = None,
    ) -> IterationRecord:
        """Write ``iterations/<record.iterations>/iteration.json`` for the task."""
        iteration = IterationRecord(
            task_id=record.id,
            iteration=record.iterations,
            title=title or record.title,
            description=description or record.description,
            inputs=dict(record.inputs),
            previous_context=dict(previous_context or {}),
        )
        target = self.iteration_dir(record.id, record.iterations)
        target.mkdir(parents=True, exist_ok=True)
        _atomic_write_json(target / ITERATION_FILE, iteration.to_dict())
        return iteration

    def load_iteration(self, task_id: int, iteration: int) -> IterationRecord:
        path = self.iteration_dir(task_id, iteration) / ITERATION_FILE
        if not path.exists():
            raise TaskValidationError(f"Iteration {iteration} not found for task {task_id}", task_id=task_id)
        raw, err = _load_data_with_error(path, {})
        if err:
            raise TaskValidationError(f"Iteration {iteration} of task {task_id}: {err}", task_id=task_id)
        data, migrated = ITERATION_MIGRATIONS.migrate(raw)
        record = IterationRecord.from_dict(data)
        if migrated:
            _atomic_write_json(path, record.to_dict())
        return record

    def iterations(self, task_id: int) -> list[IterationRecord]:
        """Load every readable iteration, newest first."""
        loaded: list[IterationRecord] = []
        for number in reversed(self.iteration_numbers(task_id)):
            try:
                loaded.append(self.load_iteration(task_id, number))
            except TaskValidationError as exc:
                logger.debug("Error loading iteration {} for task {}: {}", number, task_id, exc)
        return loaded

    def latest_iteration(self, task_id: int) -> Optional[IterationRecord]:
        numbers = self.iteration_numbers(task_id)
        if not numbers:
            return None
        return self.load_iteration(task_id, numbers[-1])

    def iteration_status(self, task_id: int, iteration: int) -> Optional[IterationStatus]:
        path = self.iteration_dir(task_id, iteration) / ITERATION_STATUS_FILE
        if not path.exists():
            return None
        raw, err = _load_data_with_error(path, {})
        if err:
            logger.warning("Unreadable status for task {} iteration {}: {}", task_id, iteration, err)
            return None
        return IterationStatus.from_dict(raw)

    def iteration_summary(self, task_id: int, iteration: int) -> Optional[str]:
        text = _read_text(self.iteration_dir(task_id, iteration) / ITERATION_SUMMARY_FILE)
        return text.strip() if text and text.strip() else None

    def iteration_plan(self, task_id: int, iteration: int) -> Optional[str]:
        text = _read_text(self.iteration_dir(task_id, iteration) / ITERATION_PLAN_FILE)
        return text.strip() if text and text.strip() else None

    def iteration_summaries(self, task_id: int) -> list[str]:
        """Summaries of every iteration in ascending order, skipping empty ones."""
        summaries = []
        for number in self.iteration_numbers(task_id):
            summary = self.iteration_summary(task_id, number)
            if summary:
                summaries.append(summary)
        return summaries

    def clear_iteration_scratch(self, task_id: int) -> None:
        """Remove files that only describe a live run, keeping plans and summaries."""
        for number in self.iteration_numbers(task_id):
            for name in ITERATION_SCRATCH_FILES:
                path = self.iteration_dir(task_id, number) / name
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue

    def remove_iterations(self, task_id: int) -> None:
        _remove_tree(self.iterations_dir(task_id))
