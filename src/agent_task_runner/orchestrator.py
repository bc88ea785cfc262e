"""Task lifecycle orchestration.

The orchestrator keeps three external resources consistent with the task
record: the git worktree/branch, the sandbox container and the iteration
directory. Every mutating operation runs under the task's advisory lock and
leaves the record in a valid status on both success and failure.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .agents import AgentTool, TaskExpansion, get_agent
from .config import ProjectConfig, load_project_config
from .constants import BRANCH_PREFIX, DEFAULT_WORKFLOW
from .counter import TaskCounter
from .errors import (
    InvalidTransitionError,
    SandboxError,
    TaskRunnerError,
    TaskValidationError,
    WorkspaceError,
)
from .git_utils import WorkspaceManager, _ensure_excluded
from .github import fetch_issue
from .logs import cache_logs
from .models import IterationMeta, IterationState, TaskRecord, TaskStatus
from .sandbox import SandboxRunner, get_sandbox
from .task_store import TaskStore
from .utils import _now_iso
from .workflow import WorkflowDefinition, load_workflow

TITLE_FALLBACK_LENGTH = 70


def branch_name_for(task: TaskRecord) -> str:
    return f"{BRANCH_PREFIX}/task-{task.id}-{task.uuid[:8]}"


def _fallback_title(description: str) -> str:
    first_line = description.strip().splitlines()[0] if description.strip() else "Untitled task"
    if len(first_line) <= TITLE_FALLBACK_LENGTH:
        return first_line
    return first_line[: TITLE_FALLBACK_LENGTH - 3].rstrip() + "..."


@dataclass
class CreateResult:
    """Outcome of :meth:`TaskLifecycleOrchestrator.create`.

    ``task`` is always set and always loadable. ``error`` is set when the task
    was persisted but could not be fully started.
    """

    task: TaskRecord
    started: bool
    error: Optional[str] = None
    hint: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.started,
            "taskId": self.task.id,
            "title": self.task.title,
            "description": self.task.description,
            "status": self.task.status.value,
            "branchName": self.task.branch_name,
            "worktreePath": self.task.worktree_path,
            "containerId": self.task.container_id,
        }
        if self.error:
            data["error"] = self.error
        if self.hint:
            data["hint"] = self.hint
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


@dataclass
class CleanupResult:
    task_id: int
    warnings: list[str] = field(default_factory=list)


@dataclass
class DiffResult:
    task_id: int
    diff: str = ""
    files: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)
    base: Optional[str] = None
    path: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": True,
            "taskId": self.task_id,
            "files": list(self.files),
            "untrackedFiles": list(self.untracked),
            "diff": self.diff,
        }
        if self.base:
            data["base"] = self.base
        if self.path:
            data["path"] = self.path
        return data


class TaskLifecycleOrchestrator:
    """Create, run, stop and delete tasks.

    Collaborators are injectable; by default the agent comes from the agent
    registry and the sandbox backend from the project configuration.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        store: Optional[TaskStore] = None,
        counter: Optional[TaskCounter] = None,
        workspace: Optional[WorkspaceManager] = None,
        sandbox: Optional[SandboxRunner] = None,
        agent: Optional[AgentTool] = None,
        config: Optional[ProjectConfig] = None,
        issue_fetcher: Callable = fetch_issue,
    ):
        self.project_dir = Path(project_dir).resolve()
        self.store = store or TaskStore(self.project_dir)
        self.counter = counter or TaskCounter(self.store.state_dir)
        self.workspace = workspace or WorkspaceManager(self.project_dir)
        self._config = config
        self._sandbox = sandbox
        self._agent = agent
        self._issue_fetcher = issue_fetcher

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    @property
    def config(self) -> ProjectConfig:
        if self._config is None:
            self._config = load_project_config(self.project_dir)
        return self._config

    def agent_for(self, task: Optional[TaskRecord] = None, name: Optional[str] = None) -> AgentTool:
        if self._agent is not None:
            return self._agent
        return get_agent(name or (task.agent if task else None) or self.config.agent)

    def sandbox_for(self, task: TaskRecord) -> SandboxRunner:
        if self._sandbox is not None:
            return self._sandbox
        return get_sandbox(self.config.sandbox.backend, self.store, self.config, self.agent_for(task))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, task_id: int) -> TaskRecord:
        return self.store.load(task_id)

    def list_tasks(self, *, refresh: bool = True) -> list[TaskRecord]:
        records = self.store.list_tasks()
        if not refresh:
            return records
        refreshed = []
        for record in records:
            if record.is_in_progress():
                try:
                    record = self.refresh_status(record.id)
                except TaskRunnerError as exc:
                    logger.warning("Unable to refresh task {}: {}", record.id, exc)
            refreshed.append(record)
        return refreshed

    def refresh_status(self, task_id: int) -> TaskRecord:
        """Fold the running iteration's ``status.json`` into the task record."""
        with self.store.lock(task_id):
            task = self.store.load(task_id)
            if not task.is_in_progress():
                return task
            status = self.store.iteration_status(task_id, task.iterations)
            task.last_status_check = _now_iso()
            if status is not None:
                task.execution_status = status.status.value
                if status.status == IterationState.COMPLETED:
                    task.mark_completed(status.completed_at)
                    logger.info("Task {} completed", task_id)
                elif status.status == IterationState.FAILED:
                    task.mark_failed(status.error or "Agent reported a failure", status.completed_at)
                    logger.info("Task {} failed: {}", task_id, task.error)
            self.store.save(task)
            return task

    def diff(
        self,
        task_id: int,
        *,
        path: Optional[str] = None,
        base: Optional[str] = None,
        only_files: bool = False,
    ) -> DiffResult:
        """Show what the agent changed in the task's worktree.

        Raises:
            TaskNotFoundError: If the task does not exist.
            WorkspaceError: If the task has no worktree or git fails.
        """
        task = self.store.load(task_id)
        if not task.worktree_path or not Path(task.worktree_path).exists():
            raise WorkspaceError(
                f"No workspace found for task {task_id}",
                task_id=task_id,
                hint=f"agent-tasks start {task_id}",
            )
        worktree = Path(task.worktree_path)
        names = self.workspace.diff(worktree, base=base, path=path, name_only=True)
        result = DiffResult(
            task_id=task_id,
            files=[line.strip() for line in names.splitlines() if line.strip()],
            base=base,
            path=path,
        )
        if not path:
            result.untracked = self.workspace.untracked_files(worktree)
        if not only_files:
            result.diff = self.workspace.diff(worktree, base=base, path=path)
        return result

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _transition(self, task_id: int, apply: Callable[[TaskRecord], None]) -> TaskRecord:
        with self.store.lock(task_id):
            task = self.store.load(task_id)
            apply(task)
            self.store.save(task)
            return task

    def mark_in_progress(self, task_id: int) -> TaskRecord:
        return self._transition(task_id, lambda task: task.mark_in_progress())

    def update_iteration(self, task_id: int, meta: Optional[IterationMeta] = None) -> TaskRecord:
        return self._transition(task_id, lambda task: task.update_iteration(meta))

    def mark_completed(self, task_id: int) -> TaskRecord:
        return self._transition(task_id, lambda task: task.mark_completed())

    def mark_failed(self, task_id: int, reason: str) -> TaskRecord:
        return self._transition(task_id, lambda task: task.mark_failed(reason))

    def mark_merged(self, task_id: int) -> TaskRecord:
        return self._transition(task_id, lambda task: task.mark_merged())

    def mark_pushed(self, task_id: int) -> TaskRecord:
        return self._transition(task_id, lambda task: task.mark_pushed())

    def reset_to_new(self, task_id: int) -> TaskRecord:
        return self._transition(task_id, lambda task: task.reset_to_new())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_workspace(self, task: TaskRecord, base_branch: Optional[str] = None) -> None:
        """Bind the task's worktree, creating it when it is not on disk."""
        path = self.store.workspace_path(task.id)
        branch = task.branch_name or branch_name_for(task)
        if task.worktree_path and Path(task.worktree_path).exists():
            return
        if path.exists() and self.workspace.worktree_exists(path):
            logger.debug("Reusing worktree {} for task {}", path, task.id)
        else:
            self.workspace.prune_worktrees()
            self.workspace.create_worktree(path, branch, base_branch or task.source_branch)
        task.set_workspace(str(path), branch)

    def _launch(self, task: TaskRecord) -> None:
        """Start the sandbox for a task that is IN_PROGRESS or ITERATING.

        On failure the task is reset to NEW and persisted before the error is
        re-raised, so it never stays IN_PROGRESS without a sandbox.
        """
        try:
            container_id = self.sandbox_for(task).create_and_start(task)
        except Exception as exc:
            task.record_error(str(exc))
            task.reset_to_new()
            self.store.save(task)
            raise SandboxError(
                f"Failed to start the sandbox for task {task.id}: {exc}",
                task_id=task.id,
                hint=f"agent-tasks restart {task.id}",
            ) from exc
        task.set_container_info(container_id, "running")
        self.store.save(task)
        logger.info("Task {} is running in container {}", task.id, container_id)

    def _stop_container(self, task: TaskRecord, warnings: list[str]) -> None:
        if not task.container_id:
            return
        try:
            sandbox = self.sandbox_for(task)
        except TaskRunnerError as exc:
            logger.warning("No sandbox available to stop task {}: {}", task.id, exc)
            warnings.append(str(exc))
            task.set_container_info("", "")
            return
        cache_logs(self.store, sandbox, task)
        try:
            sandbox.stop_and_remove(task)
        except TaskRunnerError as exc:
            logger.warning("Unable to remove container {} of task {}: {}", task.container_id, task.id, exc)
            warnings.append(str(exc))
        task.set_container_info("", "")

    def _remove_workspace(self, task: TaskRecord, warnings: list[str]) -> None:
        """Best-effort removal of the task's worktree and branch."""
        path = Path(task.worktree_path) if task.worktree_path else self.store.workspace_path(task.id)
        branch = task.branch_name or branch_name_for(task)
        if path.exists():
            try:
                self.workspace.remove_worktree(path)
            except WorkspaceError as exc:
                logger.warning("Unable to remove worktree {}: {}", path, exc)
                warnings.append(str(exc))
        self.workspace.prune_worktrees()
        if self.workspace.branch_exists(branch):
            try:
                self.workspace.delete_branch(branch)
            except WorkspaceError as exc:
                logger.warning("Unable to delete branch {}: {}", branch, exc)
                warnings.append(str(exc))
        task.set_workspace("", "")

    def _previous_context(self, task: TaskRecord) -> dict[str, Any]:
        numbers = self.store.iteration_numbers(task.id)
        if not numbers:
            return {}
        last = numbers[-1]
        context: dict[str, Any] = {"iteration_number": last}
        plan = self.store.iteration_plan(task.id, last)
        summary = self.store.iteration_summary(task.id, last)
        if plan:
            context["plan"] = plan
        if summary:
            context["summary"] = summary
        return context

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def _prepare_inputs(
        self,
        workflow: WorkflowDefinition,
        description: str,
        inputs: Optional[dict[str, str]],
        from_github: Optional[str],
        agent: AgentTool,
        warnings: list[str],
    ) -> tuple[str, dict[str, str]]:
        provided = dict(inputs or {})
        if from_github:
            issue = self._issue_fetcher(from_github)
            specs = [
                {"name": entry.name, "description": entry.description, "required": entry.required}
                for entry in workflow.inputs
            ]
            extracted = agent.extract_github_inputs(issue.body, specs) if issue.body else None
            if extracted:
                for key, value in extracted.items():
                    provided.setdefault(key, value)
            if not description:
                description = f"{issue.title}\n\n{issue.body}".strip()
        if description:
            provided.setdefault("description", description)
        else:
            description = provided.get("description", "")
        if not description.strip():
            raise TaskValidationError("A task description is required", hint="pass a description or --from-github")
        resolved, input_warnings = workflow.resolve_inputs(provided)
        warnings.extend(input_warnings)
        return description, resolved

    def create(
        self,
        description: str = "",
        *,
        title: Optional[str] = None,
        inputs: Optional[dict[str, str]] = None,
        workflow: Optional[str] = None,
        agent: Optional[str] = None,
        source_branch: Optional[str] = None,
        from_github: Optional[str] = None,
        expand: bool = True,
    ) -> CreateResult:
        """Create a task and start its first iteration.

        Validation (repository, workflow, agent and inputs) happens before
        anything is written. After the record is persisted, workspace or
        sandbox failures are reported through the result instead of raised.

        Raises:
            TaskValidationError: For invalid input, before any side effect.
            WorkflowError: If the workflow is unknown or inputs are missing.
            AgentError: If the agent name is unknown.
            WorkspaceError: If the project is not a git repository with commits.
        """
        if not self.workspace.is_repo():
            raise WorkspaceError(f"{self.project_dir} is not a git repository", hint="run git init first")
        if not self.workspace.has_commits():
            raise WorkspaceError("The repository has no commits yet", hint="create an initial commit first")
        if source_branch and not self.workspace.branch_exists(source_branch):
            raise TaskValidationError(f"Source branch '{source_branch}' does not exist")
        warnings: list[str] = []
        workflow_def = load_workflow(workflow or DEFAULT_WORKFLOW, self.project_dir)
        agent_name = (agent or self.config.agent).strip().lower()
        agent_tool = self.agent_for(name=agent_name)
        description, resolved_inputs = self._prepare_inputs(
            workflow_def, description.strip(), inputs, from_github, agent_tool, warnings
        )

        expansion: Optional[TaskExpansion] = None
        if title is None and expand:
            expansion = agent_tool.expand_task(description, self.project_dir)
            if expansion is None:
                warnings.append("Task expansion failed, using the original description")
        task_title = title or (expansion.title if expansion else _fallback_title(description))
        task_description = expansion.description if expansion else description
        base_branch = source_branch or self.workspace.current_branch() or self.workspace.main_branch()

        # 1-3: allocate id, create directory, persist NEW.
        _ensure_excluded(self.project_dir)
        task_id = self.counter.next_id()
        task = TaskRecord(
            id=task_id,
            uuid=str(uuid.uuid4()),
            title=task_title,
            description=task_description,
            workflow_name=workflow_def.name,
            inputs=resolved_inputs,
            agent=agent_name,
            source_branch=base_branch,
        )
        with self.store.lock(task_id):
            self.store.create(task)
            logger.info("Created task {}: {}", task_id, task_title)

            # 4-5: worktree.
            try:
                self._ensure_workspace(task, base_branch)
            except WorkspaceError as exc:
                task.record_error(str(exc))
                self.store.save(task)
                return CreateResult(
                    task=task,
                    started=False,
                    error=f"Failed to create the workspace: {exc}",
                    hint=f"agent-tasks start {task_id}",
                    warnings=warnings,
                )
            self.store.save(task)

            # 6-7: first iteration, IN_PROGRESS.
            self.store.create_iteration(task)
            task.mark_in_progress()
            self.store.save(task)

            # 8: sandbox.
            try:
                self._launch(task)
            except SandboxError as exc:
                return CreateResult(task=task, started=False, error=str(exc), hint=exc.hint, warnings=warnings)
        return CreateResult(task=task, started=True, warnings=warnings)

    # ------------------------------------------------------------------
    # start / restart / iterate
    # ------------------------------------------------------------------

    def start(self, task_id: int) -> TaskRecord:
        """Launch a NEW task.

        Raises:
            InvalidTransitionError: If the task is not NEW (the message names its status).
            WorkspaceError: If the worktree cannot be created; the task stays NEW.
            SandboxError: If the sandbox fails; the task is back in NEW.
        """
        with self.store.lock(task_id):
            task = self.store.load(task_id)
            if not task.is_new():
                raise InvalidTransitionError(
                    task_id,
                    task.status.value,
                    TaskStatus.IN_PROGRESS.value,
                    hint=f"task is {task.status.value}; run agent-tasks stop {task_id} first",
                )
            self._ensure_workspace(task)
            self.store.save(task)
            if task.iterations not in self.store.iteration_numbers(task_id):
                self.store.create_iteration(task, previous_context=self._previous_context(task))
            task.mark_in_progress()
            self.store.save(task)
            self._launch(task)
            return task

    def restart(self, task_id: int) -> TaskRecord:
        """Run a NEW or FAILED task again as a fresh iteration."""
        with self.store.lock(task_id):
            task = self.store.load(task_id)
            if task.status not in {TaskStatus.NEW, TaskStatus.FAILED}:
                raise InvalidTransitionError(
                    task_id,
                    task.status.value,
                    TaskStatus.IN_PROGRESS.value,
                    hint="only NEW or FAILED tasks can be restarted",
                )
            warnings: list[str] = []
            self._stop_container(task, warnings)
            self._ensure_workspace(task)
            previous = self._previous_context(task)
            task.mark_restarted()
            self.store.save(task)
            self.store.create_iteration(task, previous_context=previous)
            task.mark_in_progress()
            self.store.save(task)
            logger.info("Restarting task {} (restart #{})", task_id, task.restart_count)
            self._launch(task)
            return task

    def iterate(self, task_id: int, instructions: str, *, expand: bool = True) -> TaskRecord:
        """Start another iteration of a running, completed or failed task with new instructions."""
        if not instructions.strip():
            raise TaskValidationError("Iteration instructions are required", task_id=task_id)
        with self.store.lock(task_id):
            task = self.store.load(task_id)
            if task.status not in {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.FAILED}:
                raise InvalidTransitionError(task_id, task.status.value, TaskStatus.ITERATING.value)
            previous = self._previous_context(task)
            expansion = None
            if expand:
                expansion = self.agent_for(task).expand_iteration_instructions(
                    instructions, previous.get("plan"), previous.get("summary")
                )
            iteration_title = expansion.title if expansion else task.title
            iteration_description = expansion.description if expansion else instructions.strip()

            warnings: list[str] = []
            self._stop_container(task, warnings)
            self._ensure_workspace(task)
            meta = IterationMeta(timestamp=_now_iso())
            task.mark_iterating(meta)
            self.store.save(task)
            self.store.create_iteration(
                task,
                title=iteration_title,
                description=iteration_description,
                previous_context=previous,
            )
            self._launch(task)
            task.update_iteration(meta)
            self.store.save(task)
            logger.info("Task {} iteration {} started", task_id, task.iterations)
            return task

    # ------------------------------------------------------------------
    # stop / delete
    # ------------------------------------------------------------------

    def stop(
        self,
        task_id: int,
        *,
        remove_all: bool = False,
        remove_git_worktree_and_branch: bool = False,
        remove_iterations: bool = False,
    ) -> CleanupResult:
        """Stop the task's sandbox and reset it to NEW so it can be started again.

        By default the worktree, branch, iteration plans and summaries are kept
        and only the live execution files are removed. ``remove_iterations``
        drops the whole iteration history; ``remove_all`` or
        ``remove_git_worktree_and_branch`` also delete the worktree and branch.
        """
        result = CleanupResult(task_id=task_id)
        with self.store.lock(task_id):
            task = self.store.load(task_id)
            self._stop_container(task, result.warnings)
            if remove_iterations or remove_all:
                self.store.remove_iterations(task_id)
            else:
                self.store.clear_iteration_scratch(task_id)
            if remove_all or remove_git_worktree_and_branch:
                self._remove_workspace(task, result.warnings)
            task.reset_to_new()
            self.store.save(task)
            logger.info("Stopped task {}", task_id)
        return result

    def delete(self, task_id: int) -> CleanupResult:
        """Remove the task, its worktree and branch.

        Git cleanup is best effort; the record is removed even when it fails.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        result = CleanupResult(task_id=task_id)
        with self.store.lock(task_id):
            task = self.store.load(task_id)
            self._stop_container(task, result.warnings)
            self._remove_workspace(task, result.warnings)
            self.store.delete(task_id)
            self.workspace.prune_worktrees()
            logger.info("Deleted task {}", task_id)
        return result
