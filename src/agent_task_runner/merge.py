"""Merge or push the work of a completed task.

Merging commits pending worktree changes, merges the task branch into the
current branch with a merge commit and, when git stops on conflicts, asks the
agent to resolve each conflicted file. A file the agent cannot resolve aborts
the whole merge so no half-resolved state is left behind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .agents import AgentTool, get_agent
from .config import ProjectConfig, load_project_config
from .constants import (
    CONFLICT_HISTORY_LIMIT,
    DEFAULT_ATTRIBUTION_TRAILER,
    RECENT_COMMITS_LIMIT,
    STATE_DIR_NAME,
)
from .errors import AgentError, MergeConflictError, WorkspaceError
from .git_utils import WorkspaceManager
from .models import TaskRecord
from .task_store import TaskStore


@dataclass
class ResolvedFile:
    path: str
    content: str


@dataclass
class MergeResult:
    task_id: int
    success: bool = False
    merged: bool = False
    committed: bool = False
    nothing_to_merge: bool = False
    aborted: bool = False
    conflicts: list[str] = field(default_factory=list)
    conflicts_resolved: bool = False
    commit_message: Optional[str] = None
    cleaned_up: bool = False
    error: Optional[str] = None
    hint: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "taskId": self.task_id,
            "merged": self.merged,
            "committed": self.committed,
            "nothingToMerge": self.nothing_to_merge,
            "aborted": self.aborted,
            "conflicts": list(self.conflicts),
            "conflictsResolved": self.conflicts_resolved,
            "cleanedUp": self.cleaned_up,
        }
        for key, value in (("commitMessage", self.commit_message), ("error", self.error), ("hint", self.hint)):
            if value:
                data[key] = value
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


@dataclass
class PushResult:
    task_id: int
    success: bool = False
    committed: bool = False
    pushed: bool = False
    branch: str = ""
    commit_message: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "taskId": self.task_id,
            "committed": self.committed,
            "pushed": self.pushed,
            "branchName": self.branch,
        }
        for key, value in (("commitMessage", self.commit_message), ("error", self.error), ("hint", self.hint)):
            if value:
                data[key] = value
        return data


ApproveResolution = Callable[[list[ResolvedFile]], bool]


class MergeCoordinator:
    """Commit, merge and push task branches.

    ``approve`` is called with the agent's conflict resolutions before the
    merge is finalized; returning ``False`` aborts the merge. Leave it unset
    for automated use, where resolutions are applied without review.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        store: Optional[TaskStore] = None,
        workspace: Optional[WorkspaceManager] = None,
        agent: Optional[AgentTool] = None,
        config: Optional[ProjectConfig] = None,
        approve: Optional[ApproveResolution] = None,
    ):
        self.project_dir = Path(project_dir).resolve()
        self.store = store or TaskStore(self.project_dir)
        self.workspace = workspace or WorkspaceManager(self.project_dir)
        self._agent = agent
        self._config = config
        self.approve = approve

    @property
    def config(self) -> ProjectConfig:
        if self._config is None:
            self._config = load_project_config(self.project_dir)
        return self._config

    def _agent_for(self, task: TaskRecord) -> Optional[AgentTool]:
        if self._agent is not None:
            return self._agent
        try:
            return get_agent(task.agent or self.config.agent)
        except AgentError as exc:
            logger.warning("No agent available for task {}: {}", task.id, exc)
            return None

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _check_worktree(self, task: TaskRecord) -> Optional[str]:
        if not task.is_completed():
            return f"Task {task.id} is not completed (status: {task.status.value})"
        if not task.worktree_path or not Path(task.worktree_path).exists():
            return f"No worktree found for task {task.id}"
        return None

    def build_commit_message(self, task: TaskRecord) -> str:
        """Draft the commit message for the task's pending changes.

        Falls back to the task title and description when the agent is
        unavailable or returns nothing. The attribution trailer is appended
        unless disabled in the project configuration.
        """
        agent = self._agent_for(task)
        message = None
        if agent is not None:
            recent = self.workspace.recent_commits(count=RECENT_COMMITS_LIMIT)
            summaries = self.store.iteration_summaries(task.id)
            message = agent.generate_commit_message(task.title, task.description, recent, summaries)
        if not message:
            message = f"{task.title}\n\n{task.description}"
        if self.config.attribution:
            message = f"{message}\n\n{DEFAULT_ATTRIBUTION_TRAILER}"
        return message

    def _commit_worktree(self, task: TaskRecord) -> str:
        message = self.build_commit_message(task)
        self.workspace.commit_all(Path(task.worktree_path), message)
        logger.info("Committed worktree changes of task {}", task.id)
        return message

    def _resolve_conflicts(self, task: TaskRecord, files: list[str]) -> tuple[list[ResolvedFile], Optional[str]]:
        """Ask the agent to resolve every file; stop at the first failure.

        Returns:
            ``(resolved, failed_file)``. ``failed_file`` is ``None`` when
            every file was resolved, written and staged.
        """
        agent = self._agent_for(task)
        if agent is None:
            return [], files[0]
        history = self.workspace.history_context(CONFLICT_HISTORY_LIMIT)
        resolved: list[ResolvedFile] = []
        for name in files:
            path = self.project_dir / name
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Unable to read conflicted file {}: {}", name, exc)
                return resolved, name
            answer = agent.resolve_merge_conflicts(name, history, content)
            if answer is None:
                return resolved, name
            try:
                path.write_text(answer, encoding="utf-8")
                self.workspace.stage([name])
            except (OSError, WorkspaceError) as exc:
                logger.warning("Unable to stage the resolution of {}: {}", name, exc)
                return resolved, name
            resolved.append(ResolvedFile(path=name, content=answer))
            logger.info("Resolved conflicts in {}", name)
        return resolved, None

    def _finish_conflicted_merge(self, task: TaskRecord, result: MergeResult) -> bool:
        """Resolve, approve and commit a merge that stopped on conflicts.

        Returns ``False`` when the merge was aborted; ``result`` then says why.
        """
        resolved, failed = self._resolve_conflicts(task, result.conflicts)
        if failed is not None:
            self.workspace.abort_merge()
            result.aborted = True
            result.error = f"Failed to resolve merge conflicts in {failed}"
            result.hint = f"merge manually with: git merge --no-ff {task.branch_name}"
            return False
        if self.approve is not None and not self.approve(resolved):
            self.workspace.abort_merge()
            result.aborted = True
            result.success = True
            logger.info("Conflict resolution for task {} rejected, merge aborted", task.id)
            return False
        try:
            self.workspace.continue_merge()
        except WorkspaceError as exc:
            self.workspace.abort_merge()
            result.aborted = True
            result.error = str(exc)
            return False
        result.conflicts_resolved = True
        return True

    def _cleanup(self, task: TaskRecord, result: MergeResult) -> None:
        worktree = Path(task.worktree_path)
        try:
            self.workspace.remove_worktree(worktree)
            self.workspace.prune_worktrees()
            self.workspace.delete_branch(task.branch_name)
        except WorkspaceError as exc:
            logger.warning("Cleanup of task {} failed: {}", task.id, exc)
            result.warnings.append(str(exc))
            return
        task.set_workspace("", "")
        result.cleaned_up = True

    # ------------------------------------------------------------------
    # merge
    # ------------------------------------------------------------------

    def merge(self, task_id: int, *, cleanup: bool = False) -> MergeResult:
        """Merge the task branch into the currently checked out branch.

        Every call re-reads the repository state, so calling it again after
        a successful merge reports "nothing to merge".

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        result = MergeResult(task_id=task_id)
        with self.store.lock(task_id):
            task = self.store.load(task_id)
            problem = self._check_worktree(task)
            if problem:
                result.error = problem
                result.hint = f"check agent-tasks inspect {task_id} and agent-tasks logs {task_id}"
                return result
            dirty = [
                name for name in self.workspace.uncommitted_files() if not name.startswith(STATE_DIR_NAME)
            ]
            if dirty:
                result.error = "Main repository has uncommitted changes: " + ", ".join(dirty[:5])
                result.hint = "commit or stash your changes before merging"
                return result

            worktree = Path(task.worktree_path)
            has_changes = self.workspace.has_uncommitted_changes(worktree)
            has_commits = self.workspace.has_unmerged_commits(task.branch_name)
            if not has_changes and not has_commits:
                result.success = True
                result.nothing_to_merge = True
                logger.info("Task {} has nothing to merge", task_id)
                return result

            if has_changes:
                try:
                    message = self._commit_worktree(task)
                except WorkspaceError as exc:
                    result.error = str(exc)
                    return result
                result.committed = True
                result.commit_message = message.splitlines()[0]

            try:
                self.workspace.merge_branch(task.branch_name, f"merge: {task.title}")
            except MergeConflictError as exc:
                result.conflicts = list(exc.files)
                logger.info("Merge of task {} stopped on conflicts in {}", task_id, ", ".join(exc.files))
                try:
                    finished = self._finish_conflicted_merge(task, result)
                except Exception:
                    self.workspace.abort_merge()
                    raise
                if not finished:
                    return result
            except WorkspaceError as exc:
                result.error = str(exc)
                return result

            result.merged = True
            task.mark_merged()
            if cleanup:
                self._cleanup(task, result)
            self.store.save(task)
            result.success = True
            logger.info("Merged task {} into {}", task_id, self.workspace.current_branch())
        return result

    # ------------------------------------------------------------------
    # push
    # ------------------------------------------------------------------

    def push(self, task_id: int, *, remote: str = "origin") -> PushResult:
        """Commit pending changes and push the task branch to ``remote``."""
        result = PushResult(task_id=task_id)
        with self.store.lock(task_id):
            task = self.store.load(task_id)
            result.branch = task.branch_name
            problem = self._check_worktree(task)
            if problem:
                result.error = problem
                return result
            if not self.workspace.remote_exists(remote):
                result.error = f"No '{remote}' remote configured"
                result.hint = f"git remote add {remote} <url>"
                return result
            worktree = Path(task.worktree_path)
            try:
                if self.workspace.has_uncommitted_changes(worktree):
                    message = self._commit_worktree(task)
                    result.committed = True
                    result.commit_message = message.splitlines()[0]
                self.workspace.push_branch(task.branch_name, worktree, remote)
            except WorkspaceError as exc:
                result.error = str(exc)
                return result
            result.pushed = True
            task.mark_pushed()
            self.store.save(task)
            result.success = True
            logger.info("Pushed branch {} of task {}", task.branch_name, task_id)
        return result
