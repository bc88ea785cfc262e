"""Tests for the task lifecycle against a real git repository and a fake sandbox."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from agent_task_runner.agents import TaskExpansion
from agent_task_runner.config import ProjectConfig
from agent_task_runner.errors import (
    InvalidTransitionError,
    SandboxError,
    TaskNotFoundError,
    TaskValidationError,
    WorkflowError,
    WorkspaceError,
)
from agent_task_runner.models import TaskStatus
from agent_task_runner.orchestrator import TaskLifecycleOrchestrator, _fallback_title

from conftest import FakeAgent, FakeSandbox, git


def _write_status(orchestrator: TaskLifecycleOrchestrator, task_id: int, iteration: int, payload: dict) -> None:
    path = orchestrator.store.iteration_dir(task_id, iteration) / "status.json"
    path.write_text(json.dumps(payload))


class TestCreate:
    def test_create_starts_first_iteration(self, orchestrator: TaskLifecycleOrchestrator, repo: Path) -> None:
        result = orchestrator.create("Add a health check endpoint", title="Health check")
        task = result.task
        assert result.started
        assert result.error is None
        assert task.id == 1
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.container_id == "fake-1-1"
        assert task.execution_status == "running"
        assert task.branch_name == f"agent-tasks/task-1-{task.uuid[:8]}"
        assert Path(task.worktree_path).exists()
        assert git(Path(task.worktree_path), "rev-parse", "--abbrev-ref", "HEAD") == task.branch_name
        assert task.inputs == {"description": "Add a health check endpoint"}
        assert task.workflow_name == "swe"

        stored = orchestrator.get(1)
        assert stored.status == TaskStatus.IN_PROGRESS
        assert orchestrator.store.iteration_numbers(1) == [1]
        assert not orchestrator.workspace.has_uncommitted_changes()

    def test_ids_are_distinct(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        first = orchestrator.create("one", title="One").task
        second = orchestrator.create("two", title="Two").task
        assert (first.id, second.id) == (1, 2)
        assert first.branch_name != second.branch_name

    def test_sandbox_failure_leaves_loadable_new_task(
        self, orchestrator: TaskLifecycleOrchestrator, fake_sandbox: FakeSandbox
    ) -> None:
        fake_sandbox.fail = True
        result = orchestrator.create("Fix the flaky test", title="Flaky test")
        assert not result.started
        assert "docker is not installed" in result.error
        assert result.hint == "agent-tasks restart 1"
        assert result.to_dict()["success"] is False
        assert result.to_dict()["taskId"] == 1
        stored = orchestrator.get(1)
        assert stored.status == TaskStatus.NEW
        assert stored.container_id == ""
        assert "docker is not installed" in stored.error

    def test_unexpected_sandbox_exception_resets_to_new(self, repo: Path, fake_agent: FakeAgent) -> None:
        class CrashingSandbox(FakeSandbox):
            def create_and_start(self, task):
                raise RuntimeError("backend exploded")

        orchestrator = TaskLifecycleOrchestrator(
            repo, sandbox=CrashingSandbox(), agent=fake_agent, config=ProjectConfig()
        )
        result = orchestrator.create("Do the thing", title="Thing")
        assert not result.started
        assert "backend exploded" in result.error
        assert result.hint == "agent-tasks restart 1"
        stored = orchestrator.get(1)
        assert stored.status == TaskStatus.NEW
        assert stored.container_id == ""
        assert "backend exploded" in stored.error

        with pytest.raises(SandboxError, match="backend exploded"):
            orchestrator.start(1)
        assert orchestrator.get(1).status == TaskStatus.NEW

    def test_missing_required_input_fails_before_side_effects(
        self, orchestrator: TaskLifecycleOrchestrator, repo: Path
    ) -> None:
        workflows = repo / ".agent-tasks" / "workflows"
        workflows.mkdir(parents=True)
        (workflows / "review.yml").write_text(
            "name: review\n"
            "description: Review a module\n"
            "inputs:\n"
            "  - name: module\n"
            "    required: true\n"
        )
        with pytest.raises(WorkflowError, match="module"):
            orchestrator.create("Review it", title="Review", workflow="review")
        assert orchestrator.store.list_tasks() == []
        assert orchestrator.counter.peek() == 1

    def test_unknown_workflow(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        with pytest.raises(WorkflowError, match="Unknown workflow"):
            orchestrator.create("x", title="x", workflow="nope")

    def test_empty_description_is_rejected(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        with pytest.raises(TaskValidationError, match="description"):
            orchestrator.create("   ", title="x")

    def test_unknown_source_branch(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        with pytest.raises(TaskValidationError, match="does-not-exist"):
            orchestrator.create("x", title="x", source_branch="does-not-exist")

    def test_not_a_repository(self, tmp_path: Path, fake_agent: FakeAgent, fake_sandbox: FakeSandbox) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        orchestrator = TaskLifecycleOrchestrator(plain, sandbox=fake_sandbox, agent=fake_agent, config=ProjectConfig())
        with pytest.raises(WorkspaceError, match="not a git repository"):
            orchestrator.create("x", title="x")

    def test_expansion_supplies_title_and_description(self, repo: Path, fake_sandbox: FakeSandbox) -> None:
        agent = FakeAgent(expansion=TaskExpansion(title="Add login page", description="Detailed plan"))
        orchestrator = TaskLifecycleOrchestrator(repo, sandbox=fake_sandbox, agent=agent, config=ProjectConfig())
        result = orchestrator.create("login")
        assert result.task.title == "Add login page"
        assert result.task.description == "Detailed plan"
        assert result.task.inputs["description"] == "login"
        assert result.warnings == []

    def test_failed_expansion_falls_back_with_warning(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        result = orchestrator.create("Add rate limiting to the API\nwith a token bucket")
        assert result.task.title == "Add rate limiting to the API"
        assert result.task.description == "Add rate limiting to the API\nwith a token bucket"
        assert result.warnings == ["Task expansion failed, using the original description"]

    def test_fallback_title_is_truncated(self) -> None:
        title = _fallback_title("x" * 100)
        assert len(title) == 70
        assert title.endswith("...")

    def test_unknown_inputs_produce_warnings(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        result = orchestrator.create("docs", title="Docs", workflow="tech-writer", inputs={"tone": "formal"})
        assert result.task.inputs["audience"] == "developers"
        assert result.task.inputs["tone"] == "formal"
        assert any("tone" in warning for warning in result.warnings)


class TestStartStop:
    def test_start_requires_new_task(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        orchestrator.create("x", title="x")
        with pytest.raises(InvalidTransitionError) as excinfo:
            orchestrator.start(1)
        assert "IN_PROGRESS" in str(excinfo.value)
        assert "agent-tasks stop 1" in excinfo.value.hint

    def test_start_unknown_task(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        with pytest.raises(TaskNotFoundError):
            orchestrator.start(99)

    def test_stop_resets_to_new_and_start_rebinds(
        self, orchestrator: TaskLifecycleOrchestrator, fake_sandbox: FakeSandbox
    ) -> None:
        created = orchestrator.create("x", title="x").task
        result = orchestrator.stop(1)
        assert result.warnings == []
        assert fake_sandbox.stopped == ["fake-1-1"]
        stopped = orchestrator.get(1)
        assert stopped.status == TaskStatus.NEW
        assert stopped.container_id == ""
        assert stopped.worktree_path == ""
        # Iteration history survives, scratch files do not.
        assert orchestrator.store.iteration_numbers(1) == [1]
        assert not (orchestrator.store.iteration_dir(1, 1) / "container.log").exists()
        assert Path(created.worktree_path).exists()

        started = orchestrator.start(1)
        assert started.status == TaskStatus.IN_PROGRESS
        assert started.worktree_path == created.worktree_path
        assert started.branch_name == created.branch_name
        assert started.container_id == "fake-1-1"

    def test_stop_can_remove_worktree_and_iterations(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        created = orchestrator.create("x", title="x").task
        orchestrator.stop(1, remove_all=True)
        assert not Path(created.worktree_path).exists()
        assert not orchestrator.workspace.branch_exists(created.branch_name)
        assert orchestrator.store.iteration_numbers(1) == []
        assert orchestrator.get(1).is_new()

    def test_start_failure_returns_task_to_new(
        self, orchestrator: TaskLifecycleOrchestrator, fake_sandbox: FakeSandbox
    ) -> None:
        orchestrator.create("x", title="x")
        orchestrator.stop(1)
        fake_sandbox.fail = True
        with pytest.raises(SandboxError) as excinfo:
            orchestrator.start(1)
        assert excinfo.value.hint == "agent-tasks restart 1"
        assert orchestrator.get(1).status == TaskStatus.NEW


class TestDelete:
    def test_delete_removes_everything(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        created = orchestrator.create("x", title="x").task
        orchestrator.delete(1)
        assert not orchestrator.store.exists(1)
        assert not Path(created.worktree_path).exists()
        assert not orchestrator.workspace.branch_exists(created.branch_name)
        with pytest.raises(TaskNotFoundError):
            orchestrator.get(1)

    def test_delete_after_worktree_removed_out_of_band(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        created = orchestrator.create("x", title="x").task
        shutil.rmtree(created.worktree_path)
        result = orchestrator.delete(1)
        assert not orchestrator.store.exists(1)
        assert not orchestrator.workspace.branch_exists(created.branch_name)
        assert result.task_id == 1

    def test_delete_unknown_task(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        with pytest.raises(TaskNotFoundError):
            orchestrator.delete(5)


class TestStatusRefresh:
    def test_completed_status_is_folded_in(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        orchestrator.create("x", title="x")
        _write_status(orchestrator, 1, 1, {"status": "completed", "progress": 100, "completedAt": "2026-01-01T00:00:00Z"})
        task = orchestrator.refresh_status(1)
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at == "2026-01-01T00:00:00Z"
        assert task.execution_status == "completed"

    def test_failed_status_is_folded_in(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        orchestrator.create("x", title="x")
        _write_status(orchestrator, 1, 1, {"status": "failed", "error": "tests failed"})
        task = orchestrator.refresh_status(1)
        assert task.status == TaskStatus.FAILED
        assert task.error == "tests failed"

    def test_running_status_keeps_task_in_progress(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        orchestrator.create("x", title="x")
        _write_status(orchestrator, 1, 1, {"status": "running", "progress": 30})
        assert orchestrator.refresh_status(1).status == TaskStatus.IN_PROGRESS

    def test_list_refreshes_running_tasks(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        orchestrator.create("x", title="x")
        orchestrator.create("y", title="y")
        _write_status(orchestrator, 2, 1, {"status": "completed"})
        statuses = [task.status for task in orchestrator.list_tasks()]
        assert statuses == [TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED]


class TestIterateRestart:
    def test_iterate_starts_new_iteration_with_context(
        self, orchestrator: TaskLifecycleOrchestrator, fake_sandbox: FakeSandbox
    ) -> None:
        orchestrator.create("x", title="Login page")
        first = orchestrator.store.iteration_dir(1, 1)
        (first / "plan.md").write_text("1. Add route\n")
        (first / "summary.md").write_text("Added the route.\n")
        _write_status(orchestrator, 1, 1, {"status": "completed"})
        orchestrator.refresh_status(1)

        task = orchestrator.iterate(1, "Also add tests")
        assert task.iterations == 2
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.container_id == "fake-1-2"
        assert fake_sandbox.stopped == ["fake-1-1"]
        assert (first / "container.log").read_text() == "logs of fake-1-1\n"

        iteration = orchestrator.store.load_iteration(1, 2)
        assert iteration.description == "Also add tests"
        assert iteration.title == "Login page"
        assert iteration.previous_context == {
            "iteration_number": 1,
            "plan": "1. Add route",
            "summary": "Added the route.",
        }

    def test_iterate_requires_instructions(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        orchestrator.create("x", title="x")
        with pytest.raises(TaskValidationError):
            orchestrator.iterate(1, "  ")

    def test_iterate_new_task_is_refused(
        self, orchestrator: TaskLifecycleOrchestrator, fake_sandbox: FakeSandbox
    ) -> None:
        fake_sandbox.fail = True
        orchestrator.create("x", title="x")
        with pytest.raises(InvalidTransitionError):
            orchestrator.iterate(1, "more")

    def test_restart_failed_task(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        orchestrator.create("x", title="x")
        _write_status(orchestrator, 1, 1, {"status": "failed", "error": "boom"})
        orchestrator.refresh_status(1)
        task = orchestrator.restart(1)
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.restart_count == 1
        assert task.iterations == 2
        assert orchestrator.store.iteration_numbers(1) == [1, 2]

    def test_restart_running_task_is_refused(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        orchestrator.create("x", title="x")
        with pytest.raises(InvalidTransitionError):
            orchestrator.restart(1)


class TestDiff:
    def test_uncommitted_changes(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        task = orchestrator.create("x", title="x").task
        worktree = Path(task.worktree_path)
        (worktree / "README.md").write_text("# changed\n")
        (worktree / "new.txt").write_text("new\n")
        result = orchestrator.diff(1)
        assert result.files == ["README.md"]
        assert result.untracked == ["new.txt"]
        assert "+# changed" in result.diff
        assert result.to_dict()["untrackedFiles"] == ["new.txt"]

    def test_only_files_and_single_path(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        task = orchestrator.create("x", title="x").task
        worktree = Path(task.worktree_path)
        (worktree / "README.md").write_text("# changed\n")
        (worktree / "new.txt").write_text("new\n")
        names = orchestrator.diff(1, only_files=True)
        assert names.files == ["README.md"]
        assert names.diff == ""
        scoped = orchestrator.diff(1, path="README.md")
        assert scoped.untracked == []
        assert scoped.to_dict()["path"] == "README.md"

    def test_against_source_branch_includes_commits(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        task = orchestrator.create("x", title="x").task
        worktree = Path(task.worktree_path)
        (worktree / "feature.txt").write_text("feature\n")
        git(worktree, "add", "feature.txt")
        git(worktree, "commit", "-m", "feature")
        assert orchestrator.diff(1).files == []
        result = orchestrator.diff(1, base=task.source_branch)
        assert result.files == ["feature.txt"]
        assert "+feature" in result.diff

    def test_task_without_workspace(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        orchestrator.create("x", title="x")
        orchestrator.stop(1, remove_all=True)
        with pytest.raises(WorkspaceError) as excinfo:
            orchestrator.diff(1)
        assert excinfo.value.hint == "agent-tasks start 1"

    def test_unknown_task(self, orchestrator: TaskLifecycleOrchestrator) -> None:
        with pytest.raises(TaskNotFoundError):
            orchestrator.diff(9)
