"""Shared fixtures: a throwaway git repository plus fake agent and sandbox."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Iterator, Optional

import pytest
from loguru import logger

from agent_task_runner.agents import AgentTool, TaskExpansion
from agent_task_runner.config import ProjectConfig
from agent_task_runner.errors import AgentError, SandboxError
from agent_task_runner.models import TaskRecord
from agent_task_runner.orchestrator import TaskLifecycleOrchestrator
from agent_task_runner.sandbox import SandboxRunner


def git(path: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def _git_init(path: Path) -> None:
    """Initialize a git repo with an initial commit."""
    subprocess.run(["git", "init"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "commit.gpgsign", "false"], cwd=path, check=True, capture_output=True, text=True)
    (path / "README.md").write_text("# init\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "initial"], cwd=path, check=True, capture_output=True, text=True)


class FakeAgent(AgentTool):
    """Agent with canned answers; never shells out."""

    name = "fake"

    def __init__(
        self,
        *,
        expansion: Optional[TaskExpansion] = None,
        commit_message: Optional[str] = None,
        resolutions: Optional[dict[str, str]] = None,
    ):
        self.expansion = expansion
        self.commit_message = commit_message
        self.resolutions = dict(resolutions or {})
        self.resolve_calls: list[str] = []

    def invoke(self, prompt: str, *, json_output: bool = False, cwd: Optional[Path] = None) -> str:
        raise AgentError("fake agent has no backend")

    def expand_task(self, description: str, project_dir: Path) -> Optional[TaskExpansion]:
        return self.expansion

    def expand_iteration_instructions(self, instructions, previous_plan=None, previous_summary=None):
        return self.expansion

    def generate_commit_message(self, title, description, recent_commits, summaries) -> Optional[str]:
        return self.commit_message

    def resolve_merge_conflicts(self, file_path: str, history_context: str, conflicted_content: str) -> Optional[str]:
        self.resolve_calls.append(file_path)
        return self.resolutions.get(file_path)

    def extract_github_inputs(self, issue_body, input_specs):
        return None


class FakeSandbox(SandboxRunner):
    """Sandbox that records calls instead of running containers."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.started: list[str] = []
        self.stopped: list[str] = []

    def create_and_start(self, task: TaskRecord) -> str:
        if self.fail:
            raise SandboxError("docker is not installed or not on PATH")
        container_id = f"fake-{task.id}-{task.iterations}"
        self.started.append(container_id)
        return container_id

    def stop_and_remove(self, task: TaskRecord) -> None:
        self.stopped.append(task.container_id)

    def logs(self, container_id: str) -> str:
        return f"logs of {container_id}\n"

    def follow_logs(self, container_id: str) -> Iterator[str]:
        yield f"{container_id}: line 1"
        yield f"{container_id}: line 2"


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    logger.remove()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _git_init(path)
    return path


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def orchestrator(repo: Path, fake_agent: FakeAgent, fake_sandbox: FakeSandbox) -> TaskLifecycleOrchestrator:
    return TaskLifecycleOrchestrator(repo, sandbox=fake_sandbox, agent=fake_agent, config=ProjectConfig())
