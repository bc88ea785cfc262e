"""Run agents inside Docker or Podman containers.

A sandbox gets the task's worktree mounted at ``/workspace`` and the current
iteration directory at ``/output``; the agent inside writes ``status.json``,
``plan.md`` and ``summary.md`` there.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Iterator, Optional

from loguru import logger

from .agents import AgentTool
from .config import ProjectConfig, resolve_sandbox_env
from .constants import (
    CONTAINER_OUTPUT,
    CONTAINER_PREFIX,
    CONTAINER_WORKSPACE,
    DEFAULT_AGENT_IMAGE,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_WORKFLOW,
    ITERATION_FILE,
    ITERATION_STATUS_FILE,
)
from .errors import SandboxError
from .models import TaskRecord
from .task_store import TaskStore
from .workflow import load_workflow

_MISSING_CONTAINER_MARKERS = ("no such container", "no container with name or id")


class SandboxRunner(ABC):
    """Start and stop the isolated environment an agent runs in."""

    @abstractmethod
    def create_and_start(self, task: TaskRecord) -> str:
        """Create and start a sandbox for ``task`` and return its container id.

        Raises:
            SandboxError: If the sandbox could not be created or started.
        """
        raise NotImplementedError

    @abstractmethod
    def stop_and_remove(self, task: TaskRecord) -> None:
        """Stop and remove the task's sandbox. A missing sandbox is not an error."""
        raise NotImplementedError

    def logs(self, container_id: str) -> str:
        raise SandboxError("This sandbox does not keep logs")

    def follow_logs(self, container_id: str) -> Iterator[str]:
        raise SandboxError("This sandbox does not stream logs")


def container_name(task: TaskRecord) -> str:
    return f"{CONTAINER_PREFIX}-{task.id}-{task.iterations}"


class ContainerSandbox(SandboxRunner):
    """Sandbox backed by an OCI container CLI (``docker`` or ``podman``)."""

    runtime = "docker"

    def __init__(
        self,
        store: TaskStore,
        config: ProjectConfig,
        agent: AgentTool,
        *,
        image: Optional[str] = None,
    ):
        self.store = store
        self.project_dir = store.project_dir
        self.config = config
        self.agent = agent
        self.image = image or os.environ.get("AGENT_TASKS_IMAGE") or config.sandbox.agent_image or DEFAULT_AGENT_IMAGE

    def _run(self, args: list[str], *, check: bool = True, error: str = "") -> subprocess.CompletedProcess[str]:
        if shutil.which(self.runtime) is None:
            raise SandboxError(f"{self.runtime} is not installed or not on PATH")
        logger.debug("{} {}", self.runtime, " ".join(args))
        try:
            result = subprocess.run(
                [self.runtime, *args],
                capture_output=True,
                text=True,
                check=False,
                timeout=DEFAULT_COMMAND_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise SandboxError(f"{error or self.runtime + ' failed'}: {exc}") from exc
        if check and result.returncode != 0:
            raise SandboxError(f"{error or self.runtime + ' failed'}: {result.stderr.strip()}")
        return result

    def _user_args(self) -> list[str]:
        if not hasattr(os, "getuid"):
            return []
        return ["--user", f"{os.getuid()}:{os.getgid()}"]

    def _tooling_env(self) -> dict[str, str]:
        """Detected project tooling, for the image to install matching packages."""
        tooling = {
            "AGENT_TASKS_LANGUAGES": self.config.languages,
            "AGENT_TASKS_PACKAGE_MANAGERS": self.config.package_managers,
            "AGENT_TASKS_TASK_MANAGERS": self.config.task_managers,
        }
        return {key: ",".join(values) for key, values in tooling.items() if values}

    def _env_args(self) -> list[str]:
        env = {
            **self._tooling_env(),
            **self.agent.container_environment(),
            **resolve_sandbox_env(self.config, self.project_dir),
        }
        args: list[str] = []
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]
        return args

    def build_create_args(self, task: TaskRecord) -> list[str]:
        if not task.worktree_path:
            raise SandboxError(f"Task {task.id} has no workspace to mount", task_id=task.id)
        iteration_dir = self.store.iteration_dir(task.id, task.iterations)
        iteration_dir.mkdir(parents=True, exist_ok=True)
        workflow = load_workflow(task.workflow_name or DEFAULT_WORKFLOW, self.project_dir)

        args = ["create", "--name", container_name(task), *self._user_args()]
        args += ["-v", f"{task.worktree_path}:{CONTAINER_WORKSPACE}:Z,rw"]
        args += ["-v", f"{iteration_dir}:{CONTAINER_OUTPUT}:Z,rw"]
        args += ["-v", f"{workflow.path}:/workflow.yml:Z,ro"]
        for source, target, read_only in self.agent.container_mounts():
            args += ["-v", f"{source}:{target}:Z,{'ro' if read_only else 'rw'}"]
        if self.config.sandbox.init_script:
            script = self.project_dir / self.config.sandbox.init_script
            if script.exists():
                args += ["-v", f"{script}:/init-script.sh:Z,ro"]
            else:
                logger.warning("initScript {} does not exist, skipping", self.config.sandbox.init_script)
        args += self._env_args()
        args += ["-w", CONTAINER_WORKSPACE, self.image]
        args += [
            "agent-task-agent",
            "run",
            "/workflow.yml",
            "--agent-tool",
            self.agent.name,
            "--task-id",
            str(task.id),
            "--status-file",
            f"{CONTAINER_OUTPUT}/{ITERATION_STATUS_FILE}",
            "--output",
            CONTAINER_OUTPUT,
            "--inputs-json",
            f"{CONTAINER_OUTPUT}/{ITERATION_FILE}",
        ]
        return args

    def create_and_start(self, task: TaskRecord) -> str:
        name = container_name(task)
        # A container left over from a crashed attempt would block the name.
        self._run(["rm", "-f", name], check=False)
        created = self._run(self.build_create_args(task), error=f"Failed to create container {name}")
        container_id = created.stdout.strip() or name
        try:
            self._run(["start", container_id], error=f"Failed to start container {name}")
        except SandboxError:
            self._run(["rm", "-f", container_id], check=False)
            raise
        logger.info("Started container {} for task {}", name, task.id)
        return container_id

    def stop_and_remove(self, task: TaskRecord) -> None:
        if not task.container_id:
            return
        for args in (["stop", task.container_id], ["rm", "-f", task.container_id]):
            result = self._run(args, check=False)
            stderr = result.stderr.strip().lower()
            if result.returncode != 0 and not any(marker in stderr for marker in _MISSING_CONTAINER_MARKERS):
                raise SandboxError(
                    f"Failed to {args[0]} container {task.container_id}: {result.stderr.strip()}",
                    task_id=task.id,
                )
        logger.info("Removed container {} for task {}", task.container_id, task.id)

    def logs(self, container_id: str) -> str:
        result = self._run(["logs", container_id], error=f"Failed to read logs of {container_id}")
        return result.stdout + result.stderr

    def follow_logs(self, container_id: str) -> Iterator[str]:
        """Yield log lines until the container stops or the consumer stops iterating.

        Closing the generator only terminates the local ``logs`` process.
        """
        if shutil.which(self.runtime) is None:
            raise SandboxError(f"{self.runtime} is not installed or not on PATH")
        proc = subprocess.Popen(
            [self.runtime, "logs", "--follow", container_id],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        try:
            for line in proc.stdout or ():
                yield line.rstrip("\n")
        finally:
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()


class DockerSandbox(ContainerSandbox):
    runtime = "docker"


class PodmanSandbox(ContainerSandbox):
    runtime = "podman"

    def _user_args(self) -> list[str]:
        return ["--userns=keep-id"]


SANDBOXES: dict[str, type[ContainerSandbox]] = {
    "docker": DockerSandbox,
    "podman": PodmanSandbox,
}


def get_sandbox(
    backend: str,
    store: TaskStore,
    config: ProjectConfig,
    agent: AgentTool,
    *,
    image: Optional[str] = None,
) -> ContainerSandbox:
    try:
        cls = SANDBOXES[backend.strip().lower()]
    except KeyError:
        raise SandboxError(f"Unknown sandbox backend '{backend}'", hint="use docker or podman") from None
    return cls(store, config, agent, image=image)
