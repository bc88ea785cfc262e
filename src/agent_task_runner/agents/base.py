"""Agent capability interface and the subprocess-backed CLI agent."""

from __future__ import annotations

import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from ..constants import AGENT_TIMEOUT_SECONDS
from ..errors import AgentError
from ..prompts import (
    _build_commit_message_prompt,
    _build_expand_iteration_prompt,
    _build_expand_task_prompt,
    _build_extract_inputs_prompt,
    _build_resolve_conflict_prompt,
)
from .output import extract_json_object, has_conflict_markers, strip_code_fence

_JSON_INSTRUCTION = (
    "\n\nYou MUST output a valid JSON object and nothing else. "
    'If anything goes wrong, still return a JSON object with an "error" property.'
)


@dataclass(frozen=True)
class TaskExpansion:
    title: str
    description: str


class AgentTool(ABC):
    """Capabilities the runner needs from an AI coding assistant.

    Only :meth:`invoke` is backend specific. The high-level helpers never
    raise: they log and return ``None`` so every caller can fall back to a
    deterministic default.
    """

    name: str = ""
    image_env: tuple[str, ...] = ()

    @abstractmethod
    def invoke(self, prompt: str, *, json_output: bool = False, cwd: Optional[Path] = None) -> str:
        """Send ``prompt`` to the agent and return its text answer.

        Raises:
            AgentError: If the agent is missing, fails or times out.
        """
        raise NotImplementedError

    def _invoke_json(self, prompt: str, cwd: Optional[Path] = None) -> dict:
        return extract_json_object(self.invoke(prompt + _JSON_INSTRUCTION, json_output=True, cwd=cwd))

    def _expansion_from(self, data: dict) -> Optional[TaskExpansion]:
        title = str(data.get("title") or "").strip()
        description = str(data.get("description") or "").strip()
        if not title or not description:
            return None
        return TaskExpansion(title=title, description=description)

    def expand_task(self, description: str, project_dir: Path) -> Optional[TaskExpansion]:
        try:
            return self._expansion_from(self._invoke_json(_build_expand_task_prompt(description), cwd=project_dir))
        except AgentError as exc:
            logger.warning("Failed to expand task with {}: {}", self.name, exc)
            return None

    def expand_iteration_instructions(
        self,
        instructions: str,
        previous_plan: Optional[str] = None,
        previous_summary: Optional[str] = None,
    ) -> Optional[TaskExpansion]:
        prompt = _build_expand_iteration_prompt(instructions, previous_plan, previous_summary)
        try:
            return self._expansion_from(self._invoke_json(prompt))
        except AgentError as exc:
            logger.warning("Failed to expand iteration instructions with {}: {}", self.name, exc)
            return None

    def generate_commit_message(
        self,
        title: str,
        description: str,
        recent_commits: list[str],
        summaries: list[str],
    ) -> Optional[str]:
        prompt = _build_commit_message_prompt(title, description, recent_commits, summaries)
        try:
            response = self.invoke(prompt)
        except AgentError as exc:
            logger.warning("Failed to generate commit message with {}: {}", self.name, exc)
            return None
        lines = [line.strip() for line in strip_code_fence(response).splitlines() if line.strip()]
        return lines[0].strip("\"'") if lines else None

    def resolve_merge_conflicts(self, file_path: str, history_context: str, conflicted_content: str) -> Optional[str]:
        """Return the resolved file content, or ``None`` if the agent could not resolve it."""
        prompt = _build_resolve_conflict_prompt(file_path, history_context, conflicted_content)
        try:
            response = self.invoke(prompt)
        except AgentError as exc:
            logger.warning("Failed to resolve conflicts in {} with {}: {}", file_path, self.name, exc)
            return None
        resolved = strip_code_fence(response)
        if not resolved.strip() or has_conflict_markers(resolved):
            return None
        if conflicted_content.endswith("\n") and not resolved.endswith("\n"):
            resolved += "\n"
        return resolved

    def extract_github_inputs(self, issue_body: str, input_specs: list[dict]) -> Optional[dict[str, str]]:
        try:
            data = self._invoke_json(_build_extract_inputs_prompt(issue_body, input_specs))
        except AgentError as exc:
            logger.warning("Failed to extract inputs with {}: {}", self.name, exc)
            return None
        if "error" in data and len(data) == 1:
            return None
        return {str(key): str(value) for key, value in data.items() if value not in (None, "")}

    def container_mounts(self) -> list[tuple[str, str, bool]]:
        """Host paths to mount into the sandbox as ``(host, container, read_only)``."""
        return []

    def container_environment(self) -> dict[str, str]:
        """Credentials and flags forwarded from the host into the sandbox."""
        return {key: os.environ[key] for key in self.image_env if key in os.environ}


class CliAgent(AgentTool):
    """Agent driven through its command-line client, with the prompt on stdin."""

    binary: str = ""
    env_overrides: dict[str, str] = {}

    def __init__(self, binary: Optional[str] = None, timeout: int = AGENT_TIMEOUT_SECONDS):
        self.binary = binary or self.binary
        self.timeout = timeout

    def build_args(self, json_output: bool) -> list[str]:
        return ["-p"]

    def parse_output(self, stdout: str, json_output: bool) -> str:
        return stdout.strip()

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def invoke(self, prompt: str, *, json_output: bool = False, cwd: Optional[Path] = None) -> str:
        if not self.is_available():
            raise AgentError(f"{self.binary} is not installed or not on PATH")
        cmd = [self.binary, *self.build_args(json_output)]
        logger.debug("Invoking agent: {}", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=prompt,
                cwd=cwd,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
                env={**os.environ, **self.env_overrides},
            )
        except subprocess.TimeoutExpired as exc:
            raise AgentError(f"{self.binary} timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise AgentError(f"Unable to run {self.binary}: {exc}") from exc
        if result.returncode != 0:
            raise AgentError(f"{self.binary} exited with code {result.returncode}: {result.stderr.strip()}")
        return self.parse_output(result.stdout, json_output)
