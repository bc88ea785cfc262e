"""Concrete CLI agents."""

from __future__ import annotations

import json
from pathlib import Path

from ..errors import AgentError
from .base import CliAgent


def _home_mount(relative: str, target: str, read_only: bool = True) -> list[tuple[str, str, bool]]:
    source = Path.home() / relative
    return [(str(source), target, read_only)] if source.exists() else []


def _result_field(stdout: str, binary: str) -> str:
    try:
        parsed = json.loads(stdout)
    except json.JSONDecodeError:
        raise AgentError(f"{binary} returned invalid JSON output") from None
    if isinstance(parsed, dict) and "result" in parsed:
        return str(parsed["result"])
    return stdout.strip()


class ClaudeAgent(CliAgent):
    name = "claude"
    binary = "claude"
    env_overrides = {"CLAUDE_NON_INTERACTIVE": "true"}
    image_env = ("ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL", "CLAUDE_CODE_USE_BEDROCK", "CLAUDE_CODE_USE_VERTEX")

    def build_args(self, json_output: bool) -> list[str]:
        return ["-p", "--output-format", "json"] if json_output else ["-p"]

    def parse_output(self, stdout: str, json_output: bool) -> str:
        return _result_field(stdout, self.binary) if json_output else stdout.strip()

    def container_mounts(self) -> list[tuple[str, str, bool]]:
        return _home_mount(".claude.json", "/.claude.json") + _home_mount(
            ".claude/.credentials.json", "/.credentials.json"
        )


class CodexAgent(CliAgent):
    name = "codex"
    binary = "codex"
    image_env = ("OPENAI_API_KEY", "OPENAI_BASE_URL")

    def build_args(self, json_output: bool) -> list[str]:
        return ["exec", "--skip-git-repo-check", "-"]

    def container_mounts(self) -> list[tuple[str, str, bool]]:
        return _home_mount(".codex", "/.codex")


class GeminiAgent(CliAgent):
    name = "gemini"
    binary = "gemini"
    image_env = ("GEMINI_API_KEY", "GOOGLE_API_KEY", "GOOGLE_CLOUD_PROJECT")

    def container_mounts(self) -> list[tuple[str, str, bool]]:
        return _home_mount(".gemini", "/.gemini")


class QwenAgent(CliAgent):
    name = "qwen"
    binary = "qwen"
    image_env = ("OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_MODEL", "DASHSCOPE_API_KEY")

    def container_mounts(self) -> list[tuple[str, str, bool]]:
        return _home_mount(".qwen", "/.qwen")


class CursorAgent(CliAgent):
    name = "cursor"
    binary = "cursor-agent"
    image_env = ("CURSOR_API_KEY",)

    def build_args(self, json_output: bool) -> list[str]:
        args = ["agent", "--print"]
        if json_output:
            args += ["--output-format", "json"]
        return args

    def parse_output(self, stdout: str, json_output: bool) -> str:
        return _result_field(stdout, self.binary) if json_output else stdout.strip()

    def container_mounts(self) -> list[tuple[str, str, bool]]:
        return _home_mount(".cursor", "/.cursor") + _home_mount(".config/cursor", "/.config/cursor")
