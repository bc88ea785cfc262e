"""Tests for project environment detection and init."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_task_runner import environment
from agent_task_runner.config import load_project_config
from agent_task_runner.environment import detect_environment, init_project
from agent_task_runner.errors import WorkspaceError


def _touch(root: Path, *names: str) -> None:
    for name in names:
        (root / name).write_text("")


class TestDetectEnvironment:
    def test_empty_project(self, tmp_path: Path) -> None:
        env = detect_environment(tmp_path)
        assert env.languages == []
        assert env.package_managers == []
        assert env.task_managers == []

    def test_python_with_pip(self, tmp_path: Path) -> None:
        _touch(tmp_path, "pyproject.toml", "Makefile")
        env = detect_environment(tmp_path)
        assert env.languages == ["python"]
        assert env.package_managers == ["pip"]
        assert env.task_managers == ["make"]

    def test_lock_file_excludes_pip(self, tmp_path: Path) -> None:
        _touch(tmp_path, "pyproject.toml", "uv.lock")
        env = detect_environment(tmp_path)
        assert env.languages == ["python"]
        assert env.package_managers == ["uv"]

    def test_typescript_project_is_also_javascript(self, tmp_path: Path) -> None:
        _touch(tmp_path, "package.json", "tsconfig.json", "pnpm-lock.yaml", "Justfile", "Taskfile.yml")
        env = detect_environment(tmp_path)
        assert env.languages == ["typescript", "javascript"]
        assert env.package_managers == ["pnpm"]
        assert env.task_managers == ["just", "task"]

    def test_go_and_rust(self, tmp_path: Path) -> None:
        _touch(tmp_path, "go.mod", "Cargo.toml")
        env = detect_environment(tmp_path)
        assert env.languages == ["rust", "go"]
        assert env.package_managers == ["cargo", "gomod"]


class TestInitProject:
    @pytest.fixture(autouse=True)
    def _tools(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(environment, "installed_agents", lambda: ["codex", "gemini"])
        monkeypatch.setattr(environment, "detect_tools", lambda backend: {"git": True, backend: True})

    def test_writes_detected_environment(self, repo: Path) -> None:
        _touch(repo, "pyproject.toml", "uv.lock")
        result = init_project(repo)
        assert not result.already_initialized
        assert result.config_path == repo / ".agent-tasks" / "config.json"
        raw = json.loads(result.config_path.read_text())
        assert raw["languages"] == ["python"]
        assert raw["packageManagers"] == ["uv"]
        assert raw["taskManagers"] == []
        config = load_project_config(repo)
        assert config.languages == ["python"]
        assert config.agent == "codex"
        assert result.warnings == []
        assert ".agent-tasks/" in (repo / ".git" / "info" / "exclude").read_text()

    def test_keeps_existing_entries_and_settings(self, repo: Path) -> None:
        state = repo / ".agent-tasks"
        state.mkdir()
        (state / "config.json").write_text(
            json.dumps({"version": "1.2", "languages": ["ruby"], "agent": "gemini", "envs": ["TOKEN"]})
        )
        _touch(repo, "go.mod")
        result = init_project(repo)
        assert result.already_initialized
        config = load_project_config(repo)
        assert config.languages == ["ruby", "go"]
        assert config.agent == "gemini"
        assert config.envs == ["TOKEN"]

    def test_explicit_agent(self, repo: Path) -> None:
        assert init_project(repo, agent="qwen").config.agent == "qwen"
        assert load_project_config(repo).agent == "qwen"

    def test_reports_missing_tools(self, repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(environment, "installed_agents", lambda: [])
        monkeypatch.setattr(environment, "detect_tools", lambda backend: {"git": True, backend: False})
        result = init_project(repo)
        assert result.config.agent == "claude"
        assert result.tools == {"git": True, "docker": False}
        assert "Missing required tools: docker" in result.warnings
        assert any(warning.startswith("No AI agent found") for warning in result.warnings)

    def test_requires_git_repository(self, tmp_path: Path) -> None:
        with pytest.raises(WorkspaceError, match="not a git repository"):
            init_project(tmp_path)
        assert not (tmp_path / ".agent-tasks").exists()
