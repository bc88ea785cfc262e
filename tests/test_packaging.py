"""Test packaging metadata and installation extras."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))


def _load_pyproject() -> dict[str, Any]:
    pyproject_path = PROJECT_ROOT / "pyproject.toml"
    raw = pyproject_path.read_text(encoding="utf-8")
    if sys.version_info >= (3, 11):
        import tomllib

        return tomllib.loads(raw)

    import tomli

    return tomli.loads(raw)


def test_pyproject_declares_test_extras() -> None:
    """Ensure `pyproject.toml` declares pytest under `[project.optional-dependencies].test`."""
    data = _load_pyproject()
    test_deps = data.get("project", {}).get("optional-dependencies", {}).get("test", [])
    normalized = {str(item).strip().lower() for item in test_deps}
    assert any(item.startswith("pytest") for item in normalized)


def test_console_script_points_at_cli_main() -> None:
    data = _load_pyproject()
    scripts = data.get("project", {}).get("scripts", {})
    assert scripts.get("agent-tasks") == "agent_task_runner.cli:main"


def test_builtin_workflows_are_packaged() -> None:
    """Workflow YAML files must ship with the package."""
    data = _load_pyproject()
    package_data = data["tool"]["setuptools"]["package-data"]["agent_task_runner"]
    assert "workflows/*.yml" in package_data
    workflows = PROJECT_ROOT / "src" / "agent_task_runner" / "workflows"
    assert {path.name for path in workflows.glob("*.yml")} >= {"swe.yml", "tech-writer.yml"}


def test_version_matches_package() -> None:
    from agent_task_runner import __version__

    assert _load_pyproject()["project"]["version"] == __version__
