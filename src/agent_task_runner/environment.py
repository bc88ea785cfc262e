"""Project environment detection and ``init``.

Languages, package managers and task managers are detected from marker files
in the project root. ``init_project`` records the results in the project
configuration so the sandbox can prepare matching tooling for the agent.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from .agents import AGENTS, available_agents
from .config import ProjectConfig, config_path, load_project_config, save_project_config
from .errors import WorkspaceError
from .git_utils import WorkspaceManager, _ensure_excluded

# A leading "!" marks a file that must be absent for the entry to match.
LANGUAGE_FILES: dict[str, tuple[str, ...]] = {
    "typescript": ("tsconfig.json", "tsconfig.node.json"),
    "javascript": ("package.json", ".node-version"),
    "php": ("composer.json", "index.php", "phpunit.xml"),
    "rust": ("Cargo.toml",),
    "go": ("go.mod", "go.sum"),
    "ruby": (".ruby-version", "Procfile.dev", "Procfile.test", "Gemfile", "config.ru"),
    "python": ("pyproject.toml", "uv.lock", "setup.py", "setup.cfg"),
}

PACKAGE_MANAGER_FILES: dict[str, tuple[str, ...]] = {
    "npm": ("package-lock.json",),
    "pnpm": ("pnpm-lock.yaml",),
    "yarn": ("yarn.lock",),
    "composer": ("composer.lock",),
    "cargo": ("Cargo.toml", "Cargo.lock"),
    "gomod": ("go.mod", "go.sum"),
    "pip": ("pyproject.toml", "!poetry.lock", "!uv.lock"),
    "poetry": ("poetry.lock",),
    "uv": ("uv.lock",),
    "rubygems": ("Gemfile", "Gemfile.lock"),
}

TASK_MANAGER_FILES: dict[str, tuple[str, ...]] = {
    "just": ("Justfile",),
    "make": ("Makefile",),
    "task": ("Taskfile.yml", "Taskfile.yaml"),
}


@dataclass
class Environment:
    languages: list[str] = field(default_factory=list)
    package_managers: list[str] = field(default_factory=list)
    task_managers: list[str] = field(default_factory=list)


@dataclass
class InitResult:
    config: ProjectConfig
    config_path: Path
    environment: Environment
    tools: dict[str, bool]
    installed_agents: list[str]
    already_initialized: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "configPath": str(self.config_path),
            "alreadyInitialized": self.already_initialized,
            "languages": self.config.languages,
            "packageManagers": self.config.package_managers,
            "taskManagers": self.config.task_managers,
            "agent": self.config.agent,
            "installedAgents": self.installed_agents,
            "tools": self.tools,
            "warnings": self.warnings,
        }


def _files_match(project_dir: Path, files: tuple[str, ...]) -> bool:
    """Return True when any required file exists and every excluded one is absent."""
    required = [name for name in files if not name.startswith("!")]
    excluded = [name[1:] for name in files if name.startswith("!")]
    if any((project_dir / name).exists() for name in excluded):
        return False
    if not required:
        return bool(excluded)
    return any((project_dir / name).exists() for name in required)


def _detect(project_dir: Path, table: dict[str, tuple[str, ...]]) -> list[str]:
    return [name for name, files in table.items() if _files_match(project_dir, files)]


def detect_environment(project_dir: Path) -> Environment:
    """Detect the languages, package managers and task managers of a project.

    Every entry whose marker files match is reported, so a TypeScript project
    with a ``package.json`` is both ``typescript`` and ``javascript``.

    Args:
        project_dir: Path to the project root directory.

    Returns:
        The detected environment; lists keep the order of the marker tables.
    """
    project_dir = Path(project_dir).resolve()
    return Environment(
        languages=_detect(project_dir, LANGUAGE_FILES),
        package_managers=_detect(project_dir, PACKAGE_MANAGER_FILES),
        task_managers=_detect(project_dir, TASK_MANAGER_FILES),
    )


def detect_tools(backend: str) -> dict[str, bool]:
    return {"git": shutil.which("git") is not None, backend: shutil.which(backend) is not None}


def installed_agents() -> list[str]:
    return [name for name in available_agents() if AGENTS[name]().is_available()]


def _merge(existing: list[str], detected: list[str]) -> list[str]:
    return existing + [name for name in detected if name not in existing]


def init_project(project_dir: Path, *, agent: Optional[str] = None) -> InitResult:
    """Detect the project environment and write it to the project config.

    Detected entries are added to those already configured; nothing is
    removed. When ``agent`` is not given and the configured agent is not
    installed, the first installed agent becomes the default.

    Raises:
        WorkspaceError: If ``project_dir`` is not a git repository.
        ConfigError: If an existing configuration cannot be read.
    """
    project_dir = Path(project_dir).resolve()
    if not WorkspaceManager(project_dir).is_repo():
        raise WorkspaceError(f"{project_dir} is not a git repository", hint="run git init first")

    path = config_path(project_dir)
    already_initialized = path.exists()
    config = load_project_config(project_dir)
    environment = detect_environment(project_dir)
    tools = detect_tools(config.sandbox.backend)
    agents = installed_agents()

    warnings: list[str] = []
    missing = [name for name, present in tools.items() if not present]
    if missing:
        warnings.append(f"Missing required tools: {', '.join(missing)}")
    if not agents:
        warnings.append(f"No AI agent found on PATH (supported: {', '.join(available_agents())})")

    updates: dict = {
        "languages": _merge(config.languages, environment.languages),
        "package_managers": _merge(config.package_managers, environment.package_managers),
        "task_managers": _merge(config.task_managers, environment.task_managers),
    }
    if agent:
        updates["agent"] = agent
    elif agents and config.agent not in agents:
        updates["agent"] = agents[0]
    config = config.model_copy(update=updates)

    saved = save_project_config(project_dir, config, path=path)
    _ensure_excluded(project_dir)
    logger.info(
        "Initialized {} (languages: {}, package managers: {}, task managers: {})",
        saved,
        ", ".join(config.languages) or "-",
        ", ".join(config.package_managers) or "-",
        ", ".join(config.task_managers) or "-",
    )
    return InitResult(
        config=config,
        config_path=saved,
        environment=environment,
        tools=tools,
        installed_agents=agents,
        already_initialized=already_initialized,
        warnings=warnings,
    )
