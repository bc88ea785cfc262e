"""Load, migrate and validate the project configuration.

The configuration lives in ``.agent-tasks/config.json`` (``agent-tasks.json``
at the repository root is also accepted). Older documents are upgraded by
``CONFIG_MIGRATIONS`` before validation and written back in the new shape.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .constants import (
    CONFIG_FILE,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_AGENT,
    DEFAULT_SANDBOX_BACKEND,
    ROOT_CONFIG_FILE,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _atomic_write_json, _load_data_with_error
from .migrations import CONFIG_MIGRATIONS

_ENV_ENTRY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(=.*)?$", re.S)


class SandboxSettings(BaseModel):
    """Container settings for the agent sandbox."""

    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)

    backend: str = DEFAULT_SANDBOX_BACKEND
    agent_image: Optional[str] = None
    init_script: Optional[str] = None

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in {"docker", "podman"}:
            raise ValueError(f"unsupported sandbox backend {value!r} (expected docker or podman)")
        return value


class ProjectConfig(BaseModel):
    """Project-level settings shared by every task."""

    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)

    version: str = CONFIG_SCHEMA_VERSION
    languages: list[str] = Field(default_factory=list)
    package_managers: list[str] = Field(default_factory=list)
    task_managers: list[str] = Field(default_factory=list)
    mcps: list[dict[str, Any]] = Field(default_factory=list)
    attribution: bool = True
    agent: str = DEFAULT_AGENT
    envs: list[str] = Field(default_factory=list)
    envs_file: Optional[str] = None
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)

    @field_validator("envs")
    @classmethod
    def _env_entries(cls, value: list[str]) -> list[str]:
        bad = [entry for entry in value if not _ENV_ENTRY_RE.match(entry)]
        if bad:
            raise ValueError(f"invalid env entries {bad}: expected KEY or KEY=VALUE")
        return value


def config_path(project_dir: Path) -> Path:
    """Return the config file in use, preferring the state directory copy."""
    state_path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    root_path = project_dir / ROOT_CONFIG_FILE
    if not state_path.exists() and root_path.exists():
        return root_path
    return state_path


def load_project_config(project_dir: Path) -> ProjectConfig:
    """Load the project configuration, migrating it in place when it is outdated.

    Args:
        project_dir: Repository root.

    Returns:
        The validated configuration (defaults when no file exists).

    Raises:
        ConfigError: If the file cannot be parsed, migrated or validated.
    """
    path = config_path(project_dir)
    raw, err = _load_data_with_error(path, {})
    if err:
        raise ConfigError(f"Unable to read project config: {err}")
    if not raw:
        return ProjectConfig()
    data, migrated = CONFIG_MIGRATIONS.migrate(raw)
    try:
        config = ProjectConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid project config {path.name}: {exc}") from exc
    if migrated:
        logger.info("Migrated {} from version {} to {}", path.name, raw.get("version", "1.0"), config.version)
        save_project_config(project_dir, config, path=path)
    return config


def save_project_config(project_dir: Path, config: ProjectConfig, *, path: Optional[Path] = None) -> Path:
    target = path or config_path(project_dir)
    _atomic_write_json(target, config.model_dump(mode="json", by_alias=True, exclude_none=True))
    return target


def resolve_sandbox_env(config: ProjectConfig, project_dir: Path) -> dict[str, str]:
    """Collect the custom environment variables to inject into the sandbox.

    ``envs_file`` is read first, then ``envs`` entries override it. A bare
    ``KEY`` entry copies the value from the current environment and is
    skipped when unset.
    """
    env: dict[str, str] = {}
    if config.envs_file:
        env_path = Path(config.envs_file)
        if not env_path.is_absolute():
            env_path = project_dir / env_path
        if env_path.exists():
            env.update({key: value for key, value in dotenv_values(env_path).items() if value is not None})
        else:
            logger.warning("Environment file {} not found, skipping", env_path)
    for entry in config.envs:
        if "=" in entry:
            key, value = entry.split("=", 1)
            env[key] = value
        elif entry in os.environ:
            env[entry] = os.environ[entry]
        else:
            logger.debug("Env {} is not set in the current environment, skipping", entry)
    return env
