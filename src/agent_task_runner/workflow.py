"""Workflow definitions consumed by tasks.

Workflows are YAML data: the runner reads their declared inputs to validate
what a task provides and hands the definition to the agent inside the
sandbox. Steps are never evaluated here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import STATE_DIR_NAME, WORKFLOW_SCHEMA_VERSION
from .errors import WorkflowError
from .io_utils import _load_data_with_error

BUILTIN_WORKFLOWS_DIR = Path(__file__).parent / "workflows"


@dataclass(frozen=True)
class WorkflowInput:
    name: str
    description: str = ""
    type: str = "string"
    required: bool = False
    default: Optional[str] = None


@dataclass
class WorkflowDefinition:
    name: str
    description: str
    path: Path
    inputs: list[WorkflowInput] = field(default_factory=list)
    steps: list[dict[str, Any]] = field(default_factory=list)
    outputs: list[dict[str, Any]] = field(default_factory=list)
    version: str = WORKFLOW_SCHEMA_VERSION

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Path) -> "WorkflowDefinition":
        errors: list[str] = []
        if not data.get("name"):
            errors.append("name is required")
        if not data.get("description"):
            errors.append("description is required")
        raw_inputs = data.get("inputs") or []
        if not isinstance(raw_inputs, list):
            errors.append("inputs must be an array")
            raw_inputs = []
        inputs: list[WorkflowInput] = []
        for index, item in enumerate(raw_inputs):
            if not isinstance(item, dict) or not item.get("name"):
                errors.append(f"input[{index}].name is required")
                continue
            default = item.get("default")
            inputs.append(
                WorkflowInput(
                    name=str(item["name"]),
                    description=str(item.get("description") or ""),
                    type=str(item.get("type") or "string"),
                    required=bool(item.get("required", False)),
                    default=None if default is None else str(default),
                )
            )
        names = [entry.name for entry in inputs]
        for name in sorted({n for n in names if names.count(n) > 1}):
            errors.append(f'Input "{name}" is defined {names.count(name)} times in workflow (should be unique)')
        steps = data.get("steps") or []
        for index, step in enumerate(steps):
            if not isinstance(step, dict) or not step.get("id") or not step.get("prompt"):
                errors.append(f"step[{index}] needs an id and a prompt")
        if errors:
            raise WorkflowError(f"Invalid workflow {path.name}: " + ", ".join(errors))
        return cls(
            name=str(data["name"]),
            description=str(data["description"]),
            path=path,
            inputs=inputs,
            steps=list(steps),
            outputs=list(data.get("outputs") or []),
            version=str(data.get("version") or WORKFLOW_SCHEMA_VERSION),
        )

    def resolve_inputs(self, provided: dict[str, str]) -> tuple[dict[str, str], list[str]]:
        """Apply defaults and validate ``provided`` inputs.

        Returns:
            ``(inputs, warnings)`` where warnings name inputs the workflow
            does not declare.

        Raises:
            WorkflowError: If a required input has no value and no default.
        """
        resolved = dict(provided)
        missing: list[str] = []
        for entry in self.inputs:
            if resolved.get(entry.name):
                continue
            if entry.default is not None:
                resolved[entry.name] = entry.default
            elif entry.required:
                missing.append(entry.name)
        if missing:
            raise WorkflowError(
                f"Workflow '{self.name}' is missing required inputs: {', '.join(missing)}",
                hint="pass them with --input NAME=VALUE",
            )
        declared = {entry.name for entry in self.inputs}
        warnings = [
            f'Unknown input "{name}" provided (not defined in workflow)'
            for name in provided
            if name not in declared
        ]
        return resolved, warnings


def _workflow_dirs(project_dir: Optional[Path]) -> list[Path]:
    dirs = []
    if project_dir is not None:
        dirs.append(project_dir / STATE_DIR_NAME / "workflows")
    dirs.append(BUILTIN_WORKFLOWS_DIR)
    return dirs


def available_workflows(project_dir: Optional[Path] = None) -> list[str]:
    names: set[str] = set()
    for directory in _workflow_dirs(project_dir):
        if directory.exists():
            names.update(path.stem for path in directory.glob("*.yml"))
            names.update(path.stem for path in directory.glob("*.yaml"))
    return sorted(names)


def load_workflow(name: str, project_dir: Optional[Path] = None) -> WorkflowDefinition:
    """Load a workflow by name; project workflows shadow the built-in ones.

    Raises:
        WorkflowError: If the workflow is unknown or invalid.
    """
    for directory in _workflow_dirs(project_dir):
        for suffix in (".yml", ".yaml"):
            path = directory / f"{name}{suffix}"
            if not path.exists():
                continue
            data, err = _load_data_with_error(path, {})
            if err:
                raise WorkflowError(f"Unable to read workflow {name}: {err}")
            return WorkflowDefinition.from_dict(data, path)
    raise WorkflowError(
        f"Unknown workflow '{name}'",
        hint=f"available workflows: {', '.join(available_workflows(project_dir))}",
    )
