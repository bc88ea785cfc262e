"""Provide the public `agent_task_runner` package exports."""

from __future__ import annotations

__version__ = "0.1.0"

from .errors import TaskRunnerError
from .merge import MergeCoordinator
from .models import IterationRecord, TaskRecord, TaskStatus
from .orchestrator import TaskLifecycleOrchestrator

__all__ = [
    "IterationRecord",
    "MergeCoordinator",
    "TaskLifecycleOrchestrator",
    "TaskRecord",
    "TaskRunnerError",
    "TaskStatus",
    "__version__",
]
