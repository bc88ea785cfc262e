"""AI agent integrations."""

from .base import AgentTool, CliAgent, TaskExpansion
from .registry import AGENTS, available_agents, get_agent

__all__ = ["AGENTS", "AgentTool", "CliAgent", "TaskExpansion", "available_agents", "get_agent"]
