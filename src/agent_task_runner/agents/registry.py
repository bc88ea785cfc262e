"""Select an agent implementation by name."""

from __future__ import annotations

from typing import Callable

from ..errors import AgentError
from .base import AgentTool
from .cli_agents import ClaudeAgent, CodexAgent, CursorAgent, GeminiAgent, QwenAgent

AGENTS: dict[str, Callable[[], AgentTool]] = {
    "claude": ClaudeAgent,
    "codex": CodexAgent,
    "cursor": CursorAgent,
    "gemini": GeminiAgent,
    "qwen": QwenAgent,
}


def available_agents() -> list[str]:
    return sorted(AGENTS)


def get_agent(name: str) -> AgentTool:
    """Instantiate the agent registered as ``name`` (case-insensitive).

    Raises:
        AgentError: If no agent is registered under that name.
    """
    factory = AGENTS.get((name or "").strip().lower())
    if factory is None:
        raise AgentError(
            f"Unknown agent '{name}'",
            hint=f"choose one of: {', '.join(available_agents())}",
        )
    return factory()
