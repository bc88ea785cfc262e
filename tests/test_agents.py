"""Tests for agent output parsing and the agent registry."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from agent_task_runner.agents import AgentTool, available_agents, get_agent
from agent_task_runner.agents.cli_agents import ClaudeAgent, CodexAgent, CursorAgent
from agent_task_runner.agents.output import extract_json_object, has_conflict_markers, strip_code_fence
from agent_task_runner.errors import AgentError


class ScriptedAgent(AgentTool):
    name = "scripted"

    def __init__(self, answer: str = "", error: Optional[str] = None):
        self.answer = answer
        self.error = error
        self.prompts: list[str] = []

    def invoke(self, prompt: str, *, json_output: bool = False, cwd: Optional[Path] = None) -> str:
        self.prompts.append(prompt)
        if self.error:
            raise AgentError(self.error)
        return self.answer


class TestOutputParsing:
    def test_plain_json(self) -> None:
        assert extract_json_object('{"title": "t"}') == {"title": "t"}

    def test_fenced_json(self) -> None:
        text = 'Here you go:\n```json\n{"title": "Add login", "description": "d"}\n```\nThanks!'
        assert extract_json_object(text) == {"title": "Add login", "description": "d"}

    def test_json_with_chatter(self) -> None:
        assert extract_json_object('Sure. {"a": 1} Hope this helps.') == {"a": 1}

    @pytest.mark.parametrize("text", ["", "no json here", "[1, 2]", "{broken"])
    def test_invalid_output(self, text: str) -> None:
        with pytest.raises(AgentError):
            extract_json_object(text)

    def test_strip_code_fence(self) -> None:
        assert strip_code_fence("```python\nprint('x')\n```") == "print('x')"
        assert strip_code_fence("no fence") == "no fence"

    def test_conflict_markers(self) -> None:
        assert has_conflict_markers("a\n<<<<<<< HEAD\nb\n=======\nc\n>>>>>>> branch\n")
        assert not has_conflict_markers("a\nb == c\n")


class TestHighLevelHelpers:
    def test_expand_task(self) -> None:
        agent = ScriptedAgent('{"title": "Add login", "description": "Create the page"}')
        expansion = agent.expand_task("login", Path("."))
        assert expansion.title == "Add login"
        assert expansion.description == "Create the page"
        assert "login" in agent.prompts[0]

    def test_expand_task_failure_returns_none(self) -> None:
        assert ScriptedAgent(error="boom").expand_task("login", Path(".")) is None
        assert ScriptedAgent('{"title": ""}').expand_task("login", Path(".")) is None

    def test_commit_message_uses_first_line(self) -> None:
        agent = ScriptedAgent('```\n"feat: add login"\n\nLonger body\n```')
        assert agent.generate_commit_message("t", "d", [], []) == "feat: add login"

    def test_resolution_with_markers_is_rejected(self) -> None:
        agent = ScriptedAgent("<<<<<<< HEAD\na\n=======\nb\n>>>>>>> x\n")
        assert agent.resolve_merge_conflicts("f.txt", "", "conflict\n") is None

    def test_resolution_keeps_trailing_newline(self) -> None:
        agent = ScriptedAgent("```\nmerged\n```")
        assert agent.resolve_merge_conflicts("f.txt", "", "conflict\n") == "merged\n"

    def test_extract_github_inputs(self) -> None:
        agent = ScriptedAgent('{"description": "Fix it", "audience": ""}')
        assert agent.extract_github_inputs("body", [{"name": "description"}]) == {"description": "Fix it"}
        assert ScriptedAgent('{"error": "nothing found"}').extract_github_inputs("body", []) is None

    def test_container_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.delenv("ANTHROPIC_BASE_URL", raising=False)
        assert ClaudeAgent().container_environment()["ANTHROPIC_API_KEY"] == "sk-test"
        assert "ANTHROPIC_BASE_URL" not in ClaudeAgent().container_environment()


class TestCliAgents:
    def test_registry(self) -> None:
        assert available_agents() == ["claude", "codex", "cursor", "gemini", "qwen"]
        assert isinstance(get_agent(" Claude "), ClaudeAgent)

    def test_unknown_agent(self) -> None:
        with pytest.raises(AgentError) as excinfo:
            get_agent("hal")
        assert "claude" in excinfo.value.hint

    def test_claude_args_and_output(self) -> None:
        agent = ClaudeAgent()
        assert agent.build_args(True) == ["-p", "--output-format", "json"]
        assert agent.parse_output('{"result": "{\\"a\\": 1}"}', True) == '{"a": 1}'
        assert agent.parse_output("  plain  ", False) == "plain"
        with pytest.raises(AgentError):
            agent.parse_output("not json", True)

    def test_cursor_and_codex_args(self) -> None:
        assert CursorAgent().build_args(True) == ["agent", "--print", "--output-format", "json"]
        assert CodexAgent().build_args(False) == ["exec", "--skip-git-repo-check", "-"]

    def test_missing_binary(self) -> None:
        agent = ClaudeAgent(binary="definitely-not-an-agent-binary")
        with pytest.raises(AgentError, match="not installed"):
            agent.invoke("hi")
