"""Tests for GitHub issue references."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_task_runner.errors import TaskValidationError, WorkspaceError
from agent_task_runner.github import GithubIssue, fetch_issue, parse_issue_ref
from agent_task_runner.orchestrator import TaskLifecycleOrchestrator

from conftest import FakeAgent, FakeSandbox


@pytest.mark.parametrize(
    ("ref", "expected"),
    [
        ("acme/widgets#12", ("acme/widgets", 12)),
        ("https://github.com/acme/widgets/issues/7", ("acme/widgets", 7)),
        ("  acme/my.repo#3 ", ("acme/my.repo", 3)),
    ],
)
def test_parse_issue_ref(ref: str, expected: tuple[str, int]) -> None:
    assert parse_issue_ref(ref) == expected


@pytest.mark.parametrize("ref", ["widgets#12", "acme/widgets", "acme/widgets#x", "https://gitlab.com/a/b/issues/1"])
def test_parse_issue_ref_rejects_garbage(ref: str) -> None:
    with pytest.raises(TaskValidationError) as excinfo:
        parse_issue_ref(ref)
    assert "owner/repo#123" in excinfo.value.hint


def test_fetch_issue_requires_gh(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))
    with pytest.raises(WorkspaceError, match="gh"):
        fetch_issue("acme/widgets#1")


def test_create_from_issue(repo: Path, fake_sandbox: FakeSandbox) -> None:
    class IssueAgent(FakeAgent):
        def extract_github_inputs(self, issue_body, input_specs):
            assert [spec["name"] for spec in input_specs] == ["description"]
            return {"description": "Make the parser accept tabs"}

    def fetcher(ref: str) -> GithubIssue:
        return GithubIssue(repo="acme/widgets", number=4, title="Parser rejects tabs", body="Tabs break parsing.")

    orchestrator = TaskLifecycleOrchestrator(
        repo, sandbox=fake_sandbox, agent=IssueAgent(), issue_fetcher=fetcher
    )
    result = orchestrator.create(from_github="acme/widgets#4", expand=False)
    task = result.task
    assert result.started
    assert task.inputs["description"] == "Make the parser accept tabs"
    assert task.description == "Parser rejects tabs\n\nTabs break parsing."
    assert task.title == "Parser rejects tabs"


def _fake_gh(tmp_path: Path, body: str) -> str:
    script = tmp_path / "gh"
    script.write_text(f"#!/bin/sh\n{body}\n")
    script.chmod(0o755)
    return str(script)


def test_fetch_issue_reads_gh_json(tmp_path: Path) -> None:
    gh = _fake_gh(tmp_path, """echo '{"title": "Crash on start", "body": "Stack trace"}'""")
    issue = fetch_issue("acme/widgets#9", gh_binary=gh)
    assert issue == GithubIssue(repo="acme/widgets", number=9, title="Crash on start", body="Stack trace")


def test_fetch_issue_times_out(tmp_path: Path) -> None:
    gh = _fake_gh(tmp_path, "exec sleep 5")
    with pytest.raises(WorkspaceError, match="Timed out fetching issue acme/widgets#9"):
        fetch_issue("acme/widgets#9", gh_binary=gh, timeout=0.5)


def test_fetch_issue_reports_gh_failure(tmp_path: Path) -> None:
    gh = _fake_gh(tmp_path, "echo 'not found' >&2; exit 1")
    with pytest.raises(WorkspaceError, match="Failed to fetch issue acme/widgets#9"):
        fetch_issue("acme/widgets#9", gh_binary=gh)
