"""Fetch GitHub issues through the ``gh`` command-line client."""

from __future__ import annotations

import json
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .constants import DEFAULT_COMMAND_TIMEOUT_SECONDS
from .errors import TaskValidationError, WorkspaceError

_ISSUE_REF_RE = re.compile(
    r"^(?:https://github\.com/)?(?P<repo>[\w.-]+/[\w.-]+)(?:#|/issues/)(?P<number>\d+)$"
)


@dataclass(frozen=True)
class GithubIssue:
    repo: str
    number: int
    title: str
    body: str


def parse_issue_ref(ref: str) -> tuple[str, int]:
    """Split ``owner/repo#123`` (or an issue URL) into ``(repo, number)``."""
    m = _ISSUE_REF_RE.match(ref.strip())
    if not m:
        raise TaskValidationError(
            f"Invalid GitHub issue reference '{ref}'",
            hint="use owner/repo#123 or https://github.com/owner/repo/issues/123",
        )
    return m.group("repo"), int(m.group("number"))


def fetch_issue(
    ref: str,
    *,
    gh_binary: Optional[str] = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
) -> GithubIssue:
    """Load an issue's title and body.

    Raises:
        TaskValidationError: If ``ref`` is malformed.
        WorkspaceError: If ``gh`` is missing, times out or the request fails.
    """
    repo, number = parse_issue_ref(ref)
    binary = gh_binary or shutil.which("gh")
    if not binary:
        raise WorkspaceError("The GitHub CLI (gh) is required for --from-github")
    logger.debug("Fetching GitHub issue {}#{}", repo, number)
    try:
        result = subprocess.run(
            [binary, "issue", "view", str(number), "--repo", repo, "--json", "title,body"],
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise WorkspaceError(f"Timed out fetching issue {repo}#{number} after {timeout}s") from exc
    except OSError as exc:
        raise WorkspaceError(f"Failed to run gh: {exc}") from exc
    if result.returncode != 0:
        raise WorkspaceError(f"Failed to fetch issue {repo}#{number}", stderr=result.stderr)
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise WorkspaceError(f"Unexpected gh output for {repo}#{number}: {exc}") from exc
    return GithubIssue(repo=repo, number=number, title=str(data.get("title") or ""), body=str(data.get("body") or ""))
