"""Git worktree, branch and merge helpers used by the orchestrator."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import CONFLICT_STATUS_CODES, DEFAULT_COMMAND_TIMEOUT_SECONDS, STATE_DIR_NAME
from .errors import MergeConflictError, WorkspaceError


def _run_git(
    args: list[str],
    cwd: Path,
    *,
    check: bool = False,
    error: str = "git command failed",
) -> subprocess.CompletedProcess[str]:
    logger.debug("git {} (cwd={})", " ".join(args), cwd)
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
            timeout=DEFAULT_COMMAND_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise WorkspaceError(f"{error}: {exc}") from exc
    if check and result.returncode != 0:
        raise WorkspaceError(error, stderr=result.stderr or result.stdout)
    return result


def _ignore_file_has_entry(path: Path, ignore_entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return ignore_entry.strip().rstrip("/") in lines


def _ensure_excluded(project_dir: Path) -> None:
    """List the state directory in the repository's local exclude file.

    ``.git/info/exclude`` is used instead of ``.gitignore`` so that creating a
    task never leaves the main checkout with an uncommitted change.
    """
    result = _run_git(["rev-parse", "--git-path", "info/exclude"], project_dir)
    if result.returncode != 0:
        return
    exclude_path = Path(result.stdout.strip())
    if not exclude_path.is_absolute():
        exclude_path = project_dir / exclude_path
    entry = f"{STATE_DIR_NAME}/"
    try:
        if _ignore_file_has_entry(exclude_path, entry):
            return
        contents = exclude_path.read_text() if exclude_path.exists() else ""
        if contents and not contents.endswith("\n"):
            contents += "\n"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        exclude_path.write_text(contents + entry + "\n")
    except OSError as exc:
        logger.warning("Unable to update git exclude file: {}", exc)


def parse_conflicted_files(porcelain: str) -> list[str]:
    """Return the paths ``git status --porcelain`` reports as unmerged."""
    files: list[str] = []
    for line in porcelain.splitlines():
        if len(line) < 4:
            continue
        if line[:2] in CONFLICT_STATUS_CODES:
            files.append(line[3:].strip().strip('"'))
    return files


class WorkspaceManager:
    """Own the git side of a task: worktrees, branches, commits and merges.

    ``project_dir`` is the user's main checkout; per-task operations that must
    run inside a worktree take its path explicitly.
    """

    def __init__(self, project_dir: Path):
        self.project_dir = Path(project_dir)

    # ------------------------------------------------------------------
    # Repository queries
    # ------------------------------------------------------------------

    def is_repo(self) -> bool:
        result = _run_git(["rev-parse", "--is-inside-work-tree"], self.project_dir)
        return result.returncode == 0 and result.stdout.strip().lower() == "true"

    def has_commits(self) -> bool:
        return _run_git(["rev-parse", "--verify", "HEAD"], self.project_dir).returncode == 0

    def current_branch(self, cwd: Optional[Path] = None) -> Optional[str]:
        result = _run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd or self.project_dir)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def branch_exists(self, branch: str) -> bool:
        return _run_git(["show-ref", "--verify", f"refs/heads/{branch}"], self.project_dir).returncode == 0

    def main_branch(self) -> str:
        """Best guess at the project's main branch.

        Order: the remote's HEAD, a local ``main``, a local ``master``, then
        whatever is checked out.
        """
        result = _run_git(["symbolic-ref", "refs/remotes/origin/HEAD"], self.project_dir)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip().rsplit("/", 1)[-1]
        for candidate in ("main", "master"):
            if self.branch_exists(candidate):
                return candidate
        return self.current_branch() or "main"

    def has_uncommitted_changes(self, cwd: Optional[Path] = None) -> bool:
        result = _run_git(["status", "--porcelain"], cwd or self.project_dir)
        return result.returncode == 0 and bool(result.stdout.strip())

    def uncommitted_files(self, cwd: Optional[Path] = None) -> list[str]:
        result = _run_git(["status", "--porcelain"], cwd or self.project_dir)
        if result.returncode != 0:
            return []
        return [line[3:].strip() for line in result.stdout.splitlines() if len(line) > 3]

    def has_unmerged_commits(self, branch: str, target: Optional[str] = None) -> bool:
        """True when ``branch`` has commits not reachable from ``target`` (default HEAD)."""
        result = _run_git(["rev-list", "--count", f"{target or 'HEAD'}..{branch}"], self.project_dir)
        if result.returncode != 0:
            return False
        try:
            return int(result.stdout.strip() or 0) > 0
        except ValueError:
            return False

    def recent_commits(self, branch: Optional[str] = None, count: int = 5) -> list[str]:
        """Subjects of the last ``count`` commits on ``branch`` (default: main branch)."""
        ref = branch or self.main_branch()
        result = _run_git(["log", ref, "--pretty=format:%s", "-n", str(count)], self.project_dir)
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def history_context(self, count: int = 10) -> str:
        result = _run_git(["log", "--oneline", f"-{count}"], self.project_dir)
        return result.stdout.strip() if result.returncode == 0 else ""

    def diff(
        self,
        cwd: Path,
        *,
        base: Optional[str] = None,
        path: Optional[str] = None,
        name_only: bool = False,
    ) -> str:
        """Return ``git diff`` of the working tree at ``cwd``.

        Without ``base`` the diff covers uncommitted changes to tracked files;
        with it, everything that differs from ``base`` including commits.
        """
        args = ["diff"]
        if name_only:
            args.append("--name-only")
        if base:
            args.append(base)
        if path:
            args += ["--", path]
        result = _run_git(args, cwd, check=True, error="Failed to compute diff")
        return result.stdout

    def untracked_files(self, cwd: Path) -> list[str]:
        result = _run_git(["ls-files", "--others", "--exclude-standard"], cwd)
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Worktrees and branches
    # ------------------------------------------------------------------

    def worktree_paths(self) -> list[Path]:
        result = _run_git(["worktree", "list", "--porcelain"], self.project_dir)
        if result.returncode != 0:
            return []
        return [
            Path(line.split(" ", 1)[1]).resolve()
            for line in result.stdout.splitlines()
            if line.startswith("worktree ")
        ]

    def worktree_exists(self, path: Path) -> bool:
        return path.exists() and Path(path).resolve() in self.worktree_paths()

    def create_worktree(self, path: Path, branch: str, base_branch: Optional[str] = None) -> None:
        """Create ``path`` checked out on ``branch``.

        A new branch is created from ``base_branch`` unless it already exists,
        in which case the existing branch is checked out as is.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        if self.branch_exists(branch):
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path)]
            if base_branch:
                args.append(base_branch)
        _run_git(args, self.project_dir, check=True, error=f"Failed to create worktree for {branch}")
        logger.info("Created worktree {} on branch {}", path, branch)

    def remove_worktree(self, path: Path) -> None:
        _run_git(
            ["worktree", "remove", "--force", str(path)],
            self.project_dir,
            check=True,
            error=f"Failed to remove worktree {path}",
        )

    def delete_branch(self, branch: str) -> None:
        _run_git(["branch", "-D", branch], self.project_dir, check=True, error=f"Failed to delete branch {branch}")

    def prune_worktrees(self) -> None:
        result = _run_git(["worktree", "prune"], self.project_dir)
        if result.returncode != 0:
            logger.warning("git worktree prune failed: {}", result.stderr.strip())

    # ------------------------------------------------------------------
    # Commits, merges and pushes
    # ------------------------------------------------------------------

    def commit_all(self, cwd: Path, message: str) -> None:
        _run_git(["add", "-A"], cwd, check=True, error="Failed to stage changes")
        _run_git(["commit", "-m", message], cwd, check=True, error="Failed to commit changes")

    def stage(self, paths: list[str]) -> None:
        _run_git(["add", "--", *paths], self.project_dir, check=True, error="Failed to stage files")

    def merge_branch(self, branch: str, message: str) -> None:
        """Merge ``branch`` into the current branch with a merge commit.

        Raises:
            MergeConflictError: If git stopped with unmerged paths. The
                repository is left mid-merge for the caller to resolve or abort.
            WorkspaceError: On any other failure.
        """
        result = _run_git(["merge", "--no-ff", branch, "-m", message], self.project_dir)
        if result.returncode == 0:
            return
        stderr = result.stderr or result.stdout
        conflicts = self.merge_conflicts()
        if conflicts:
            raise MergeConflictError(conflicts, stderr=stderr)
        raise WorkspaceError(f"Failed to merge {branch}", stderr=stderr)

    def is_merging(self) -> bool:
        return _run_git(["rev-parse", "-q", "--verify", "MERGE_HEAD"], self.project_dir).returncode == 0

    def merge_conflicts(self) -> list[str]:
        result = _run_git(["status", "--porcelain"], self.project_dir)
        if result.returncode != 0:
            return []
        return parse_conflicted_files(result.stdout)

    def abort_merge(self) -> None:
        if not self.is_merging():
            return
        _run_git(["merge", "--abort"], self.project_dir, check=True, error="Failed to abort merge")

    def continue_merge(self) -> None:
        _run_git(["commit", "--no-edit"], self.project_dir, check=True, error="Failed to complete merge")

    def remote_exists(self, remote: str = "origin") -> bool:
        return _run_git(["remote", "get-url", remote], self.project_dir).returncode == 0

    def push_branch(self, branch: str, cwd: Path, remote: str = "origin") -> None:
        has_upstream = _run_git(
            ["rev-parse", "--abbrev-ref", f"{branch}@{{upstream}}"],
            cwd,
        ).returncode == 0
        args = ["push", remote, branch] if has_upstream else ["push", "--set-upstream", remote, branch]
        _run_git(args, cwd, check=True, error=f"Failed to push {branch} to {remote}")
