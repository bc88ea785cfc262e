"""Command-line entrypoint for the agent task runner.

Every subcommand accepts ``--json``; in that mode stdout carries exactly one
JSON document with at least ``success`` and the exit code is non-zero iff
``success`` is false.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.syntax import Syntax
from rich.table import Table

from . import __version__
from .agents import available_agents
from .config import load_project_config
from .environment import init_project
from .errors import TaskRunnerError, TaskValidationError
from .logging_utils import configure_logging
from .logs import follow_logs, read_logs
from .merge import MergeCoordinator, ResolvedFile
from .models import TaskRecord, TaskStatus
from .orchestrator import TaskLifecycleOrchestrator
from .sandbox import SANDBOXES
from .utils import _parse_task_id
from .workflow import available_workflows, load_workflow

console = Console()

_STATUS_STYLES = {
    TaskStatus.NEW: "white",
    TaskStatus.IN_PROGRESS: "cyan",
    TaskStatus.ITERATING: "cyan",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.MERGED: "magenta",
    TaskStatus.PUSHED: "magenta",
}
_PREVIEW_LINES = 40


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> TaskLifecycleOrchestrator:
    project_dir = _resolve_project_dir(args.project_dir)
    config = load_project_config(project_dir)
    backend = getattr(args, "sandbox", None)
    if backend:
        config.sandbox = config.sandbox.model_copy(update={"backend": backend})
    return TaskLifecycleOrchestrator(project_dir, config=config)


def _parse_inputs(entries: Optional[list[str]]) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for entry in entries or []:
        name, sep, value = entry.partition("=")
        if not sep or not name.strip():
            raise TaskValidationError(f"Invalid input '{entry}'", hint="use --input NAME=VALUE")
        inputs[name.strip()] = value
    return inputs


def _emit(args: argparse.Namespace, payload: dict[str, Any], render: Optional[Callable[[], None]] = None) -> int:
    if args.json:
        sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    elif render is not None:
        render()
    elif payload.get("error"):
        _print_error(payload["error"], payload.get("hint"))
    return 0 if payload.get("success") else 1


def _print_error(message: str, hint: Optional[str] = None) -> None:
    console.print(f"[red]Error:[/red] {message}")
    if hint:
        console.print(f"[dim]Hint: {hint}[/dim]")


def _print_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


def _confirm(args: argparse.Namespace, question: str) -> bool:
    if args.json or args.yes:
        return True
    return Confirm.ask(question, default=False, console=console)


def _task_payload(task: TaskRecord) -> dict[str, Any]:
    return {
        "success": True,
        "taskId": task.id,
        "title": task.title,
        "status": task.status.value,
        "iterations": task.iterations,
        "branchName": task.branch_name,
        "worktreePath": task.worktree_path,
        "containerId": task.container_id,
    }


def _status_text(task: TaskRecord) -> str:
    style = _STATUS_STYLES.get(task.status, "white")
    return f"[{style}]{task.status.value}[/{style}]"


# ---------------------------------------------------------------------------
# task / start / restart / iterate
# ---------------------------------------------------------------------------


def _task_create(args: argparse.Namespace) -> int:
    orchestrator = _ctx(args)
    result = orchestrator.create(
        " ".join(args.description).strip(),
        title=args.title,
        inputs=_parse_inputs(args.input),
        workflow=args.workflow,
        agent=args.agent,
        source_branch=args.source_branch,
        from_github=args.from_github,
        expand=not args.no_expand,
    )

    def render() -> None:
        task = result.task
        _print_warnings(result.warnings)
        if result.error:
            console.print(f"Task [bold]{task.id}[/bold] created but not started")
            _print_error(result.error, result.hint)
            return
        console.print(f"[green]Task {task.id} started:[/green] {task.title}")
        console.print(f"  Branch:    {task.branch_name}")
        console.print(f"  Worktree:  {task.worktree_path}")
        console.print(f"  Container: {task.container_id}")

    return _emit(args, result.to_dict(), render)


def _task_start(args: argparse.Namespace) -> int:
    task = _ctx(args).start(_parse_task_id(args.task_id))
    return _emit(args, _task_payload(task), lambda: console.print(f"[green]Task {task.id} started[/green]"))


def _task_restart(args: argparse.Namespace) -> int:
    task = _ctx(args).restart(_parse_task_id(args.task_id))
    return _emit(
        args,
        _task_payload(task),
        lambda: console.print(f"[green]Task {task.id} restarted[/green] (iteration {task.iterations})"),
    )


def _task_iterate(args: argparse.Namespace) -> int:
    task = _ctx(args).iterate(
        _parse_task_id(args.task_id),
        " ".join(args.instructions),
        expand=not args.no_expand,
    )
    return _emit(
        args,
        _task_payload(task),
        lambda: console.print(f"[green]Task {task.id} iteration {task.iterations} started[/green]"),
    )


# ---------------------------------------------------------------------------
# stop / delete
# ---------------------------------------------------------------------------


def _task_stop(args: argparse.Namespace) -> int:
    task_id = _parse_task_id(args.task_id)
    orchestrator = _ctx(args)
    task = orchestrator.get(task_id)
    destructive = args.remove_all or args.remove_worktree or args.remove_iterations
    if destructive and not _confirm(args, f"Stop task {task_id} ({task.title}) and remove its data?"):
        console.print("Cancelled")
        return 0
    result = orchestrator.stop(
        task_id,
        remove_all=args.remove_all,
        remove_git_worktree_and_branch=args.remove_worktree,
        remove_iterations=args.remove_iterations,
    )
    payload = {"success": True, "taskId": task_id, "status": TaskStatus.NEW.value}
    if result.warnings:
        payload["warnings"] = result.warnings

    def render() -> None:
        _print_warnings(result.warnings)
        console.print(f"[green]Task {task_id} stopped[/green]")

    return _emit(args, payload, render)


def _task_delete(args: argparse.Namespace) -> int:
    task_id = _parse_task_id(args.task_id)
    orchestrator = _ctx(args)
    task = orchestrator.get(task_id)
    if not _confirm(args, f"Delete task {task_id} ({task.title}), its worktree and branch?"):
        console.print("Cancelled")
        return 0
    result = orchestrator.delete(task_id)
    payload: dict[str, Any] = {"success": True, "taskId": task_id}
    if result.warnings:
        payload["warnings"] = result.warnings

    def render() -> None:
        _print_warnings(result.warnings)
        console.print(f"[green]Task {task_id} deleted[/green]")

    return _emit(args, payload, render)


# ---------------------------------------------------------------------------
# merge / push
# ---------------------------------------------------------------------------


def _review_resolutions(files: list[ResolvedFile]) -> bool:
    console.print(Panel("[bold]AI-resolved merge conflicts[/bold]"))
    for resolved in files:
        lines = resolved.content.splitlines()
        preview = "\n".join(lines[:_PREVIEW_LINES])
        if len(lines) > _PREVIEW_LINES:
            preview += f"\n... ({len(lines) - _PREVIEW_LINES} more lines)"
        console.print(Panel(preview, title=resolved.path))
    return Confirm.ask("Apply these resolutions and complete the merge?", default=False, console=console)


def _task_merge(args: argparse.Namespace) -> int:
    task_id = _parse_task_id(args.task_id)
    orchestrator = _ctx(args)
    interactive = not (args.json or args.yes)
    coordinator = MergeCoordinator(
        orchestrator.project_dir,
        store=orchestrator.store,
        workspace=orchestrator.workspace,
        config=orchestrator.config,
        approve=_review_resolutions if interactive else None,
    )
    result = coordinator.merge(task_id, cleanup=args.cleanup)

    def render() -> None:
        _print_warnings(result.warnings)
        if result.error:
            _print_error(result.error, result.hint)
        elif result.nothing_to_merge:
            console.print(f"Task {task_id}: nothing to merge")
        elif result.aborted:
            console.print("[yellow]Merge aborted[/yellow]")
        else:
            if result.commit_message:
                console.print(f"Committed: {result.commit_message}")
            if result.conflicts_resolved:
                console.print(f"Resolved conflicts in: {', '.join(result.conflicts)}")
            console.print(f"[green]Task {task_id} merged[/green]")
            if result.cleaned_up:
                console.print("Removed worktree and branch")

    return _emit(args, result.to_dict(), render)


def _task_push(args: argparse.Namespace) -> int:
    task_id = _parse_task_id(args.task_id)
    orchestrator = _ctx(args)
    coordinator = MergeCoordinator(
        orchestrator.project_dir,
        store=orchestrator.store,
        workspace=orchestrator.workspace,
        config=orchestrator.config,
    )
    result = coordinator.push(task_id, remote=args.remote)

    def render() -> None:
        if result.error:
            _print_error(result.error, result.hint)
            return
        if result.commit_message:
            console.print(f"Committed: {result.commit_message}")
        console.print(f"[green]Pushed {result.branch} to {args.remote}[/green]")

    return _emit(args, result.to_dict(), render)


# ---------------------------------------------------------------------------
# logs / list / inspect
# ---------------------------------------------------------------------------


def _task_logs(args: argparse.Namespace) -> int:
    task_id = _parse_task_id(args.task_id)
    iteration = args.iteration_arg if args.iteration_arg is not None else args.iteration
    orchestrator = _ctx(args)
    task = orchestrator.get(task_id)
    sandbox = orchestrator.sandbox_for(task)
    if args.follow:
        if args.json:
            raise TaskValidationError("--follow cannot be combined with --json", task_id=task_id)
        try:
            for line in follow_logs(orchestrator.store, sandbox, task_id, iteration):
                sys.stdout.write(line + "\n")
                sys.stdout.flush()
        except KeyboardInterrupt:
            pass
        return 0
    text = read_logs(orchestrator.store, sandbox, task_id, iteration, max_chars=args.tail)
    payload = {"success": True, "taskId": task_id, "iteration": iteration or task.iterations, "logs": text}
    return _emit(args, payload, lambda: sys.stdout.write(text if text.endswith("\n") or not text else text + "\n"))


def _task_list(args: argparse.Namespace) -> int:
    tasks = _ctx(args).list_tasks()
    if args.status:
        tasks = [task for task in tasks if task.status.value == args.status]
    payload = {"success": True, "tasks": [task.to_dict() for task in tasks]}

    def render() -> None:
        if not tasks:
            console.print("No tasks")
            return
        table = Table(title="Tasks")
        table.add_column("ID", justify="right")
        table.add_column("Status")
        table.add_column("Title")
        table.add_column("Iter", justify="right")
        table.add_column("Branch")
        for task in tasks:
            table.add_row(str(task.id), _status_text(task), task.title, str(task.iterations), task.branch_name or "-")
        console.print(table)

    return _emit(args, payload, render)


def _task_inspect(args: argparse.Namespace) -> int:
    task_id = _parse_task_id(args.task_id)
    orchestrator = _ctx(args)
    task = orchestrator.refresh_status(task_id)
    store = orchestrator.store
    iterations = []
    for record in reversed(store.iterations(task_id)):
        status = store.iteration_status(task_id, record.iteration)
        iterations.append(
            {
                **record.to_dict(),
                "status": status.to_dict() if status else None,
                "plan": store.iteration_plan(task_id, record.iteration),
                "summary": store.iteration_summary(task_id, record.iteration),
            }
        )
    payload = {"success": True, "taskId": task_id, "task": task.to_dict(), "iterations": iterations}

    def render() -> None:
        table = Table(show_header=False, box=None)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Title", task.title)
        table.add_row("Status", _status_text(task))
        table.add_row("Workflow", task.workflow_name)
        table.add_row("Agent", task.agent or "-")
        table.add_row("Branch", task.branch_name or "-")
        table.add_row("Worktree", task.worktree_path or "-")
        table.add_row("Container", task.container_id or "-")
        table.add_row("Created", task.created_at)
        if task.error:
            table.add_row("Error", f"[red]{task.error}[/red]")
        console.print(Panel(f"[bold]Task {task.id}[/bold]"))
        console.print(table)
        console.print(task.description)
        for entry in iterations:
            body = entry["summary"] or "[dim]no summary yet[/dim]"
            state = entry["status"]["status"] if entry["status"] else "-"
            console.print(Panel(body, title=f"Iteration {entry['iteration']}: {entry['title']} ({state})"))

    return _emit(args, payload, render)


# ---------------------------------------------------------------------------
# diff / init / workflows
# ---------------------------------------------------------------------------


def _task_diff(args: argparse.Namespace) -> int:
    task_id = _parse_task_id(args.task_id)
    result = _ctx(args).diff(task_id, path=args.file, base=args.branch, only_files=args.only_files)

    def render() -> None:
        if not result.files and not result.untracked:
            target = f"file {args.file}" if args.file else "workspace"
            console.print(f"[yellow]No changes found in {target}[/yellow]")
            return
        if args.only_files or not result.diff:
            for name in result.files:
                console.print(f"  [cyan]{name}[/cyan]")
        else:
            console.print(Syntax(result.diff, "diff", background_color="default"))
        for name in result.untracked:
            console.print(f"  [green]{name}[/green] [dim](untracked)[/dim]")
        console.print(f"[dim]Total changed files: {len(result.files) + len(result.untracked)}[/dim]")

    return _emit(args, result.to_dict(), render)


def _init(args: argparse.Namespace) -> int:
    result = init_project(_resolve_project_dir(args.project_dir), agent=args.agent)

    def render() -> None:
        _print_warnings(result.warnings)
        table = Table(show_header=False, box=None)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        for tool, present in result.tools.items():
            table.add_row(tool, "[green]installed[/green]" if present else "[red]missing[/red]")
        table.add_row("Agents", ", ".join(result.installed_agents) or "[red]none[/red]")
        table.add_row("Default agent", result.config.agent)
        table.add_row("Languages", ", ".join(result.config.languages) or "-")
        table.add_row("Package managers", ", ".join(result.config.package_managers) or "-")
        table.add_row("Task managers", ", ".join(result.config.task_managers) or "-")
        console.print(table)
        verb = "Updated" if result.already_initialized else "Created"
        console.print(f"[green]{verb} {result.config_path}[/green]")

    return _emit(args, result.to_dict(), render)


def _workflows_list(args: argparse.Namespace) -> int:
    project_dir = _resolve_project_dir(args.project_dir)
    workflows = []
    warnings = []
    for name in available_workflows(project_dir):
        try:
            workflow = load_workflow(name, project_dir)
        except TaskRunnerError as exc:
            warnings.append(str(exc))
            continue
        workflows.append(
            {
                "name": workflow.name,
                "description": workflow.description,
                "path": str(workflow.path),
                "inputs": [
                    {
                        "name": entry.name,
                        "description": entry.description,
                        "type": entry.type,
                        "required": entry.required,
                        "default": entry.default,
                    }
                    for entry in workflow.inputs
                ],
                "steps": len(workflow.steps),
            }
        )
    payload: dict[str, Any] = {"success": True, "workflows": workflows}
    if warnings:
        payload["warnings"] = warnings

    def render() -> None:
        _print_warnings(warnings)
        table = Table(title="Workflows")
        table.add_column("Name", style="bold")
        table.add_column("Description")
        table.add_column("Inputs")
        table.add_column("Steps", justify="right")
        for entry in workflows:
            inputs = ", ".join(
                f"{item['name']}*" if item["required"] else item["name"] for item in entry["inputs"]
            )
            table.add_row(entry["name"], entry["description"], inputs or "-", str(entry["steps"]))
        console.print(table)

    return _emit(args, payload, render)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_common_arguments(parser: argparse.ArgumentParser, *, suppress: bool = False) -> None:
    # Subcommands suppress their defaults so flags given before the
    # subcommand name are not reset by the subparser.
    def default(value: Any) -> Any:
        return argparse.SUPPRESS if suppress else value

    parser.add_argument("--json", action="store_true", default=default(False), help="Print a single JSON document")
    parser.add_argument("--yes", "-y", action="store_true", default=default(False), help="Do not ask for confirmation")
    parser.add_argument("--verbose", "-v", action="store_true", default=default(False), help="Enable debug logging")
    parser.add_argument(
        "--project-dir",
        default=default(None),
        help="Target project directory (default: current working directory)",
    )


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    _add_common_arguments(common, suppress=True)

    parser = argparse.ArgumentParser(
        prog="agent-tasks",
        description="Run coding-agent tasks in isolated git worktrees and containers",
    )
    _add_common_arguments(parser)
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    task = subparsers.add_parser("task", help="Create and start a task", parents=[common])
    task.add_argument("description", nargs="*", help="What the agent should do")
    task.add_argument("--title", default=None, help="Use this title and skip AI expansion")
    task.add_argument("--input", action="append", metavar="NAME=VALUE", help="Workflow input (repeatable)")
    task.add_argument("--workflow", default=None, help="Workflow name (default: swe)")
    task.add_argument("--agent", default=None, choices=available_agents())
    task.add_argument("--sandbox", default=None, choices=sorted(SANDBOXES))
    task.add_argument("--source-branch", default=None, help="Branch to start from (default: current)")
    task.add_argument("--from-github", default=None, metavar="OWNER/REPO#N", help="Use a GitHub issue as input")
    task.add_argument("--no-expand", action="store_true", help="Use the description as given")
    task.set_defaults(func=_task_create)

    start = subparsers.add_parser("start", help="Start a NEW task", parents=[common])
    start.add_argument("task_id")
    start.add_argument("--sandbox", default=None, choices=sorted(SANDBOXES))
    start.set_defaults(func=_task_start)

    restart = subparsers.add_parser("restart", help="Run a NEW or FAILED task again", parents=[common])
    restart.add_argument("task_id")
    restart.add_argument("--sandbox", default=None, choices=sorted(SANDBOXES))
    restart.set_defaults(func=_task_restart)

    iterate = subparsers.add_parser("iterate", help="Start another iteration with new instructions", parents=[common])
    iterate.add_argument("task_id")
    iterate.add_argument("instructions", nargs="+")
    iterate.add_argument("--no-expand", action="store_true")
    iterate.set_defaults(func=_task_iterate)

    stop = subparsers.add_parser("stop", help="Stop a task and reset it to NEW", parents=[common])
    stop.add_argument("task_id")
    stop.add_argument("--remove-all", action="store_true", help="Also remove worktree, branch and iterations")
    stop.add_argument(
        "--remove-git-worktree-and-branch",
        "--remove-worktree",
        dest="remove_worktree",
        action="store_true",
        help="Also remove the worktree and branch",
    )
    stop.add_argument("--remove-iterations", action="store_true", help="Also remove plans and summaries")
    stop.set_defaults(func=_task_stop)

    delete = subparsers.add_parser("delete", help="Delete a task, its worktree and branch", parents=[common])
    delete.add_argument("task_id")
    delete.set_defaults(func=_task_delete)

    merge = subparsers.add_parser("merge", help="Merge a completed task", parents=[common])
    merge.add_argument("task_id")
    merge.add_argument("--cleanup", action="store_true", help="Remove worktree and branch after merging")
    merge.set_defaults(func=_task_merge)

    push = subparsers.add_parser("push", help="Push a completed task's branch", parents=[common])
    push.add_argument("task_id")
    push.add_argument("--remote", default="origin")
    push.set_defaults(func=_task_push)

    logs = subparsers.add_parser("logs", help="Show sandbox logs", parents=[common])
    logs.add_argument("task_id")
    logs.add_argument("iteration_arg", nargs="?", type=int, default=None, metavar="ITERATION")
    logs.add_argument("--iteration", type=int, default=None, help="Same as the ITERATION argument")
    logs.add_argument("--follow", "-f", action="store_true")
    logs.add_argument("--tail", type=int, default=None, metavar="CHARS", help="Only show the last CHARS characters")
    logs.set_defaults(func=_task_logs)

    task_list = subparsers.add_parser("list", help="List tasks", parents=[common])
    task_list.add_argument("--status", default=None, choices=[status.value for status in TaskStatus])
    task_list.set_defaults(func=_task_list)

    inspect = subparsers.add_parser("inspect", help="Show a task with its iterations", parents=[common])
    inspect.add_argument("task_id")
    inspect.set_defaults(func=_task_inspect)

    diff = subparsers.add_parser("diff", help="Show the changes in a task's worktree", parents=[common])
    diff.add_argument("task_id")
    diff.add_argument("file", nargs="?", default=None, help="Only show changes to this file")
    diff.add_argument("--only-files", action="store_true", help="Only list changed file names")
    diff.add_argument("--branch", default=None, help="Compare with this branch instead of the last commit")
    diff.set_defaults(func=_task_diff)

    init = subparsers.add_parser("init", help="Detect the project environment and write the config", parents=[common])
    init.add_argument("--agent", default=None, choices=available_agents(), help="Default agent for new tasks")
    init.set_defaults(func=_init)

    workflows = subparsers.add_parser("workflows", help="Inspect the available workflows", parents=[common])
    workflow_commands = workflows.add_subparsers(dest="workflows_command", required=True)
    workflows_list = workflow_commands.add_parser(
        "list", aliases=["ls"], help="List all available workflows", parents=[common]
    )
    workflows_list.set_defaults(func=_workflows_list)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging("DEBUG" if args.verbose else "INFO", json_mode=args.json)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except TaskRunnerError as exc:
        task_id = exc.task_id
        if task_id is None:
            try:
                task_id = _parse_task_id(getattr(args, "task_id", None))
            except TaskValidationError:
                task_id = None
        payload: dict[str, Any] = {"success": False, "taskId": task_id, "error": str(exc)}
        if exc.hint:
            payload["hint"] = exc.hint
        if args.json:
            sys.stdout.write(json.dumps(payload, indent=2) + "\n")
        else:
            _print_error(str(exc), exc.hint)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
