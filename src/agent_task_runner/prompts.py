"""Build the text prompts sent to AI agents for task expansion, commits and merges."""

from __future__ import annotations

from typing import Optional


def _build_expand_task_prompt(brief_description: str) -> str:
    return f"""You turn short task requests into clear work items for a coding agent.

Request:
{brief_description}

Reply with a JSON object with exactly two string fields:
- "title": a concise title (at most 70 characters) in imperative mood
- "description": a detailed description of what must be done, including the
  expected behaviour and any acceptance criteria you can infer

Only use information from the request. Do not invent requirements."""


def _build_expand_iteration_prompt(
    instructions: str,
    previous_plan: Optional[str] = None,
    previous_summary: Optional[str] = None,
) -> str:
    context = ""
    if previous_plan:
        context += f"\nPlan from the previous iteration:\n{previous_plan}\n"
    if previous_summary:
        context += f"\nSummary of the previous iteration:\n{previous_summary}\n"
    return f"""A coding agent already worked on this task and the user asked for another pass.
{context}
New instructions:
{instructions}

Reply with a JSON object with two string fields, "title" and "description",
describing only the work this new iteration must do."""


def _build_commit_message_prompt(
    title: str,
    description: str,
    recent_commits: list[str],
    summaries: list[str],
) -> str:
    commits_block = "\n".join(f"- {message}" for message in recent_commits) or "- (no history)"
    summaries_block = "\n\n".join(
        f"Iteration {index}:\n{summary}" for index, summary in enumerate(summaries, start=1)
    ) or "(no summaries)"
    return f"""Write a git commit message for the changes made by a coding agent.

Task title: {title}
Task description:
{description}

Work summaries:
{summaries_block}

Recent commit messages in this repository (follow their style):
{commits_block}

Reply with the commit subject line only: at most 72 characters, no quotes,
no trailing period."""


def _build_resolve_conflict_prompt(file_path: str, history_context: str, conflicted_content: str) -> str:
    return f"""Resolve the git merge conflicts in {file_path}.

Recent history of the target branch:
{history_context or "(no history)"}

The file below contains conflict markers (<<<<<<<, =======, >>>>>>>).
Combine both sides so that the intent of each change is preserved.

--- BEGIN FILE ---
{conflicted_content}
--- END FILE ---

Reply with the complete resolved file content only. Do not add explanations,
do not wrap it in code fences and do not leave any conflict markers."""


def _build_extract_inputs_prompt(issue_body: str, input_specs: list[dict[str, object]]) -> str:
    lines = []
    for spec in input_specs:
        required = "required" if spec.get("required") else "optional"
        lines.append(f'- "{spec.get("name")}" ({required}): {spec.get("description") or ""}')
    inputs_block = "\n".join(lines)
    return f"""Extract workflow inputs from a GitHub issue.

Inputs to fill:
{inputs_block}

Issue body:
{issue_body}

Reply with a JSON object mapping each input name to a string value. Omit an
optional input when the issue says nothing about it."""
