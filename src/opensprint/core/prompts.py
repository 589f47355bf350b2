"""Task runtime files: config.json, prompt.md and context/ for each agent role."""

import json
import logging
import re
import shutil
from pathlib import Path

from opensprint.core.failures import RetryContext
from opensprint.core.heartbeat import active_task_dir
from opensprint.core.phase_coordinator import GENERAL_REVIEW_ANGLE
from opensprint.core.sessions import SESSIONS_DIR
from opensprint.db.models import ProjectSettings, Task

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
PROMPT_FILE = "prompt.md"
CONTEXT_DIR = "context"
FINAL_REVIEW_DIR = Path(".opensprint") / "final-review"

PREVIOUS_OUTPUT_LIMIT = 5000
DIFF_CONTEXT_LIMIT = 20000


def angle_slug(angle: str | None) -> str:
    if not angle or angle == GENERAL_REVIEW_ANGLE:
        return "general"
    return re.sub(r"[^\w-]+", "-", angle.lower()).strip("-") or "general"


def coding_dir(worktree_path: str | Path, task_id: str) -> Path:
    return active_task_dir(worktree_path, task_id)


def review_dir(worktree_path: str | Path, task_id: str, angle: str | None = None) -> Path:
    return active_task_dir(worktree_path, task_id) / "review" / angle_slug(angle)


def write_task_files(
    task_dir: Path,
    config: dict,
    prompt: str,
    context: dict[str, str] | None = None,
) -> Path:
    """Write a role's runtime files, clearing any stale result. Returns the prompt path."""
    task_dir.mkdir(parents=True, exist_ok=True)
    (task_dir / "result.json").unlink(missing_ok=True)
    (task_dir / CONFIG_FILE).write_text(json.dumps(config, indent=2))
    prompt_path = task_dir / PROMPT_FILE
    prompt_path.write_text(prompt)

    context_dir = task_dir / CONTEXT_DIR
    if context_dir.exists():
        shutil.rmtree(context_dir)
    for rel, content in (context or {}).items():
        target = context_dir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    return prompt_path


def collect_dependency_outputs(repo_path: str | Path, dependency_ids: list[str]) -> list[dict]:
    """Summary and diff of the latest approved session of each dependency."""
    sessions_dir = Path(repo_path) / SESSIONS_DIR
    outputs = []
    for dep_id in dependency_ids:
        if not sessions_dir.is_dir():
            break
        candidates = []
        for entry in sessions_dir.iterdir():
            suffix = entry.name[len(dep_id) + 1:]
            if entry.is_dir() and entry.name.startswith(dep_id + "-") and suffix.isdigit():
                candidates.append((int(suffix), entry))
        for _, entry in sorted(candidates, reverse=True):
            try:
                session = json.loads((entry / "session.json").read_text())
            except (OSError, json.JSONDecodeError):
                continue
            if session.get("status") != "approved":
                continue
            diff_path = entry / "diff.patch"
            outputs.append(
                {
                    "task_id": dep_id,
                    "summary": session.get("summary") or f"Task {dep_id} completed.",
                    "diff": diff_path.read_text() if diff_path.exists() else "",
                }
            )
            break
    return outputs


# ── Coding ────────────────────────────────────────────────────────────────────


def build_coding_prompt(
    task: Task,
    branch_name: str,
    test_command: str | None,
    attempt: int,
    retry: RetryContext | None = None,
) -> str:
    result_path = f".opensprint/active/{task.id}/result.json"
    parts = [f"# Task: {task.title}", f"Task ID: {task.id}"]
    parts.append(f"\n## Objective\n{task.description or task.title}")
    parts.append(
        "\n## Context\n"
        "Output from tasks this one depends on is in `context/deps/`."
    )

    steps = [f"Work on branch `{branch_name}` (already checked out in this directory)."]
    if retry and retry.use_existing_branch:
        steps.append(
            "**This branch contains work from a previous attempt.** Review the existing "
            "code and build on it rather than starting from scratch."
        )
    steps.append("Implement the task and write tests that cover it.")
    steps.append("Commit after each meaningful change with a descriptive WIP message.")
    if test_command:
        steps.append(f"Run `{test_command}` and make sure all tests pass.")
    steps.append(
        f"Write your result to `{result_path}` as JSON: "
        '`{"status": "success", "summary": "what you implemented"}`. '
        'Use `"failed"` as the status if you could not finish.'
    )
    parts.append("\n## Instructions")
    parts.extend(f"{i}. {step}" for i, step in enumerate(steps, 1))

    if retry and retry.previous_failure:
        parts.append(
            f"\n## Previous Attempt\nThis is attempt {attempt}. "
            f"The previous attempt failed:\n{retry.previous_failure}"
        )
        if retry.previous_test_output:
            parts.append(
                "\n### Test Output\n```\n"
                f"{retry.previous_test_output[:PREVIOUS_OUTPUT_LIMIT]}\n```\n"
                "Fix the failing tests without breaking the passing ones."
            )
    if retry and retry.review_feedback:
        parts.append(
            "\n## Review Feedback\nThe reviewer rejected the previous implementation:\n"
            f"{retry.review_feedback}"
        )
    return "\n".join(parts) + "\n"


def prepare_coding_files(
    worktree_path: str | Path,
    repo_path: str | Path,
    task: Task,
    branch_name: str,
    settings: ProjectSettings,
    attempt: int,
    retry: RetryContext | None = None,
) -> Path:
    context: dict[str, str] = {}
    for dep in collect_dependency_outputs(repo_path, task.depends_on):
        body = f"# {dep['task_id']}\n\n{dep['summary']}\n"
        if dep["diff"]:
            body += f"\n```diff\n{dep['diff'][:DIFF_CONTEXT_LIMIT]}\n```\n"
        context[f"deps/{dep['task_id']}.md"] = body
    if retry and retry.previous_diff:
        context["previous_attempt.diff"] = retry.previous_diff[:DIFF_CONTEXT_LIMIT]

    config = {
        "task_id": task.id,
        "role": "coder",
        "branch": branch_name,
        "attempt": attempt,
        "test_command": settings.test_command,
        "use_existing_branch": bool(retry and retry.use_existing_branch),
        "previous_failure": retry.previous_failure if retry else None,
        "failure_type": retry.failure_type if retry else None,
    }
    prompt = build_coding_prompt(task, branch_name, settings.test_command, attempt, retry)
    return write_task_files(coding_dir(worktree_path, task.id), config, prompt, context)


# ── Review ────────────────────────────────────────────────────────────────────


def build_review_prompt(
    task: Task,
    branch_name: str,
    base_branch: str,
    test_command: str | None,
    angle: str | None = None,
) -> str:
    result_path = (
        f".opensprint/active/{task.id}/review/{angle_slug(angle)}/result.json"
    )
    parts = [f"# Review Task: {task.title}", f"Task ID: {task.id}"]
    parts.append(
        "\n## Objective\nReview the implementation of this task against its description."
    )
    if angle and angle != GENERAL_REVIEW_ANGLE:
        parts.append(f"Focus your review on: **{angle}**.")
    parts.append(f"\n## Task Specification\n{task.description or task.title}")
    steps = [
        f"Review the committed changes with `git diff {base_branch}...{branch_name}`.",
        "Verify the implementation does what the task asks.",
        "Verify tests exist and cover more than the happy path.",
    ]
    if test_command:
        steps.append(f"Run `{test_command}` and confirm all tests pass.")
    steps.append(
        f"Write your result to `{result_path}` as JSON. Approve with "
        '`{"status": "approved", "summary": "...", "notes": ""}` or reject with '
        '`{"status": "rejected", "summary": "...", "issues": ["..."], "notes": "..."}`. '
        "Do not merge; the orchestrator merges after you exit."
    )
    parts.append("\n## Instructions")
    parts.extend(f"{i}. {step}" for i, step in enumerate(steps, 1))
    return "\n".join(parts) + "\n"


def prepare_review_files(
    worktree_path: str | Path,
    task: Task,
    branch_name: str,
    base_branch: str,
    settings: ProjectSettings,
    coding_diff: str,
    angle: str | None = None,
) -> Path:
    config = {
        "task_id": task.id,
        "role": "reviewer",
        "angle": angle_slug(angle),
        "branch": branch_name,
        "test_command": settings.test_command,
    }
    prompt = build_review_prompt(task, branch_name, base_branch, settings.test_command, angle)
    context = {"implementation.diff": coding_diff[:DIFF_CONTEXT_LIMIT]} if coding_diff else None
    return write_task_files(review_dir(worktree_path, task.id, angle), config, prompt, context)


# ── Final epic review ─────────────────────────────────────────────────────────


def final_review_dir(repo_path: str | Path, epic_id: str) -> Path:
    return Path(repo_path) / FINAL_REVIEW_DIR / epic_id


def prepare_final_review_files(repo_path: str | Path, epic: Task, children: list[Task]) -> Path:
    result_path = f"{FINAL_REVIEW_DIR.as_posix()}/{epic.id}/result.json"
    parts = [f"# Final Review: {epic.title}", f"Epic ID: {epic.id}"]
    parts.append(f"\n## Goal\n{epic.description or epic.title}")
    parts.append("\n## Completed Tasks")
    parts.extend(f"- {t.id}: {t.title}" for t in children)
    parts.append(
        "\n## Instructions\n"
        "1. Inspect the code on the current branch and check that the completed tasks "
        "together achieve the goal.\n"
        f"2. Write your result to `{result_path}` as JSON: "
        '`{"status": "pass", "summary": "..."}` when nothing is missing, otherwise '
        '`{"status": "issues", "summary": "...", "proposed_tasks": '
        '[{"title": "...", "description": "...", "priority": 2}]}`.'
    )
    config = {"epic_id": epic.id, "role": "final_reviewer", "children": [t.id for t in children]}
    return write_task_files(
        final_review_dir(repo_path, epic.id), config, "\n".join(parts) + "\n"
    )
