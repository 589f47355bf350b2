"""CLI entry point for opensprint."""

import json
import logging
import os
import sys
import threading

import click

from opensprint.config import get_config
from opensprint.core import projects as projects_mod
from opensprint.core import reaper as reaper_mod
from opensprint.core import tasks as tasks_mod
from opensprint.core.commit_queue import PRD_UPDATE, TASK_EXPORT, GitCommitQueue, MergeJob
from opensprint.core.notifications import NotificationService
from opensprint.core.orchestrator import OrchestratorService
from opensprint.core.task_store import TaskStore
from opensprint.db.engine import get_db
from opensprint.db.models import AgentConfig, ProjectSettings
from opensprint.integrations.git import RUNTIME_DIR, BranchManager, GitError


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _require_project(db, project_id):
    project = projects_mod.get_project(db, project_id)
    if not project:
        click.echo(f"Project not found: {project_id}", err=True)
        sys.exit(1)
    return project


@click.group()
def main():
    """osp - OpenSprint agent orchestrator"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--max-coders", default=1, type=int, help="Maximum concurrent coding agents")
@click.option(
    "--working-mode",
    type=click.Choice(["worktree", "branches"]),
    default="worktree",
    help="One worktree per task, or branches in the main checkout",
)
@click.option("--test-command", default=None, help="Command run after each coding phase")
@click.option(
    "--review-mode",
    type=click.Choice(["always", "never"]),
    default="always",
    help="Whether coded tasks go through agent review",
)
@click.option("--angle", "angles", multiple=True, help="Review angle (repeatable)")
@click.option(
    "--agent",
    "agent_type",
    type=click.Choice(["claude", "cursor", "custom"]),
    default="claude",
    help="Agent CLI to drive",
)
@click.option("--model", default=None, help="Agent model")
@click.option("--cli-command", default=None, help="Command line for a custom agent")
@click.option("--slack-channel", default=None, help="Slack channel for notifications")
def init_project(
    project_name, repo_path, branch, max_coders, working_mode, test_command,
    review_mode, angles, agent_type, model, cli_command, slack_channel,
):
    """Initialize a new project."""
    repo_path = os.path.abspath(repo_path)
    project_id = tasks_mod.slugify(project_name)
    settings = ProjectSettings(
        max_concurrent_coders=max(1, max_coders),
        git_working_mode=working_mode,
        test_command=test_command,
        review_mode=review_mode,
        review_angles=list(angles),
        agent=AgentConfig(type=agent_type, model=model, cli_command=cli_command),
        slack_channel=slack_channel,
    )

    with _get_db() as db:
        if projects_mod.get_project(db, project_id):
            click.echo(f"Project already exists: {project_id}", err=True)
            sys.exit(1)
        project = projects_mod.create_project(
            db, project_id, project_name, repo_path, branch, settings
        )
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")
        click.echo(f"  Mode: {settings.git_working_mode}, coders: {settings.max_concurrent_coders}")


@main.command("settings")
@click.argument("project")
@click.option("--max-coders", default=None, type=int, help="Maximum concurrent coding agents")
@click.option("--test-command", default=None, help="Command run after each coding phase")
@click.option("--review-mode", type=click.Choice(["always", "never"]), default=None)
@click.option("--angle", "angles", multiple=True, help="Replace review angles (repeatable)")
@click.option("--model", default=None, help="Agent model")
@click.option("--hil", "hil", multiple=True, help="HIL mode as CATEGORY=MODE (repeatable)")
def project_settings(project, max_coders, test_command, review_mode, angles, model, hil):
    """Show or update project settings."""
    updates = {}
    if max_coders is not None:
        updates["max_concurrent_coders"] = max_coders
    if test_command is not None:
        updates["test_command"] = test_command or None
    if review_mode is not None:
        updates["review_mode"] = review_mode
    if angles:
        updates["review_angles"] = list(angles)
    if model is not None:
        updates["agent"] = {"model": model}

    with _get_db() as db:
        proj = _require_project(db, project)
        if hil:
            hil_config = dict(proj.settings.hil_config)
            for item in hil:
                category, _, mode = item.partition("=")
                if not mode:
                    click.echo(f"Invalid --hil value (expected CATEGORY=MODE): {item}", err=True)
                    sys.exit(1)
                hil_config[category.strip()] = mode.strip()
            updates["hil_config"] = hil_config
        try:
            settings = (
                projects_mod.update_settings(db, project, **updates)
                if updates else proj.settings
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(json.dumps(settings.to_dict(), indent=2))


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", required=True, help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--priority", "-p", default=2, type=int, help="Priority P0 (highest) to P4 (lowest)")
@click.option(
    "--type", "issue_type",
    type=click.Choice(["task", "epic", "bug", "chore"]),
    default="task",
    help="Issue type",
)
@click.option("--parent", default=None, help="Parent epic ID")
@click.option("--files", default=None, help="Comma-separated files the task is expected to touch")
def task_add(title, project, description, depends_on, priority, issue_type, parent, files):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",") if d.strip()] if depends_on else None

    config = get_config()
    with _get_db() as db:
        _require_project(db, project)
        try:
            task = tasks_mod.create_task(
                db, title, project, description,
                priority=priority, issue_type=issue_type, parent_id=parent, depends_on=deps,
            )
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    if files:
        planned = [f.strip() for f in files.split(",") if f.strip()]
        task = TaskStore(config.db_path).set_planned_files(task.id, {"modify": planned})

    click.echo(f"Created task: {task.id}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Priority: P{task.priority}")
    click.echo(f"  Status: {task.status}")
    if task.depends_on:
        click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@click.option("--project", required=True, help="Project ID")
@click.option("--status", default=None, help="Filter by status")
def task_list(project, status):
    """List tasks."""
    status_icons = {
        "open": "○",
        "in_progress": "●",
        "closed": "✓",
        "blocked": "✗",
    }
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)
        if not tasks:
            click.echo("No tasks found.")
            return
        for task in tasks:
            icon = status_icons.get(task.status, "?")
            deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
            kind = f" <{task.issue_type}>" if task.issue_type != "task" else ""
            click.echo(f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status}){kind}{deps}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Type: {task.issue_type}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        if task.parent_id:
            click.echo(f"  Parent: {task.parent_id}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")
        if task.block_reason:
            click.echo(f"  Blocked: {task.block_reason}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        if task.labels:
            click.echo(f"  Labels: {', '.join(task.labels)}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")

        comments = tasks_mod.list_comments(db, task_id)
        if comments:
            click.echo("  Comments:")
            for c in comments:
                click.echo(f"    [{c.created_at}] {c.body}")


@task_group.command("export")
@click.argument("project")
def task_export(project):
    """Write the project's tasks to the repo and commit them."""
    config = get_config()
    with _get_db() as db:
        proj = _require_project(db, project)
        tasks = tasks_mod.list_tasks(db, project)

    rel_path = f"{RUNTIME_DIR}/tasks.jsonl"
    export_path = os.path.join(proj.repo_path, rel_path)
    os.makedirs(os.path.dirname(export_path), exist_ok=True)
    with open(export_path, "w") as f:
        for task in tasks:
            f.write(json.dumps(_task_dict(task)) + "\n")

    committed = _commit_paths(proj, TASK_EXPORT, [rel_path], f"opensprint: export {len(tasks)} task(s)", config)
    click.echo(f"Exported {len(tasks)} task(s) to {rel_path}" + ("" if committed else " (no changes)"))


@main.command("prd-commit")
@click.argument("project")
@click.argument("paths", nargs=-1, required=True)
@click.option("--message", "-m", default="opensprint: update PRD", help="Commit message")
def prd_commit(project, paths, message):
    """Commit planning documents through the project's git queue."""
    config = get_config()
    with _get_db() as db:
        proj = _require_project(db, project)
    committed = _commit_paths(proj, PRD_UPDATE, list(paths), message, config)
    click.echo("Committed." if committed else "Nothing to commit.")


def _commit_paths(project, job_type, paths, message, config) -> bool:
    queue = GitCommitQueue(
        project.repo_path, BranchManager(config.worktree_base, project.default_branch)
    )
    try:
        return bool(queue.enqueue_and_wait(
            MergeJob(type=job_type, repo_path=project.repo_path, paths=paths, message=message)
        ))
    except GitError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        queue.stop()


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "issue_type": task.issue_type,
        "parent_id": task.parent_id,
        "depends_on": task.depends_on,
        "labels": task.labels,
        "block_reason": task.block_reason,
        "close_reason": task.close_reason,
    }


# ── Orchestrator Commands ─────────────────────────────────────────────────────


@main.command("run")
@click.argument("project")
def run_project(project):
    """Run the orchestrator loop for a project in the foreground."""
    config = get_config()
    service = OrchestratorService(config)
    try:
        service.ensure_running(project)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Orchestrating {project} (Ctrl+C to stop)")
    stop = threading.Event()
    try:
        while not stop.wait(1):
            pass
    except KeyboardInterrupt:
        click.echo("Stopping...")
    finally:
        service.stop_all()


@main.command("status")
@click.argument("project")
def project_status(project):
    """Show task counts, in-flight tasks and open notifications."""
    config = get_config()
    with _get_db() as db:
        proj = _require_project(db, project)
        tasks = tasks_mod.list_tasks(db, project)

    counts: dict[str, int] = {}
    for task in tasks:
        if task.issue_type == "epic":
            continue
        counts[task.status] = counts.get(task.status, 0) + 1

    click.echo(f"Project: {proj.id} ({proj.repo_path})")
    for status in ("open", "in_progress", "blocked", "closed"):
        click.echo(f"  {status}: {counts.get(status, 0)}")

    in_progress = [t for t in tasks if t.status == "in_progress"]
    if in_progress:
        click.echo("In progress:")
        for t in in_progress:
            click.echo(f"  ● {t.id}: {t.title}")

    notifications = NotificationService(config.db_path).list_notifications(project, status="open")
    if notifications:
        click.echo("Open notifications:")
        for n in notifications:
            click.echo(f"  #{n.id} [{n.kind}] {n.message}")


@main.command("recover-orphans")
@click.argument("project")
def recover_orphans(project):
    """Reset tasks left in progress by a previous run and prune stale worktrees."""
    service = OrchestratorService(get_config(), enable_reaper=False)
    try:
        orch = service.get_orchestrator(project)
        recovered = orch.orphan_recovery.recover_orphaned_tasks(project, orch.repo_path)
        pruned = orch.orphan_recovery.prune_orphan_worktrees(project, orch.repo_path)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        service.stop_all()

    if not recovered and not pruned:
        click.echo("Nothing to recover.")
        return
    for task_id in recovered:
        click.echo(f"  Recovered: {task_id}")
    for task_id in pruned:
        click.echo(f"  Pruned worktree: {task_id}")


@main.command("reap")
def reap():
    """Kill orphaned test workers and agent CLIs once."""
    killed = reaper_mod.reap_once()
    if not killed:
        click.echo("No orphaned processes found.")
        return
    click.echo(f"Killed {len(killed)} process(es): {', '.join(str(p) for p in killed)}")


# ── Notification Commands ─────────────────────────────────────────────────────


@main.group("notifications")
def notifications_group():
    """List and resolve notifications."""
    pass


@notifications_group.command("list")
@click.option("--project", default=None, help="Project ID")
@click.option("--all", "show_all", is_flag=True, help="Include resolved notifications")
def notifications_list(project, show_all):
    """List notifications (open only by default)."""
    service = NotificationService(get_config().db_path)
    notifications = service.list_notifications(project, status=None if show_all else "open")
    if not notifications:
        click.echo("No notifications.")
        return
    for n in notifications:
        source = f" ({n.source_id})" if n.source_id else ""
        click.echo(f"  #{n.id} [{n.status}] {n.kind}{source}: {n.message}")


@notifications_group.command("resolve")
@click.argument("notification_id", type=int)
@click.option("--reject", is_flag=True, help="Resolve as not approved")
@click.option("--notes", default=None, help="Resolution notes")
def notifications_resolve(notification_id, reject, notes):
    """Resolve a notification."""
    service = NotificationService(get_config().db_path)
    try:
        n = service.resolve(notification_id, approved=not reject, notes=notes)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    verdict = "approved" if n.approved else "rejected"
    click.echo(f"Resolved #{n.id} ({n.kind}): {verdict}")


# ── Server Command ────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--project", "projects", multiple=True, help="Project to orchestrate (repeatable)")
def serve(host, port, projects):
    """Start the status API, optionally running project orchestrators."""
    from opensprint.web.app import run_server

    click.echo(f"Starting server at http://{host}:{port}")
    run_server(host=host, port=port, projects=tuple(projects))


if __name__ == "__main__":
    main()
