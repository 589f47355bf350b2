"""Merge a finished task branch into main, or route the merge failure."""

import logging
import threading
from typing import Protocol

from opensprint.config import FailurePolicy
from opensprint.core.commit_queue import (
    MERGE_ABORT,
    MERGE_TO_MAIN,
    PUSH_MAIN,
    TASK_CLEANUP,
    WORKTREE_MERGE,
    GitCommitQueue,
    MergeJob,
    MergeJobError,
)
from opensprint.core.events import EventLog
from opensprint.core.failures import build_last_execution_summary, compact_execution_text
from opensprint.core.file_scope import FileScopeAnalyzer
from opensprint.core.final_review import FinalReviewer, create_tasks_from_review
from opensprint.core.notifications import NotificationService
from opensprint.core.sessions import SessionManager
from opensprint.core.slots import AgentSlot, ProjectState
from opensprint.core.task_store import TaskStore
from opensprint.db.models import ProjectSettings, Task
from opensprint.integrations.git import BranchManager

logger = logging.getLogger(__name__)

REQUEUED = "requeued"
BLOCKED = "blocked"
MERGE_FAILURE_BLOCK_REASON = "Merge Failure"


def extract_epic_id(task_id: str) -> str | None:
    """``epic.3`` -> ``epic``; top-level ids have no epic."""
    if "." not in task_id:
        return None
    return task_id.rsplit(".", 1)[0]


def is_gate_task(task_id: str) -> bool:
    return task_id.endswith(".0")


class MergeHost(Protocol):
    project_id: str
    repo_path: str
    task_store: TaskStore
    branch_manager: BranchManager
    session_manager: SessionManager
    commit_queue: GitCommitQueue
    file_scope_analyzer: FileScopeAnalyzer
    events: EventLog
    notifications: NotificationService
    final_reviewer: FinalReviewer | None
    policy: FailurePolicy
    stop_event: threading.Event

    def get_state(self) -> ProjectState: ...

    def get_settings(self) -> ProjectSettings: ...

    def transition(self, task_id: str, outcome: str) -> None: ...

    def nudge(self) -> None: ...


class MergeCoordinator:
    def __init__(self, host: MergeHost):
        self.host = host

    def perform_merge_and_done(
        self,
        project_id: str,
        repo_path: str,
        task: Task,
        branch_name: str,
    ):
        host = self.host
        slot = host.get_state().slots.get(task.id)
        if slot is None:
            logger.warning("perform_merge_and_done: no slot for %s", task.id)
            return
        settings = host.get_settings()
        branches_mode = settings.git_working_mode == "branches"

        try:
            changed_files = host.commit_queue.enqueue_and_wait(
                MergeJob(
                    type=WORKTREE_MERGE,
                    repo_path=repo_path,
                    task_id=task.id,
                    task_title=task.title,
                    branch_name=branch_name,
                    worktree_path=None if branches_mode else slot.worktree_path,
                )
            )
        except Exception as e:
            self.handle_merge_failure(
                project_id, repo_path, task, branch_name, slot, e, default_stage=MERGE_TO_MAIN
            )
            return

        self._archive(project_id, repo_path, task, slot, branch_name, "approved")

        try:
            host.commit_queue.enqueue_and_wait(
                MergeJob(
                    type=TASK_CLEANUP,
                    repo_path=repo_path,
                    task_id=task.id,
                    branch_name=branch_name,
                    worktree_path=None if branches_mode else slot.worktree_path,
                    delete_branch=True,
                    return_to_main=branches_mode,
                )
            )
        except Exception as e:
            logger.error("Post-merge cleanup failed for %s: %s", task.id, e)
            self.handle_merge_failure(project_id, repo_path, task, branch_name, slot, e)
            return
        slot.worktree_path = None

        summary = slot.phase_result.coding_summary or "Implemented"
        host.task_store.update(
            task.id,
            extra={
                "last_execution_summary": build_last_execution_summary(
                    slot.attempt, "completed", "merge", summary
                )
            },
        )
        host.task_store.close(task.id, compact_execution_text(summary, 1000))
        host.file_scope_analyzer.record_actual(task.id, changed_files or [])
        host.events.append(
            project_id,
            task.id,
            "task.completed",
            {"attempt": slot.attempt, "changed_files": changed_files or []},
        )
        logger.info("Task %s merged and closed (attempt %d)", task.id, slot.attempt)

        host.transition(task.id, "complete")
        host.nudge()
        self.post_completion(project_id, repo_path, task.id)

    def post_completion(self, project_id: str, repo_path: str, task_id: str):
        try:
            pushed = self.host.commit_queue.enqueue_and_wait(
                MergeJob(type=PUSH_MAIN, repo_path=repo_path, task_id=task_id)
            )
            if pushed:
                logger.info("Pushed main after %s", task_id)
        except Exception as e:
            logger.warning("Push after %s failed: %s", task_id, e)
        self.check_epic_completion(project_id, repo_path, task_id)

    # ── Failure path ──────────────────────────────────────────────────────────

    def handle_merge_failure(
        self,
        project_id: str,
        repo_path: str,
        task: Task,
        branch_name: str,
        slot: AgentSlot,
        error: Exception,
        default_stage: str | None = None,
    ) -> str:
        """Record the conflict and decide whether the task is requeued or blocked."""
        host = self.host
        try:
            host.commit_queue.enqueue_and_wait(
                MergeJob(type=MERGE_ABORT, repo_path=repo_path, task_id=task.id)
            )
        except Exception:
            logger.warning("merge --abort failed for %s", task.id, exc_info=True)

        reason = str(error) or type(error).__name__
        self._archive(
            project_id, repo_path, task, slot, branch_name, "failed", failure_reason=reason
        )

        current = host.task_store.show(task.id)
        attempts = host.task_store.get_cumulative_attempts_from_issue(current) + 1
        previous_conflicts = set(host.task_store.get_conflict_files_from_issue(current))
        conflicted = list(getattr(error, "conflicted_files", []) or [])
        stage = getattr(error, "stage", None) or default_stage

        host.task_store.set_cumulative_attempts(task.id, attempts)
        if conflicted:
            host.task_store.set_conflict_files(task.id, conflicted)
        if stage:
            host.task_store.set_merge_stage(task.id, stage)

        repeated = bool(previous_conflicts & set(conflicted))
        resolved_by = (
            BLOCKED
            if repeated or attempts >= host.policy.max_merge_failures
            else REQUEUED
        )
        if isinstance(error, MergeJobError):
            error.resolved_by = resolved_by

        logger.warning(
            "Merge failed for %s at %s (attempt %d, %d conflicted files): %s",
            task.id, stage or "cleanup", attempts, len(conflicted), resolved_by,
        )
        host.events.append(
            project_id,
            task.id,
            "merge.failed",
            {
                "attempt": attempts,
                "stage": stage,
                "conflicted_files": conflicted,
                "reason": reason[:500],
                "resolved_by": resolved_by,
            },
        )

        summary = compact_execution_text(f"Merge failed ({stage or 'cleanup'}): {reason}")
        if resolved_by == BLOCKED:
            detail = (
                "conflicted again on the same files"
                if repeated
                else f"{attempts} merge failures"
            )
            host.task_store.update(
                task.id,
                status="blocked",
                assignee="",
                block_reason=MERGE_FAILURE_BLOCK_REASON,
                extra={
                    "last_execution_summary": build_last_execution_summary(
                        attempts, "blocked", "merge", summary,
                        "merge_conflict", MERGE_FAILURE_BLOCK_REASON,
                    )
                },
            )
            host.task_store.comment(
                task.id,
                f"Blocked: merge failed ({detail}). Conflicted files: "
                f"{', '.join(conflicted) or 'none reported'}",
            )
            host.notifications.create_task_blocked(
                project_id,
                task.id,
                f"{task.title} ({task.id}) blocked after merge failure: {detail}",
                slack_channel=host.get_settings().slack_channel,
            )
            host.events.append(
                project_id,
                task.id,
                "task.blocked",
                {
                    "attempt": attempts,
                    "phase": "merge",
                    "failure_type": "merge_conflict",
                    "block_reason": MERGE_FAILURE_BLOCK_REASON,
                    "summary": summary,
                    "next_action": "Resolve conflicts manually",
                },
            )
        else:
            host.task_store.update(
                task.id,
                status="open",
                assignee="",
                extra={
                    "last_execution_summary": build_last_execution_summary(
                        attempts, "requeued", "merge", summary, "merge_conflict"
                    )
                },
            )
            host.events.append(
                project_id,
                task.id,
                "task.requeued",
                {
                    "attempt": attempts,
                    "phase": "merge",
                    "failure_type": "merge_conflict",
                    "summary": summary,
                    "next_action": "Requeued after merge failure",
                },
            )

        self._release(repo_path, task, slot, branch_name)
        host.transition(task.id, "fail")
        if resolved_by == REQUEUED:
            host.nudge()
        return resolved_by

    def _release(self, repo_path: str, task: Task, slot: AgentSlot, branch_name: str):
        branches_mode = self.host.get_settings().git_working_mode == "branches"
        try:
            self.host.commit_queue.enqueue_and_wait(
                MergeJob(
                    type=TASK_CLEANUP,
                    repo_path=repo_path,
                    task_id=task.id,
                    branch_name=branch_name,
                    worktree_path=None if branches_mode else slot.worktree_path,
                    return_to_main=branches_mode,
                )
            )
        except Exception:
            logger.warning("Cleanup after merge failure failed for %s", task.id, exc_info=True)
        slot.worktree_path = None

    def _archive(
        self,
        project_id: str,
        repo_path: str,
        task: Task,
        slot: AgentSlot,
        branch_name: str,
        status: str,
        failure_reason: str | None = None,
    ):
        host = self.host
        agent = host.get_settings().agent
        session = host.session_manager.create_session(
            task.id,
            slot.attempt,
            status,
            agent_type=agent.type,
            agent_model=agent.model or "",
            git_branch=branch_name,
            output_log="".join(slot.agent.output_log),
            git_diff=slot.phase_result.coding_diff or None,
            summary=slot.phase_result.coding_summary or None,
            failure_reason=failure_reason,
            test_results=slot.phase_result.test_results,
            started_at=slot.agent.started_at,
        )
        try:
            host.session_manager.archive_session(repo_path, project_id, session, slot.worktree_path)
        except OSError:
            logger.warning("Failed to archive %s session for %s", status, task.id, exc_info=True)

    # ── Epic completion ───────────────────────────────────────────────────────

    def check_epic_completion(self, project_id: str, repo_path: str, task_id: str):
        """Close (or extend) the parent epic once its implementation tasks are done."""
        host = self.host
        epic_id = extract_epic_id(task_id)
        if not epic_id:
            return
        epic = host.task_store.get(epic_id)
        if epic is None or epic.issue_type != "epic" or epic.status == "closed":
            return

        children = [
            t
            for t in host.task_store.children(project_id, epic_id)
            if not is_gate_task(t.id) and t.issue_type != "epic"
        ]
        if not children or any(t.status != "closed" for t in children):
            return

        result = self.run_final_review(project_id, repo_path, epic, children)
        if result is None or result.status == "pass" or not result.proposed_tasks:
            host.task_store.close(epic_id, "All tasks done")
            host.events.append(project_id, epic_id, "epic.completed", {"children": len(children)})
            logger.info("Epic %s completed", epic_id)
            return

        settings = host.get_settings()
        proposals = "\n".join(f"- {p.get('title', '')}" for p in result.proposed_tasks)
        decision = host.notifications.evaluate_decision(
            project_id,
            "scope_changes",
            f"Final review of {epic.title} ({epic_id}) proposes follow-up tasks:\n{proposals}",
            settings=settings,
            source_id=epic_id,
            stop_event=host.stop_event,
        )
        if not decision.approved:
            host.task_store.comment(
                epic_id,
                f"Final review proposed {len(result.proposed_tasks)} follow-up task(s); "
                f"not approved{': ' + decision.notes if decision.notes else ''}",
            )
            logger.info("Follow-up tasks for epic %s not approved", epic_id)
            return

        created = create_tasks_from_review(host.task_store, project_id, epic_id, result)
        host.task_store.comment(
            epic_id,
            f"Final review found issues: {result.summary}\n"
            f"Created follow-up tasks: {', '.join(t.id for t in created)}",
        )
        host.events.append(
            project_id,
            epic_id,
            "epic.review_issues",
            {"summary": result.summary, "created": [t.id for t in created]},
        )
        host.nudge()

    def run_final_review(self, project_id: str, repo_path: str, epic: Task, children: list[Task]):
        reviewer = self.host.final_reviewer
        if reviewer is None:
            return None
        try:
            return reviewer.run(project_id, repo_path, epic, children, self.host.get_settings())
        except Exception:
            logger.exception("Final review failed for epic %s", epic.id)
            return None
