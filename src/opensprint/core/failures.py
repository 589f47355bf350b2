"""Failure taxonomy and the retry / demote / block policy for task attempts."""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from opensprint.config import FailurePolicy
from opensprint.core.commit_queue import TASK_CLEANUP, GitCommitQueue, MergeJob
from opensprint.core.events import EventLog
from opensprint.core.notifications import NotificationService
from opensprint.core.sessions import SessionManager
from opensprint.core.slots import AgentSlot, ProjectState
from opensprint.core.task_store import TaskStore
from opensprint.db.models import ProjectSettings, Task
from opensprint.integrations.git import BranchManager, GitError

logger = logging.getLogger(__name__)


class FailureType(str, Enum):
    TEST_FAILURE = "test_failure"
    REVIEW_REJECTION = "review_rejection"
    AGENT_CRASH = "agent_crash"
    TIMEOUT = "timeout"
    NO_RESULT = "no_result"
    MERGE_CONFLICT = "merge_conflict"
    CODING_FAILURE = "coding_failure"


INFRA_FAILURE_TYPES = {FailureType.AGENT_CRASH, FailureType.TIMEOUT, FailureType.MERGE_CONFLICT}

NO_RESULT_REASON_LIMIT = 1200
NO_RESULT_TAIL_LINES = 8

# ── API error classification ──────────────────────────────────────────────────

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    r"credit balance is too low",
    r"insufficient credit",
    r"insufficient_quota",
    r"quota exceeded",
    r"exceeded your current quota",
    r"resource_exhausted",
    r"billing[_ ](?:error|hard limit|issue)",
    r"usage limit (?:reached|exceeded)",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    r"invalid api key",
    r"invalid x-api-key",
    r"api key not valid",
    r"no cursor api key available",
    r"requires authentication",
    r"authentication_error",
    r"\b401\b[^\n]{0,40}unauthori[sz]ed",
    r"\b(?:status|http|error)(?: code)?[:= ]*401\b",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    r"rate[_ ]limit",
    r"too many requests",
    r"\b(?:status|http|error)(?: code)?[:= ]*429\b",
    r"overloaded_error",
    r"(?:api|server|model) (?:is )?overloaded",
)

# Only failures whose reason carries agent output can reflect provider errors.
API_ERROR_FAILURE_TYPES = {
    FailureType.AGENT_CRASH,
    FailureType.NO_RESULT,
    FailureType.CODING_FAILURE,
}

_FATAL_NO_RESULT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"agent error:",
        r"requires authentication",
        r"run `?agent login`?",
        r"no cursor api key available",
        r"cursor agent not found",
        r"claude cli was not found",
        r"command not found",
        r"could not read task file",
        r"api key",
        r"unauthorized",
        r"rate limit",
    )
]

_AGENT_ERROR_PATTERN = re.compile(r"\[Agent error:\s*([^\]]+)\]", re.IGNORECASE)


@dataclass
class ApiErrorClassification:
    error_code: str  # rate_limit | auth | out_of_credit
    matched_pattern: str


def classify_api_error(text: str) -> ApiErrorClassification | None:
    """Recognize provider-side exhaustion or auth failures in agent output."""
    haystack = (text or "").lower()
    for code, patterns in (
        ("out_of_credit", _BILLING_OR_QUOTA_PATTERNS),
        ("auth", _ACCESS_OR_AUTH_PATTERNS),
        ("rate_limit", _RATE_LIMIT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ApiErrorClassification(error_code=code, matched_pattern=pattern)
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, haystack):
            return pattern
    return None


def enrich_no_result_reason(reason: str, output_log: list[str]) -> str:
    """Attach the agent's last reported error, or its last output lines."""
    output = "".join(output_log).replace("\r", "").strip()
    if not output:
        return reason
    errors = _AGENT_ERROR_PATTERN.findall(output)
    if errors and errors[-1].strip():
        return f"{reason}. Agent error: {errors[-1].strip()}"[:NO_RESULT_REASON_LIMIT]
    lines = [line.strip() for line in output.split("\n") if line.strip()]
    if not lines:
        return reason
    tail = " | ".join(lines[-NO_RESULT_TAIL_LINES:])
    return f"{reason}. Recent agent output: {tail}"[:NO_RESULT_REASON_LIMIT]


def is_diagnosed_no_result(failure_type: str, reason: str) -> bool:
    """A no_result caused by startup/config problems will not fix itself on retry."""
    if failure_type != FailureType.NO_RESULT:
        return False
    return any(p.search(reason) for p in _FATAL_NO_RESULT_PATTERNS)


# ── Execution summaries ───────────────────────────────────────────────────────


def compact_execution_text(text: str, limit: int = 500) -> str:
    compact = " ".join((text or "").split())
    if len(compact) <= limit:
        return compact
    return compact[: max(0, limit - 3)].rstrip() + "..."


def build_last_execution_summary(
    attempt: int,
    outcome: str,
    phase: str,
    summary: str,
    failure_type: str | None = None,
    block_reason: str | None = None,
) -> dict:
    return {
        "at": datetime.now(timezone.utc).isoformat(),
        "attempt": attempt,
        "outcome": outcome,
        "phase": phase,
        "summary": compact_execution_text(summary),
        "failure_type": FailureType(failure_type).value if failure_type else None,
        "block_reason": block_reason,
    }


@dataclass
class RetryContext:
    previous_failure: str | None = None
    review_feedback: str | None = None
    use_existing_branch: bool = False
    previous_diff: str | None = None
    previous_test_output: str | None = None
    failure_type: str | None = None


# ── Handler ───────────────────────────────────────────────────────────────────


class FailureHost(Protocol):
    project_id: str
    repo_path: str
    task_store: TaskStore
    branch_manager: BranchManager
    session_manager: SessionManager
    commit_queue: GitCommitQueue
    events: EventLog
    notifications: NotificationService
    policy: FailurePolicy
    stop_event: threading.Event

    def get_state(self) -> ProjectState: ...

    def get_settings(self) -> ProjectSettings: ...

    def transition(self, task_id: str, outcome: str) -> None: ...

    def nudge(self) -> None: ...

    def run_coding_phase(self, task: Task, slot: AgentSlot, retry: RetryContext | None = None) -> None: ...


class FailureHandler:
    def __init__(self, host: FailureHost):
        self.host = host

    def next_action(
        self,
        diagnosed: bool,
        is_infra: bool,
        infra_retries: int,
        priority: int,
        attempts: int,
    ) -> str:
        policy = self.host.policy
        if diagnosed:
            return "Blocked pending investigation"
        if is_infra and infra_retries < policy.max_infra_retries:
            return f"Infrastructure retry {infra_retries + 1}/{policy.max_infra_retries}"
        if attempts % policy.backoff_failure_threshold != 0:
            return "Requeued for retry"
        if priority >= policy.max_priority_before_block:
            return f"Blocked after {attempts} failed attempts"
        return f"Demoted to priority {priority + 1}"

    def handle_task_failure(
        self,
        task: Task,
        branch_name: str,
        reason: str,
        failure_type: FailureType = FailureType.CODING_FAILURE,
        test_results: dict | None = None,
        review_feedback: str | None = None,
    ):
        host = self.host
        slot = host.get_state().slots.get(task.id)
        if slot is None:
            logger.warning("handle_task_failure: no slot for %s", task.id)
            return

        failure_type = FailureType(failure_type)
        policy = host.policy
        settings = host.get_settings()
        attempt = slot.attempt
        phase = slot.phase
        is_infra = failure_type in INFRA_FAILURE_TYPES
        effective_reason = (
            enrich_no_result_reason(reason, slot.agent.output_log)
            if failure_type in (FailureType.NO_RESULT, FailureType.AGENT_CRASH)
            else reason
        )
        diagnosed = is_diagnosed_no_result(failure_type, effective_reason)
        next_action = self.next_action(
            diagnosed, is_infra, slot.infra_retries, task.priority, attempt
        )
        failure_summary = compact_execution_text(
            f"{'Review' if phase == 'review' else 'Coding'} failed: {effective_reason}"
        )
        logger.error(
            "Task %s failed [%s] (attempt %d): %s",
            task.id, failure_type.value, attempt, effective_reason[:500],
        )

        event_data = {
            "attempt": attempt,
            "phase": phase,
            "failure_type": failure_type.value,
            "model": settings.agent.model,
            "reason": effective_reason[:500],
            "summary": failure_summary,
            "next_action": next_action,
        }
        if failure_type != FailureType.REVIEW_REJECTION:
            host.events.append(host.project_id, task.id, "task.failed", event_data)

        previous_diff, git_diff = self._capture_diffs(branch_name, slot)

        if failure_type != FailureType.REVIEW_REJECTION:
            self._archive_failed(task, slot, branch_name, effective_reason, test_results, git_diff)

        self._comment(task, attempt, failure_type, effective_reason, review_feedback)

        api_error = (
            classify_api_error(effective_reason)
            if failure_type in API_ERROR_FAILURE_TYPES
            else None
        )
        if api_error is not None:
            self._pause_for_api_error(task, slot, effective_reason, api_error, failure_summary)
            return

        if diagnosed:
            logger.warning("Diagnosed no_result startup/config failure for %s; blocking", task.id)
            host.task_store.set_cumulative_attempts(task.id, attempt)
            self._release_working_copy(task, slot)
            self.block_task(task, attempt, effective_reason, failure_type, phase)
            return

        retry = RetryContext(
            previous_failure=effective_reason,
            review_feedback=review_feedback,
            use_existing_branch=True,
            previous_diff=previous_diff,
            previous_test_output=slot.phase_result.test_output or None,
            failure_type=failure_type.value,
        )

        if is_infra and slot.infra_retries < policy.max_infra_retries:
            self._record_requeue(task, slot, failure_type, failure_summary, next_action)
            slot.infra_retries += 1
            slot.attempt = attempt + 1
            logger.info(
                "Infrastructure retry %d/%d for %s",
                slot.infra_retries, policy.max_infra_retries, task.id,
            )
            self._release_working_copy(task, slot)
            host.run_coding_phase(task, slot, retry)
            return

        if not is_infra:
            slot.infra_retries = 0

        host.task_store.set_cumulative_attempts(task.id, attempt)

        if attempt % policy.backoff_failure_threshold != 0:
            self._record_requeue(task, slot, failure_type, failure_summary, next_action)
            self._release_working_copy(task, slot)
            slot.attempt = attempt + 1
            logger.info("Retrying %s (attempt %d), preserving branch", task.id, slot.attempt)
            host.run_coding_phase(task, slot, retry)
            return

        self._release_working_copy(task, slot, delete_branch=True)
        if task.priority >= policy.max_priority_before_block:
            self.block_task(task, attempt, effective_reason, failure_type, phase)
            return

        new_priority = task.priority + 1
        logger.info(
            "Demoting %s priority %d -> %d after %d failures",
            task.id, task.priority, new_priority, attempt,
        )
        summary = build_last_execution_summary(
            attempt, "demoted", phase, f"{failure_summary}. {next_action}", failure_type
        )
        host.task_store.update(
            task.id,
            status="open",
            assignee="",
            priority=new_priority,
            extra={"last_execution_summary": summary},
        )
        host.events.append(
            host.project_id, task.id, "task.demoted",
            {**event_data, "summary": summary["summary"], "priority": new_priority},
        )
        host.transition(task.id, "fail")
        host.nudge()

    def block_task(
        self,
        task: Task,
        attempts: int,
        reason: str,
        failure_type: FailureType,
        phase: str,
        block_reason: str = "Coding Failure",
    ):
        host = self.host
        logger.info("Blocking %s after %d failed attempts", task.id, attempts)
        summary = build_last_execution_summary(
            attempts,
            "blocked",
            phase,
            f"{'Review' if phase == 'review' else 'Coding'} blocked after {attempts} "
            f"failed attempts: {reason}",
            failure_type,
            block_reason,
        )
        host.task_store.update(
            task.id,
            status="blocked",
            assignee="",
            block_reason=block_reason,
            extra={"last_execution_summary": summary},
        )
        host.events.append(
            host.project_id,
            task.id,
            "task.blocked",
            {
                "attempt": attempts,
                "phase": phase,
                "failure_type": FailureType(failure_type).value,
                "block_reason": block_reason,
                "summary": summary["summary"],
                "next_action": "Manual intervention required",
            },
        )
        settings = host.get_settings()
        host.notifications.create_task_blocked(
            host.project_id,
            task.id,
            f"{task.title} ({task.id}) blocked: {summary['summary']}",
            slack_channel=settings.slack_channel,
        )
        host.transition(task.id, "fail")

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _record_requeue(
        self,
        task: Task,
        slot: AgentSlot,
        failure_type: FailureType,
        failure_summary: str,
        next_action: str,
    ):
        host = self.host
        summary = build_last_execution_summary(
            slot.attempt, "requeued", slot.phase, f"{failure_summary}. {next_action}", failure_type
        )
        host.task_store.update(task.id, extra={"last_execution_summary": summary})
        host.events.append(
            host.project_id,
            task.id,
            "task.requeued",
            {
                "attempt": slot.attempt,
                "phase": slot.phase,
                "failure_type": failure_type.value,
                "summary": summary["summary"],
                "next_action": next_action,
            },
        )

    def _pause_for_api_error(
        self,
        task: Task,
        slot: AgentSlot,
        reason: str,
        api_error: ApiErrorClassification,
        failure_summary: str,
    ):
        """Return the task to open and stop dispatching until a human resolves it."""
        host = self.host
        settings = host.get_settings()
        self._release_working_copy(task, slot)
        summary = build_last_execution_summary(
            slot.attempt, "requeued", slot.phase, f"{failure_summary}. Paused: API blocked"
        )
        host.task_store.update(
            task.id, status="open", assignee="", extra={"last_execution_summary": summary}
        )
        host.notifications.create_api_blocked(
            host.project_id,
            task.id,
            reason[:500],
            api_error.error_code,
            slack_channel=settings.slack_channel,
        )
        host.events.append(
            host.project_id,
            task.id,
            "task.requeued",
            {
                "attempt": slot.attempt,
                "phase": slot.phase,
                "failure_type": "api_blocked",
                "error_code": api_error.error_code,
                "summary": summary["summary"],
                "next_action": "Paused: API blocked",
            },
        )
        host.transition(task.id, "requeue")

    def _release_working_copy(self, task: Task, slot: AgentSlot, delete_branch: bool = False):
        host = self.host
        branches_mode = host.get_settings().git_working_mode == "branches"
        if not branches_mode and not slot.worktree_path and not delete_branch:
            return
        try:
            host.commit_queue.enqueue_and_wait(
                MergeJob(
                    type=TASK_CLEANUP,
                    repo_path=host.repo_path,
                    task_id=task.id,
                    branch_name=slot.branch_name,
                    worktree_path=None if branches_mode else slot.worktree_path,
                    delete_branch=delete_branch,
                    return_to_main=branches_mode,
                )
            )
        except GitError:
            logger.warning("Failed to release working copy for %s", task.id, exc_info=True)
        slot.worktree_path = None

    def _capture_diffs(self, branch_name: str, slot: AgentSlot) -> tuple[str, str]:
        bm = self.host.branch_manager
        try:
            branch_diff = bm.capture_branch_diff(self.host.repo_path, branch_name)
        except GitError:
            return "", ""
        uncommitted = ""
        if slot.worktree_path:
            try:
                uncommitted = bm.capture_uncommitted_diff(slot.worktree_path)
            except GitError:
                uncommitted = ""
        git_diff = "\n\n--- Uncommitted changes ---\n\n".join(d for d in (branch_diff, uncommitted) if d)
        return branch_diff, git_diff

    def _archive_failed(
        self,
        task: Task,
        slot: AgentSlot,
        branch_name: str,
        reason: str,
        test_results: dict | None,
        git_diff: str,
    ):
        host = self.host
        agent = host.get_settings().agent
        session = host.session_manager.create_session(
            task.id,
            slot.attempt,
            "failed",
            agent_type=agent.type,
            agent_model=agent.model or "",
            git_branch=branch_name,
            output_log="".join(slot.agent.output_log),
            failure_reason=reason,
            test_results=test_results,
            git_diff=git_diff or None,
            started_at=slot.agent.started_at,
        )
        try:
            host.session_manager.archive_session(
                host.repo_path, host.project_id, session, slot.worktree_path
            )
        except OSError:
            logger.warning("Failed to archive failed session for %s", task.id, exc_info=True)

    def _comment(
        self,
        task: Task,
        attempt: int,
        failure_type: FailureType,
        reason: str,
        review_feedback: str | None,
    ):
        if failure_type == FailureType.TIMEOUT:
            text = (
                f"Attempt {attempt} failed [timeout]: agent stopped responding or ran too long; "
                "task requeued."
            )
        elif failure_type == FailureType.REVIEW_REJECTION and review_feedback:
            text = f"Review rejected (attempt {attempt}):\n\n{review_feedback[:2000]}"
        else:
            text = f"Attempt {attempt} failed [{failure_type.value}]: {reason[:500]}"
        try:
            self.host.task_store.comment(task.id, text)
        except ValueError:
            logger.warning("Failed to add failure comment to %s", task.id)
