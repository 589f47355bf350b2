"""Orchestrator core: the per-project dispatch loop and the service that owns it."""

import logging
import signal
import threading
import time
from pathlib import Path

from opensprint.config import Config
from opensprint.core import projects as projects_mod
from opensprint.core.agents import (
    CODER,
    REVIEWER,
    AgentHandle,
    AgentRunner,
    AgentSpawnError,
    ProcessRegistry,
    read_result_file,
)
from opensprint.core.commit_queue import (
    TASK_CLEANUP,
    WORKTREE_COMMIT,
    WORKTREE_CREATE,
    GitCommitQueue,
    MergeJob,
)
from opensprint.core.events import EventLog
from opensprint.core.failures import FailureHandler, FailureType, RetryContext
from opensprint.core.file_scope import FileScope, FileScopeAnalyzer
from opensprint.core.final_review import FinalReviewer
from opensprint.core.heartbeat import Heartbeat, delete_heartbeat, now_ms, write_heartbeat
from opensprint.core.merge import MergeCoordinator
from opensprint.core.notifications import NotificationService
from opensprint.core.orphans import OrphanRecovery
from opensprint.core.phase_coordinator import (
    ReviewOutcome,
    ReviewResult,
    TaskPhaseCoordinator,
    TestOutcome,
)
from opensprint.core.prompts import coding_dir, prepare_coding_files, prepare_review_files
from opensprint.core.reaper import ProcessReaper
from opensprint.core.scheduler import TaskScheduler
from opensprint.core.sessions import SessionManager
from opensprint.core.slots import AgentSlot, PhaseResult, ProjectState
from opensprint.core.task_store import TaskStore
from opensprint.core.test_runner import run_tests
from opensprint.db.engine import get_db
from opensprint.db.models import Project, ProjectSettings, Task
from opensprint.integrations.git import BranchManager, GitError, branch_name_for

logger = logging.getLogger(__name__)

AGENT_ASSIGNEE = "opensprint-agent"
FORCE_KILL_GRACE = 10.0

COMPLETE = "complete"
FAIL = "fail"
REQUEUE = "requeue"


def format_review_feedback(result: ReviewResult | None) -> str:
    if result is None:
        return ""
    parts = [result.summary] if result.summary else []
    if result.issues:
        parts.append("Issues:\n" + "\n".join(f"- {issue}" for issue in result.issues))
    if result.notes:
        parts.append(result.notes)
    return "\n\n".join(parts)


def review_outcome_from_result(data: dict | None, exit_code: int | None) -> ReviewOutcome:
    if not data:
        return ReviewOutcome(status="no_result", exit_code=exit_code)
    status = str(data.get("status", "")).lower()
    if status not in ("approved", "rejected"):
        return ReviewOutcome(status="no_result", exit_code=exit_code)
    issues = data.get("issues") or []
    return ReviewOutcome(
        status=status,
        result=ReviewResult(
            status=status,
            summary=str(data.get("summary", "")),
            issues=[str(i) for i in issues] if isinstance(issues, list) else [str(issues)],
            notes=str(data.get("notes") or ""),
        ),
        exit_code=exit_code,
    )


class ProjectOrchestrator:
    """Dispatch loop and slot state for one project.

    The loop thread only selects and dispatches. Everything after dispatch
    (agent exit, test and review join, merge, failure routing) runs on the
    agent reader and phase threads and ends in ``transition``.
    """

    def __init__(
        self,
        project: Project,
        config: Config,
        task_store: TaskStore,
        events: EventLog,
        notifications: NotificationService,
        session_manager: SessionManager,
        branch_manager: BranchManager,
        commit_queue: GitCommitQueue,
        runner: AgentRunner,
        final_reviewer: FinalReviewer | None = None,
    ):
        self.project_id = project.id
        self.repo_path = project.repo_path
        self.config = config
        self.policy = config.failure_policy
        self.task_store = task_store
        self.events = events
        self.notifications = notifications
        self.session_manager = session_manager
        self.branch_manager = branch_manager
        self.commit_queue = commit_queue
        self.runner = runner
        self.final_reviewer = final_reviewer

        self.state = ProjectState(project_id=project.id)
        self.stop_event = threading.Event()
        self._wake = threading.Event()
        self._loop_lock = threading.Lock()
        self._thread: threading.Thread | None = None

        self.file_scope_analyzer = FileScopeAnalyzer(task_store)
        self.scheduler = TaskScheduler(self.file_scope_analyzer)
        self.orphan_recovery = OrphanRecovery(task_store, branch_manager, commit_queue)
        self.merge_coordinator = MergeCoordinator(self)
        self.failure_handler = FailureHandler(self)
        self.max_slots = self._compute_max_slots(project.settings)

    # ── Host interface ────────────────────────────────────────────────────────

    def get_state(self) -> ProjectState:
        return self.state

    def get_settings(self) -> ProjectSettings:
        with get_db(self.config.db_path) as db:
            return projects_mod.get_settings(db, self.project_id)

    def nudge(self):
        self._wake.set()

    def transition(self, task_id: str, outcome: str):
        """Release a task's slot after a terminal outcome of its attempt."""
        with self.state.lock:
            slot = self.state.slots.pop(task_id, None)
            if slot is None:
                return
            if outcome == COMPLETE:
                self.state.status.total_done += 1
            elif outcome == FAIL:
                self.state.status.total_failed += 1
        slot.timers.cancel_all()
        self._kill_agents(slot)
        delete_heartbeat(self.repo_path, task_id)
        if slot.worktree_path:
            delete_heartbeat(slot.worktree_path, task_id)
        self.events.append(self.project_id, task_id, f"transition.{outcome}", {"attempt": slot.attempt})
        logger.info("Task %s left its slot (%s)", task_id, outcome)

    # ── Loop ──────────────────────────────────────────────────────────────────

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self.stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"orchestrator-{self.project_id}", daemon=True
        )
        self._thread.start()
        logger.info("Orchestrator started for %s (max slots %d)", self.project_id, self.max_slots)

    def stop(self, timeout: float = 10):
        self.stop_event.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        with self.state.lock:
            slots = list(self.state.slots.values())
        for slot in slots:
            slot.timers.cancel_all()
            self._kill_agents(slot)
        logger.info("Orchestrator stopped for %s", self.project_id)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self):
        while not self.stop_event.is_set():
            try:
                self.run_loop_once()
            except Exception:
                logger.exception("Error in orchestrator loop for %s", self.project_id)
            self._wake.wait(self.config.loop_interval)
            self._wake.clear()

    def run_loop_once(self) -> list[str]:
        """One scheduling pass. Returns the ids dispatched."""
        with self._loop_lock:
            if self.notifications.has_open_api_blocked(self.project_id):
                logger.info("Dispatch paused for %s: agent API blocked", self.project_id)
                return []

            with self.state.lock:
                active_ids = set(self.state.slots)
            self.orphan_recovery.recover_from_stale_heartbeats(
                self.project_id, self.repo_path, active_task_ids=active_ids
            )

            settings = self.get_settings()
            all_tasks = self.task_store.list_all(self.project_id)
            ready = [t for t in all_tasks if t.status == "open" and t.issue_type != "epic"]
            with self.state.lock:
                self.state.status.queue_depth = len(ready)
                active = dict(self.state.slots)

            selected = self.scheduler.select_tasks(
                ready, active, self.max_slots, settings.unknown_scope_strategy, all_tasks
            )
            dispatched = []
            for item in selected:
                if self.stop_event.is_set():
                    break
                if self.dispatch(item.task, item.file_scope):
                    dispatched.append(item.task.id)
            return dispatched

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def dispatch(self, task: Task, file_scope: FileScope | None = None) -> bool:
        with self.state.lock:
            if task.id in self.state.slots:
                return False
            slot = AgentSlot(
                task_id=task.id,
                task_title=task.title,
                branch_name=branch_name_for(task.id),
                worktree_path=None,
                attempt=self.task_store.get_cumulative_attempts_from_issue(task) + 1,
                file_scope=file_scope,
            )
            self.state.slots[task.id] = slot

        try:
            task = self.task_store.update(task.id, status="in_progress", assignee=AGENT_ASSIGNEE)
        except ValueError as e:
            logger.warning("Could not claim %s: %s", task.id, e)
            with self.state.lock:
                self.state.slots.pop(task.id, None)
            return False

        self.events.append(
            self.project_id,
            task.id,
            "task.dispatched",
            {
                "attempt": slot.attempt,
                "branch": slot.branch_name,
                "scope_confidence": file_scope.confidence if file_scope else None,
            },
        )
        logger.info("Dispatching %s (attempt %d)", task.id, slot.attempt)
        return self.run_coding_phase(task, slot)

    def run_coding_phase(self, task: Task, slot: AgentSlot, retry: RetryContext | None = None) -> bool:
        """Acquire the working copy, write the task files and spawn the coding agent."""
        settings = self.get_settings()
        branches_mode = settings.git_working_mode == "branches"
        slot.timers.cancel_all()
        slot.generation += 1
        generation = slot.generation
        slot.phase = "coding"
        slot.phase_result = PhaseResult()
        slot.coordinator = None
        slot.review_handles = []
        slot.agent.reset()

        try:
            path = self.commit_queue.enqueue_and_wait(
                MergeJob(
                    type=WORKTREE_CREATE,
                    repo_path=self.repo_path,
                    task_id=task.id,
                    branch_name=slot.branch_name,
                    return_to_main=branches_mode,
                )
            )
            slot.worktree_path = None if branches_mode else path
            work_dir = self.repo_path if branches_mode else path
            prompt_path = prepare_coding_files(
                work_dir, self.repo_path, task, slot.branch_name, settings, slot.attempt, retry
            )
        except (GitError, OSError) as e:
            logger.error("Dispatch of %s failed: %s", task.id, e)
            self._abort_dispatch(task, slot, str(e))
            return False

        try:
            handle = self.runner.spawn_with_task_file(
                settings.agent,
                prompt_path,
                work_dir,
                on_output=slot.agent.append_output,
                on_exit=lambda code: self._on_coding_exit(task, slot, generation, work_dir, code),
                role=CODER,
            )
        except AgentSpawnError as e:
            slot.agent.append_output(f"[Agent error: {e}]\n")
            self.failure_handler.handle_task_failure(
                task, slot.branch_name, f"Agent error: {e}", FailureType.NO_RESULT
            )
            return False

        slot.agent.handle = handle
        self._start_timers(task, slot, generation, work_dir, handle)
        self.events.append(
            self.project_id,
            task.id,
            "agent.started",
            {"attempt": slot.attempt, "role": CODER, "pid": handle.pid},
        )
        return True

    def _abort_dispatch(self, task: Task, slot: AgentSlot, reason: str):
        """Revert a task whose attempt could not get going back to open."""
        branches_mode = self.get_settings().git_working_mode == "branches"
        try:
            self.commit_queue.enqueue_and_wait(
                MergeJob(
                    type=TASK_CLEANUP,
                    repo_path=self.repo_path,
                    task_id=task.id,
                    branch_name=slot.branch_name,
                    worktree_path=slot.worktree_path,
                    return_to_main=branches_mode,
                )
            )
        except GitError:
            logger.warning("Cleanup after failed dispatch of %s failed", task.id, exc_info=True)
        slot.worktree_path = None
        self.task_store.update(task.id, status="open", assignee="")
        self.events.append(
            self.project_id, task.id, "task.dispatch_failed", {"reason": reason[:500]}
        )
        self.transition(task.id, REQUEUE)

    # ── Timers ────────────────────────────────────────────────────────────────

    def _start_timers(
        self,
        task: Task,
        slot: AgentSlot,
        generation: int,
        work_dir: str,
        handle: AgentHandle,
    ):
        def beat():
            idle_ms = int((time.monotonic() - slot.agent.last_output_at) * 1000)
            now = now_ms()
            write_heartbeat(
                work_dir,
                task.id,
                Heartbeat(pid=handle.pid, last_output_timestamp=now - idle_ms, heartbeat_timestamp=now),
            )

        def force_kill():
            if handle.is_running():
                handle.kill(signal.SIGKILL)

        def watchdog():
            if slot.generation != generation or slot.agent.killed_due_to_timeout:
                return
            now = time.monotonic()
            idle = now - slot.agent.last_output_at
            elapsed = now - slot.agent.started_monotonic
            if idle > self.config.agent_inactivity_timeout:
                logger.warning("Agent for %s idle for %ds; killing", task.id, int(idle))
            elif elapsed > self.config.max_attempt_duration:
                logger.warning("Agent for %s ran %ds; killing", task.id, int(elapsed))
            else:
                return
            slot.agent.killed_due_to_timeout = True
            handle.kill()
            slot.timers.schedule("force-kill", FORCE_KILL_GRACE, force_kill)

        beat()
        interval = self.config.heartbeat_interval
        slot.timers.schedule("heartbeat", interval, beat, repeat=True)
        slot.timers.schedule("watchdog", min(interval, 5.0), watchdog, repeat=True)

    # ── Coding exit ───────────────────────────────────────────────────────────

    def _is_current(self, task_id: str, slot: AgentSlot, generation: int) -> bool:
        with self.state.lock:
            return self.state.slots.get(task_id) is slot and slot.generation == generation

    def _on_coding_exit(
        self, task: Task, slot: AgentSlot, generation: int, work_dir: str, exit_code: int
    ):
        if not self._is_current(task.id, slot, generation):
            logger.debug("Ignoring exit of superseded agent for %s", task.id)
            return
        slot.timers.cancel("heartbeat")
        slot.timers.cancel("watchdog")
        slot.timers.cancel("force-kill")
        try:
            self._handle_coding_exit(task, slot, work_dir, exit_code)
        except Exception as e:
            logger.exception("Coding exit handling failed for %s", task.id)
            self._abort_dispatch(task, slot, f"Internal error: {e}")

    def _handle_coding_exit(self, task: Task, slot: AgentSlot, work_dir: str, exit_code: int):
        task = self.task_store.get(task.id) or task
        logger.info("Coding agent for %s exited with %d", task.id, exit_code)
        fail = self.failure_handler.handle_task_failure

        if slot.agent.killed_due_to_timeout:
            minutes = int(self.config.agent_inactivity_timeout // 60)
            fail(
                task,
                slot.branch_name,
                f"Agent stopped responding ({minutes} min inactivity) or exceeded its time limit",
                FailureType.TIMEOUT,
            )
            return

        result = read_result_file(coding_dir(work_dir, task.id))
        if result is None:
            if exit_code != 0:
                fail(
                    task, slot.branch_name,
                    f"Agent exited with code {exit_code} without writing a result",
                    FailureType.AGENT_CRASH,
                )
            else:
                fail(task, slot.branch_name, "Agent exited without writing a result", FailureType.NO_RESULT)
            return

        status = str(result.get("status", "")).lower()
        summary = str(result.get("summary") or "")
        if status == "failed":
            fail(
                task, slot.branch_name,
                summary or "Agent reported that it could not finish the task",
                FailureType.CODING_FAILURE,
            )
            return
        if status != "success":
            fail(
                task, slot.branch_name,
                f"Result file has invalid status {result.get('status')!r}",
                FailureType.NO_RESULT,
            )
            return

        try:
            self.commit_queue.enqueue_and_wait(
                MergeJob(
                    type=WORKTREE_COMMIT,
                    repo_path=self.repo_path,
                    task_id=task.id,
                    worktree_path=slot.worktree_path,
                )
            )
            coding_diff = self.branch_manager.capture_branch_diff(self.repo_path, slot.branch_name)
        except Exception as e:
            logger.error("Could not commit work of %s: %s", task.id, e)
            fail(
                task, slot.branch_name,
                f"Could not commit agent work: {e}",
                FailureType.CODING_FAILURE,
            )
            return
        slot.phase_result.coding_summary = summary
        slot.phase_result.coding_diff = coding_diff
        self.events.append(
            self.project_id, task.id, "task.coded", {"attempt": slot.attempt, "summary": summary[:500]}
        )
        self.start_review_phase(task, slot, work_dir)

    # ── Test + review fan-out ─────────────────────────────────────────────────

    def start_review_phase(self, task: Task, slot: AgentSlot, work_dir: str):
        settings = self.get_settings()
        generation = slot.generation
        slot.phase = "review"
        angles = settings.review_angles if settings.review_mode != "never" else []
        coordinator = TaskPhaseCoordinator(
            task.id,
            lambda test, review: self._on_phase_resolved(task, slot, generation, test, review),
            angles,
        )
        slot.coordinator = coordinator
        self.events.append(
            self.project_id,
            task.id,
            "task.review_started",
            {"attempt": slot.attempt, "angles": coordinator.expected_angles},
        )

        threading.Thread(
            target=self._run_tests,
            args=(task, slot, coordinator, work_dir, settings),
            name=f"tests-{task.id}",
            daemon=True,
        ).start()

        if settings.review_mode == "never":
            coordinator.set_review_outcome(ReviewOutcome(status="approved"))
            return
        for angle in coordinator.expected_angles:
            self._spawn_reviewer(task, slot, coordinator, work_dir, settings, angle)

    def _run_tests(
        self,
        task: Task,
        slot: AgentSlot,
        coordinator: TaskPhaseCoordinator,
        work_dir: str,
        settings: ProjectSettings,
    ):
        try:
            outcome = run_tests(settings.test_command, work_dir, settings.test_timeout)
        except Exception as e:
            logger.exception("Test run crashed for %s", task.id)
            outcome = TestOutcome(status="error", error_message=str(e))
        slot.phase_result.test_results = outcome.results
        slot.phase_result.test_output = outcome.raw_output
        coordinator.set_test_outcome(outcome)

    def _spawn_reviewer(
        self,
        task: Task,
        slot: AgentSlot,
        coordinator: TaskPhaseCoordinator,
        work_dir: str,
        settings: ProjectSettings,
        angle: str,
    ):
        prompt_path = prepare_review_files(
            work_dir,
            task,
            slot.branch_name,
            self.branch_manager.base_branch,
            settings,
            slot.phase_result.coding_diff,
            angle,
        )
        timer_name = f"review:{angle}"

        def on_output(line: str):
            slot.agent.last_output_at = time.monotonic()

        def on_exit(code: int):
            slot.timers.cancel(timer_name)
            outcome = review_outcome_from_result(read_result_file(prompt_path.parent), code)
            coordinator.set_review_outcome(outcome, angle)

        try:
            handle = self.runner.spawn_with_task_file(
                settings.agent, prompt_path, work_dir,
                on_output=on_output, on_exit=on_exit, role=REVIEWER, angle=angle,
            )
        except AgentSpawnError as e:
            slot.agent.append_output(f"[Agent error: {e}]\n")
            coordinator.set_review_outcome(
                ReviewOutcome(status="error", result=ReviewResult(status="error", summary=str(e))),
                angle,
            )
            return
        slot.review_handles.append(handle)
        slot.timers.schedule(timer_name, self.config.max_attempt_duration, handle.kill)

    def _on_phase_resolved(
        self,
        task: Task,
        slot: AgentSlot,
        generation: int,
        test: TestOutcome,
        review: ReviewOutcome,
    ):
        if not self._is_current(task.id, slot, generation):
            return
        task = self.task_store.get(task.id) or task
        fail = self.failure_handler.handle_task_failure

        if test.status != "passed":
            counts = test.results or {}
            reason = test.error_message or (
                f"Tests failed ({counts.get('failed', '?')} failed, "
                f"{counts.get('passed', '?')} passed)"
            )
            fail(task, slot.branch_name, reason, FailureType.TEST_FAILURE, test_results=test.results)
            return

        if review.status in ("no_result", "error"):
            detail = review.result.summary if review.result and review.result.summary else ""
            fail(
                task, slot.branch_name,
                f"Review agent produced no result{': ' + detail if detail else ''}",
                FailureType.NO_RESULT,
            )
            return

        if review.status == "rejected":
            feedback = format_review_feedback(review.result)
            self.events.append(
                self.project_id,
                task.id,
                "review.rejected",
                {
                    "attempt": slot.attempt,
                    "summary": review.result.summary if review.result else "",
                    "issues": review.result.issues if review.result else [],
                },
            )
            fail(
                task, slot.branch_name,
                f"Review rejected: {review.result.summary if review.result else ''}",
                FailureType.REVIEW_REJECTION,
                review_feedback=feedback,
            )
            return

        self.events.append(self.project_id, task.id, "review.approved", {"attempt": slot.attempt})
        self.merge_coordinator.perform_merge_and_done(
            self.project_id, self.repo_path, task, slot.branch_name
        )

    # ── Status ────────────────────────────────────────────────────────────────

    def refresh_max_slots(self, settings: ProjectSettings | None = None) -> int:
        self.max_slots = self._compute_max_slots(settings or self.get_settings())
        return self.max_slots

    @staticmethod
    def _compute_max_slots(settings: ProjectSettings) -> int:
        if settings.git_working_mode == "branches":
            return 1
        return max(1, settings.max_concurrent_coders)

    def get_status(self) -> dict:
        with self.state.lock:
            slots = list(self.state.slots.values())
            status = self.state.status
            counters = (status.queue_depth, status.total_done, status.total_failed)
        current = slots[0] if slots else None
        return {
            "project_id": self.project_id,
            "running": self.running,
            "current_task": current.task_id if current else None,
            "current_phase": current.phase if current else None,
            "active_tasks": [
                {
                    "task_id": s.task_id,
                    "title": s.task_title,
                    "phase": s.phase,
                    "attempt": s.attempt,
                    "branch": s.branch_name,
                    "worktree_path": s.worktree_path,
                    "started_at": s.agent.started_at,
                }
                for s in slots
            ],
            "queue_depth": counters[0],
            "total_done": counters[1],
            "total_failed": counters[2],
            "max_slots": self.max_slots,
        }

    def _kill_agents(self, slot: AgentSlot):
        handles = [slot.agent.handle] + list(slot.review_handles)
        for handle in handles:
            if handle is not None and handle.is_running():
                handle.kill()


class OrchestratorService:
    """Owns every project orchestrator, one commit queue per repository and the reaper."""

    def __init__(
        self,
        config: Config,
        runner: AgentRunner | None = None,
        final_reviewer: FinalReviewer | None = None,
        enable_reaper: bool = True,
    ):
        self.config = config
        self.task_store = TaskStore(config.db_path)
        self.events = EventLog(config.db_path)
        self.notifications = NotificationService(config.db_path, config.slack_bot_token)
        self.session_manager = SessionManager(config.db_path)
        self.registry = ProcessRegistry()
        self.runner = runner or AgentRunner(self.registry)
        self.final_reviewer = final_reviewer or FinalReviewer(self.runner)
        self.reaper = ProcessReaper(config.reaper_interval) if enable_reaper else None
        self._orchestrators: dict[str, ProjectOrchestrator] = {}
        self._queues: dict[str, GitCommitQueue] = {}
        self._branch_managers: dict[str, BranchManager] = {}
        self._lock = threading.Lock()

    def get_orchestrator(self, project_id: str) -> ProjectOrchestrator:
        with self._lock:
            orch = self._orchestrators.get(project_id)
            if orch is not None:
                return orch
            with get_db(self.config.db_path) as db:
                project = projects_mod.get_project(db, project_id)
            if not project:
                raise ValueError(f"Project not found: {project_id}")
            repo_key = str(Path(project.repo_path).resolve())
            branch_manager = self._branch_managers.setdefault(
                repo_key, BranchManager(self.config.worktree_base, project.default_branch)
            )
            queue = self._queues.setdefault(repo_key, GitCommitQueue(project.repo_path, branch_manager))
            orch = ProjectOrchestrator(
                project,
                self.config,
                self.task_store,
                self.events,
                self.notifications,
                self.session_manager,
                branch_manager,
                queue,
                self.runner,
                self.final_reviewer,
            )
            self._orchestrators[project_id] = orch
            return orch

    def ensure_running(self, project_id: str) -> ProjectOrchestrator:
        """Recover orphans left by a previous run, then start the project loop."""
        orch = self.get_orchestrator(project_id)
        if orch.running:
            return orch
        recovered = orch.orphan_recovery.recover_orphaned_tasks(project_id, orch.repo_path)
        orch.orphan_recovery.prune_orphan_worktrees(project_id, orch.repo_path)
        if recovered:
            self.events.append(project_id, None, "orphans.recovered", {"task_ids": recovered})
        orch.start()
        if self.reaper is not None:
            self.reaper.start()
        return orch

    def nudge(self, project_id: str):
        self.get_orchestrator(project_id).nudge()

    def get_status(self, project_id: str) -> dict:
        return self.get_orchestrator(project_id).get_status()

    def refresh_max_slots_and_nudge(self, project_id: str) -> int:
        orch = self.get_orchestrator(project_id)
        max_slots = orch.refresh_max_slots()
        orch.nudge()
        return max_slots

    def stop_all(self):
        with self._lock:
            orchestrators = list(self._orchestrators.values())
            queues = list(self._queues.values())
        for orch in orchestrators:
            orch.stop()
        self.registry.kill_all()
        for queue in queues:
            queue.stop()
        if self.reaper is not None:
            self.reaper.stop()
        logger.info("All orchestrators stopped")
