"""Tests for merging finished tasks and routing merge failures."""

from pathlib import Path

import pytest

from conftest import FakeHost, commit_file
from opensprint.core.commit_queue import (
    TASK_CLEANUP,
    WORKTREE_CREATE,
    WORKTREE_MERGE,
    MergeJob,
    MergeJobError,
)
from opensprint.core.final_review import FinalReviewResult
from opensprint.core.merge import (
    BLOCKED,
    MERGE_FAILURE_BLOCK_REASON,
    REQUEUED,
    MergeCoordinator,
    extract_epic_id,
    is_gate_task,
)
from opensprint.db.models import ProjectSettings
from opensprint.integrations.git import branch_exists


class FakeFinalReviewer:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def run(self, project_id, repo_path, epic, children, settings):
        self.calls.append((epic.id, [c.id for c in children]))
        return self.result


def _coded(host, task, files=None):
    """Claim ``task``, give it a worktree with committed changes and a slot."""
    task = host.task_store.update(task.id, status="in_progress", assignee="opensprint-agent")
    path = host.commit_queue.enqueue_and_wait(
        MergeJob(type=WORKTREE_CREATE, repo_path=host.repo_path, task_id=task.id)
    )
    for name, content in (files or {f"{task.id}.txt": "done\n"}).items():
        commit_file(path, name, content)
    slot = host.add_slot(task, phase="review", worktree_path=path)
    slot.phase_result.coding_summary = f"Implemented {task.title}"
    slot.agent.append_output("agent output line\n")
    return task, slot


class TestHelpers:
    def test_extract_epic_id(self):
        assert extract_epic_id("auth-epic.3") == "auth-epic"
        assert extract_epic_id("auth-epic.3.1") == "auth-epic.3"
        assert extract_epic_id("standalone") is None

    def test_gate_task(self):
        assert is_gate_task("epic.0")
        assert not is_gate_task("epic.10")


class TestPerformMerge:
    def test_success_closes_task(self, host):
        task = host.task_store.create("demo", "Add feature")
        task, slot = _coded(host, task, {"src/feature.py": "x = 1\n"})
        path = Path(slot.worktree_path)

        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        stored = host.task_store.show(task.id)
        assert stored.status == "closed"
        assert stored.close_reason == "Implemented Add feature"
        assert stored.extra["last_execution_summary"]["outcome"] == "completed"
        assert 'actual_files:["src/feature.py"]' in stored.labels
        assert (Path(host.repo_path) / "src" / "feature.py").exists()
        assert not path.exists()
        assert not branch_exists(host.repo_path, slot.branch_name)
        assert host.transitions == [(task.id, "complete")]
        assert host.nudges == 1
        assert "task.completed" in host.event_names(task.id)

        sessions = host.session_manager.list_sessions(task.id)
        assert [s.status for s in sessions] == ["approved"]
        assert sessions[0].summary == "Implemented Add feature"
        assert "agent output line" in sessions[0].output_log

    def test_no_slot_is_noop(self, host):
        task = host.task_store.create("demo", "Not running")
        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, "opensprint/x")
        assert host.transitions == []


class TestMergeFailure:
    def _conflict(self, host, title="Edit readme"):
        task = host.task_store.create("demo", title)
        task, slot = _coded(host, task, {"README.md": "# From task\n"})
        commit_file(host.repo_path, "README.md", f"# From main {title}\n")
        return task, slot

    def test_conflict_requeues(self, host):
        task, slot = self._conflict(host)
        path = Path(slot.worktree_path)

        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        stored = host.task_store.show(task.id)
        assert stored.status == "open"
        assert stored.assignee == ""
        assert host.task_store.get_conflict_files_from_issue(stored) == ["README.md"]
        assert host.task_store.get_merge_stage_from_issue(stored) == "rebase_before_merge"
        assert host.task_store.get_cumulative_attempts_from_issue(stored) == 1
        assert host.transitions == [(task.id, "fail")]
        assert host.nudges == 1
        assert slot.worktree_path is None
        assert not path.exists()
        # The branch keeps the work for the next attempt.
        assert branch_exists(host.repo_path, f"opensprint/{task.id}")

        sessions = host.session_manager.list_sessions(task.id)
        assert [s.status for s in sessions] == ["failed"]
        assert "agent output line" in sessions[0].output_log
        assert "merge conflict" in sessions[0].failure_reason

        names = host.event_names(task.id)
        assert "merge.failed" in names
        assert "task.requeued" in names

    def test_repeated_conflict_blocks(self, host):
        task, slot = self._conflict(host)
        host.task_store.set_conflict_files(task.id, ["README.md"])

        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        stored = host.task_store.show(task.id)
        assert stored.status == "blocked"
        assert stored.block_reason == MERGE_FAILURE_BLOCK_REASON
        assert "task.blocked" in host.event_names(task.id)
        assert host.nudges == 0
        blocked = host.notifications.list_notifications("demo", kind="task_blocked")
        assert [n.source_id for n in blocked] == [task.id]

    def test_resolved_by_set_on_error(self, host):
        task, slot = self._conflict(host)
        error = MergeJobError("merge conflict", "merge_to_main", ["other.txt"])
        resolved = MergeCoordinator(host).handle_merge_failure(
            "demo", host.repo_path, task, slot.branch_name, slot, error
        )
        assert resolved == REQUEUED
        assert error.resolved_by == REQUEUED
        stored = host.task_store.show(task.id)
        assert host.task_store.get_merge_stage_from_issue(stored) == "merge_to_main"

    def test_too_many_merge_failures_block(self, host):
        task, slot = self._conflict(host)
        host.task_store.set_cumulative_attempts(task.id, host.policy.max_merge_failures - 1)
        error = MergeJobError("merge conflict", "rebase_before_merge", ["new.txt"])
        resolved = MergeCoordinator(host).handle_merge_failure(
            "demo", host.repo_path, task, slot.branch_name, slot, error
        )
        assert resolved == BLOCKED
        assert host.task_store.show(task.id).status == "blocked"

    def test_unexpected_merge_error_requeues(self, host):
        task = host.task_store.create("demo", "Odd failure")
        task, slot = _coded(host, task)

        def explode(job):
            raise RuntimeError("worker went away")

        host.commit_queue.register_handler(WORKTREE_MERGE, explode)
        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        stored = host.task_store.show(task.id)
        assert stored.status == "open"
        assert host.task_store.get_merge_stage_from_issue(stored) == "merge_to_main"
        assert host.transitions == [(task.id, "fail")]
        sessions = host.session_manager.list_sessions(task.id)
        assert [s.status for s in sessions] == ["failed"]
        assert sessions[0].failure_reason == "worker went away"
        assert "merge.failed" in host.event_names(task.id)

    def test_cleanup_error_after_merge_requeues(self, host):
        task = host.task_store.create("demo", "Cleanup trouble")
        task, slot = _coded(host, task)

        def missing_worktree(job):
            raise FileNotFoundError(2, "No such file or directory", job.worktree_path)

        host.commit_queue.register_handler(TASK_CLEANUP, missing_worktree)
        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        assert host.task_store.show(task.id).status == "open"
        assert host.transitions == [(task.id, "fail")]
        assert slot.worktree_path is None
        statuses = [s.status for s in host.session_manager.list_sessions(task.id)]
        assert statuses == ["approved", "failed"]


@pytest.fixture
def epic_host(config, db, git_repo, request):
    reviewer = FakeFinalReviewer(getattr(request, "param", None))
    h = FakeHost(config, git_repo, final_reviewer=reviewer)
    yield h
    h.commit_queue.stop()


def _epic_with_children(host, count=2):
    epic = host.task_store.create("demo", "Auth epic", issue_type="epic")
    children = [
        host.task_store.create("demo", f"Step {i}", parent_id=epic.id) for i in range(1, count + 1)
    ]
    return epic, children


class TestEpicCompletion:
    def test_epic_waits_for_all_children(self, epic_host):
        host = epic_host
        epic, (first, second) = _epic_with_children(host)
        task, slot = _coded(host, first)

        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        assert host.task_store.show(epic.id).status == "open"
        assert host.final_reviewer.calls == []

    def test_epic_closes_without_final_verdict(self, epic_host):
        host = epic_host
        epic, (first, second) = _epic_with_children(host)
        host.task_store.close(first.id, "done")
        task, slot = _coded(host, second)

        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        assert host.task_store.show(epic.id).status == "closed"
        assert host.final_reviewer.calls == [(epic.id, [first.id, second.id])]
        assert "epic.completed" in host.event_names(epic.id)

    def test_gate_task_ignored(self, epic_host):
        host = epic_host
        epic = host.task_store.create("demo", "Gated epic", issue_type="epic")
        gate = host.task_store.create("demo", "Gate", parent_id=epic.id, task_id=f"{epic.id}.0")
        only = host.task_store.create("demo", "Only step", parent_id=epic.id)
        task, slot = _coded(host, only)

        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        assert host.task_store.show(gate.id).status == "open"
        assert host.task_store.show(epic.id).status == "closed"

    @pytest.mark.parametrize(
        "epic_host",
        [FinalReviewResult(status="pass", summary="All good")],
        indirect=True,
    )
    def test_final_review_pass(self, epic_host):
        host = epic_host
        epic, (only,) = _epic_with_children(host, count=1)
        task, slot = _coded(host, only)
        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)
        assert host.task_store.show(epic.id).status == "closed"

    @pytest.mark.parametrize(
        "epic_host",
        [
            FinalReviewResult(
                status="issues",
                summary="Missing logout",
                proposed_tasks=[
                    {"title": "Add logout", "description": "Clear the session", "priority": 1},
                    {"title": "Document auth", "priority": "bogus"},
                ],
            )
        ],
        indirect=True,
    )
    def test_final_review_issues_create_follow_ups(self, epic_host):
        host = epic_host
        epic, (only,) = _epic_with_children(host, count=1)
        task, slot = _coded(host, only)

        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        assert host.task_store.show(epic.id).status == "open"
        children = host.task_store.children("demo", epic.id)
        follow_ups = [c for c in children if c.id != only.id]
        assert [(c.title, c.priority) for c in follow_ups] == [("Add logout", 1), ("Document auth", 2)]
        assert all(c.status == "open" for c in follow_ups)
        assert "epic.review_issues" in host.event_names(epic.id)
        assert host.nudges == 2

    @pytest.mark.parametrize(
        "epic_host",
        [FinalReviewResult(status="issues", summary="x", proposed_tasks=[{"title": "More"}])],
        indirect=True,
    )
    def test_follow_ups_need_approval_when_configured(self, epic_host):
        host = epic_host
        host.settings = ProjectSettings(hil_config={"scope_changes": "requires_approval"})
        host.stop_event.set()
        epic, (only,) = _epic_with_children(host, count=1)
        task, slot = _coded(host, only)

        MergeCoordinator(host).perform_merge_and_done("demo", host.repo_path, task, slot.branch_name)

        children = host.task_store.children("demo", epic.id)
        assert [c.id for c in children] == [only.id]
        pending = host.notifications.list_notifications("demo", kind="hil_approval")
        assert [n.category for n in pending] == ["scope_changes"]
