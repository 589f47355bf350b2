"""Tests for the epic final review agent."""

import json
import threading
from pathlib import Path

import pytest

from opensprint.core.agents import FINAL_REVIEWER, AgentSpawnError
from opensprint.core.final_review import (
    FinalReviewer,
    FinalReviewResult,
    create_tasks_from_review,
    parse_final_review,
)
from opensprint.core.task_store import TaskStore
from opensprint.db.models import ProjectSettings, Task


class StubHandle:
    def __init__(self):
        self.pid = 4242
        self.killed = False

    def kill(self, sig=None):
        self.killed = True

    def is_running(self):
        return not self.killed


class StubRunner:
    """Writes ``result`` next to the prompt and exits, or hangs when ``hang`` is set."""

    def __init__(self, result=None, hang=False, error=None):
        self.result = result
        self.hang = hang
        self.error = error
        self.calls = []
        self.handle = StubHandle()

    def spawn_with_task_file(self, config, prompt_path, cwd, on_output, on_exit, role=None, angle=None):
        if self.error:
            raise AgentSpawnError(self.error)
        self.calls.append((role, Path(prompt_path), cwd))
        if self.hang:
            return self.handle

        def finish():
            if self.result is not None:
                (Path(prompt_path).parent / "result.json").write_text(json.dumps(self.result))
            on_exit(0)

        threading.Thread(target=finish, daemon=True).start()
        return self.handle


@pytest.fixture
def epic():
    return Task(id="auth", project_id="demo", title="Auth", issue_type="epic")


def _run(reviewer, repo, epic):
    children = [Task(id="auth.1", project_id="demo", title="Login")]
    return reviewer.run("demo", repo, epic, children, ProjectSettings())


class TestParse:
    def test_empty(self):
        assert parse_final_review(None) is None
        assert parse_final_review({}) is None

    def test_unknown_status(self):
        assert parse_final_review({"status": "meh"}) is None

    def test_pass(self):
        result = parse_final_review({"status": "PASS", "summary": "All good"})
        assert result == FinalReviewResult(status="pass", summary="All good")

    def test_camel_case_proposals(self):
        result = parse_final_review(
            {"status": "issues", "proposedTasks": [{"title": "Add logout"}, {"title": "  "}, "junk"]}
        )
        assert result.status == "issues"
        assert result.proposed_tasks == [{"title": "Add logout"}]


class TestFinalReviewer:
    def test_reads_result(self, git_repo, epic):
        runner = StubRunner({"status": "issues", "proposed_tasks": [{"title": "Logout"}]})
        result = _run(FinalReviewer(runner, timeout=5), git_repo, epic)
        assert result.status == "issues"
        role, prompt_path, cwd = runner.calls[0]
        assert role == FINAL_REVIEWER
        assert cwd == git_repo
        assert prompt_path == Path(git_repo) / ".opensprint" / "final-review" / "auth" / "prompt.md"

    def test_no_result(self, git_repo, epic):
        assert _run(FinalReviewer(StubRunner(), timeout=5), git_repo, epic) is None

    def test_spawn_error(self, git_repo, epic):
        runner = StubRunner(error="agent: command not found")
        assert _run(FinalReviewer(runner, timeout=5), git_repo, epic) is None

    def test_timeout_kills_agent(self, git_repo, epic):
        runner = StubRunner({"status": "pass"}, hang=True)
        assert _run(FinalReviewer(runner, timeout=0.1), git_repo, epic) is None
        assert runner.handle.killed


class TestCreateTasks:
    def test_children_of_epic(self, config, db):
        store = TaskStore(config.db_path)
        epic = store.create("demo", "Auth", issue_type="epic")
        result = FinalReviewResult(
            status="issues",
            proposed_tasks=[
                {"title": "Logout", "description": "Add it", "priority": 1},
                {"title": "Session expiry", "priority": "high"},
            ],
        )
        created = create_tasks_from_review(store, "demo", epic.id, result)
        assert [t.parent_id for t in created] == [epic.id, epic.id]
        assert [t.priority for t in created] == [1, 2]
        assert created[0].description == "Add it"

    def test_nothing_proposed(self, config, db):
        store = TaskStore(config.db_path)
        result = FinalReviewResult(status="issues")
        assert create_tasks_from_review(store, "demo", "auth", result) == []
