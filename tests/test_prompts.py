"""Tests for task runtime files and session archives."""

import json

import pytest

from opensprint.core.failures import RetryContext
from opensprint.core.prompts import (
    angle_slug,
    build_coding_prompt,
    collect_dependency_outputs,
    coding_dir,
    prepare_coding_files,
    prepare_final_review_files,
    prepare_review_files,
    review_dir,
)
from opensprint.core.sessions import SessionManager
from opensprint.db.models import ProjectSettings, Task


def _task(task_id="auth.1", **kw):
    return Task(id=task_id, project_id="demo", title="Login form", description="Build it", **kw)


@pytest.fixture
def sessions(config, db):
    return SessionManager(config.db_path)


class TestLayout:
    @pytest.mark.parametrize(
        "angle,slug",
        [(None, "general"), ("general", "general"), ("Security & Auth", "security-auth"), ("!!", "general")],
    )
    def test_angle_slug(self, angle, slug):
        assert angle_slug(angle) == slug

    def test_dirs(self, tmp_dir):
        assert coding_dir(tmp_dir, "t") == tmp_dir / ".opensprint" / "active" / "t"
        assert review_dir(tmp_dir, "t", "perf") == tmp_dir / ".opensprint" / "active" / "t" / "review" / "perf"


class TestCodingPrompt:
    def test_first_attempt(self):
        prompt = build_coding_prompt(_task(), "opensprint/auth.1", "pytest", 1)
        assert prompt.startswith("# Task: Login form\nTask ID: auth.1\n")
        assert "Run `pytest`" in prompt
        assert ".opensprint/active/auth.1/result.json" in prompt
        assert "Previous Attempt" not in prompt
        assert "previous attempt" not in prompt

    def test_retry(self):
        retry = RetryContext(
            previous_failure="Tests failed",
            review_feedback="Add validation",
            use_existing_branch=True,
            previous_test_output="E assert 1 == 2",
        )
        prompt = build_coding_prompt(_task(), "opensprint/auth.1", None, 2, retry)
        assert "contains work from a previous attempt" in prompt
        assert "This is attempt 2" in prompt
        assert "E assert 1 == 2" in prompt
        assert "## Review Feedback" in prompt
        assert "Run `" not in prompt

    def test_prepare_files(self, tmp_dir):
        task_dir = coding_dir(tmp_dir, "auth.1")
        task_dir.mkdir(parents=True)
        (task_dir / "result.json").write_text("{}")
        (task_dir / "context").mkdir()
        (task_dir / "context" / "stale.md").write_text("old")

        retry = RetryContext(previous_failure="x", use_existing_branch=True, previous_diff="diff --git a b")
        path = prepare_coding_files(
            tmp_dir, tmp_dir, _task(), "opensprint/auth.1", ProjectSettings(test_command="make test"), 2, retry
        )

        assert path == task_dir / "prompt.md"
        assert not (task_dir / "result.json").exists()
        assert not (task_dir / "context" / "stale.md").exists()
        assert (task_dir / "context" / "previous_attempt.diff").read_text() == "diff --git a b"
        config = json.loads((task_dir / "config.json").read_text())
        assert config["attempt"] == 2
        assert config["test_command"] == "make test"
        assert config["use_existing_branch"] is True


class TestDependencyContext:
    def test_latest_approved_session_is_used(self, sessions, git_repo, tmp_dir):
        for attempt, status, summary in [(1, "approved", "old"), (2, "failed", None), (3, "approved", "new")]:
            session = sessions.create_session(
                "auth.1", attempt, status, summary=summary, git_diff=f"diff {attempt}"
            )
            sessions.archive_session(git_repo, "demo", session)

        outputs = collect_dependency_outputs(git_repo, ["auth.1", "missing"])
        assert outputs == [{"task_id": "auth.1", "summary": "new", "diff": "diff 3"}]

        path = prepare_coding_files(
            tmp_dir, git_repo, _task("auth.2", depends_on=["auth.1"]), "opensprint/auth.2",
            ProjectSettings(), 1,
        )
        dep = (path.parent / "context" / "deps" / "auth.1.md").read_text()
        assert "new" in dep
        assert "diff 3" in dep

    def test_no_sessions(self, tmp_dir):
        assert collect_dependency_outputs(tmp_dir, ["a"]) == []

    def test_ignores_similar_prefixes(self, sessions, git_repo):
        sessions.archive_session(git_repo, "demo", sessions.create_session("auth.10", 1, "approved"))
        assert collect_dependency_outputs(git_repo, ["auth.1"]) == []


class TestReviewAndFinalReviewFiles:
    def test_review_files(self, tmp_dir):
        path = prepare_review_files(
            tmp_dir, _task(), "opensprint/auth.1", "main", ProjectSettings(), "diff text", "security"
        )
        assert path == review_dir(tmp_dir, "auth.1", "security") / "prompt.md"
        prompt = path.read_text()
        assert "Focus your review on: **security**." in prompt
        assert "git diff main...opensprint/auth.1" in prompt
        assert (path.parent / "context" / "implementation.diff").read_text() == "diff text"
        assert json.loads((path.parent / "config.json").read_text())["angle"] == "security"

    def test_general_review_has_no_focus(self, tmp_dir):
        path = prepare_review_files(tmp_dir, _task(), "b", "main", ProjectSettings(), "")
        assert "Focus your review" not in path.read_text()
        assert not (path.parent / "context").exists()

    def test_final_review_files(self, tmp_dir):
        epic = Task(id="auth", project_id="demo", title="Auth", issue_type="epic")
        path = prepare_final_review_files(tmp_dir, epic, [_task("auth.1"), _task("auth.2")])
        assert path == tmp_dir / ".opensprint" / "final-review" / "auth" / "prompt.md"
        prompt = path.read_text()
        assert "- auth.1: Login form" in prompt
        assert ".opensprint/final-review/auth/result.json" in prompt


class TestSessions:
    def test_archive(self, sessions, git_repo, tmp_dir):
        worktree = tmp_dir / "wt"
        active = coding_dir(worktree, "t1")
        active.mkdir(parents=True)
        (active / "prompt.md").write_text("prompt")

        session = sessions.create_session(
            "t1", 2, "failed", output_log="log text", git_diff="diff",
            failure_reason="boom", test_results={"failed": 1},
        )
        stored = sessions.archive_session(git_repo, "demo", session, worktree)

        archive = tmp_dir / "repo" / ".opensprint" / "sessions" / "t1-2"
        assert stored.id is not None
        assert stored.archive_path == str(archive)
        assert (archive / "output.log").read_text() == "log text"
        assert (archive / "diff.patch").read_text() == "diff"
        assert (archive / "active" / "prompt.md").read_text() == "prompt"
        meta = json.loads((archive / "session.json").read_text())
        assert meta["failure_reason"] == "boom"
        assert "output_log" not in meta

        (listed,) = sessions.list_sessions("t1")
        assert listed.test_results == {"failed": 1}
        assert listed.project_id == "demo"
