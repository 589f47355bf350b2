"""Shared fixtures: temporary git repositories, databases and config."""

import subprocess
import tempfile
import threading
from pathlib import Path

import pytest

from opensprint.config import Config, FailurePolicy
from opensprint.core import projects as projects_mod
from opensprint.core.commit_queue import GitCommitQueue
from opensprint.core.events import EventLog
from opensprint.core.file_scope import FileScopeAnalyzer
from opensprint.core.notifications import NotificationService
from opensprint.core.sessions import SessionManager
from opensprint.core.slots import AgentSlot, ProjectState
from opensprint.core.task_store import TaskStore
from opensprint.db.engine import init_db
from opensprint.db.models import ProjectSettings
from opensprint.integrations.git import BranchManager, branch_name_for


def git(cwd, *args):
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    ).stdout.strip()


def commit_file(repo, name, content, message=None):
    path = Path(repo) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message or f"edit {name}")


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Commits made by the code under test need an author."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@test.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@test.com")


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def git_repo(tmp_dir):
    """A git repo on ``main`` with one commit."""
    repo = tmp_dir / "repo"
    repo.mkdir()
    git(repo, "init")
    git(repo, "checkout", "-b", "main")
    commit_file(repo, "README.md", "# Test\n", "init")
    return str(repo)


@pytest.fixture
def config(tmp_dir):
    return Config(
        db_path=tmp_dir / "test.db",
        worktree_base=tmp_dir / "worktrees",
        loop_interval=0.05,
        heartbeat_interval=0.2,
        reaper_interval=60,
    )


@pytest.fixture
def db(config, git_repo):
    """Open connection with a ``demo`` project pointing at ``git_repo``."""
    conn = init_db(config.db_path)
    projects_mod.create_project(
        conn, "demo", "Demo", git_repo, "main", ProjectSettings(review_mode="never")
    )
    yield conn
    conn.close()


class FakeHost:
    """Stands in for a project orchestrator: real stores, recorded transitions."""

    def __init__(self, config, repo_path, settings=None, final_reviewer=None):
        self.project_id = "demo"
        self.repo_path = repo_path
        self.task_store = TaskStore(config.db_path)
        self.branch_manager = BranchManager(config.worktree_base, "main")
        self.session_manager = SessionManager(config.db_path)
        self.commit_queue = GitCommitQueue(repo_path, self.branch_manager)
        self.events = EventLog(config.db_path)
        self.notifications = NotificationService(config.db_path, poll_interval=0.05)
        self.file_scope_analyzer = FileScopeAnalyzer(self.task_store)
        self.final_reviewer = final_reviewer
        self.policy = FailurePolicy()
        self.stop_event = threading.Event()
        self.state = ProjectState(project_id="demo")
        self.settings = settings or ProjectSettings()
        self.transitions = []
        self.nudges = 0
        self.retries = []

    def get_state(self):
        return self.state

    def get_settings(self):
        return self.settings

    def transition(self, task_id, outcome):
        self.state.slots.pop(task_id, None)
        self.transitions.append((task_id, outcome))

    def nudge(self):
        self.nudges += 1

    def run_coding_phase(self, task, slot, retry=None):
        self.retries.append((task.id, slot.attempt, retry))

    def event_names(self, task_id):
        return [e.event for e in self.events.list_events("demo", task_id=task_id)]

    def add_slot(self, task, attempt=1, phase="coding", infra_retries=0, worktree_path=None):
        slot = AgentSlot(
            task_id=task.id,
            task_title=task.title,
            branch_name=branch_name_for(task.id),
            worktree_path=worktree_path,
            attempt=attempt,
            infra_retries=infra_retries,
            phase=phase,
        )
        self.state.slots[task.id] = slot
        return slot


@pytest.fixture
def host(config, db, git_repo):
    h = FakeHost(config, git_repo)
    yield h
    h.commit_queue.stop()
