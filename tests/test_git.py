"""Tests for git worktree and branch operations."""

from pathlib import Path

import pytest

from conftest import commit_file, git
from opensprint.integrations.git import (
    BranchManager,
    GitError,
    RebaseConflictError,
    branch_exists,
    branch_name_for,
    get_current_branch,
    is_rebase_in_progress,
    run_git,
    worktree_list,
)


@pytest.fixture
def bm(tmp_dir):
    return BranchManager(tmp_dir / "worktrees", "main")


class TestHelpers:
    def test_branch_name(self):
        assert branch_name_for("auth-epic.2") == "opensprint/auth-epic.2"

    def test_run_git_error(self, git_repo):
        with pytest.raises(GitError, match="git checkout nope failed"):
            run_git(["checkout", "nope"], cwd=git_repo)

    def test_branch_exists(self, git_repo):
        assert branch_exists(git_repo, "main")
        assert not branch_exists(git_repo, "missing")


class TestWorktreeLifecycle:
    def test_create_worktree(self, bm, git_repo):
        path = bm.create_task_worktree(git_repo, "my-feature")
        assert path.exists()
        assert path == bm.get_worktree_path("my-feature")
        assert get_current_branch(path) == "opensprint/my-feature"
        assert any(Path(wt.path).resolve() == path.resolve() for wt in worktree_list(git_repo))

    def test_recreate_keeps_branch_commits(self, bm, git_repo):
        path = bm.create_task_worktree(git_repo, "again")
        commit_file(path, "work.py", "x = 1\n")
        path = bm.create_task_worktree(git_repo, "again")
        assert (path / "work.py").exists()

    def test_remove_worktree(self, bm, git_repo):
        path = bm.create_task_worktree(git_repo, "gone")
        bm.remove_task_worktree(git_repo, "gone")
        assert not path.exists()
        assert branch_exists(git_repo, "opensprint/gone")

    def test_remove_missing_directory(self, bm, git_repo):
        path = bm.create_task_worktree(git_repo, "vanished")
        git(git_repo, "worktree", "remove", "--force", str(path))
        bm.remove_task_worktree(git_repo, "vanished")
        assert "vanished" not in bm.list_task_worktrees(git_repo)

    def test_list_task_worktrees(self, bm, git_repo):
        bm.create_task_worktree(git_repo, "a")
        bm.create_task_worktree(git_repo, "b")
        assert sorted(bm.list_task_worktrees(git_repo)) == ["a", "b"]


class TestCommits:
    def test_commit_wip_excludes_runtime_dir(self, bm, git_repo):
        path = bm.create_task_worktree(git_repo, "wip")
        runtime = path / ".opensprint" / "active" / "wip"
        runtime.mkdir(parents=True)
        (runtime / "heartbeat.json").write_text("{}")
        assert not bm.has_uncommitted_changes(path)
        assert bm.commit_wip(path, "wip") is False

        (path / "code.py").write_text("pass\n")
        assert bm.commit_wip(path, "wip") is True
        assert git(path, "log", "-1", "--format=%s") == "WIP: wip"
        assert bm.get_changed_files(git_repo, "opensprint/wip") == ["code.py"]

    def test_diffs(self, bm, git_repo):
        path = bm.create_task_worktree(git_repo, "diffs")
        commit_file(path, "new.txt", "hello\n")
        (path / "README.md").write_text("# Changed\n")
        assert "new.txt" in bm.capture_branch_diff(git_repo, "opensprint/diffs")
        assert "# Changed" in bm.capture_uncommitted_diff(path)

    def test_commit_paths(self, bm, git_repo):
        assert bm.commit_paths(git_repo, [], "nothing") is False
        (Path(git_repo) / "PRD.md").write_text("# PRD\n")
        assert bm.commit_paths(git_repo, ["PRD.md"], "Update PRD") is True
        assert bm.commit_paths(git_repo, ["PRD.md"], "Update PRD") is False


class TestRebaseAndMerge:
    def test_rebase_conflict_is_aborted(self, bm, git_repo):
        path = bm.create_task_worktree(git_repo, "clash")
        commit_file(path, "README.md", "# Task\n")
        commit_file(git_repo, "README.md", "# Main\n")

        with pytest.raises(RebaseConflictError) as exc:
            bm.rebase_onto_main(path)
        assert exc.value.conflicted_files == ["README.md"]
        assert not is_rebase_in_progress(path)

    def test_merge_to_main(self, bm, git_repo):
        path = bm.create_task_worktree(git_repo, "merge-me")
        commit_file(path, "feature.txt", "yes\n")
        bm.merge_to_main(git_repo, "opensprint/merge-me", "Merge merge-me")
        assert (Path(git_repo) / "feature.txt").exists()
        assert git(git_repo, "log", "-1", "--format=%s") == "Merge merge-me"
        assert not bm.is_merge_in_progress(git_repo)

    def test_branches_mode_checkout_and_return(self, bm, git_repo):
        branch = bm.checkout_task_branch(git_repo, "inplace")
        assert get_current_branch(git_repo) == branch
        (Path(git_repo) / "partial.txt").write_text("wip\n")

        bm.revert_and_return_to_main(git_repo, "inplace")

        assert get_current_branch(git_repo) == "main"
        assert not (Path(git_repo) / "partial.txt").exists()
        assert bm.get_changed_files(git_repo, branch) == ["partial.txt"]

    def test_delete_branch(self, bm, git_repo):
        bm.ensure_branch(git_repo, "opensprint/tmp")
        assert bm.ensure_branch(git_repo, "opensprint/tmp") is False
        bm.delete_branch(git_repo, "opensprint/tmp", force=True)
        assert not branch_exists(git_repo, "opensprint/tmp")
        bm.delete_branch(git_repo, "opensprint/tmp")
