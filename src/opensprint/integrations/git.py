"""Git subprocess wrappers for worktree, branch and merge operations."""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "opensprint/"
RUNTIME_DIR = ".opensprint"


class GitError(Exception):
    """Raised when a git command fails."""


class RebaseConflictError(GitError):
    """A rebase stopped on conflicts; the rebase has been aborted."""

    def __init__(self, message: str, conflicted_files: list[str] | None = None):
        super().__init__(message)
        self.conflicted_files = conflicted_files or []


class MergeConflictError(GitError):
    """A merge stopped on conflicts; the merge has been aborted."""

    def __init__(self, message: str, conflicted_files: list[str] | None = None):
        super().__init__(message)
        self.conflicted_files = conflicted_files or []


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or "").strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from e


def branch_name_for(task_id: str) -> str:
    return f"{BRANCH_PREFIX}{task_id}"


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    def flush():
        if current:
            worktrees.append(
                WorktreeInfo(
                    path=current.get("worktree", ""),
                    branch=current.get("branch", "").replace("refs/heads/", ""),
                    head=current.get("HEAD", ""),
                    is_bare=current.get("bare", False),
                )
            )

    for line in output.split("\n"):
        if not line:
            flush()
            current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True

    flush()
    return worktrees


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a local branch exists."""
    try:
        run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def ref_exists(repo_path: str | Path, ref: str) -> bool:
    try:
        run_git(["rev-parse", "--verify", "--quiet", ref], cwd=repo_path)
        return True
    except GitError:
        return False


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def get_conflicted_files(cwd: str | Path) -> list[str]:
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.splitlines() if line]


def _git_path_exists(cwd: str | Path, name: str) -> bool:
    """Resolve a path inside the (possibly per-worktree) git dir and test it."""
    path = run_git(["rev-parse", "--git-path", name], cwd=cwd)
    return (Path(cwd) / path).exists()


def is_merge_in_progress(cwd: str | Path) -> bool:
    return _git_path_exists(cwd, "MERGE_HEAD")


def is_rebase_in_progress(cwd: str | Path) -> bool:
    return _git_path_exists(cwd, "rebase-merge") or _git_path_exists(cwd, "rebase-apply")


class BranchManager:
    """Worktree and branch lifecycle for task attempts.

    Every method that mutates the main repository is expected to be called
    from the repository's commit queue worker (or before any worker runs).
    """

    def __init__(self, worktree_base: str | Path, base_branch: str = "main"):
        self.worktree_base = Path(worktree_base)
        self.base_branch = base_branch

    def get_worktree_path(self, task_id: str) -> Path:
        return self.worktree_base / task_id

    def ensure_branch(self, repo_path: str | Path, branch: str) -> bool:
        """Create ``branch`` from the base branch if missing. Returns True when created."""
        if branch_exists(repo_path, branch):
            return False
        run_git(["branch", branch, self.base_branch], cwd=repo_path)
        return True

    # ── Worktrees ─────────────────────────────────────────────────────────────

    def create_task_worktree(self, repo_path: str | Path, task_id: str) -> Path:
        """Create (or recreate) the isolated worktree for a task's branch."""
        branch = branch_name_for(task_id)
        wt_path = self.get_worktree_path(task_id)
        self.ensure_branch(repo_path, branch)

        if wt_path.exists():
            logger.info("Removing stale worktree for %s at %s", task_id, wt_path)
            self.remove_task_worktree(repo_path, task_id, wt_path)
        run_git(["worktree", "prune"], cwd=repo_path)

        wt_path.parent.mkdir(parents=True, exist_ok=True)
        run_git(
            ["-c", "core.hooksPath=/dev/null", "worktree", "add", str(wt_path), branch],
            cwd=repo_path,
        )
        logger.info("Created worktree for %s at %s", task_id, wt_path)
        return wt_path

    def remove_task_worktree(
        self,
        repo_path: str | Path,
        task_id: str,
        worktree_path: str | Path | None = None,
    ):
        """Remove a task worktree, falling back to rm -rf + prune."""
        wt_path = Path(worktree_path) if worktree_path else self.get_worktree_path(task_id)
        try:
            run_git(["worktree", "remove", "--force", str(wt_path)], cwd=repo_path)
        except GitError as e:
            logger.debug("worktree remove failed for %s (%s); deleting directory", task_id, e)
            shutil.rmtree(wt_path, ignore_errors=True)
            run_git(["worktree", "prune"], cwd=repo_path)

    def list_task_worktrees(self, repo_path: str | Path) -> dict[str, str]:
        """Map task id -> worktree path for worktrees under the worktree base."""
        base = str(self.worktree_base.resolve())
        found = {}
        for wt in worktree_list(repo_path):
            wt_resolved = str(Path(wt.path).resolve())
            if wt_resolved.startswith(base + os.sep):
                found[Path(wt_resolved).name] = wt.path
        return found

    # ── Commits and diffs ─────────────────────────────────────────────────────

    def has_uncommitted_changes(self, cwd: str | Path) -> bool:
        output = run_git(
            ["status", "--porcelain", "--", ".", f":(exclude){RUNTIME_DIR}"], cwd=cwd
        )
        return bool(output)

    def commit_wip(self, cwd: str | Path, task_id: str) -> bool:
        """Commit any outstanding agent changes. Runtime files are never committed."""
        if not self.has_uncommitted_changes(cwd):
            return False
        run_git(["add", "-A", "--", ".", f":(exclude){RUNTIME_DIR}"], cwd=cwd)
        run_git(["commit", "--no-verify", "-m", f"WIP: {task_id}"], cwd=cwd)
        logger.info("Committed WIP changes for %s", task_id)
        return True

    def get_changed_files(self, repo_path: str | Path, branch: str) -> list[str]:
        output = run_git(
            ["diff", "--name-only", f"{self.base_branch}...{branch}"], cwd=repo_path
        )
        return [line for line in output.splitlines() if line]

    def capture_branch_diff(self, repo_path: str | Path, branch: str) -> str:
        return run_git(["diff", f"{self.base_branch}...{branch}"], cwd=repo_path)

    def capture_uncommitted_diff(self, cwd: str | Path) -> str:
        return run_git(["diff", "HEAD"], cwd=cwd)

    # ── Rebase / merge / push ─────────────────────────────────────────────────

    def rebase_onto_main(self, cwd: str | Path):
        """Rebase the checked-out branch onto the local base branch."""
        try:
            run_git(["rebase", self.base_branch], cwd=cwd)
        except GitError as e:
            conflicted = get_conflicted_files(cwd)
            self.rebase_abort(cwd)
            raise RebaseConflictError(str(e), conflicted) from e

    def rebase_abort(self, cwd: str | Path):
        if is_rebase_in_progress(cwd):
            run_git(["rebase", "--abort"], cwd=cwd)

    def rebase_continue(self, cwd: str | Path):
        run_git(["-c", "core.editor=true", "rebase", "--continue"], cwd=cwd)

    def checkout_base(self, repo_path: str | Path):
        if get_current_branch(repo_path) != self.base_branch:
            run_git(["checkout", self.base_branch], cwd=repo_path)

    def checkout_task_branch(self, repo_path: str | Path, task_id: str) -> str:
        """Branches mode: the task runs in the main checkout on its own branch."""
        branch = branch_name_for(task_id)
        self.ensure_branch(repo_path, branch)
        run_git(["checkout", branch], cwd=repo_path)
        return branch

    def revert_and_return_to_main(self, repo_path: str | Path, task_id: str):
        """Branches mode: keep partial work on the task branch and go back to main."""
        if get_current_branch(repo_path) == branch_name_for(task_id):
            self.commit_wip(repo_path, task_id)
        self.checkout_base(repo_path)

    def merge_to_main(self, repo_path: str | Path, branch: str, message: str | None = None):
        """Merge a task branch into the base branch in the main checkout."""
        self.checkout_base(repo_path)
        try:
            run_git(
                ["merge", "--no-ff", "--no-edit", "-m", message or f"Merge {branch}", branch],
                cwd=repo_path,
            )
        except GitError as e:
            conflicted = get_conflicted_files(repo_path)
            self.merge_abort(repo_path)
            raise MergeConflictError(str(e), conflicted) from e

    def merge_abort(self, repo_path: str | Path):
        if is_merge_in_progress(repo_path):
            run_git(["merge", "--abort"], cwd=repo_path)

    def is_merge_in_progress(self, repo_path: str | Path) -> bool:
        return is_merge_in_progress(repo_path)

    def has_remote(self, repo_path: str | Path, remote: str = "origin") -> bool:
        return remote in run_git(["remote"], cwd=repo_path).split()

    def push_main(self, repo_path: str | Path) -> bool:
        """Rebase local base onto origin and push. Returns False when there is no origin."""
        if not self.has_remote(repo_path):
            return False
        self.checkout_base(repo_path)
        run_git(["fetch", "origin", self.base_branch], cwd=repo_path)
        if ref_exists(repo_path, f"refs/remotes/origin/{self.base_branch}"):
            try:
                run_git(["rebase", f"origin/{self.base_branch}"], cwd=repo_path)
            except GitError as e:
                conflicted = get_conflicted_files(repo_path)
                self.rebase_abort(repo_path)
                raise RebaseConflictError(str(e), conflicted) from e
        run_git(["push", "origin", self.base_branch], cwd=repo_path)
        return True

    def delete_branch(self, repo_path: str | Path, branch: str, force: bool = False):
        if not branch_exists(repo_path, branch):
            return
        run_git(["branch", "-D" if force else "-d", branch], cwd=repo_path)

    def commit_paths(self, repo_path: str | Path, paths: list[str], message: str) -> bool:
        """Stage specific paths in the main checkout and commit them if changed."""
        if not paths:
            return False
        run_git(["add", "--"] + paths, cwd=repo_path)
        staged = run_git(["diff", "--cached", "--name-only"], cwd=repo_path)
        if not staged:
            return False
        run_git(["commit", "--no-verify", "-m", message], cwd=repo_path)
        return True
