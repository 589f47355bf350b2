"""Single FIFO worker that serializes every git-mutating operation on a repository."""

import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from opensprint.integrations.git import (
    BranchManager,
    GitError,
    MergeConflictError,
    RebaseConflictError,
)

logger = logging.getLogger(__name__)

WORKTREE_MERGE = "worktree_merge"
PUSH_MAIN = "push_main"
PRD_UPDATE = "prd_update"
TASK_EXPORT = "task_export"
WORKTREE_CREATE = "worktree_create"
TASK_CLEANUP = "task_cleanup"
MERGE_ABORT = "merge_abort"
WORKTREE_COMMIT = "worktree_commit"

REBASE_BEFORE_MERGE = "rebase_before_merge"
MERGE_TO_MAIN = "merge_to_main"


@dataclass
class MergeJob:
    type: str
    repo_path: str
    task_id: str | None = None
    task_title: str | None = None
    branch_name: str | None = None
    worktree_path: str | None = None
    paths: list[str] = field(default_factory=list)
    message: str = ""
    delete_branch: bool = False
    return_to_main: bool = False


class MergeJobError(Exception):
    """A queued merge failed at ``stage``; ``resolved_by`` is filled in by the caller's policy."""

    def __init__(
        self,
        message: str,
        stage: str,
        conflicted_files: list[str] | None = None,
        resolved_by: str | None = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.conflicted_files = conflicted_files or []
        self.resolved_by = resolved_by


_STOP = object()


class GitCommitQueue:
    def __init__(self, repo_path: str, branch_manager: BranchManager):
        self.repo_path = repo_path
        self.branch_manager = branch_manager
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()
        self._listeners: list[tuple[Callable | None, Callable | None]] = []
        self._handlers: dict[str, Callable[[MergeJob], object]] = {
            WORKTREE_MERGE: self._worktree_merge,
            PUSH_MAIN: self._push_main,
            PRD_UPDATE: self._commit_paths,
            TASK_EXPORT: self._commit_paths,
            WORKTREE_CREATE: self._worktree_create,
            TASK_CLEANUP: self._task_cleanup,
            MERGE_ABORT: self._merge_abort,
            WORKTREE_COMMIT: self._worktree_commit,
        }

    def register_handler(self, job_type: str, handler: Callable[[MergeJob], object]):
        self._handlers[job_type] = handler

    def add_listener(
        self,
        on_start: Callable[[MergeJob], None] | None = None,
        on_end: Callable[[MergeJob, BaseException | None], None] | None = None,
    ):
        """Instrumentation hooks fired on the worker thread around each job."""
        self._listeners.append((on_start, on_end))

    def start(self):
        with self._start_lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name=f"git-queue-{self.repo_path}", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 10):
        with self._start_lock:
            thread = self._thread
            self._thread = None
        if thread and thread.is_alive():
            self._queue.put(_STOP)
            thread.join(timeout=timeout)

    def enqueue(self, job: MergeJob) -> Future:
        if job.type not in self._handlers:
            raise ValueError(f"Unknown merge job type: {job.type}")
        self.start()
        future: Future = Future()
        self._queue.put((job, future))
        return future

    def enqueue_and_wait(self, job: MergeJob, timeout: float | None = None):
        """Block until the job ran; re-raises the job's exception."""
        return self.enqueue(job).result(timeout=timeout)

    def drain(self):
        """Wait until every job enqueued so far has finished."""
        if self._thread and self._thread.is_alive():
            self._queue.join()

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                job, future = item
                if future.set_running_or_notify_cancel():
                    self._execute(job, future)
            except Exception:
                logger.exception("Error in git commit queue loop")
            finally:
                self._queue.task_done()

    def _execute(self, job: MergeJob, future: Future):
        logger.debug("Running %s job for %s", job.type, job.task_id or job.repo_path)
        for on_start, _ in self._listeners:
            if on_start:
                on_start(job)
        error: BaseException | None = None
        try:
            result = self._handlers[job.type](job)
        except Exception as e:
            error = e
        finally:
            for _, on_end in self._listeners:
                if on_end:
                    on_end(job, error)
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    # ── Job handlers ──────────────────────────────────────────────────────────

    def _worktree_merge(self, job: MergeJob) -> list[str]:
        """WIP commit, rebase onto main, merge. Returns the files the branch changed."""
        bm = self.branch_manager
        cwd = job.worktree_path or job.repo_path
        stage = REBASE_BEFORE_MERGE
        try:
            bm.commit_wip(cwd, job.task_id)
            bm.rebase_onto_main(cwd)
            changed_files = bm.get_changed_files(job.repo_path, job.branch_name)
            stage = MERGE_TO_MAIN
            title = job.task_title or job.task_id
            bm.merge_to_main(job.repo_path, job.branch_name, message=f"Merge {job.task_id}: {title}")
        except (RebaseConflictError, MergeConflictError) as e:
            raise MergeJobError(
                f"merge conflict ({stage}): {e}", stage, e.conflicted_files
            ) from e
        except GitError as e:
            raise MergeJobError(f"git failure ({stage}): {e}", stage) from e
        return changed_files

    def _worktree_create(self, job: MergeJob) -> str:
        if job.return_to_main:
            return str(self.branch_manager.checkout_task_branch(job.repo_path, job.task_id))
        return str(self.branch_manager.create_task_worktree(job.repo_path, job.task_id))

    def _task_cleanup(self, job: MergeJob):
        """Release a task's working copy; optionally delete its branch."""
        bm = self.branch_manager
        if job.return_to_main:
            bm.revert_and_return_to_main(job.repo_path, job.task_id)
        elif job.worktree_path:
            if Path(job.worktree_path).exists():
                bm.commit_wip(job.worktree_path, job.task_id)
            bm.remove_task_worktree(job.repo_path, job.task_id, job.worktree_path)
        if job.delete_branch and job.branch_name:
            bm.delete_branch(job.repo_path, job.branch_name, force=True)

    def _merge_abort(self, job: MergeJob):
        self.branch_manager.merge_abort(job.repo_path)

    def _worktree_commit(self, job: MergeJob) -> bool:
        return self.branch_manager.commit_wip(job.worktree_path or job.repo_path, job.task_id)

    def _push_main(self, job: MergeJob):
        return self.branch_manager.push_main(job.repo_path)

    def _commit_paths(self, job: MergeJob):
        message = job.message or f"opensprint: {job.type}"
        return self.branch_manager.commit_paths(job.repo_path, job.paths, message)
