"""Reset tasks whose agent is gone so they re-enter the ready queue.

Recovery never checks out branches in the main repository: the task branch
is preserved (with any leftover edits committed as WIP) and the next attempt
picks it up again.
"""

import logging
from collections.abc import Iterable
from pathlib import Path

from opensprint.core.commit_queue import TASK_CLEANUP, GitCommitQueue, MergeJob
from opensprint.core.heartbeat import HEARTBEAT_STALE_MS, find_stale_heartbeats
from opensprint.core.task_store import TaskStore
from opensprint.db.models import Task
from opensprint.integrations.git import BranchManager, GitError

logger = logging.getLogger(__name__)


class OrphanRecovery:
    def __init__(
        self,
        task_store: TaskStore,
        branch_manager: BranchManager,
        commit_queue: GitCommitQueue | None = None,
    ):
        self.task_store = task_store
        self.branch_manager = branch_manager
        self.commit_queue = commit_queue

    def recover_orphaned_tasks(
        self,
        project_id: str,
        repo_path: str,
        exclude_task_id: str | None = None,
    ) -> list[str]:
        """Reset every in-progress, agent-assigned task to open. Returns recovered ids."""
        orphans = [
            t for t in self.task_store.list_in_progress_with_agent_assignee(project_id)
            if t.id != exclude_task_id
        ]
        recovered = []
        for task in orphans:
            try:
                self._recover_one(repo_path, task)
                recovered.append(task.id)
            except (GitError, OSError, ValueError) as e:
                logger.warning("Failed to recover %s: %s", task.id, e)

        if recovered:
            logger.warning(
                "Recovered %d orphaned task(s): %s", len(recovered), ", ".join(recovered)
            )
        return recovered

    def recover_from_stale_heartbeats(
        self,
        project_id: str,
        repo_path: str,
        exclude_task_id: str | None = None,
        active_task_ids: Iterable[str] = (),
        max_age_ms: int = HEARTBEAT_STALE_MS,
    ) -> list[str]:
        """Recover tasks whose worktree heartbeat stopped updating."""
        skip = set(active_task_ids)
        if exclude_task_id:
            skip.add(exclude_task_id)
        recovered = []
        for stale in find_stale_heartbeats(self.branch_manager.worktree_base, max_age_ms):
            if stale.task_id in skip:
                continue
            task = self.task_store.get(stale.task_id)
            if task is None:
                self._remove_worktree(repo_path, stale.task_id, stale.worktree_path)
                continue
            if task.project_id != project_id or task.status != "in_progress":
                continue
            try:
                self._recover_one(repo_path, task)
                recovered.append(task.id)
            except (GitError, OSError, ValueError) as e:
                logger.warning("Failed to recover %s from stale heartbeat: %s", task.id, e)
        if recovered:
            logger.warning(
                "Recovered %d task(s) with stale heartbeats: %s",
                len(recovered), ", ".join(recovered),
            )
        return recovered

    def prune_orphan_worktrees(
        self,
        project_id: str,
        repo_path: str,
        exclude: Iterable[str] = (),
    ) -> list[str]:
        """Remove task worktrees whose task is closed or no longer exists."""
        skip = set(exclude)
        pruned = []
        for task_id, path in self.branch_manager.list_task_worktrees(repo_path).items():
            if task_id in skip:
                continue
            task = self.task_store.get(task_id)
            if task is not None and (task.project_id != project_id or task.status != "closed"):
                continue
            self._remove_worktree(repo_path, task_id, Path(path))
            pruned.append(task_id)
        if pruned:
            logger.info("Pruned %d orphan worktree(s): %s", len(pruned), ", ".join(pruned))
        return pruned

    def _recover_one(self, repo_path: str, task: Task):
        self._release(repo_path, task.id, self.branch_manager.get_worktree_path(task.id))
        self.task_store.update(task.id, status="open", assignee="")

    def _release(self, repo_path: str, task_id: str, worktree_path: Path):
        """WIP-commit (when the worktree exists) and remove the task worktree."""
        job = MergeJob(
            type=TASK_CLEANUP,
            repo_path=repo_path,
            task_id=task_id,
            worktree_path=str(worktree_path),
        )
        if self.commit_queue is not None:
            self.commit_queue.enqueue_and_wait(job)
            return
        if worktree_path.exists():
            self.branch_manager.commit_wip(worktree_path, task_id)
        self.branch_manager.remove_task_worktree(repo_path, task_id, worktree_path)

    def _remove_worktree(self, repo_path: str, task_id: str, worktree_path: Path):
        try:
            self._release(repo_path, task_id, worktree_path)
        except (GitError, OSError) as e:
            logger.debug("Could not remove worktree for %s: %s", task_id, e)
