"""Thread-safe task store facade used by the orchestration engine."""

import json
import threading
from contextlib import contextmanager
from pathlib import Path

from opensprint.core import labels as labels_mod
from opensprint.core import tasks as tasks_mod
from opensprint.db.engine import get_db
from opensprint.db.models import Task, TaskComment


class TaskStore:
    """Per-call SQLite connections, serialized by a process-wide lock.

    Every read-modify-write on a task happens while holding the lock, so
    concurrent slot threads never interleave label updates on one task.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = threading.RLock()

    @contextmanager
    def _db(self):
        with self._lock:
            with get_db(self.db_path) as db:
                yield db

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, task_id: str) -> Task | None:
        with self._db() as db:
            return tasks_mod.get_task(db, task_id)

    def show(self, task_id: str) -> Task:
        task = self.get(task_id)
        if not task:
            raise ValueError(f"Task not found: {task_id}")
        return task

    def list_all(self, project_id: str) -> list[Task]:
        with self._db() as db:
            return tasks_mod.list_tasks(db, project_id)

    def children(self, project_id: str, parent_id: str) -> list[Task]:
        with self._db() as db:
            return tasks_mod.list_tasks(db, project_id, parent_id=parent_id)

    def ready(self, project_id: str) -> list[Task]:
        """Open, non-epic tasks. Blocker closure is checked by the scheduler."""
        return [
            t for t in self.list_all(project_id)
            if t.status == "open" and t.issue_type != "epic"
        ]

    def list_in_progress_with_agent_assignee(self, project_id: str) -> list[Task]:
        with self._db() as db:
            tasks = tasks_mod.list_tasks(db, project_id, status="in_progress")
        return [t for t in tasks if t.assignee]

    def get_blockers(self, task_id: str) -> list[str]:
        return self.get_blockers_from_issue(self.show(task_id))

    def get_blockers_from_issue(self, task: Task) -> list[str]:
        return list(task.depends_on)

    def are_all_blockers_closed(self, task_id: str) -> bool:
        with self._db() as db:
            task = tasks_mod.get_task(db, task_id)
            if not task:
                raise ValueError(f"Task not found: {task_id}")
            for blocker_id in task.depends_on:
                blocker = tasks_mod.get_task(db, blocker_id)
                if blocker is None or blocker.status != "closed":
                    return False
        return True

    def get_cumulative_attempts_from_issue(self, task: Task) -> int:
        return labels_mod.decode_attempts(task.labels)

    def get_conflict_files_from_issue(self, task: Task) -> list[str]:
        return labels_mod.decode_file_list(task.labels, labels_mod.CONFLICT_FILES) or []

    def get_merge_stage_from_issue(self, task: Task) -> str | None:
        return labels_mod.find_label(task.labels, labels_mod.MERGE_STAGE)

    def list_comments(self, task_id: str) -> list[TaskComment]:
        with self._db() as db:
            return tasks_mod.list_comments(db, task_id)

    # ── Writes ────────────────────────────────────────────────────────────────

    def create(self, project_id: str, title: str, **kwargs) -> Task:
        with self._db() as db:
            return tasks_mod.create_task(db, title, project_id, **kwargs)

    def update(self, task_id: str, **fields) -> Task:
        with self._db() as db:
            return tasks_mod.update_task(db, task_id, **fields)

    def close(self, task_id: str, reason: str) -> Task:
        with self._db() as db:
            return tasks_mod.close_task(db, task_id, reason)

    def comment(self, task_id: str, text: str) -> TaskComment:
        with self._db() as db:
            return tasks_mod.add_comment(db, task_id, text)

    def set_actual_files(self, task_id: str, files: list[str]) -> Task:
        return self._replace_label(
            task_id, labels_mod.ACTUAL_FILES, labels_mod.encode_file_list(files)
        )

    def set_conflict_files(self, task_id: str, files: list[str]) -> Task:
        payload = labels_mod.encode_file_list(files) if files else None
        return self._replace_label(task_id, labels_mod.CONFLICT_FILES, payload)

    def set_merge_stage(self, task_id: str, stage: str | None) -> Task:
        return self._replace_label(task_id, labels_mod.MERGE_STAGE, stage)

    def set_cumulative_attempts(self, task_id: str, attempts: int) -> Task:
        return self._replace_label(task_id, labels_mod.ATTEMPTS, str(attempts))

    def set_planned_files(self, task_id: str, files: dict[str, list[str]]) -> Task:
        return self._replace_label(task_id, labels_mod.FILES, json.dumps(files))

    def _replace_label(self, task_id: str, prefix: str, payload: str | None) -> Task:
        with self._db() as db:
            task = tasks_mod.get_task(db, task_id)
            if not task:
                raise ValueError(f"Task not found: {task_id}")
            return tasks_mod.set_labels(
                db, task_id, labels_mod.replace_label(task.labels, prefix, payload)
            )
