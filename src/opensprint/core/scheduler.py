"""Select the next batch of ready tasks to dispatch."""

import logging
from dataclasses import dataclass
from typing import Iterable

from opensprint.core.file_scope import HEURISTIC, FileScope, FileScopeAnalyzer, overlaps
from opensprint.db.models import Task

logger = logging.getLogger(__name__)

CONSERVATIVE = "conservative"
OPTIMISTIC = "optimistic"


@dataclass
class ScheduledTask:
    task: Task
    file_scope: FileScope


class TaskScheduler:
    """Deterministic given (ready tasks, active slots, limits)."""

    def __init__(self, analyzer: FileScopeAnalyzer):
        self.analyzer = analyzer

    def select_tasks(
        self,
        ready_tasks: list[Task],
        active_slots: dict,
        max_slots: int,
        strategy: str = CONSERVATIVE,
        all_tasks: Iterable[Task] | None = None,
    ) -> list[ScheduledTask]:
        """Pick up to ``max_slots - len(active_slots)`` tasks.

        ``active_slots`` maps task id to an object carrying a ``file_scope``
        attribute (None when unknown). ``all_tasks`` supplies blocker and
        dependency state; when omitted it falls back to ``ready_tasks``
        plus the task store behind the analyzer.
        """
        available = max_slots - len(active_slots)
        if available <= 0:
            return []

        by_id = {t.id: t for t in (all_tasks if all_tasks is not None else ready_tasks)}

        def lookup(task_id: str) -> Task | None:
            if task_id in by_id:
                return by_id[task_id]
            return self.analyzer.lookup_task(task_id)

        candidates = [
            t for t in ready_tasks
            if t.issue_type != "epic"
            and t.status != "blocked"
            and t.id not in active_slots
        ]
        # sorted() is stable, so equal priorities keep their input order.
        candidates = sorted(candidates, key=lambda t: t.priority)

        active_scopes = [
            slot.file_scope for slot in active_slots.values()
            if getattr(slot, "file_scope", None) is not None
        ]
        selected: list[ScheduledTask] = []

        for task in candidates:
            if len(selected) >= available:
                break
            if not self._blockers_closed(task, lookup):
                logger.debug("Skipping %s: blockers not closed", task.id)
                continue

            scope = self.analyzer.predict(task, lookup)
            if max_slots == 1:
                selected.append(ScheduledTask(task=task, file_scope=scope))
                break

            existing = active_scopes + [s.file_scope for s in selected]
            if strategy == CONSERVATIVE and scope.confidence == HEURISTIC and existing:
                logger.debug("Skipping %s: heuristic scope under conservative strategy", task.id)
                continue
            if any(overlaps(scope, other) for other in existing):
                logger.debug("Deferring %s: file scope overlaps running work", task.id)
                continue
            selected.append(ScheduledTask(task=task, file_scope=scope))

        return selected

    @staticmethod
    def _blockers_closed(task: Task, lookup) -> bool:
        for blocker_id in task.depends_on:
            blocker = lookup(blocker_id)
            if blocker is None or blocker.status != "closed":
                return False
        return True
