"""Final review agent run once every implementation task of an epic is closed."""

import logging
import threading
from dataclasses import dataclass, field

from opensprint.core.agents import FINAL_REVIEWER, AgentRunner, AgentSpawnError, read_result_file
from opensprint.core.prompts import final_review_dir, prepare_final_review_files
from opensprint.core.task_store import TaskStore
from opensprint.db.models import ProjectSettings, Task

logger = logging.getLogger(__name__)


@dataclass
class FinalReviewResult:
    status: str  # pass | issues
    summary: str = ""
    proposed_tasks: list[dict] = field(default_factory=list)


def parse_final_review(data: dict | None) -> FinalReviewResult | None:
    if not data:
        return None
    status = str(data.get("status", "")).lower()
    if status not in ("pass", "issues"):
        logger.warning("Final review returned unknown status %r", data.get("status"))
        return None
    proposed = data.get("proposed_tasks") or data.get("proposedTasks") or []
    proposed = [
        p for p in proposed
        if isinstance(p, dict) and str(p.get("title", "")).strip()
    ]
    return FinalReviewResult(
        status=status,
        summary=str(data.get("summary", "")),
        proposed_tasks=proposed,
    )


class FinalReviewer:
    def __init__(self, runner: AgentRunner, timeout: float = 1800):
        self.runner = runner
        self.timeout = timeout

    def run(
        self,
        project_id: str,
        repo_path: str,
        epic: Task,
        children: list[Task],
        settings: ProjectSettings,
    ) -> FinalReviewResult | None:
        """Run the final review agent in the main checkout and wait for its verdict.

        Returns None when the agent produced no usable result, which callers
        treat as a pass.
        """
        prompt_path = prepare_final_review_files(repo_path, epic, children)
        done = threading.Event()
        output: list[str] = []
        try:
            handle = self.runner.spawn_with_task_file(
                settings.agent,
                prompt_path,
                repo_path,
                on_output=output.append,
                on_exit=lambda code: done.set(),
                role=FINAL_REVIEWER,
            )
        except AgentSpawnError as e:
            logger.warning("Final review for %s could not start: %s", epic.id, e)
            return None

        if not done.wait(self.timeout):
            logger.warning("Final review for %s timed out; killing agent", epic.id)
            handle.kill()
            return None

        result = parse_final_review(read_result_file(final_review_dir(repo_path, epic.id)))
        if result is not None:
            logger.info("Final review of %s: %s", epic.id, result.status)
        return result


def create_tasks_from_review(
    task_store: TaskStore,
    project_id: str,
    epic_id: str,
    result: FinalReviewResult,
) -> list[Task]:
    """Create the proposed follow-up tasks as children of the epic."""
    created = []
    for proposal in result.proposed_tasks:
        try:
            priority = int(proposal.get("priority", 2))
        except (TypeError, ValueError):
            priority = 2
        task = task_store.create(
            project_id,
            str(proposal["title"]).strip(),
            description=str(proposal.get("description", "")),
            priority=priority,
            parent_id=epic_id,
        )
        created.append(task)
    if created:
        logger.info(
            "Created %d follow-up task(s) for %s: %s",
            len(created), epic_id, ", ".join(t.id for t in created),
        )
    return created

