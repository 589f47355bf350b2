"""Archive finished agent attempts (approved or failed) for later inspection."""

import json
import logging
import shutil
import sqlite3
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path

from opensprint.core.heartbeat import active_task_dir
from opensprint.db.engine import get_db
from opensprint.db.models import AgentSession

logger = logging.getLogger(__name__)

SESSIONS_DIR = Path(".opensprint") / "sessions"


class SessionManager:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def create_session(self, task_id: str, attempt: int, status: str, **fields) -> AgentSession:
        """Build an unsaved session record; ``archive_session`` persists it."""
        return AgentSession(task_id=task_id, attempt=attempt, status=status, **fields)

    def archive_session(
        self,
        repo_path: str | Path,
        project_id: str,
        session: AgentSession,
        worktree_path: str | Path | None = None,
    ) -> AgentSession:
        """Store the session row and write ``<repo>/.opensprint/sessions/<task>-<attempt>/``.

        The task's runtime directory (prompt, config, result files) is copied
        in when the working copy still exists.
        """
        session.project_id = project_id
        session.completed_at = datetime.now(timezone.utc).isoformat()
        archive_dir = Path(repo_path) / SESSIONS_DIR / f"{session.task_id}-{session.attempt}"
        archive_dir.mkdir(parents=True, exist_ok=True)
        session.archive_path = str(archive_dir)

        (archive_dir / "output.log").write_text(session.output_log or "")
        if session.git_diff:
            (archive_dir / "diff.patch").write_text(session.git_diff)
        (archive_dir / "session.json").write_text(
            json.dumps(
                {k: v for k, v in asdict(session).items() if k not in ("output_log", "git_diff")},
                indent=2,
            )
        )

        if worktree_path:
            source = active_task_dir(worktree_path, session.task_id)
            if source.is_dir():
                shutil.copytree(source, archive_dir / "active", dirs_exist_ok=True)

        with get_db(self.db_path) as db:
            cur = db.execute(
                """INSERT INTO agent_sessions
                   (project_id, task_id, attempt, agent_type, agent_model, git_branch, status,
                    output_log, git_diff, summary, failure_reason, test_results, archive_path,
                    started_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    project_id,
                    session.task_id,
                    session.attempt,
                    session.agent_type,
                    session.agent_model,
                    session.git_branch,
                    session.status,
                    session.output_log,
                    session.git_diff,
                    session.summary,
                    session.failure_reason,
                    json.dumps(session.test_results) if session.test_results is not None else None,
                    session.archive_path,
                    session.started_at,
                    session.completed_at,
                ),
            )
            db.commit()
            session.id = cur.lastrowid

        logger.info(
            "Archived %s session for %s attempt %d at %s",
            session.status, session.task_id, session.attempt, archive_dir,
        )
        return session

    def list_sessions(self, task_id: str) -> list[AgentSession]:
        with get_db(self.db_path) as db:
            rows = db.execute(
                "SELECT * FROM agent_sessions WHERE task_id = ? ORDER BY id", (task_id,)
            ).fetchall()
        return [_row_to_session(r) for r in rows]


def _row_to_session(row: sqlite3.Row) -> AgentSession:
    return AgentSession(
        id=row["id"],
        project_id=row["project_id"],
        task_id=row["task_id"],
        attempt=row["attempt"],
        agent_type=row["agent_type"] or "",
        agent_model=row["agent_model"] or "",
        git_branch=row["git_branch"] or "",
        status=row["status"],
        output_log=row["output_log"] or "",
        git_diff=row["git_diff"],
        summary=row["summary"],
        failure_reason=row["failure_reason"],
        test_results=json.loads(row["test_results"]) if row["test_results"] else None,
        archive_path=row["archive_path"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )
