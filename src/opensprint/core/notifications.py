"""Human-in-the-loop decisions and blocking notifications."""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from opensprint.db.engine import get_db
from opensprint.db.models import HIL_MODES, Notification, ProjectSettings
from opensprint.integrations import slack as slack_mod

logger = logging.getLogger(__name__)

# Categories that never wait on a human regardless of project configuration.
ALWAYS_AUTOMATED = {"test_failures_and_retries"}


@dataclass
class Decision:
    approved: bool
    notes: str | None = None


class NotificationService:
    def __init__(
        self,
        db_path: Path,
        slack_token: str | None = None,
        poll_interval: float = 2.0,
    ):
        self.db_path = Path(db_path)
        self.slack_token = slack_token
        self.poll_interval = poll_interval
        self._waiters: dict[int, threading.Event] = {}
        self._lock = threading.Lock()

    # ── HIL gate ──────────────────────────────────────────────────────────────

    def evaluate_decision(
        self,
        project_id: str,
        category: str,
        description: str,
        settings: ProjectSettings | None = None,
        source_id: str | None = None,
        timeout: float | None = None,
        stop_event: threading.Event | None = None,
    ) -> Decision:
        """Apply the project's HIL mode for ``category``.

        ``requires_approval`` blocks until the notification is resolved (from
        this process or another one writing to the same database), the
        timeout elapses, or ``stop_event`` is set.
        """
        mode = "automated"
        if settings and category not in ALWAYS_AUTOMATED:
            mode = settings.hil_config.get(category, "automated")
        if mode not in HIL_MODES:
            logger.warning("Unknown HIL mode %r for %s; treating as automated", mode, category)
            mode = "automated"

        if mode == "automated":
            return Decision(approved=True)

        slack_channel = settings.slack_channel if settings else None
        if mode == "notify_and_proceed":
            self._create(
                project_id, "hil_notice", description, source_id=source_id,
                category=category, status="resolved", approved=True,
                slack_channel=slack_channel,
            )
            return Decision(approved=True)

        notification = self._create(
            project_id, "hil_approval", description, source_id=source_id,
            category=category, slack_channel=slack_channel,
        )
        return self._wait_for_resolution(notification.id, timeout, stop_event)

    def _wait_for_resolution(
        self,
        notification_id: int,
        timeout: float | None,
        stop_event: threading.Event | None,
    ) -> Decision:
        event = threading.Event()
        with self._lock:
            self._waiters[notification_id] = event
        waited = 0.0
        try:
            while True:
                current = self.get(notification_id)
                if current and current.status == "resolved":
                    return Decision(approved=bool(current.approved), notes=current.notes)
                if stop_event is not None and stop_event.is_set():
                    return Decision(approved=False, notes="Orchestrator stopped")
                if timeout is not None and waited >= timeout:
                    return Decision(approved=False, notes="Timed out waiting for approval")
                event.wait(self.poll_interval)
                waited += self.poll_interval
        finally:
            with self._lock:
                self._waiters.pop(notification_id, None)

    # ── API-blocked ───────────────────────────────────────────────────────────

    def create_api_blocked(
        self,
        project_id: str,
        source_id: str,
        message: str,
        error_code: str,
        slack_channel: str | None = None,
    ) -> Notification:
        """Open an api_blocked notification unless one is already open for the project."""
        existing = self.list_notifications(project_id, status="open", kind="api_blocked")
        if existing:
            return existing[0]
        return self._create(
            project_id, "api_blocked", message, source_id=source_id,
            error_code=error_code, slack_channel=slack_channel,
        )

    def has_open_api_blocked(self, project_id: str) -> bool:
        return bool(self.list_notifications(project_id, status="open", kind="api_blocked"))

    def create_task_blocked(
        self,
        project_id: str,
        task_id: str,
        message: str,
        slack_channel: str | None = None,
    ) -> Notification:
        """Surface a task that needs manual intervention."""
        return self._create(
            project_id, "task_blocked", message, source_id=task_id, slack_channel=slack_channel,
        )

    # ── Persistence ───────────────────────────────────────────────────────────

    def get(self, notification_id: int) -> Notification | None:
        with get_db(self.db_path) as db:
            row = db.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,)
            ).fetchone()
        return _row_to_notification(row) if row else None

    def list_notifications(
        self,
        project_id: str | None = None,
        status: str | None = None,
        kind: str | None = None,
    ) -> list[Notification]:
        query = "SELECT * FROM notifications WHERE 1 = 1"
        params: list = []
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        if kind:
            query += " AND kind = ?"
            params.append(kind)
        query += " ORDER BY id"
        with get_db(self.db_path) as db:
            rows = db.execute(query, params).fetchall()
        return [_row_to_notification(r) for r in rows]

    def resolve(self, notification_id: int, approved: bool = True, notes: str | None = None) -> Notification:
        with get_db(self.db_path) as db:
            row = db.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,)
            ).fetchone()
            if not row:
                raise ValueError(f"Notification not found: {notification_id}")
            db.execute(
                """UPDATE notifications
                   SET status = 'resolved', approved = ?, notes = ?, resolved_at = datetime('now')
                   WHERE id = ?""",
                (1 if approved else 0, notes, notification_id),
            )
            db.commit()
        with self._lock:
            waiter = self._waiters.get(notification_id)
        if waiter:
            waiter.set()
        return self.get(notification_id)

    def _create(
        self,
        project_id: str,
        kind: str,
        message: str,
        source_id: str | None = None,
        category: str | None = None,
        error_code: str | None = None,
        status: str = "open",
        approved: bool | None = None,
        slack_channel: str | None = None,
    ) -> Notification:
        with get_db(self.db_path) as db:
            cur = db.execute(
                """INSERT INTO notifications
                   (project_id, kind, source_id, category, message, error_code, status, approved)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    project_id, kind, source_id, category, message, error_code, status,
                    None if approved is None else int(approved),
                ),
            )
            db.commit()
            notification_id = cur.lastrowid
        notification = self.get(notification_id)
        logger.info("Created %s notification %d for %s", kind, notification_id, project_id)
        self._mirror_to_slack(notification, slack_channel)
        return notification

    def _mirror_to_slack(self, notification: Notification, channel: str | None):
        """Post the notification to Slack (best-effort)."""
        if not self.slack_token or not channel:
            return
        try:
            blocks = slack_mod.format_notification(
                notification.kind,
                notification.project_id,
                notification.message,
                source_id=notification.source_id,
                notification_id=notification.id,
            )
            slack_mod.send_message(self.slack_token, channel, notification.message[:200], blocks=blocks)
        except Exception:
            logger.exception("Failed to send Slack notification %s", notification.id)


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        project_id=row["project_id"],
        kind=row["kind"],
        source_id=row["source_id"],
        category=row["category"],
        message=row["message"],
        error_code=row["error_code"],
        status=row["status"],
        approved=None if row["approved"] is None else bool(row["approved"]),
        notes=row["notes"],
        created_at=_parse_dt(row["created_at"]),
        resolved_at=_parse_dt(row["resolved_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
