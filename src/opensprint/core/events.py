"""Append-only execution event log plus an in-process broadcast channel."""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable

from opensprint.db.engine import get_db
from opensprint.db.models import Event

logger = logging.getLogger(__name__)


class EventLog:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._subscribers: list[Callable[[Event], None]] = []
        self._lock = threading.Lock()

    def append(
        self,
        project_id: str,
        task_id: str | None,
        event: str,
        data: dict | None = None,
    ) -> Event:
        """Persist an event and broadcast it. Never raises on subscriber failure."""
        with get_db(self.db_path) as db:
            cur = db.execute(
                "INSERT INTO events (project_id, task_id, event, data) VALUES (?, ?, ?, ?)",
                (project_id, task_id, event, json.dumps(data or {}, default=str)),
            )
            db.commit()
            row = db.execute("SELECT * FROM events WHERE id = ?", (cur.lastrowid,)).fetchone()
        record = _row_to_event(row)
        self.broadcast(record)
        return record

    def list_events(
        self,
        project_id: str,
        task_id: str | None = None,
        since_id: int = 0,
        limit: int = 200,
    ) -> list[Event]:
        query = "SELECT * FROM events WHERE project_id = ? AND id > ?"
        params: list = [project_id, since_id]
        if task_id:
            query += " AND task_id = ?"
            params.append(task_id)
        query += " ORDER BY id ASC LIMIT ?"
        params.append(limit)
        with get_db(self.db_path) as db:
            rows = db.execute(query, params).fetchall()
        return [_row_to_event(r) for r in rows]

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        """Register a live listener; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def broadcast(self, event: Event):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event.event)


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        project_id=row["project_id"],
        task_id=row["task_id"],
        event=row["event"],
        data=json.loads(row["data"] or "{}"),
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )
