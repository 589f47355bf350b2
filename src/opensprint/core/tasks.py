"""Task management operations."""

import json
import re
import sqlite3
from datetime import datetime

from opensprint.db.models import ISSUE_TYPES, TASK_STATUSES, Task, TaskComment

UPDATABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "issue_type",
    "assignee",
    "block_reason",
    "close_reason",
    "extra",
}


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    existing = db.execute(
        "SELECT id FROM tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def _next_child_id(db: sqlite3.Connection, parent_id: str) -> str:
    """Children are numbered ``<parent>.1``, ``<parent>.2``, ... (``.0`` is the gate task)."""
    rows = db.execute("SELECT id FROM tasks WHERE parent_id = ?", (parent_id,)).fetchall()
    highest = 0
    for row in rows:
        suffix = row["id"][len(parent_id) + 1:]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{parent_id}.{highest + 1}"


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str,
    description: str = "",
    priority: int = 2,
    issue_type: str = "task",
    parent_id: str | None = None,
    depends_on: list[str] | None = None,
    labels: list[str] | None = None,
    task_id: str | None = None,
) -> Task:
    """Create a new task. Children of an epic get hierarchical ids."""
    if issue_type not in ISSUE_TYPES:
        raise ValueError(f"Invalid issue type: {issue_type}")
    if parent_id and not get_task(db, parent_id):
        raise ValueError(f"Parent task not found: {parent_id}")

    if task_id is None:
        task_id = _next_child_id(db, parent_id) if parent_id else _unique_id(db, slugify(title))
    priority = max(0, min(4, priority))

    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, priority, issue_type, parent_id)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (task_id, project_id, title, description, priority, issue_type, parent_id),
    )

    for label in labels or []:
        db.execute(
            "INSERT OR IGNORE INTO task_labels (task_id, label) VALUES (?, ?)",
            (task_id, label),
        )

    for dep_id in depends_on or []:
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )

    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its labels and dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _hydrate(db, _row_to_task(row))


def list_tasks(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    parent_id: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, highest priority first."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    if parent_id is not None:
        query += " AND parent_id = ?"
        params.append(parent_id)

    query += " ORDER BY priority ASC, created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_hydrate(db, _row_to_task(row)) for row in rows]


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task:
    """Update task fields. ``extra`` is merged into the existing JSON object."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")

    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")

    updates = dict(fields)
    if "status" in updates:
        if updates["status"] not in TASK_STATUSES:
            raise ValueError(f"Invalid status: {updates['status']}")
        if updates["status"] == "closed" and task.status != "closed":
            updates["closed_at"] = datetime.now().isoformat(sep=" ", timespec="seconds")
        elif updates["status"] != "closed":
            updates["closed_at"] = None
        if updates["status"] != "blocked" and "block_reason" not in updates:
            updates["block_reason"] = None
    if "priority" in updates:
        updates["priority"] = max(0, min(4, int(updates["priority"])))
    if "extra" in updates:
        updates["extra"] = json.dumps({**task.extra, **(updates["extra"] or {})})
    if not updates:
        return task

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task_id]
    db.execute(f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?", values)
    db.commit()
    return get_task(db, task_id)


def close_task(db: sqlite3.Connection, task_id: str, reason: str) -> Task:
    return update_task(db, task_id, status="closed", assignee="", close_reason=reason)


def set_labels(db: sqlite3.Connection, task_id: str, labels: list[str]) -> Task:
    """Replace a task's label set."""
    if not get_task(db, task_id):
        raise ValueError(f"Task not found: {task_id}")
    db.execute("DELETE FROM task_labels WHERE task_id = ?", (task_id,))
    for label in dict.fromkeys(labels):
        db.execute(
            "INSERT INTO task_labels (task_id, label) VALUES (?, ?)", (task_id, label)
        )
    db.execute("UPDATE tasks SET updated_at = datetime('now') WHERE id = ?", (task_id,))
    db.commit()
    return get_task(db, task_id)


def add_dependency(db: sqlite3.Connection, task_id: str, depends_on_id: str) -> Task:
    """Record that ``depends_on_id`` blocks ``task_id``."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if not get_task(db, depends_on_id):
        raise ValueError(f"Dependency task not found: {depends_on_id}")
    if depends_on_id in task.depends_on:
        return task
    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        (task_id, depends_on_id),
    )
    db.commit()
    return get_task(db, task_id)


def add_comment(db: sqlite3.Connection, task_id: str, body: str) -> TaskComment:
    if not get_task(db, task_id):
        raise ValueError(f"Task not found: {task_id}")
    cur = db.execute(
        "INSERT INTO task_comments (task_id, body) VALUES (?, ?)", (task_id, body)
    )
    db.commit()
    row = db.execute("SELECT * FROM task_comments WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_comment(row)


def list_comments(db: sqlite3.Connection, task_id: str) -> list[TaskComment]:
    rows = db.execute(
        "SELECT * FROM task_comments WHERE task_id = ? ORDER BY id", (task_id,)
    ).fetchall()
    return [_row_to_comment(r) for r in rows]


def _hydrate(db: sqlite3.Connection, task: Task) -> Task:
    labels = db.execute(
        "SELECT label FROM task_labels WHERE task_id = ? ORDER BY rowid", (task.id,)
    ).fetchall()
    task.labels = [r["label"] for r in labels]
    deps = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
        (task.id,),
    ).fetchall()
    task.depends_on = [d["depends_on_task_id"] for d in deps]
    return task


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"] if row["priority"] is not None else 2,
        issue_type=row["issue_type"],
        parent_id=row["parent_id"],
        assignee=row["assignee"] or "",
        block_reason=row["block_reason"],
        close_reason=row["close_reason"],
        extra=json.loads(row["extra"] or "{}"),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        closed_at=_parse_dt(row["closed_at"]),
    )


def _row_to_comment(row: sqlite3.Row) -> TaskComment:
    return TaskComment(
        id=row["id"],
        task_id=row["task_id"],
        body=row["body"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
