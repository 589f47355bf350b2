"""Project management operations."""

import json
import sqlite3
from datetime import datetime

from opensprint.db.models import Project, ProjectSettings


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    repo_path: str,
    default_branch: str = "main",
    settings: ProjectSettings | None = None,
) -> Project:
    """Create a new project."""
    settings = settings or ProjectSettings()
    db.execute(
        """INSERT INTO projects (id, name, repo_path, default_branch, settings)
           VALUES (?, ?, ?, ?, ?)""",
        (project_id, name, repo_path, default_branch, json.dumps(settings.to_dict())),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def get_settings(db: sqlite3.Connection, project_id: str) -> ProjectSettings:
    project = get_project(db, project_id)
    if not project:
        raise ValueError(f"Project not found: {project_id}")
    return project.settings


def update_settings(db: sqlite3.Connection, project_id: str, **kwargs) -> ProjectSettings:
    """Merge the given fields into a project's settings."""
    current = get_settings(db, project_id).to_dict()
    for key, value in kwargs.items():
        if key not in ProjectSettings.__dataclass_fields__:
            raise ValueError(f"Unknown project setting: {key}")
        if key == "agent" and isinstance(value, dict):
            value = {**current["agent"], **value}
        current[key] = value
    settings = ProjectSettings.from_dict(current)
    db.execute(
        "UPDATE projects SET settings = ?, updated_at = datetime('now') WHERE id = ?",
        (json.dumps(settings.to_dict()), project_id),
    )
    db.commit()
    return settings


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        repo_path=row["repo_path"],
        default_branch=row["default_branch"],
        settings=ProjectSettings.from_dict(json.loads(row["settings"] or "{}")),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
