"""Project management operations."""

import json
import sqlite3
from datetime import datetime

from crew_orchestrator.db.models import Integration, Project


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    path: str,
    default_branch: str = "main",
    slack_channel: str | None = None,
) -> Project:
    """Create a new project."""
    db.execute(
        """INSERT INTO projects (id, name, path, default_branch, slack_channel)
           VALUES (?, ?, ?, ?, ?)""",
        (project_id, name, path, default_branch, slack_channel),
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


def ensure_default_project(db: sqlite3.Connection, path: str) -> Project:
    """Ensure a 'default' project exists, creating it if needed."""
    project = get_project(db, "default")
    if not project:
        project = create_project(db, "default", "Default Project", path)
    return project


# ── Integrations ─────────────────────────────────────────────────────────────


def set_integration(
    db: sqlite3.Connection,
    project_id: str,
    integration_type: str,
    config: dict,
) -> Integration:
    """Create or replace the integration config of a given type for a project."""
    if not get_project(db, project_id):
        raise ValueError(f"Project not found: {project_id}")
    db.execute(
        """INSERT INTO integrations (project_id, type, config) VALUES (?, ?, ?)
           ON CONFLICT(project_id, type)
           DO UPDATE SET config = excluded.config, updated_at = datetime('now')""",
        (project_id, integration_type, json.dumps(config)),
    )
    db.commit()
    return get_integration(db, project_id, integration_type)


def get_integration(
    db: sqlite3.Connection,
    project_id: str,
    integration_type: str,
) -> Integration | None:
    """Read an integration config by (project, type)."""
    row = db.execute(
        "SELECT * FROM integrations WHERE project_id = ? AND type = ?",
        (project_id, integration_type),
    ).fetchone()
    if not row:
        return None
    return Integration(
        project_id=row["project_id"],
        type=row["type"],
        config=json.loads(row["config"] or "{}"),
    )


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        path=row["path"],
        default_branch=row["default_branch"],
        slack_channel=row["slack_channel"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
