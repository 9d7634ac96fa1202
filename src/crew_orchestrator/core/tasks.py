"""Task management operations."""

import re
import sqlite3
from datetime import datetime

from crew_orchestrator.core.roles import CATEGORIES
from crew_orchestrator.db.models import Task, TaskLog

PRIORITIES = ("low", "medium", "high", "urgent")

PRIORITY_RANK = {"low": 1, "medium": 2, "high": 3, "urgent": 4}

# Fields the scheduler and workflow may rewrite on a task record.
_UPDATABLE = {
    "description", "parsed_spec", "assigned_worker_id", "branch",
    "result", "cost_usd", "priority", "category", "title",
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


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = "default",
    description: str = "",
    priority: str = "medium",
    category: str | None = None,
    parent_task_id: str | None = None,
) -> Task:
    """Create a new task in the 'created' state."""
    if priority not in PRIORITIES:
        raise ValueError(f"Invalid priority: {priority}")
    if category is not None and category not in CATEGORIES:
        raise ValueError(f"Invalid category: {category}")
    if not db.execute("SELECT id FROM projects WHERE id = ?", (project_id,)).fetchone():
        raise ValueError(f"Project not found: {project_id}")

    task_id = _unique_id(db, slugify(title))
    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, priority, category, parent_task_id)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (task_id, project_id, title, description, priority, category, parent_task_id),
    )
    log_action(db, task_id, "created", detail=title, to_status="created")
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its subtasks."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.subtasks = get_subtasks(db, task_id)
    return task


def get_subtasks(db: sqlite3.Connection, parent_task_id: str) -> list[Task]:
    rows = db.execute(
        "SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY created_at ASC, rowid ASC",
        (parent_task_id,),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def list_tasks(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
    unassigned: bool = False,
) -> list[Task]:
    """List tasks with optional filters, oldest first."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)

    if status:
        query += " AND status = ?"
        params.append(status)

    if unassigned:
        query += " AND assigned_worker_id IS NULL"

    query += " ORDER BY created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task | None:
    """Read-modify-write selected task fields. Returns the updated task."""
    if not get_task(db, task_id):
        return None
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
    if not fields:
        return get_task(db, task_id)

    set_parts = [f"{k} = ?" for k in fields]
    set_parts.append("updated_at = datetime('now')")
    values = list(fields.values()) + [task_id]
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    db.commit()
    return get_task(db, task_id)


def append_to_description(
    db: sqlite3.Connection,
    task_id: str,
    heading: str,
    body: str,
    parsed_spec: str | None = None,
) -> Task | None:
    """Append a headed section to the task narrative.

    When ``parsed_spec`` is given it replaces the latest actionable plan.
    """
    task = get_task(db, task_id)
    if not task:
        return None
    description = f"{task.description or ''}\n\n---\n## {heading}\n{body}"
    fields = {"description": description}
    if parsed_spec is not None:
        fields["parsed_spec"] = parsed_spec
    return update_task(db, task_id, **fields)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task and its subtasks."""
    task = get_task(db, task_id)
    if not task:
        return False

    for subtask in task.subtasks:
        delete_task(db, subtask.id)

    db.execute("DELETE FROM task_logs WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


# ── Audit Log ─────────────────────────────────────────────────────────────────


def log_action(
    db: sqlite3.Connection,
    task_id: str,
    action: str,
    worker_id: str | None = None,
    detail: str | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
):
    """Append an immutable audit row. The caller commits."""
    db.execute(
        """INSERT INTO task_logs (task_id, worker_id, action, from_status, to_status, detail)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (task_id, worker_id, action, from_status, to_status, detail),
    )


def record_action(
    db: sqlite3.Connection,
    task_id: str,
    action: str,
    worker_id: str | None = None,
    detail: str | None = None,
):
    """Append an audit row and commit it."""
    log_action(db, task_id, action, worker_id=worker_id, detail=detail)
    db.commit()


def get_task_logs(
    db: sqlite3.Connection,
    task_id: str,
    action: str | None = None,
) -> list[TaskLog]:
    """Get the audit history for a task, oldest first."""
    query = "SELECT * FROM task_logs WHERE task_id = ?"
    params: list = [task_id]
    if action:
        query += " AND action = ?"
        params.append(action)
    query += " ORDER BY id ASC"
    rows = db.execute(query, params).fetchall()
    return [
        TaskLog(
            id=r["id"],
            task_id=r["task_id"],
            worker_id=r["worker_id"],
            action=r["action"],
            from_status=r["from_status"],
            to_status=r["to_status"],
            detail=r["detail"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        parsed_spec=row["parsed_spec"],
        status=row["status"],
        priority=row["priority"] or "medium",
        category=row["category"],
        assigned_worker_id=row["assigned_worker_id"],
        parent_task_id=row["parent_task_id"],
        branch=row["branch"],
        result=row["result"],
        cost_usd=row["cost_usd"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
