"""Worker registry operations."""

import json
import sqlite3
from datetime import datetime

from crew_orchestrator.core.roles import ROLES
from crew_orchestrator.core.tasks import slugify
from crew_orchestrator.db.models import Worker


def create_worker(
    db: sqlite3.Connection,
    name: str,
    role: str,
    model: str = "sonnet",
    permission_mode: str = "acceptEdits",
    allowed_tools: list[str] | None = None,
    system_prompt: str = "",
    max_turns: int | None = None,
    worker_id: str | None = None,
) -> Worker:
    """Register a new worker identity."""
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role} (expected one of {', '.join(ROLES)})")
    wid = worker_id or slugify(name)
    if get_worker(db, wid):
        raise ValueError(f"Worker already exists: {wid}")

    db.execute(
        """INSERT INTO workers
           (id, name, role, model, permission_mode, allowed_tools, system_prompt, max_turns)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            wid, name, role, model, permission_mode,
            json.dumps(allowed_tools or []), system_prompt, max_turns,
        ),
    )
    db.commit()
    return get_worker(db, wid)


def get_worker(db: sqlite3.Connection, worker_id: str) -> Worker | None:
    """Get a worker by ID."""
    row = db.execute("SELECT * FROM workers WHERE id = ?", (worker_id,)).fetchone()
    if not row:
        return None
    return _row_to_worker(row)


def list_workers(
    db: sqlite3.Connection,
    active_only: bool = False,
    role: str | None = None,
) -> list[Worker]:
    """List workers in registration order."""
    query = "SELECT * FROM workers WHERE 1=1"
    params: list = []
    if active_only:
        query += " AND is_active = 1"
    if role:
        query += " AND role = ?"
        params.append(role)
    query += " ORDER BY created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_worker(r) for r in rows]


def set_worker_active(db: sqlite3.Connection, worker_id: str, active: bool) -> Worker | None:
    """Activate or deactivate a worker."""
    if not get_worker(db, worker_id):
        return None
    db.execute(
        "UPDATE workers SET is_active = ?, updated_at = datetime('now') WHERE id = ?",
        (1 if active else 0, worker_id),
    )
    db.commit()
    return get_worker(db, worker_id)


def _row_to_worker(row: sqlite3.Row) -> Worker:
    return Worker(
        id=row["id"],
        name=row["name"],
        role=row["role"],
        is_active=bool(row["is_active"]),
        model=row["model"],
        permission_mode=row["permission_mode"],
        allowed_tools=json.loads(row["allowed_tools"] or "[]"),
        system_prompt=row["system_prompt"] or "",
        max_turns=row["max_turns"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
