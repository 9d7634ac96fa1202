"""Task status transitions: the legal-edge table, the audited transition and
subtask aggregation."""

import logging
import sqlite3

from crew_orchestrator.core.tasks import get_subtasks, get_task, log_action
from crew_orchestrator.events import EventBus

logger = logging.getLogger(__name__)

STATUSES = (
    "created", "assigned", "in_progress", "review",
    "changes_requested", "done", "blocked", "failed",
)

TASK_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "created": ("assigned", "in_progress"),
    "assigned": ("in_progress", "blocked"),
    "in_progress": ("review", "blocked", "failed", "created"),
    "review": ("done", "changes_requested", "created"),
    "changes_requested": ("in_progress", "created"),
    "done": (),
    "blocked": ("created", "assigned"),
    "failed": ("created",),
}

# A subtask in one of these states counts as finished for its parent.
SUBTASK_COMPLETE = ("done", "review")


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in TASK_TRANSITIONS.get(from_status, ())


def transition_task(
    db: sqlite3.Connection,
    task_id: str,
    new_status: str,
    worker_id: str | None = None,
    note: str | None = None,
    bus: EventBus | None = None,
) -> bool:
    """Move a task to ``new_status`` if the edge is legal.

    Returns False without touching the task when it does not exist or the
    edge is illegal. On success the status change is persisted together
    with an audit row, a ``task:status`` event is published and, for
    subtasks reaching a finished state, the parent is re-evaluated.
    """
    task = get_task(db, task_id)
    if not task:
        logger.warning("Task %s not found for transition", task_id)
        return False

    old_status = task.status
    if not can_transition(old_status, new_status):
        logger.warning(
            "Invalid transition %s -> %s for task %s", old_status, new_status, task_id
        )
        return False

    if new_status == "done":
        db.execute(
            """UPDATE tasks SET status = ?, completed_at = datetime('now'),
                   updated_at = datetime('now') WHERE id = ?""",
            (new_status, task_id),
        )
    else:
        db.execute(
            "UPDATE tasks SET status = ?, updated_at = datetime('now') WHERE id = ?",
            (new_status, task_id),
        )
    log_action(
        db, task_id, "status_change",
        worker_id=worker_id, detail=note,
        from_status=old_status, to_status=new_status,
    )
    db.commit()

    logger.info("Task %s: %s -> %s (%s)", task_id, old_status, new_status, note or "")

    if bus is not None:
        bus.emit("task:status", {"task_id": task_id, "status": new_status, "worker_id": worker_id})

    if task.parent_task_id and new_status in SUBTASK_COMPLETE:
        try:
            check_subtask_completion(db, task.parent_task_id, bus)
        except Exception:
            logger.exception("Failed to check subtask completion for %s", task.parent_task_id)

    return True


def check_subtask_completion(
    db: sqlite3.Connection,
    parent_task_id: str,
    bus: EventBus | None = None,
) -> bool:
    """Advance an in-progress parent to review once every subtask is finished.

    A parent without subtasks is never advanced. Returns True when the
    parent moved.
    """
    subtasks = get_subtasks(db, parent_task_id)
    if not subtasks:
        return False

    if not all(st.status in SUBTASK_COMPLETE for st in subtasks):
        return False

    parent = get_task(db, parent_task_id)
    if not parent or parent.status != "in_progress":
        return False

    logger.info(
        "All %d subtasks completed for parent %s, moving to review",
        len(subtasks), parent_task_id,
    )
    return transition_task(db, parent_task_id, "review", note="All subtasks completed", bus=bus)
