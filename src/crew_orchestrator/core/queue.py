"""Per-worker pending-assignment queues."""

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone

from crew_orchestrator.core.tasks import PRIORITY_RANK


@dataclass
class QueueEntry:
    task_id: str
    project_id: str
    priority: str
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Tie-breaker for entries enqueued within the same clock tick.
    seq: int = 0

    @property
    def rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, 1)

    def sort_key(self) -> tuple:
        return (-self.rank, self.enqueued_at, self.seq)


class WorkerQueue:
    """Queues of pending tasks keyed by worker id.

    Each worker's queue is kept ordered by priority rank (highest first),
    then by enqueue time (oldest first). A worker whose queue empties is
    dropped from the map. Not thread-safe: the scheduler serializes access.
    """

    def __init__(self):
        self._queues: dict[str, list[QueueEntry]] = {}
        self._counter = itertools.count()

    def enqueue(self, worker_id: str, task_id: str, project_id: str, priority: str) -> int:
        """Add a task to a worker's queue. Returns its 1-based position."""
        entry = QueueEntry(
            task_id=task_id,
            project_id=project_id,
            priority=priority,
            seq=next(self._counter),
        )
        queue = self._queues.setdefault(worker_id, [])
        queue.append(entry)
        queue.sort(key=QueueEntry.sort_key)
        return queue.index(entry) + 1

    def pop(self, worker_id: str) -> QueueEntry | None:
        queue = self._queues.get(worker_id)
        if not queue:
            return None
        entry = queue.pop(0)
        if not queue:
            del self._queues[worker_id]
        return entry

    def remove_task(self, task_id: str) -> int:
        """Drop every queued entry for a task. Returns how many were removed."""
        removed = 0
        for worker_id in list(self._queues):
            queue = self._queues[worker_id]
            kept = [e for e in queue if e.task_id != task_id]
            removed += len(queue) - len(kept)
            if kept:
                self._queues[worker_id] = kept
            else:
                del self._queues[worker_id]
        return removed

    def worker_for(self, task_id: str) -> str | None:
        """The worker a task is queued for, if any."""
        for worker_id, queue in self._queues.items():
            if any(e.task_id == task_id for e in queue):
                return worker_id
        return None

    def length(self, worker_id: str) -> int:
        return len(self._queues.get(worker_id, []))

    def entries(self, worker_id: str) -> list[QueueEntry]:
        return list(self._queues.get(worker_id, []))

    def workers(self) -> list[str]:
        return list(self._queues)
