"""Background monitors running on the scheduler's event loop."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from crew_orchestrator.core.lifecycle import transition_task
from crew_orchestrator.core.manager import Manager
from crew_orchestrator.core.tasks import list_tasks, record_action
from crew_orchestrator.core.workers import list_workers

logger = logging.getLogger(__name__)


class PeriodicMonitor:
    """Runs ``tick()`` immediately on start and then every ``interval`` seconds."""

    name = "monitor"

    def __init__(self, manager: Manager, interval: float):
        self.manager = manager
        self.interval = interval
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    def start(self):
        """Start the monitor loop on the running event loop."""
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.info("%s started (every %ss)", self.name, self.interval)

    async def stop(self):
        """Signal the loop to stop and wait for it."""
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("%s stopped", self.name)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self):
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Error in %s loop", self.name)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def tick(self):
        raise NotImplementedError


class TimeoutMonitor(PeriodicMonitor):
    """Fails tasks that have sat in ``in_progress`` for longer than ``timeout`` seconds."""

    name = "timeout-monitor"

    def __init__(self, manager: Manager, timeout: float | None = None, interval: float | None = None):
        config = manager.config
        super().__init__(manager, config.timeout_interval if interval is None else interval)
        self.timeout = config.task_timeout if timeout is None else timeout

    async def tick(self):
        await self.sweep()

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Fail every stale in-progress task. Returns the ids that timed out."""
        db = self.manager.db
        # Task timestamps are naive UTC, as written by sqlite's datetime('now').
        now = now or datetime.now(timezone.utc).replace(tzinfo=None)
        cutoff = now - timedelta(seconds=self.timeout)
        note = f"Task timed out after {int(self.timeout // 60)} minutes"

        timed_out = []
        for task in list_tasks(db, status="in_progress"):
            if task.updated_at is None or task.updated_at >= cutoff:
                continue
            if await self.manager.evict(task.id):
                logger.info("Cancelled execution of timed-out task %s", task.id)
            if transition_task(db, task.id, "failed", note=note, bus=self.manager.bus):
                record_action(db, task.id, "timeout", detail=note)
                timed_out.append(task.id)
                logger.warning("Task %s timed out (last update %s)", task.id, task.updated_at)
        return timed_out


class TaskWatcher(PeriodicMonitor):
    """Launches the workflow for new, unassigned tasks with the first active tech lead."""

    name = "task-watcher"

    def __init__(self, manager: Manager, interval: float | None = None):
        super().__init__(manager, manager.config.watch_interval if interval is None else interval)
        self._processing: set[str] = set()

    async def tick(self):
        await self.poll()

    async def poll(self) -> list[str]:
        """Start workflows for pending tasks. Returns the ids that were launched."""
        db = self.manager.db
        pending = [
            t for t in list_tasks(db, status="created", unassigned=True)
            if t.id not in self._processing
            and self.manager.workflow_state(t.id) is None
            and not self.manager.has_session(t.id)
            and not self.manager.is_queued(t.id)
        ]
        if not pending:
            return []

        tech_leads = list_workers(db, active_only=True, role="tech_lead")
        if not tech_leads:
            logger.warning("%d new task(s) waiting but no active tech lead", len(pending))
            return []
        tech_lead = tech_leads[0]

        launched = []
        for task in pending:
            self._processing.add(task.id)
            try:
                if await self.manager.run_workflow(task.id, tech_lead.id):
                    launched.append(task.id)
            except Exception:
                logger.exception("Failed to launch workflow for task %s", task.id)
            finally:
                self._processing.discard(task.id)
        return launched
