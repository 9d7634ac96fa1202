"""Task/worker scheduler.

The Manager owns every piece of in-memory scheduling state: the active
sessions (keyed by task) with their worker reverse index, the per-worker
queues, the retry counters and, through its ``Workflow``, the per-task
pipeline state. All of it is process-local and lives on one event loop;
map mutations happen under ``self._lock`` and never straddle an await.

Executions are launched fire-and-forget. Each one gets a detached runner
whose completion handling decides between the workflow, review, retry,
escalation or failure, and finally releases the worker and drains its
queue.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from crew_orchestrator.config import Config
from crew_orchestrator.core.execution import (
    ExecutionEngine,
    ExecutionHandle,
    ExecutionResult,
    build_task_prompt,
)
from crew_orchestrator.core.lifecycle import can_transition, transition_task
from crew_orchestrator.core.memory import remember_error, remember_result
from crew_orchestrator.core.projects import get_project
from crew_orchestrator.core.queue import WorkerQueue
from crew_orchestrator.core.roles import preferred_roles
from crew_orchestrator.core.tasks import get_task, list_tasks, record_action, update_task
from crew_orchestrator.core.vcs import VersionControl
from crew_orchestrator.core.workers import get_worker, list_workers
from crew_orchestrator.core.workflow import Workflow
from crew_orchestrator.db.models import Task, Worker
from crew_orchestrator.events import EventBus

logger = logging.getLogger(__name__)


class CustomWorkflows(Protocol):
    """Externally managed workflows that may claim a finished task."""

    async def on_task_completed(self, task_id: str, result: str) -> bool: ...


@dataclass
class ActiveSession:
    task_id: str
    worker_id: str
    project_id: str
    handle: ExecutionHandle | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cancelled: bool = False
    # Set once the execution has returned and completion handling started.
    finishing: bool = False


class Manager:
    def __init__(
        self,
        db: sqlite3.Connection,
        engine: ExecutionEngine,
        bus: EventBus | None = None,
        config: Config | None = None,
        vcs: VersionControl | None = None,
        custom_workflows: CustomWorkflows | None = None,
    ):
        self.db = db
        self.engine = engine
        self.bus = bus or EventBus()
        self.config = config or Config()
        self.vcs = vcs or VersionControl(db, self.bus)
        self.custom_workflows = custom_workflows
        self.workflow = Workflow(self)

        self._sessions: dict[str, ActiveSession] = {}
        self._worker_sessions: dict[str, ActiveSession] = {}
        self._queue = WorkerQueue()
        self._retry_counts: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    # ── Introspection ────────────────────────────────────────────────────────

    def is_worker_busy(self, worker_id: str) -> bool:
        return worker_id in self._worker_sessions

    def active_task_for(self, worker_id: str) -> str | None:
        session = self._worker_sessions.get(worker_id)
        return session.task_id if session else None

    def worker_status(self, worker_id: str) -> str:
        return "running" if self.is_worker_busy(worker_id) else "idle"

    def active_sessions(self) -> list[dict]:
        return [
            {
                "task_id": s.task_id,
                "worker_id": s.worker_id,
                "project_id": s.project_id,
                "started_at": s.started_at.isoformat(),
            }
            for s in self._sessions.values()
        ]

    def has_session(self, task_id: str) -> bool:
        return task_id in self._sessions

    def queue_length(self, worker_id: str) -> int:
        return self._queue.length(worker_id)

    def queued_tasks(self, worker_id: str) -> list[str]:
        return [e.task_id for e in self._queue.entries(worker_id)]

    def is_queued(self, task_id: str) -> bool:
        return self._queue.worker_for(task_id) is not None

    def retry_count(self, task_id: str) -> int:
        return self._retry_counts.get(task_id, 0)

    def workflow_state(self, task_id: str):
        return self.workflow.state(task_id)

    # ── Assignment ───────────────────────────────────────────────────────────

    async def assign_task(self, task_id: str, worker_id: str) -> bool:
        """Start ``task_id`` on ``worker_id``, or queue it if the worker is busy.

        Returns False when nothing happened (missing task, worker or
        project, inactive worker, a status that cannot move to
        ``in_progress``, or the task already running elsewhere).
        """
        task = get_task(self.db, task_id)
        if not task:
            logger.warning("Task %s not found", task_id)
            return False
        worker = get_worker(self.db, worker_id)
        if not worker:
            logger.warning("Worker %s not found", worker_id)
            return False
        if not worker.is_active:
            logger.warning("Worker %s is inactive, cannot assign task %s", worker.name, task_id)
            return False
        project = get_project(self.db, task.project_id)
        if not project:
            logger.warning("Project %s not found for task %s", task.project_id, task_id)
            return False
        if task.status != "in_progress" and not can_transition(task.status, "in_progress"):
            logger.warning("Task %s cannot start from status %s", task_id, task.status)
            return False

        async with self._lock:
            current = self._sessions.get(task_id)
            if current is not None and not current.finishing:
                logger.warning("Task %s is already running on %s", task_id, current.worker_id)
                return False
            if worker_id in self._worker_sessions:
                self._enqueue(task, worker_id)
                return True
            session = ActiveSession(task_id=task_id, worker_id=worker_id, project_id=task.project_id)
            self._sessions[task_id] = session
            self._worker_sessions[worker_id] = session

        try:
            await self.vcs.prepare_branch(task_id)
            if session.cancelled:
                logger.info("Task %s was cancelled before it started", task_id)
                self._spawn(self._drain(worker_id))
                return False

            task = get_task(self.db, task_id)
            if task.status != "in_progress" and not transition_task(
                self.db, task_id, "in_progress",
                worker_id=worker_id, note=f"Assigned to {worker.name}", bus=self.bus,
            ):
                logger.warning("Task %s cannot start from status %s", task_id, task.status)
                async with self._lock:
                    self._remove(session)
                self._spawn(self._drain(worker_id))
                return False
            update_task(self.db, task_id, assigned_worker_id=worker_id)
            task = get_task(self.db, task_id)
            prompt = build_task_prompt(self.db, task, worker)
            session.handle = self.engine.start(worker, prompt, project.path)
        except Exception:
            logger.exception("Failed to start task %s on %s", task_id, worker_id)
            async with self._lock:
                self._remove(session)
            transition_task(
                self.db, task_id, "created",
                worker_id=worker_id, note="Execution could not be started", bus=self.bus,
            )
            self._spawn(self._drain(worker_id))
            return False

        record_action(
            self.db, task_id, "agent_assigned",
            worker_id=worker_id, detail=f"{worker.name} started working",
        )
        self.bus.emit("agent:status", {
            "worker_id": worker_id,
            "project_id": task.project_id,
            "status": "running",
            "task_id": task_id,
        })
        logger.info("Task %s started on %s (%s)", task_id, worker.name, worker.role)
        self._spawn(self._run_session(session, worker))
        return True

    async def auto_assign_task(self, task_id: str) -> bool:
        """Pick a worker for the task by category preference and assign it."""
        task = get_task(self.db, task_id)
        if not task:
            logger.warning("Task %s not found", task_id)
            return False

        workers = list_workers(self.db, active_only=True)
        if not workers:
            logger.warning("No active workers available for task %s", task_id)
            return False

        worker = self.select_worker(task, workers)
        logger.info(
            "Auto-assigning task %s (category: %s) to %s (%s)",
            task_id, task.category or "none", worker.name, worker.role,
        )
        return await self.assign_task(task_id, worker.id)

    def select_worker(self, task: Task, workers: list[Worker]) -> Worker:
        """Idle preferred role, then any idle worker, then busy preferred role, then the first."""
        roles = preferred_roles(task.category)

        for role in roles:
            for w in workers:
                if w.role == role and not self.is_worker_busy(w.id):
                    return w

        for w in workers:
            if not self.is_worker_busy(w.id):
                return w

        for role in roles:
            for w in workers:
                if w.role == role:
                    return w

        return workers[0]

    async def run_workflow(self, task_id: str, tech_lead_id: str) -> bool:
        return await self.workflow.start(task_id, tech_lead_id)

    def _enqueue(self, task: Task, worker_id: str) -> int:
        self._queue.remove_task(task.id)
        position = self._queue.enqueue(worker_id, task.id, task.project_id, task.priority)
        record_action(
            self.db, task.id, "queued",
            worker_id=worker_id,
            detail=f"Queued at position {position} (priority: {task.priority})",
        )
        self.bus.emit("task:queued", {
            "task_id": task.id,
            "worker_id": worker_id,
            "project_id": task.project_id,
            "queue_position": position,
        })
        logger.info(
            "Task %s queued for %s (position %d, priority: %s)",
            task.id, worker_id, position, task.priority,
        )
        return position

    async def _drain(self, worker_id: str) -> bool:
        """Start the next queued task for a worker, skipping entries that cannot start."""
        while True:
            async with self._lock:
                if worker_id in self._worker_sessions:
                    return False
                entry = self._queue.pop(worker_id)
            if entry is None:
                return False
            logger.info(
                "Processing queued task %s for %s (priority: %s)",
                entry.task_id, worker_id, entry.priority,
            )
            if await self.assign_task(entry.task_id, worker_id):
                return True

    # ── Cancellation ─────────────────────────────────────────────────────────

    async def cancel_task(self, task_id: str) -> bool:
        """Stop a running task and put it back to ``created``."""
        session = await self._evict(task_id)
        if session is None:
            logger.warning("No active session for task %s", task_id)
            return False

        self.workflow.discard(task_id)
        transition_task(self.db, task_id, "created", note="Task cancelled by user", bus=self.bus)
        self.bus.emit("agent:status", {
            "worker_id": session.worker_id,
            "project_id": session.project_id,
            "status": "idle",
            "task_id": None,
        })
        logger.info("Task %s cancelled", task_id)
        return True

    async def evict(self, task_id: str) -> bool:
        """Drop a task's session and cancel its execution, leaving status alone."""
        session = await self._evict(task_id)
        if session is None:
            return False
        self.workflow.discard(task_id)
        return True

    async def _evict(self, task_id: str) -> ActiveSession | None:
        async with self._lock:
            session = self._sessions.get(task_id)
            if session is None or session.finishing:
                return None
            session.cancelled = True
            self._remove(session)
        self._retry_counts.pop(task_id, None)
        if session.handle is not None:
            session.handle.cancel()
        return session

    def _remove(self, session: ActiveSession) -> None:
        """Remove a session from both indexes. Safe to call twice."""
        if self._sessions.get(session.task_id) is session:
            del self._sessions[session.task_id]
        if self._worker_sessions.get(session.worker_id) is session:
            del self._worker_sessions[session.worker_id]

    # ── Completion handling ──────────────────────────────────────────────────

    async def _run_session(self, session: ActiveSession, worker: Worker) -> None:
        retry = False
        try:
            try:
                result = await session.handle.wait()
            except Exception as e:
                logger.exception("Execution crashed for task %s", session.task_id)
                result = ExecutionResult(is_error=True, errors=[str(e) or type(e).__name__])

            session.finishing = True
            if session.cancelled:
                logger.info("Ignoring result of cancelled session for task %s", session.task_id)
                return

            if result.is_error:
                retry = await self._handle_failure(session, worker, result)
            else:
                await self._handle_success(session, worker, result)
        except Exception:
            logger.exception("Completion handling failed for task %s", session.task_id)
        finally:
            async with self._lock:
                self._remove(session)
            if not session.cancelled:
                self.bus.emit("agent:status", {
                    "worker_id": session.worker_id,
                    "project_id": session.project_id,
                    "status": "idle",
                    "task_id": None,
                })
            if retry:
                self._spawn(self._retry_later(session.task_id, session.worker_id))
            elif self.retry_count(session.task_id) == 0:
                await self._drain(session.worker_id)

    async def _handle_success(self, session: ActiveSession, worker: Worker, result: ExecutionResult) -> None:
        task_id = session.task_id
        self._retry_counts.pop(task_id, None)
        self._spawn(self.vcs.after_success(task_id, session.worker_id))

        claimed = False
        if self.custom_workflows is not None:
            try:
                claimed = await self.custom_workflows.on_task_completed(task_id, result.result_text)
            except Exception:
                logger.exception("Custom workflow failed to handle task %s", task_id)
        if not claimed:
            claimed = await self.workflow.advance(task_id, result.result_text)
        if not claimed:
            transition_task(
                self.db, task_id, "review",
                worker_id=session.worker_id, note="Worker completed work", bus=self.bus,
            )

        task = get_task(self.db, task_id)
        if not task:
            return
        update_task(
            self.db, task_id,
            result=result.result_text or None,
            cost_usd=(task.cost_usd or 0.0) + result.cost,
        )
        logger.info("Task %s completed by %s ($%.4f)", task_id, worker.name, result.cost)

        try:
            if result.result_text:
                remember_result(
                    self.db, task_id, task.title, result.result_text,
                    project_id=task.project_id, worker_id=session.worker_id,
                )
        except sqlite3.Error:
            logger.warning("Failed to store result memory for task %s", task_id, exc_info=True)

    async def _handle_failure(self, session: ActiveSession, worker: Worker, result: ExecutionResult) -> bool:
        """Apply the retry policy. Returns True when a retry is pending."""
        task_id = session.task_id
        attempt = self.retry_count(task_id)
        max_retries = self.config.max_retries
        errors = "; ".join(result.errors) or "Unknown error"

        record_action(
            self.db, task_id, "agent_error",
            worker_id=session.worker_id,
            detail=f"{errors} (attempt {attempt + 1}/{max_retries + 1})",
        )

        if attempt < max_retries:
            self._retry_counts[task_id] = attempt + 1
            logger.info(
                "Retrying task %s on %s in %.1fs (attempt %d/%d)",
                task_id, worker.name, self.config.retry_delay, attempt + 2, max_retries + 1,
            )
            return True

        self._retry_counts.pop(task_id, None)
        if await self.workflow.escalate(task_id, errors):
            return False

        self.workflow.discard(task_id)
        transition_task(
            self.db, task_id, "failed",
            worker_id=session.worker_id, note="Max retries exceeded", bus=self.bus,
        )
        logger.warning("Task %s failed after %d attempts", task_id, max_retries + 1)

        task = get_task(self.db, task_id)
        if task:
            try:
                remember_error(
                    self.db, task_id, task.title, errors,
                    project_id=task.project_id, worker_id=session.worker_id,
                )
            except sqlite3.Error:
                logger.warning("Failed to store error memory for task %s", task_id, exc_info=True)
        return False

    async def _retry_later(self, task_id: str, worker_id: str) -> None:
        await asyncio.sleep(self.config.retry_delay)
        if await self.assign_task(task_id, worker_id):
            return

        # The retry could not even start: give up on the task and free the worker.
        self._retry_counts.pop(task_id, None)
        self.workflow.discard(task_id)
        transition_task(self.db, task_id, "failed", worker_id=worker_id, note="Retry could not be started", bus=self.bus)
        await self._drain(worker_id)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def reconcile(self) -> list[str]:
        """Return orphaned in-progress tasks to ``created`` after a restart."""
        recovered = []
        for task in list_tasks(self.db, status="in_progress"):
            if task.id in self._sessions:
                continue
            update_task(self.db, task.id, assigned_worker_id=None)
            if transition_task(
                self.db, task.id, "created",
                note="No active session after restart, ready for re-assignment", bus=self.bus,
            ):
                recovered.append(task.id)
        if recovered:
            logger.info("Reconciled %d orphaned task(s): %s", len(recovered), ", ".join(recovered))
        return recovered

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until no execution, retry or side effect is in flight."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every running execution and background job."""
        for session in list(self._sessions.values()):
            session.cancelled = True
            if session.handle is not None:
                session.handle.cancel()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        self._sessions.clear()
        self._worker_sessions.clear()
