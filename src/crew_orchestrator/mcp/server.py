"""MCP server exposing the crew scheduler as tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from crew_orchestrator.config import get_config
from crew_orchestrator.core import memory as memory_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core import workers as workers_mod
from crew_orchestrator.runtime import Runtime, open_runtime


@dataclass
class AppContext:
    runtime: Runtime


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Start the scheduler and its monitors on startup, stop them on shutdown."""
    config = get_config()
    async with open_runtime(config) as runtime:
        yield AppContext(runtime=runtime)


mcp = FastMCP("crew-orchestrator", lifespan=app_lifespan)


def _rt(ctx: Context) -> Runtime:
    """Extract the Runtime from MCP Context."""
    return ctx.request_context.lifespan_context.runtime


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    project: str = "default",
    description: str = "",
    priority: str = "medium",
    category: str | None = None,
    parent_task_id: str | None = None,
) -> dict:
    """Create a new task. Priority: low, medium, high or urgent.
    Category: feature, bug, refactor, test or docs."""
    rt = _rt(ctx)
    try:
        task = tasks_mod.create_task(
            rt.db, title, project, description,
            priority=priority, category=category, parent_task_id=parent_task_id,
        )
    except ValueError as e:
        return {"error": str(e)}
    return _task_to_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    project: str | None = None,
    status: str | None = None,
) -> list[dict]:
    """List tasks, optionally filtered by project and status."""
    rt = _rt(ctx)
    tasks = tasks_mod.list_tasks(rt.db, project, status=status)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task, including its subtasks and workflow phase."""
    rt = _rt(ctx)
    task = tasks_mod.get_task(rt.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    d = _task_to_dict(task)
    state = rt.manager.workflow_state(task_id)
    if state:
        d["workflow_phase"] = state.phase
    return d


@mcp.tool()
def task_logs(ctx: Context, task_id: str, action: str | None = None) -> list[dict]:
    """Read the audit log of a task, oldest first."""
    rt = _rt(ctx)
    return [
        {
            "action": log.action,
            "worker_id": log.worker_id,
            "from_status": log.from_status,
            "to_status": log.to_status,
            "detail": log.detail,
            "created_at": log.created_at.isoformat() if log.created_at else None,
        }
        for log in tasks_mod.get_task_logs(rt.db, task_id, action=action)
    ]


# ── Scheduling Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def list_workers(ctx: Context, role: str | None = None) -> list[dict]:
    """List workers with their current status and queue length."""
    rt = _rt(ctx)
    return [
        {
            "id": w.id,
            "name": w.name,
            "role": w.role,
            "is_active": w.is_active,
            "status": rt.manager.worker_status(w.id),
            "active_task_id": rt.manager.active_task_for(w.id),
            "queued": rt.manager.queued_tasks(w.id),
        }
        for w in workers_mod.list_workers(rt.db, role=role)
    ]


@mcp.tool()
async def assign_task(ctx: Context, task_id: str, worker_id: str) -> dict:
    """Run a task on a specific worker. Queues it if the worker is busy."""
    rt = _rt(ctx)
    if not await rt.manager.assign_task(task_id, worker_id):
        return {"error": f"Could not assign {task_id} to {worker_id}"}
    return _assignment(rt, task_id, worker_id)


@mcp.tool()
async def auto_assign_task(ctx: Context, task_id: str) -> dict:
    """Pick the best worker for a task by category and run it."""
    rt = _rt(ctx)
    if not await rt.manager.auto_assign_task(task_id):
        return {"error": f"No worker could take {task_id}"}
    task = tasks_mod.get_task(rt.db, task_id)
    return _assignment(rt, task_id, task.assigned_worker_id)


@mcp.tool()
async def run_workflow(ctx: Context, task_id: str, tech_lead_id: str | None = None) -> dict:
    """Send a task through the tech lead, architect, developer and QA pipeline."""
    rt = _rt(ctx)
    if not tech_lead_id:
        leads = workers_mod.list_workers(rt.db, active_only=True, role="tech_lead")
        if not leads:
            return {"error": "No active tech lead"}
        tech_lead_id = leads[0].id
    if not await rt.manager.run_workflow(task_id, tech_lead_id):
        return {"error": f"Workflow could not be started for {task_id}"}
    state = rt.manager.workflow_state(task_id)
    return {"task_id": task_id, "phase": state.phase if state else None}


@mcp.tool()
async def cancel_task(ctx: Context, task_id: str) -> dict:
    """Cancel a running task and return it to 'created'."""
    rt = _rt(ctx)
    if not await rt.manager.cancel_task(task_id):
        return {"error": f"Task is not running: {task_id}"}
    return {"task_id": task_id, "cancelled": True}


@mcp.tool()
def active_sessions(ctx: Context) -> list[dict]:
    """List executions currently running."""
    return _rt(ctx).manager.active_sessions()


# ── Memory Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def remember(
    ctx: Context,
    key: str,
    value: str,
    category: str = "general",
    project: str | None = None,
) -> dict:
    """Store a piece of context, decision, or note for later recall."""
    rt = _rt(ctx)
    mem = memory_mod.remember(rt.db, key, value, category, project_id=project)
    return {"key": mem.key, "value": mem.value, "category": mem.category}


@mcp.tool()
def recall(
    ctx: Context,
    query: str | None = None,
    key: str | None = None,
    project: str | None = None,
) -> list[dict]:
    """Recall memories by exact key or full-text search."""
    rt = _rt(ctx)
    if key:
        mem = memory_mod.recall_by_key(rt.db, key, project)
        return [_memory_to_dict(mem)] if mem else []
    if query:
        memories = memory_mod.search_memories(rt.db, query, project_id=project)
    else:
        memories = memory_mod.list_memories(rt.db, project_id=project)
    return [_memory_to_dict(m) for m in memories]


def _memory_to_dict(mem) -> dict:
    d = {"key": mem.key, "value": mem.value, "category": mem.category}
    if mem.worker_id:
        d["worker_id"] = mem.worker_id
    return d


def _task_to_dict(task) -> dict:
    d = {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "project": task.project_id,
        "description": task.description,
    }
    if task.category:
        d["category"] = task.category
    if task.assigned_worker_id:
        d["assigned_worker_id"] = task.assigned_worker_id
    if task.parent_task_id:
        d["parent_task_id"] = task.parent_task_id
    if task.branch:
        d["branch"] = task.branch
    if task.result:
        d["result"] = task.result
    if task.cost_usd is not None:
        d["cost_usd"] = task.cost_usd
    if task.subtasks:
        d["subtasks"] = [_task_to_dict(s) for s in task.subtasks]
    return d


def _assignment(rt: Runtime, task_id: str, worker_id: str | None) -> dict:
    running = worker_id is not None and rt.manager.active_task_for(worker_id) == task_id
    return {"task_id": task_id, "worker_id": worker_id, "state": "running" if running else "queued"}
