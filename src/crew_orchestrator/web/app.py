"""JSON API over the scheduler, served by uvicorn."""

from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from crew_orchestrator.config import Config, get_config
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core import workers as workers_mod
from crew_orchestrator.core.execution import ExecutionEngine
from crew_orchestrator.runtime import Runtime, open_runtime


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_health(request: Request):
    rt = _runtime(request)
    return JSONResponse({
        "status": "ok",
        "active_sessions": len(rt.manager.active_sessions()),
        "timeout_monitor": rt.timeout_monitor.running,
        "watcher": rt.watcher.running,
    })


async def api_list_workers(request: Request):
    rt = _runtime(request)
    workers = workers_mod.list_workers(rt.db)
    return JSONResponse([_worker_dict(rt, w) for w in workers])


async def api_list_tasks(request: Request):
    rt = _runtime(request)
    tasks = tasks_mod.list_tasks(
        rt.db,
        project_id=request.query_params.get("project"),
        status=request.query_params.get("status"),
    )
    return JSONResponse([_task_dict(t) for t in tasks])


async def api_get_task(request: Request):
    rt = _runtime(request)
    task_id = request.path_params["task_id"]
    task = tasks_mod.get_task(rt.db, task_id)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    td = _task_dict(task)
    td["logs"] = [_log_dict(log) for log in tasks_mod.get_task_logs(rt.db, task_id)]
    state = rt.manager.workflow_state(task_id)
    td["workflow_phase"] = state.phase if state else None
    td["running"] = rt.manager.has_session(task_id)
    if task.subtasks:
        td["subtasks"] = [_task_dict(s) for s in task.subtasks]
    return JSONResponse(td)


async def api_assign_task(request: Request):
    rt = _runtime(request)
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    worker_id = body.get("worker_id")
    if not worker_id:
        return JSONResponse({"error": "worker_id is required"}, status_code=400)
    if not tasks_mod.get_task(rt.db, task_id):
        return JSONResponse({"error": "Task not found"}, status_code=404)
    if not workers_mod.get_worker(rt.db, worker_id):
        return JSONResponse({"error": "Worker not found"}, status_code=404)

    if not await rt.manager.assign_task(task_id, worker_id):
        return JSONResponse({"error": "Assignment rejected"}, status_code=409)
    return JSONResponse(_assignment_dict(rt, task_id, worker_id), status_code=202)


async def api_auto_assign_task(request: Request):
    rt = _runtime(request)
    task_id = request.path_params["task_id"]
    if not tasks_mod.get_task(rt.db, task_id):
        return JSONResponse({"error": "Task not found"}, status_code=404)
    if not await rt.manager.auto_assign_task(task_id):
        return JSONResponse({"error": "No worker could take the task"}, status_code=409)
    task = tasks_mod.get_task(rt.db, task_id)
    return JSONResponse(_assignment_dict(rt, task_id, task.assigned_worker_id), status_code=202)


async def api_run_workflow(request: Request):
    rt = _runtime(request)
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    if not tasks_mod.get_task(rt.db, task_id):
        return JSONResponse({"error": "Task not found"}, status_code=404)

    tech_lead_id = body.get("tech_lead_id")
    if not tech_lead_id:
        leads = workers_mod.list_workers(rt.db, active_only=True, role="tech_lead")
        if not leads:
            return JSONResponse({"error": "No active tech lead"}, status_code=409)
        tech_lead_id = leads[0].id

    if not await rt.manager.run_workflow(task_id, tech_lead_id):
        return JSONResponse({"error": "Workflow could not be started"}, status_code=409)
    state = rt.manager.workflow_state(task_id)
    return JSONResponse(
        {"task_id": task_id, "tech_lead_id": tech_lead_id, "phase": state.phase if state else None},
        status_code=202,
    )


async def api_cancel_task(request: Request):
    rt = _runtime(request)
    task_id = request.path_params["task_id"]
    if not tasks_mod.get_task(rt.db, task_id):
        return JSONResponse({"error": "Task not found"}, status_code=404)
    if not await rt.manager.cancel_task(task_id):
        return JSONResponse({"error": "Task is not running"}, status_code=409)
    return JSONResponse({"task_id": task_id, "cancelled": True})


async def api_sessions(request: Request):
    rt = _runtime(request)
    return JSONResponse(rt.manager.active_sessions())


# ── Serialization ─────────────────────────────────────────────────────────────


def _worker_dict(rt: Runtime, w) -> dict:
    return {
        "id": w.id,
        "name": w.name,
        "role": w.role,
        "is_active": w.is_active,
        "model": w.model,
        "status": rt.manager.worker_status(w.id),
        "active_task_id": rt.manager.active_task_for(w.id),
        "queue_length": rt.manager.queue_length(w.id),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "project_id": t.project_id,
        "title": t.title,
        "status": t.status,
        "priority": t.priority,
        "category": t.category,
        "description": t.description,
        "parsed_spec": t.parsed_spec,
        "assigned_worker_id": t.assigned_worker_id,
        "parent_task_id": t.parent_task_id,
        "branch": t.branch,
        "result": t.result,
        "cost_usd": t.cost_usd,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
        "completed_at": t.completed_at.isoformat() if t.completed_at else None,
    }


def _log_dict(log) -> dict:
    return {
        "id": log.id,
        "action": log.action,
        "worker_id": log.worker_id,
        "from_status": log.from_status,
        "to_status": log.to_status,
        "detail": log.detail,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }


def _assignment_dict(rt: Runtime, task_id: str, worker_id: str | None) -> dict:
    running = rt.manager.active_task_for(worker_id) == task_id if worker_id else False
    return {
        "task_id": task_id,
        "worker_id": worker_id,
        "state": "running" if running else "queued",
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    engine: ExecutionEngine | None = None,
    monitors: bool = True,
) -> Starlette:
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        async with open_runtime(config, engine=engine, monitors=monitors, watch=monitors) as rt:
            app.state.runtime = rt
            yield

    routes = [
        Route("/api/health", api_health),
        Route("/api/workers", api_list_workers),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/tasks/{task_id}/assign", api_assign_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/auto-assign", api_auto_assign_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/workflow", api_run_workflow, methods=["POST"]),
        Route("/api/tasks/{task_id}/cancel", api_cancel_task, methods=["POST"]),
        Route("/api/sessions", api_sessions),
    ]
    return Starlette(routes=routes, lifespan=lifespan)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
