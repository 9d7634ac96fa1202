"""CLI entry point for the crew orchestrator."""

import asyncio
import json
import logging
import os
import sys

import click

from crew_orchestrator.config import get_config
from crew_orchestrator.core import memory as memory_mod
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core import workers as workers_mod
from crew_orchestrator.core.execution import ClaudeCliEngine
from crew_orchestrator.core.lifecycle import STATUSES, transition_task
from crew_orchestrator.core.roles import CATEGORIES, ROLES
from crew_orchestrator.db.engine import get_db
from crew_orchestrator.runtime import open_runtime


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.option("--log-level", default=None, help="Logging level (default: CREW_LOG_LEVEL or INFO)")
def main(log_level):
    """crew - Crew Orchestrator CLI"""
    level = (log_level or get_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--path", "project_path", default=".", help="Path to the project's working copy")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--slack-channel", default=None, help="Slack channel for notifications")
def init_project(project_name, project_path, branch, slack_channel):
    """Initialize a new project."""
    project_path = os.path.abspath(project_path)
    project_id = tasks_mod.slugify(project_name)

    with _get_db() as db:
        if projects_mod.get_project(db, project_id):
            _fail(f"Project already exists: {project_id}")
        project = projects_mod.create_project(
            db, project_id, project_name, project_path, branch, slack_channel
        )
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Path: {project.path}")
        click.echo(f"  Branch: {project.default_branch}")


@main.group("integration")
def integration_group():
    """Configure project integrations."""
    pass


@integration_group.command("git")
@click.argument("project")
@click.option("--auto-create-branch/--no-auto-create-branch", default=False, help="Create a branch per task")
@click.option("--default-branch", default=None, help="Base branch (defaults to the project's)")
@click.option("--auto-commit/--no-auto-commit", default=False, help="Commit after each successful run")
@click.option("--push-on-commit/--no-push-on-commit", default=False, help="Push after auto-commit")
@click.option("--auto-pr/--no-auto-pr", default=False, help="Open a PR after pushing")
def integration_git(project, auto_create_branch, default_branch, auto_commit, push_on_commit, auto_pr):
    """Set the git automation config of a project."""
    with _get_db() as db:
        project_obj = projects_mod.get_project(db, project)
        if not project_obj:
            _fail(f"Project not found: {project}")
        config = {
            "autoCreateBranch": auto_create_branch,
            "defaultBranch": default_branch or project_obj.default_branch,
            "autoCommit": auto_commit,
            "pushOnCommit": push_on_commit,
            "autoPR": auto_pr,
        }
        projects_mod.set_integration(db, project, "git", config)
        click.echo(f"Git integration for {project}:")
        for key, value in config.items():
            click.echo(f"  {key}: {value}")


# ── Worker Commands ───────────────────────────────────────────────────────────


@main.group("worker")
def worker_group():
    """Manage workers."""
    pass


@worker_group.command("add")
@click.argument("name")
@click.option("--role", "-r", required=True, type=click.Choice(ROLES), help="Worker role")
@click.option("--model", default="sonnet", help="Model passed to the execution engine")
@click.option("--permission-mode", default="acceptEdits", help="Tool permission mode")
@click.option("--allowed-tools", default=None, help="Comma-separated tool allow-list")
@click.option("--system-prompt", default="", help="Extra instructions appended to the role prompt")
@click.option("--max-turns", type=int, default=None, help="Turn limit per run")
def worker_add(name, role, model, permission_mode, allowed_tools, system_prompt, max_turns):
    """Register a worker."""
    tools = [t.strip() for t in allowed_tools.split(",") if t.strip()] if allowed_tools else []
    with _get_db() as db:
        try:
            worker = workers_mod.create_worker(
                db, name, role,
                model=model,
                permission_mode=permission_mode,
                allowed_tools=tools,
                system_prompt=system_prompt,
                max_turns=max_turns,
            )
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Created worker: {worker.id} ({worker.role})")


@worker_group.command("list")
@click.option("--role", default=None, type=click.Choice(ROLES), help="Filter by role")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def worker_list(role, json_output):
    """List workers."""
    with _get_db() as db:
        workers = workers_mod.list_workers(db, role=role)

        if json_output:
            click.echo(json.dumps([_worker_dict(w) for w in workers], indent=2))
            return

        if not workers:
            click.echo("No workers found.")
            return

        for w in workers:
            state = "active" if w.is_active else "inactive"
            click.echo(f"  {w.id}: {w.name} [{w.role}] ({state}, model: {w.model})")


@worker_group.command("activate")
@click.argument("worker_id")
def worker_activate(worker_id):
    """Allow a worker to take tasks."""
    with _get_db() as db:
        if not workers_mod.set_worker_active(db, worker_id, True):
            _fail(f"Worker not found: {worker_id}")
        click.echo(f"Activated {worker_id}")


@worker_group.command("deactivate")
@click.argument("worker_id")
def worker_deactivate(worker_id):
    """Stop a worker from taking new tasks."""
    with _get_db() as db:
        if not workers_mod.set_worker_active(db, worker_id, False):
            _fail(f"Worker not found: {worker_id}")
        click.echo(f"Deactivated {worker_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", default="medium", type=click.Choice(tasks_mod.PRIORITIES))
@click.option("--category", "-c", default=None, type=click.Choice(CATEGORIES))
@click.option("--parent", default=None, help="Parent task ID")
def task_add(title, project, description, priority, category, parent):
    """Create a new task."""
    config = get_config()
    with _get_db() as db:
        projects_mod.ensure_default_project(db, str(config.repo_path))
        try:
            task = tasks_mod.create_task(
                db, title, project, description,
                priority=priority, category=category, parent_task_id=parent,
            )
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        if task.category:
            click.echo(f"  Category: {task.category}")
        click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--project", default=None, help="Project ID")
@click.option("--status", default=None, type=click.Choice(STATUSES), help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "created": "○",
            "assigned": "◐",
            "in_progress": "●",
            "review": "◎",
            "changes_requested": "↺",
            "done": "✓",
            "blocked": "✗",
            "failed": "✗",
        }

        for task in tasks:
            if task.parent_task_id:
                continue
            icon = status_icons.get(task.status, "?")
            worker = f" [{task.assigned_worker_id}]" if task.assigned_worker_id else ""
            click.echo(f"  {icon} {task.priority:<6} {task.id}: {task.title} ({task.status}){worker}")

            for sub in tasks_mod.get_subtasks(db, task.id):
                sub_icon = status_icons.get(sub.status, "?")
                click.echo(f"    {sub_icon} {sub.priority:<6} {sub.id}: {sub.title} ({sub.status})")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        if task.category:
            click.echo(f"  Category: {task.category}")
        if task.assigned_worker_id:
            click.echo(f"  Worker: {task.assigned_worker_id}")
        if task.branch:
            click.echo(f"  Branch: {task.branch}")
        if task.cost_usd is not None:
            click.echo(f"  Cost: ${task.cost_usd:.4f}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.result:
            click.echo(f"  Result: {task.result}")
        if task.subtasks:
            click.echo("  Subtasks:")
            for sub in task.subtasks:
                click.echo(f"    - {sub.id}: {sub.title} ({sub.status})")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")


@task_group.command("logs")
@click.argument("task_id")
@click.option("--action", default=None, help="Only show one action type")
def task_logs(task_id, action):
    """Show the audit log of a task."""
    with _get_db() as db:
        if not tasks_mod.get_task(db, task_id):
            _fail(f"Task not found: {task_id}")
        for log in tasks_mod.get_task_logs(db, task_id, action=action):
            change = f" {log.from_status} -> {log.to_status}" if log.to_status else ""
            who = f" by {log.worker_id}" if log.worker_id else ""
            detail = f": {log.detail}" if log.detail else ""
            click.echo(f"  [{log.created_at}] {log.action}{change}{who}{detail}")


@task_group.command("transition")
@click.argument("task_id")
@click.argument("status", type=click.Choice(STATUSES))
@click.option("--note", default=None, help="Reason recorded in the audit log")
def task_transition(task_id, status, note):
    """Move a task to another status (approve, reject, unblock...)."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")
        if not transition_task(db, task_id, status, note=note):
            _fail(f"Cannot move {task_id} from {task.status} to {status}")
        click.echo(f"{task_id}: {task.status} -> {status}")


@task_group.command("run")
@click.argument("task_id")
@click.option("--worker", "worker_id", default=None, help="Run on this worker")
@click.option("--auto", "auto", is_flag=True, help="Pick the worker by category")
@click.option("--workflow", "workflow", is_flag=True, help="Run the full crew workflow")
@click.option("--tech-lead", default=None, help="Tech lead for --workflow (default: first active)")
def task_run(task_id, worker_id, auto, workflow, tech_lead):
    """Run a task and wait until the crew is idle."""
    modes = sum(1 for m in (worker_id, auto, workflow) if m)
    if modes != 1:
        _fail("Pass exactly one of --worker, --auto or --workflow")

    config = get_config()
    engine = ClaudeCliEngine(config.claude_bin)
    task, started = asyncio.run(
        _run_task(config, engine, task_id, worker_id, auto, workflow, tech_lead)
    )
    if not started:
        _fail(f"Could not start task {task_id}")
    if task:
        click.echo(f"Task {task.id} finished in status: {task.status}")
        if task.result:
            click.echo(f"  Result: {task.result}")


async def _run_task(config, engine, task_id, worker_id, auto, workflow, tech_lead):
    async with open_runtime(config, engine=engine, watch=False, reconcile=False) as rt:
        if workflow:
            if not tech_lead:
                leads = workers_mod.list_workers(rt.db, active_only=True, role="tech_lead")
                tech_lead = leads[0].id if leads else None
            started = bool(tech_lead) and await rt.manager.run_workflow(task_id, tech_lead)
        elif auto:
            started = await rt.manager.auto_assign_task(task_id)
        else:
            started = await rt.manager.assign_task(task_id, worker_id)

        if started:
            await rt.manager.wait_idle()
        return tasks_mod.get_task(rt.db, task_id), started


# ── Memory Commands ───────────────────────────────────────────────────────────


@main.group("memory")
def memory_group():
    """Manage persistent memory."""
    pass


@memory_group.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--category", default="general", help="Memory category")
@click.option("--project", default=None, help="Project ID")
def memory_set(key, value, category, project):
    """Store a memory entry."""
    with _get_db() as db:
        mem = memory_mod.remember(db, key, value, category, project_id=project)
        click.echo(f"Stored: {mem.key} = {mem.value} [{mem.category}]")


@memory_group.command("get")
@click.argument("key")
@click.option("--project", default=None, help="Project ID")
def memory_get(key, project):
    """Retrieve a memory by key."""
    with _get_db() as db:
        mem = memory_mod.recall_by_key(db, key, project)
        if not mem:
            click.echo(f"Not found: {key}", err=True)
            sys.exit(1)
        click.echo(f"{mem.key} = {mem.value} [{mem.category}]")


@memory_group.command("list")
@click.option("--category", default=None, help="Filter by category")
@click.option("--worker", "worker_id", default=None, help="Filter by worker")
def memory_list(category, worker_id):
    """List memories, newest first."""
    with _get_db() as db:
        mems = memory_mod.list_memories(db, category=category, worker_id=worker_id)
        if not mems:
            click.echo("No memories found.")
            return
        for m in mems:
            click.echo(f"  {m.key} = {m.value} [{m.category}]")


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the scheduler with its JSON API."""
    from crew_orchestrator.web.app import run_server

    click.echo(f"Serving crew API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from crew_orchestrator.mcp.server import mcp
    from crew_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "category": task.category,
        "project": task.project_id,
        "description": task.description,
        "assigned_worker_id": task.assigned_worker_id,
        "parent_task_id": task.parent_task_id,
        "branch": task.branch,
        "result": task.result,
        "cost_usd": task.cost_usd,
    }


def _worker_dict(worker) -> dict:
    return {
        "id": worker.id,
        "name": worker.name,
        "role": worker.role,
        "is_active": worker.is_active,
        "model": worker.model,
        "permission_mode": worker.permission_mode,
        "allowed_tools": worker.allowed_tools,
        "max_turns": worker.max_turns,
    }


if __name__ == "__main__":
    main()
