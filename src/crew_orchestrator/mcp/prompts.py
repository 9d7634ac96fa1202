"""MCP prompt templates for common crew workflows."""

from crew_orchestrator.mcp.server import mcp


@mcp.prompt()
def plan_work(goal: str, project: str = "default") -> str:
    """Generate a prompt to break a goal into tasks for the crew."""
    return (
        f"I need the crew to accomplish the following goal in the '{project}' project:\n\n"
        f"{goal}\n\n"
        f"Please break this down into concrete tasks. For each task:\n"
        f"1. Give it a clear, concise title and a short description\n"
        f"2. Pick a category (feature, bug, refactor, test, docs) so it reaches the right role\n"
        f"3. Pick a priority (low, medium, high, urgent)\n\n"
        f"Then use create_task for each one. Use run_workflow for tasks that need "
        f"planning and review, and auto_assign_task for small, self-contained ones."
    )


@mcp.prompt()
def status_report(project: str = "default") -> str:
    """Generate a prompt for a crew status report."""
    return (
        f"Please generate a status report for the '{project}' project.\n\n"
        f"Use list_tasks, list_workers and active_sessions, then provide:\n"
        f"1. What each worker is doing right now and what is queued behind it\n"
        f"2. Tasks waiting for human review\n"
        f"3. Tasks that failed or are blocked, with the reason from task_logs\n"
        f"4. Anything that looks stuck"
    )


@mcp.prompt()
def review_task(task_id: str) -> str:
    """Generate a prompt to review the crew's work on a task."""
    return (
        f"Please review the work done for task '{task_id}'.\n\n"
        f"Use get_task for the description, plan and result, and task_logs for its history.\n"
        f"Then provide:\n"
        f"1. Summary of what the crew did, phase by phase\n"
        f"2. Whether the task goals appear to be met\n"
        f"3. Any QA feedback that was not addressed\n"
        f"4. Whether it's ready to be marked as done"
    )
