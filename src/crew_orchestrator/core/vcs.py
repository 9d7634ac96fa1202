"""Best-effort version-control side effects around task execution.

Nothing here raises into the scheduler: git/gh failures are logged (and,
for pushes, published) and the task carries on without the artifact.
"""

import asyncio
import logging
import sqlite3

from crew_orchestrator.core.projects import get_integration, get_project
from crew_orchestrator.core.tasks import get_task, record_action, slugify, update_task
from crew_orchestrator.db.models import Task
from crew_orchestrator.events import EventBus
from crew_orchestrator.integrations import git

logger = logging.getLogger(__name__)

DEFAULT_REMOTE = "origin"


def branch_name_for(task: Task) -> str:
    return f"task/{task.id}-{slugify(task.title)}"


def git_config(db: sqlite3.Connection, project_id: str) -> dict | None:
    integration = get_integration(db, project_id, "git")
    return integration.config if integration else None


class VersionControl:
    """Branch creation before a run and the commit/push/PR chain after it."""

    def __init__(self, db: sqlite3.Connection, bus: EventBus):
        self.db = db
        self.bus = bus

    async def prepare_branch(self, task_id: str) -> str | None:
        """Create the task branch when the project asks for it.

        Returns the branch name recorded on the task, or None.
        """
        try:
            return await self._prepare_branch(task_id)
        except (git.GitError, OSError) as e:
            logger.warning("Branch creation failed for task %s: %s", task_id, e)
        except Exception:
            logger.exception("Unexpected error creating branch for task %s", task_id)
        return None

    async def _prepare_branch(self, task_id: str) -> str | None:
        task = get_task(self.db, task_id)
        if not task:
            return None
        config = git_config(self.db, task.project_id)
        if not config or not config.get("autoCreateBranch"):
            return task.branch
        project = get_project(self.db, task.project_id)
        if not project:
            return None

        if not await asyncio.to_thread(git.is_git_repo, project.path):
            logger.info("Project %s at %s is not a git repo, skipping branch", project.id, project.path)
            return task.branch

        branch = task.branch or branch_name_for(task)
        base = config.get("defaultBranch") or project.default_branch or "main"
        if await asyncio.to_thread(git.branch_exists, project.path, branch):
            if task.branch != branch:
                update_task(self.db, task_id, branch=branch)
            return branch

        await asyncio.to_thread(git.create_branch, project.path, branch, base)
        update_task(self.db, task_id, branch=branch)
        record_action(self.db, task_id, "git_branch_created", detail=f"{branch} from {base}")
        self.bus.emit("task:git_branch", {
            "task_id": task_id,
            "project_id": task.project_id,
            "branch": branch,
            "base_branch": base,
        })
        logger.info("Created branch %s for task %s", branch, task_id)
        return branch

    async def after_success(self, task_id: str, worker_id: str | None = None) -> None:
        """Run the commit/push/PR chain configured for the task's project."""
        try:
            await self._after_success(task_id, worker_id)
        except Exception:
            logger.exception("Post-success git chain failed for task %s", task_id)

    async def _after_success(self, task_id: str, worker_id: str | None) -> None:
        task = get_task(self.db, task_id)
        if not task:
            return
        config = git_config(self.db, task.project_id)
        if not config:
            return
        project = get_project(self.db, task.project_id)
        if not project or not await asyncio.to_thread(git.is_git_repo, project.path):
            return

        try:
            files = await asyncio.to_thread(git.changed_files, project.path)
        except git.GitError as e:
            logger.warning("Could not list changed files for task %s: %s", task_id, e)
            return
        if not files:
            return

        if not config.get("autoCommit"):
            self.bus.emit("task:ready_to_commit", {
                "task_id": task_id,
                "project_id": task.project_id,
                "changed_files": files,
            })
            return

        message = f"feat(task-{task.id}): {task.title}"
        try:
            await asyncio.to_thread(git.stage_all, project.path)
            sha = await asyncio.to_thread(git.commit, project.path, message)
        except git.GitError as e:
            logger.warning("Auto-commit failed for task %s: %s", task_id, e)
            return

        branch = task.branch or config.get("defaultBranch") or project.default_branch or "main"
        record_action(self.db, task_id, "git_commit", worker_id=worker_id, detail=sha)
        self.bus.emit("task:git_commit", {
            "task_id": task_id,
            "project_id": task.project_id,
            "commit_sha": sha,
            "message": message,
            "branch": branch,
        })
        logger.info("Auto-committed task %s: %s", task_id, sha)

        if not config.get("pushOnCommit"):
            return
        try:
            await asyncio.to_thread(git.push, project.path, branch, DEFAULT_REMOTE)
        except git.GitError as e:
            logger.warning("Auto-push failed for task %s: %s", task_id, e)
            self.bus.emit("task:git_push_error", {
                "task_id": task_id,
                "project_id": task.project_id,
                "error": str(e),
            })
            return

        record_action(self.db, task_id, "git_push", worker_id=worker_id, detail=f"{DEFAULT_REMOTE}/{branch}")
        self.bus.emit("task:git_push", {
            "task_id": task_id,
            "project_id": task.project_id,
            "branch": branch,
            "commit_sha": sha,
            "remote": DEFAULT_REMOTE,
        })

        if config.get("autoPR"):
            await self._open_pull_request(task, project.path, branch, config)

    async def _open_pull_request(self, task: Task, path: str, branch: str, config: dict) -> None:
        base = config.get("defaultBranch") or "main"
        if branch == base:
            return
        try:
            existing = await asyncio.to_thread(git.find_pr_for_branch, path, branch)
            if existing:
                logger.debug("PR already exists for %s: #%s", branch, existing.number)
                return
            pr = await asyncio.to_thread(
                git.create_pull_request,
                path,
                task.title,
                f"Automated PR for task `{task.id}`\n\nBranch: `{branch}` -> `{base}`",
                branch,
                base,
            )
        except (git.GitError, ValueError) as e:
            logger.warning("Auto-PR failed for task %s: %s", task.id, e)
            return

        record_action(self.db, task.id, "pr_created", detail=pr.url)
        self.bus.emit("task:pr_created", {
            "task_id": task.id,
            "project_id": task.project_id,
            "pr_number": pr.number,
            "pr_url": pr.url,
            "head_branch": branch,
            "base_branch": base,
        })
        logger.info("Opened PR %s for task %s", pr.url, task.id)
