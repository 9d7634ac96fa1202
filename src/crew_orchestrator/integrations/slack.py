"""Slack Web API integration."""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass

from crew_orchestrator.core.projects import get_project
from crew_orchestrator.core.tasks import get_task
from crew_orchestrator.events import EventBus

logger = logging.getLogger(__name__)

# Task statuses worth a message.
NOTIFY_STATUSES = ("review", "failed", "done")


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_task_notification(
    task_id: str,
    title: str,
    status: str,
    project: str,
    note: str | None = None,
) -> list[dict]:
    """Format a task status change as Slack blocks."""
    status_emoji = {
        "created": ":white_circle:",
        "in_progress": ":large_blue_circle:",
        "review": ":eyes:",
        "changes_requested": ":memo:",
        "done": ":white_check_mark:",
        "blocked": ":red_circle:",
        "failed": ":x:",
    }
    emoji = status_emoji.get(status, ":grey_question:")
    text = f"{emoji} *Task Update*\n*{title}* (`{task_id}`)\nStatus: *{status}* | Project: {project}"
    if note:
        text += f"\n{note[:200]}"

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": text},
        }
    ]


def format_workflow_completed(task_id: str, title: str, detail: str) -> list[dict]:
    """Format a finished workflow as Slack blocks."""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":checkered_flag: *Workflow Finished*\n*{title}* (`{task_id}`)\n{detail}",
            },
        },
    ]


def format_pr_created(
    task_id: str,
    title: str,
    branch: str,
    pr_url: str | None = None,
) -> list[dict]:
    """Format a newly opened pull request as Slack blocks."""
    pr_link = f"\n<{pr_url}|View Pull Request>" if pr_url else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":eyes: *Review Requested*\n*{title}* (`{task_id}`)\nBranch: `{branch}`{pr_link}",
            },
        },
    ]


class SlackNotifier:
    """Posts task events to Slack, best-effort.

    The channel is the project's ``slack_channel`` when set, else the
    configured default. Posting runs in a worker thread so the event loop
    never waits on the Slack API.
    """

    def __init__(self, db: sqlite3.Connection, token: str | None, default_channel: str | None = None):
        self.db = db
        self.token = token
        self.default_channel = default_channel
        self._unsubscribers = []

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def attach(self, bus: EventBus) -> "SlackNotifier":
        if not self.enabled:
            logger.debug("Slack notifications disabled: no token")
            return self
        self._unsubscribers = [
            bus.subscribe("task:status", self.on_event),
            bus.subscribe("workflow:phase", self.on_event),
            bus.subscribe("task:pr_created", self.on_event),
        ]
        return self

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def render(self, topic: str, payload: dict) -> tuple[str, str, list[dict]] | None:
        """Build (channel, text, blocks) for an event, or None to stay quiet."""
        task = get_task(self.db, payload.get("task_id", ""))
        if not task:
            return None
        project = get_project(self.db, task.project_id)
        channel = (project.slack_channel if project else None) or self.default_channel
        if not channel:
            return None

        if topic == "task:status":
            status = payload.get("status")
            if status not in NOTIFY_STATUSES:
                return None
            text = f"Task {task.title} ({task.id}) is now {status}"
            return channel, text, format_task_notification(
                task.id, task.title, status, project.name if project else task.project_id,
            )
        if topic == "workflow:phase":
            if payload.get("phase") != "completed":
                return None
            detail = payload.get("detail") or "Workflow completed"
            return channel, f"Workflow finished for {task.title}", format_workflow_completed(
                task.id, task.title, detail,
            )
        if topic == "task:pr_created":
            return channel, f"PR opened for {task.title}", format_pr_created(
                task.id, task.title, payload.get("head_branch", ""), payload.get("pr_url"),
            )
        return None

    async def on_event(self, topic: str, payload: dict) -> None:
        try:
            rendered = self.render(topic, payload)
            if rendered is None:
                return
            channel, text, blocks = rendered
            await asyncio.to_thread(send_message, self.token, channel, text, blocks)
        except Exception:
            logger.exception("Failed to send Slack notification for %s", topic)
