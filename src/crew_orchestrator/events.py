"""In-process publish/subscribe bus for scheduler notifications.

Topics used by the core:

    task:status          {task_id, status, worker_id}
    task:queued          {task_id, worker_id, project_id, queue_position}
    task:git_branch      {task_id, project_id, branch, base_branch}
    task:git_commit      {task_id, project_id, commit_sha, message, branch}
    task:git_push        {task_id, project_id, branch, commit_sha, remote}
    task:git_push_error  {task_id, project_id, error}
    task:pr_created      {task_id, project_id, pr_url, head_branch, base_branch}
    task:ready_to_commit {task_id, project_id, changed_files}
    workflow:phase       {task_id, project_id, phase, worker_id, worker_name, detail}
    agent:status         {worker_id, project_id, status, task_id}
    agent:notification   {worker_id, project_id, message, level}

Publication is fire-and-forget: a failing subscriber is logged and never
reaches the publisher.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, Any]], Any]

WILDCARD = "*"


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler(topic, payload)``. Returns an unsubscribe callable.

        Use ``"*"`` to receive every topic.
        """
        self._handlers[topic].append(handler)

        def unsubscribe():
            if handler in self._handlers.get(topic, []):
                self._handlers[topic].remove(handler)

        return unsubscribe

    def emit(self, topic: str, payload: dict[str, Any]) -> None:
        handlers = list(self._handlers.get(topic, [])) + list(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            try:
                outcome = handler(topic, payload)
                if inspect.isawaitable(outcome):
                    self._schedule(topic, outcome)
            except Exception:
                logger.exception("Event handler failed for %s", topic)

    def _schedule(self, topic: str, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Dropping async handler for %s: no running event loop", topic)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(awaitable)
        task.add_done_callback(lambda t: _log_handler_failure(topic, t))


def _log_handler_failure(topic: str, task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Async event handler failed for %s: %r", topic, exc)


class EventRecorder:
    """Collects every published event; handy for inspection and tests."""

    def __init__(self, bus: EventBus):
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._unsubscribe = bus.subscribe(WILDCARD, self._record)

    def _record(self, topic: str, payload: dict[str, Any]) -> None:
        self.events.append((topic, payload))

    def of(self, topic: str) -> list[dict[str, Any]]:
        return [payload for t, payload in self.events if t == topic]

    def close(self) -> None:
        self._unsubscribe()
