"""Wiring of the long-lived scheduler pieces shared by the server surfaces."""

import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from crew_orchestrator.config import Config
from crew_orchestrator.core.execution import ClaudeCliEngine, ExecutionEngine
from crew_orchestrator.core.manager import Manager
from crew_orchestrator.core.monitors import TaskWatcher, TimeoutMonitor
from crew_orchestrator.core.projects import ensure_default_project
from crew_orchestrator.db.engine import init_db
from crew_orchestrator.events import EventBus
from crew_orchestrator.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    db: sqlite3.Connection
    bus: EventBus
    manager: Manager
    timeout_monitor: TimeoutMonitor
    watcher: TaskWatcher
    notifier: SlackNotifier


@asynccontextmanager
async def open_runtime(
    config: Config,
    engine: ExecutionEngine | None = None,
    monitors: bool = True,
    watch: bool = True,
    reconcile: bool = True,
) -> AsyncIterator[Runtime]:
    """Open the database, build the Manager and run the monitors until exit.

    ``reconcile`` returns in-progress tasks left over from a previous
    process to ``created``; only the process that owns the scheduler
    should do that.
    """
    db = init_db(config.db_path)
    ensure_default_project(db, str(config.repo_path))
    bus = EventBus()
    manager = Manager(
        db,
        engine or ClaudeCliEngine(config.claude_bin),
        bus=bus,
        config=config,
    )
    notifier = SlackNotifier(db, config.slack_bot_token, config.slack_channel).attach(bus)
    timeout_monitor = TimeoutMonitor(manager)
    watcher = TaskWatcher(manager)

    if reconcile:
        manager.reconcile()
    if monitors:
        timeout_monitor.start()
    if watch:
        watcher.start()

    try:
        yield Runtime(
            config=config,
            db=db,
            bus=bus,
            manager=manager,
            timeout_monitor=timeout_monitor,
            watcher=watcher,
            notifier=notifier,
        )
    finally:
        await watcher.stop()
        await timeout_monitor.stop()
        await manager.shutdown()
        notifier.detach()
        db.close()
        logger.info("Runtime closed")
