"""Tests for the timeout monitor and the task watcher."""

import asyncio
from datetime import timedelta

from conftest import FakeEngine, settle

from crew_orchestrator.config import Config
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core import workers as workers_mod
from crew_orchestrator.core.lifecycle import transition_task
from crew_orchestrator.core.manager import Manager
from crew_orchestrator.core.monitors import TaskWatcher, TimeoutMonitor


def _in_progress(db, title):
    task = tasks_mod.create_task(db, title, "test")
    transition_task(db, task.id, "in_progress")
    return tasks_mod.get_task(db, task.id)


class TestTimeoutMonitor:
    def test_stale_task_fails_fresh_task_untouched(self, db, engine):
        stale = _in_progress(db, "Stale")
        fresh = _in_progress(db, "Fresh")
        now = stale.updated_at + timedelta(minutes=31)
        db.execute(
            "UPDATE tasks SET updated_at = ? WHERE id = ?",
            ((now - timedelta(minutes=1)).isoformat(sep=" "), fresh.id),
        )
        db.commit()

        async def scenario():
            manager = Manager(db, engine, config=Config(task_timeout=30 * 60))
            return await TimeoutMonitor(manager).sweep(now=now)

        assert asyncio.run(scenario()) == [stale.id]
        assert tasks_mod.get_task(db, stale.id).status == "failed"
        assert tasks_mod.get_task(db, fresh.id).status == "in_progress"

        timeout_logs = tasks_mod.get_task_logs(db, stale.id, action="timeout")
        assert timeout_logs[0].detail == "Task timed out after 30 minutes"

    def test_timeout_cancels_running_execution(self, db):
        engine = FakeEngine(hold=True)
        worker = workers_mod.create_worker(db, "Bob", "backend_dev")
        task = tasks_mod.create_task(db, "Hangs forever", "test")

        async def scenario():
            manager = Manager(db, engine, config=Config(retry_delay=0))
            await manager.assign_task(task.id, worker.id)
            updated_at = tasks_mod.get_task(db, task.id).updated_at
            timed_out = await TimeoutMonitor(manager, timeout=60).sweep(
                now=updated_at + timedelta(minutes=5)
            )
            await manager.wait_idle()
            return manager, timed_out

        manager, timed_out = asyncio.run(scenario())
        assert timed_out == [task.id]
        assert engine.handles[0].cancelled
        assert not manager.is_worker_busy(worker.id)
        assert tasks_mod.get_task(db, task.id).status == "failed"

    def test_start_and_stop(self, db, engine):
        async def scenario():
            manager = Manager(db, engine, config=Config())
            monitor = TimeoutMonitor(manager, interval=0.01)
            monitor.start()
            await settle()
            running = monitor.running
            await monitor.stop()
            return running, monitor.running

        assert asyncio.run(scenario()) == (True, False)


class TestTaskWatcher:
    def test_launches_workflow_for_new_tasks(self, db):
        engine = FakeEngine(hold=True)
        workers_mod.create_worker(db, "Tina", "tech_lead")
        task = tasks_mod.create_task(db, "Pick me up", "test")

        async def scenario():
            manager = Manager(db, engine, config=Config())
            watcher = TaskWatcher(manager)
            launched = await watcher.poll()
            phase = manager.workflow_state(task.id).phase
            again = await watcher.poll()
            await manager.shutdown()
            return launched, phase, again

        launched, phase, again = asyncio.run(scenario())
        assert launched == [task.id]
        assert phase == "tech_lead_triage"
        assert again == []
        assert engine.started_workers() == ["tina"]

    def test_waits_for_tech_lead(self, db, engine):
        workers_mod.create_worker(db, "Bob", "backend_dev")
        tasks_mod.create_task(db, "Nobody to triage", "test")

        async def scenario():
            manager = Manager(db, engine, config=Config())
            return await TaskWatcher(manager).poll()

        assert asyncio.run(scenario()) == []
        assert engine.starts == []

    def test_ignores_assigned_tasks(self, db, engine):
        workers_mod.create_worker(db, "Tina", "tech_lead")
        task = tasks_mod.create_task(db, "Already owned", "test")
        tasks_mod.update_task(db, task.id, assigned_worker_id="tina")

        async def scenario():
            manager = Manager(db, engine, config=Config())
            return await TaskWatcher(manager).poll()

        assert asyncio.run(scenario()) == []

    def test_leaves_queued_tasks_to_their_worker(self, db):
        engine = FakeEngine(hold=True)
        workers_mod.create_worker(db, "Tina", "tech_lead")
        bob = workers_mod.create_worker(db, "Bob", "backend_dev")
        first = tasks_mod.create_task(db, "First", "test")
        second = tasks_mod.create_task(db, "Second", "test")

        async def scenario():
            manager = Manager(db, engine, config=Config(retry_delay=0))
            await manager.assign_task(first.id, bob.id)
            await manager.assign_task(second.id, bob.id)
            launched = await TaskWatcher(manager).poll()
            engine.handles[0].release()
            await settle()
            running = manager.active_task_for(bob.id)
            await manager.shutdown()
            return launched, running

        launched, running = asyncio.run(scenario())
        assert launched == []
        assert running == second.id
        assert engine.started_workers() == ["bob", "bob"]
