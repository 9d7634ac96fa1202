"""Tests for per-worker queues and role heuristics."""

from crew_orchestrator.core.queue import WorkerQueue
from crew_orchestrator.core.roles import detect_dev_from_plan, preferred_roles


class TestWorkerQueue:
    def test_priority_then_fifo(self):
        queue = WorkerQueue()
        queue.enqueue("bob", "a", "p", "low")
        queue.enqueue("bob", "b", "p", "high")
        queue.enqueue("bob", "c", "p", "medium")
        queue.enqueue("bob", "d", "p", "high")
        queue.enqueue("bob", "e", "p", "urgent")
        assert [e.task_id for e in queue.entries("bob")] == ["e", "b", "d", "c", "a"]

    def test_enqueue_returns_position(self):
        queue = WorkerQueue()
        assert queue.enqueue("bob", "a", "p", "medium") == 1
        assert queue.enqueue("bob", "b", "p", "low") == 2
        assert queue.enqueue("bob", "c", "p", "high") == 1

    def test_unknown_priority_ranks_low(self):
        queue = WorkerQueue()
        queue.enqueue("bob", "weird", "p", "someday")
        queue.enqueue("bob", "normal", "p", "medium")
        assert [e.task_id for e in queue.entries("bob")] == ["normal", "weird"]

    def test_pop_drops_empty_queue(self):
        queue = WorkerQueue()
        queue.enqueue("bob", "a", "p", "medium")
        assert queue.pop("bob").task_id == "a"
        assert queue.pop("bob") is None
        assert queue.workers() == []

    def test_queues_are_per_worker(self):
        queue = WorkerQueue()
        queue.enqueue("bob", "a", "p", "medium")
        queue.enqueue("amy", "b", "p", "medium")
        assert queue.length("bob") == 1
        assert queue.length("amy") == 1
        assert queue.length("zed") == 0

    def test_remove_task(self):
        queue = WorkerQueue()
        queue.enqueue("bob", "a", "p", "medium")
        queue.enqueue("amy", "a", "p", "medium")
        queue.enqueue("amy", "b", "p", "medium")
        assert queue.remove_task("a") == 2
        assert queue.workers() == ["amy"]

    def test_worker_for(self):
        queue = WorkerQueue()
        queue.enqueue("amy", "b", "p", "medium")
        assert queue.worker_for("b") == "amy"
        assert queue.worker_for("a") is None
        queue.pop("amy")
        assert queue.worker_for("b") is None


class TestRoles:
    def test_preferred_roles(self):
        assert preferred_roles("bug") == ["qa", "backend_dev", "frontend_dev"]
        assert preferred_roles("test") == ["qa"]
        assert preferred_roles(None) == []
        assert preferred_roles("unknown") == []

    def test_detect_explicit_role(self):
        assert detect_dev_from_plan("Assign to backend_dev: style the modal") == "backend_dev"
        assert detect_dev_from_plan("frontend dev should add the endpoint") == "frontend_dev"

    def test_detect_by_vocabulary(self):
        assert detect_dev_from_plan("Add a database migration and an api route") == "backend_dev"
        assert detect_dev_from_plan("Build a modal dialog with tailwind") == "frontend_dev"

    def test_tie_goes_to_frontend(self):
        assert detect_dev_from_plan("") == "frontend_dev"
        assert detect_dev_from_plan("api and css") == "frontend_dev"
