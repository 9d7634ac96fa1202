"""Tests for task management operations."""

import pytest

from crew_orchestrator.core import memory as memory_mod
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core import workers as workers_mod


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_multiple_spaces(self):
        assert tasks_mod.slugify("  too   many   spaces  ") == "too-many-spaces"

    def test_truncation(self):
        long_title = "a" * 100
        assert len(tasks_mod.slugify(long_title)) <= 60


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login page", "test")
        assert task.id == "build-login-page"
        assert task.title == "Build login page"
        assert task.status == "created"
        assert task.priority == "medium"
        assert task.project_id == "test"
        assert task.assigned_worker_id is None

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Build login page", "test")
        t2 = tasks_mod.create_task(db, "Build login page", "test")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_create_with_category_and_priority(self, db):
        task = tasks_mod.create_task(db, "Crash", "test", priority="urgent", category="bug")
        assert task.priority == "urgent"
        assert task.category == "bug"

    def test_invalid_priority(self, db):
        with pytest.raises(ValueError, match="Invalid priority"):
            tasks_mod.create_task(db, "Bad", "test", priority="asap")

    def test_invalid_category(self, db):
        with pytest.raises(ValueError, match="Invalid category"):
            tasks_mod.create_task(db, "Bad", "test", category="chore")

    def test_unknown_project(self, db):
        with pytest.raises(ValueError, match="Project not found"):
            tasks_mod.create_task(db, "Lost", "nowhere")

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nonexistent") is None

    def test_list_tasks(self, db):
        tasks_mod.create_task(db, "Task 1", "test")
        tasks_mod.create_task(db, "Task 2", "test")
        tasks = tasks_mod.list_tasks(db, "test")
        assert [t.id for t in tasks] == ["task-1", "task-2"]

    def test_list_unassigned(self, db):
        workers_mod.create_worker(db, "Bob", "backend_dev")
        tasks_mod.create_task(db, "Mine", "test")
        tasks_mod.create_task(db, "Free", "test")
        tasks_mod.update_task(db, "mine", assigned_worker_id="bob")
        assert [t.id for t in tasks_mod.list_tasks(db, unassigned=True)] == ["free"]

    def test_delete_task(self, db):
        tasks_mod.create_task(db, "Temp task", "test")
        assert tasks_mod.delete_task(db, "temp-task") is True
        assert tasks_mod.get_task(db, "temp-task") is None

    def test_delete_nonexistent(self, db):
        assert tasks_mod.delete_task(db, "nope") is False


class TestUpdate:
    def test_update_fields(self, db):
        tasks_mod.create_task(db, "Update me", "test")
        task = tasks_mod.update_task(db, "update-me", result="ok", cost_usd=0.5)
        assert task.result == "ok"
        assert task.cost_usd == 0.5

    def test_status_not_updatable(self, db):
        tasks_mod.create_task(db, "Sneaky", "test")
        with pytest.raises(ValueError, match="status"):
            tasks_mod.update_task(db, "sneaky", status="done")

    def test_update_missing_task(self, db):
        assert tasks_mod.update_task(db, "ghost", result="x") is None

    def test_append_to_description(self, db):
        tasks_mod.create_task(db, "Plan me", "test", description="Original")
        task = tasks_mod.append_to_description(db, "plan-me", "Architect Plan", "Step 1", parsed_spec="Step 1")
        assert task.description == "Original\n\n---\n## Architect Plan\nStep 1"
        assert task.parsed_spec == "Step 1"


class TestSubtasks:
    def test_subtasks_loaded_with_parent(self, db):
        tasks_mod.create_task(db, "Big task", "test")
        tasks_mod.create_task(db, "Sub 1", "test", parent_task_id="big-task")
        tasks_mod.create_task(db, "Sub 2", "test", parent_task_id="big-task")
        parent = tasks_mod.get_task(db, "big-task")
        assert [s.id for s in parent.subtasks] == ["sub-1", "sub-2"]

    def test_delete_removes_subtasks(self, db):
        tasks_mod.create_task(db, "Parent", "test")
        tasks_mod.create_task(db, "Child", "test", parent_task_id="parent")
        tasks_mod.delete_task(db, "parent")
        assert tasks_mod.get_task(db, "child") is None


class TestAuditLog:
    def test_creation_logged(self, db):
        tasks_mod.create_task(db, "Event test", "test")
        logs = tasks_mod.get_task_logs(db, "event-test")
        assert len(logs) == 1
        assert logs[0].action == "created"
        assert logs[0].to_status == "created"

    def test_record_action_filter(self, db):
        tasks_mod.create_task(db, "Noisy", "test")
        tasks_mod.record_action(db, "noisy", "queued", detail="Queued at position 1 (priority: medium)")
        tasks_mod.record_action(db, "noisy", "agent_error", detail="boom")
        logs = tasks_mod.get_task_logs(db, "noisy", action="agent_error")
        assert [log.detail for log in logs] == ["boom"]


class TestProjectsAndWorkers:
    def test_ensure_default_project(self, db, tmp_path):
        project = projects_mod.ensure_default_project(db, str(tmp_path))
        again = projects_mod.ensure_default_project(db, "/elsewhere")
        assert project.id == again.id == "default"
        assert again.path == str(tmp_path)

    def test_integration_roundtrip(self, db):
        projects_mod.set_integration(db, "test", "git", {"autoCommit": True})
        projects_mod.set_integration(db, "test", "git", {"autoCommit": False})
        assert projects_mod.get_integration(db, "test", "git").config == {"autoCommit": False}

    def test_create_worker(self, db):
        worker = workers_mod.create_worker(
            db, "Backend Bob", "backend_dev", allowed_tools=["Read", "Edit"], max_turns=10
        )
        assert worker.id == "backend-bob"
        assert worker.is_active
        assert worker.allowed_tools == ["Read", "Edit"]
        assert worker.max_turns == 10

    def test_worker_role_validated(self, db):
        with pytest.raises(ValueError, match="Unknown role"):
            workers_mod.create_worker(db, "Zed", "manager")

    def test_duplicate_worker(self, db):
        workers_mod.create_worker(db, "Bob", "backend_dev")
        with pytest.raises(ValueError, match="already exists"):
            workers_mod.create_worker(db, "Bob", "qa")

    def test_list_active_by_role(self, db):
        workers_mod.create_worker(db, "Bob", "backend_dev")
        workers_mod.create_worker(db, "Quinn", "qa")
        workers_mod.create_worker(db, "Old QA", "qa")
        workers_mod.set_worker_active(db, "old-qa", False)
        assert [w.id for w in workers_mod.list_workers(db, active_only=True, role="qa")] == ["quinn"]


class TestMemory:
    def test_remember_and_recall(self, db):
        memory_mod.remember(db, "db-choice", "Use sqlite with WAL", "decision", project_id="test")
        mem = memory_mod.recall_by_key(db, "db-choice", "test")
        assert mem.value == "Use sqlite with WAL"
        assert mem.category == "decision"

    def test_remember_overwrites(self, db):
        memory_mod.remember(db, "k", "one")
        memory_mod.remember(db, "k", "two")
        assert memory_mod.recall_by_key(db, "k").value == "two"
        assert len(memory_mod.list_memories(db)) == 1

    def test_search(self, db):
        memory_mod.remember(db, "auth", "Tokens are rotated daily", project_id="test")
        memory_mod.remember(db, "ui", "Buttons use the primary color", project_id="test")
        results = memory_mod.search_memories(db, "tokens", project_id="test")
        assert [m.key for m in results] == ["auth"]

    def test_remember_result_by_worker(self, db):
        workers_mod.create_worker(db, "Bob", "backend_dev")
        memory_mod.remember_result(db, "t1", "Fix api", "Added retries", "test", "bob")
        mems = memory_mod.list_memories(db, worker_id="bob")
        assert [(m.key, m.value, m.category) for m in mems] == [("task:t1", "Fix api: Added retries", "result")]

    def test_forget(self, db):
        memory_mod.remember(db, "temp", "x")
        assert memory_mod.forget(db, "temp") is True
        assert memory_mod.recall_by_key(db, "temp") is None
