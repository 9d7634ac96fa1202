"""Tests for the git side effects around task execution."""

import asyncio
import os
import subprocess
from unittest.mock import patch

import pytest

from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.core.vcs import VersionControl, branch_name_for
from crew_orchestrator.events import EventBus, EventRecorder
from crew_orchestrator.integrations import git

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com",
}


@pytest.fixture
def repo(tmp_path):
    """A git repo with one commit on main."""
    path = tmp_path / "repo"
    path.mkdir()
    subprocess.run(["git", "init"], cwd=path, capture_output=True, check=True)
    subprocess.run(["git", "checkout", "-b", "main"], cwd=path, capture_output=True, check=True)
    (path / "README.md").write_text("# Test")
    subprocess.run(["git", "add", "."], cwd=path, capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", "init"], cwd=path, capture_output=True, check=True, env=GIT_ENV)
    return path


@pytest.fixture
def vcs(db):
    bus = EventBus()
    return VersionControl(db, bus), EventRecorder(bus)


def _git_project(db, path, **config):
    projects_mod.create_project(db, "app", "App", str(path))
    projects_mod.set_integration(db, "app", "git", {"defaultBranch": "main", **config})
    return tasks_mod.create_task(db, "Add search", "app")


class TestBranchName:
    def test_branch_name(self, db):
        task = tasks_mod.create_task(db, "Add Search Box!", "test")
        assert branch_name_for(task) == "task/add-search-box-add-search-box"


class TestPrepareBranch:
    def test_no_integration_is_noop(self, db, vcs):
        control, recorder = vcs
        task = tasks_mod.create_task(db, "Plain", "test")
        with patch.object(git, "create_branch") as create:
            assert asyncio.run(control.prepare_branch(task.id)) is None
        create.assert_not_called()
        assert recorder.events == []

    def test_creates_branch_in_real_repo(self, db, vcs, repo):
        control, recorder = vcs
        task = _git_project(db, repo, autoCreateBranch=True)

        branch = asyncio.run(control.prepare_branch(task.id))

        assert branch == branch_name_for(task)
        assert git.branch_exists(repo, branch)
        assert git.get_current_branch(repo) == "main"
        assert tasks_mod.get_task(db, task.id).branch == branch
        assert recorder.of("task:git_branch")[0]["base_branch"] == "main"
        assert len(tasks_mod.get_task_logs(db, task.id, action="git_branch_created")) == 1

    def test_existing_branch_reused(self, db, vcs, tmp_path):
        control, recorder = vcs
        task = _git_project(db, tmp_path, autoCreateBranch=True)
        with patch.object(git, "is_git_repo", return_value=True), \
             patch.object(git, "branch_exists", return_value=True), \
             patch.object(git, "create_branch") as create:
            branch = asyncio.run(control.prepare_branch(task.id))
        create.assert_not_called()
        assert tasks_mod.get_task(db, task.id).branch == branch
        assert recorder.of("task:git_branch") == []

    def test_git_failure_is_swallowed(self, db, vcs, tmp_path):
        control, _ = vcs
        task = _git_project(db, tmp_path, autoCreateBranch=True)
        with patch.object(git, "is_git_repo", return_value=True), \
             patch.object(git, "branch_exists", return_value=False), \
             patch.object(git, "create_branch", side_effect=git.GitError("bad base")):
            assert asyncio.run(control.prepare_branch(task.id)) is None
        assert tasks_mod.get_task(db, task.id).branch is None


class TestAfterSuccess:
    def _run(self, control, task_id, **patches):
        defaults = {
            "is_git_repo": True,
            "changed_files": ["src/search.py"],
            "stage_all": None,
            "commit": "abc123",
            "push": None,
            "find_pr_for_branch": None,
            "create_pull_request": git.PullRequest(number=7, url="https://github.com/o/r/pull/7"),
        }
        defaults.update(patches)
        mocks = {}
        patchers = []
        for name, value in defaults.items():
            kwargs = {"side_effect": value} if isinstance(value, Exception) else {"return_value": value}
            patcher = patch.object(git, name, **kwargs)
            mocks[name] = patcher.start()
            patchers.append(patcher)
        try:
            asyncio.run(control.after_success(task_id, "bob"))
        finally:
            for patcher in patchers:
                patcher.stop()
        return mocks

    def test_full_chain(self, db, vcs, tmp_path):
        control, recorder = vcs
        task = _git_project(db, tmp_path, autoCommit=True, pushOnCommit=True, autoPR=True)
        tasks_mod.update_task(db, task.id, branch="task/add-search")

        mocks = self._run(control, task.id)

        mocks["commit"].assert_called_once_with(str(tmp_path), f"feat(task-{task.id}): Add search")
        mocks["push"].assert_called_once_with(str(tmp_path), "task/add-search", "origin")
        assert recorder.of("task:git_commit")[0]["commit_sha"] == "abc123"
        assert recorder.of("task:git_push")[0]["branch"] == "task/add-search"
        assert recorder.of("task:pr_created")[0]["pr_url"] == "https://github.com/o/r/pull/7"
        actions = [log.action for log in tasks_mod.get_task_logs(db, task.id)]
        assert actions[-3:] == ["git_commit", "git_push", "pr_created"]

    def test_ready_to_commit_without_auto_commit(self, db, vcs, tmp_path):
        control, recorder = vcs
        task = _git_project(db, tmp_path)

        mocks = self._run(control, task.id)

        mocks["commit"].assert_not_called()
        assert recorder.of("task:ready_to_commit")[0]["changed_files"] == ["src/search.py"]

    def test_no_changes_does_nothing(self, db, vcs, tmp_path):
        control, recorder = vcs
        task = _git_project(db, tmp_path, autoCommit=True)

        mocks = self._run(control, task.id, changed_files=[])

        mocks["commit"].assert_not_called()
        assert recorder.events == []

    def test_push_failure_published(self, db, vcs, tmp_path):
        control, recorder = vcs
        task = _git_project(db, tmp_path, autoCommit=True, pushOnCommit=True, autoPR=True)

        mocks = self._run(control, task.id, push=git.GitError("rejected"))

        assert recorder.of("task:git_push_error")[0]["error"] == "rejected"
        mocks["create_pull_request"].assert_not_called()

    def test_no_pr_from_base_branch(self, db, vcs, tmp_path):
        control, recorder = vcs
        task = _git_project(db, tmp_path, autoCommit=True, pushOnCommit=True, autoPR=True)

        mocks = self._run(control, task.id)

        mocks["push"].assert_called_once_with(str(tmp_path), "main", "origin")
        mocks["create_pull_request"].assert_not_called()
        assert recorder.of("task:pr_created") == []

    def test_existing_pr_not_duplicated(self, db, vcs, tmp_path):
        control, _ = vcs
        task = _git_project(db, tmp_path, autoCommit=True, pushOnCommit=True, autoPR=True)
        tasks_mod.update_task(db, task.id, branch="task/add-search")

        mocks = self._run(control, task.id, find_pr_for_branch=git.PullRequest(number=3, url="u"))

        mocks["create_pull_request"].assert_not_called()
