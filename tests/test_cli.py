"""Tests for the CLI."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from conftest import FakeEngine

from crew_orchestrator.cli import main
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core import tasks as tasks_mod
from crew_orchestrator.db.engine import get_db


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        repo_path = Path(tmp) / "repo"
        repo_path.mkdir()

        env = {
            "CREW_DB_PATH": str(db_path),
            "CREW_REPO_PATH": str(repo_path),
            "CREW_RETRY_DELAY": "0",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        yield CliRunner(), db_path

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Crew Orchestrator CLI" in result.output

    def test_init(self, cli_env, tmp_path):
        runner, db_path = cli_env
        result = runner.invoke(main, ["init", "My App", "--path", str(tmp_path), "--slack-channel", "#app"])
        assert result.exit_code == 0
        assert "Project created: my-app" in result.output

        with get_db(db_path) as db:
            project = projects_mod.get_project(db, "my-app")
        assert project.path == str(tmp_path)
        assert project.slack_channel == "#app"

        again = runner.invoke(main, ["init", "My App"])
        assert again.exit_code == 1
        assert "already exists" in again.output

    def test_integration_git(self, cli_env):
        runner, db_path = cli_env
        runner.invoke(main, ["task", "add", "Seed"])  # creates the default project
        result = runner.invoke(main, ["integration", "git", "default", "--auto-create-branch", "--auto-commit"])
        assert result.exit_code == 0

        with get_db(db_path) as db:
            config = projects_mod.get_integration(db, "default", "git").config
        assert config["autoCreateBranch"] is True
        assert config["autoCommit"] is True
        assert config["pushOnCommit"] is False
        assert config["defaultBranch"] == "main"

    def test_worker_add_and_list(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, [
            "worker", "add", "Backend Bob", "--role", "backend_dev",
            "--allowed-tools", "Read, Edit", "--max-turns", "15",
        ])
        assert result.exit_code == 0
        assert "Created worker: backend-bob (backend_dev)" in result.output

        result = runner.invoke(main, ["worker", "list", "--json"])
        workers = json.loads(result.output)
        assert workers[0]["id"] == "backend-bob"
        assert workers[0]["allowed_tools"] == ["Read", "Edit"]
        assert workers[0]["max_turns"] == 15

    def test_worker_bad_role(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["worker", "add", "Zed", "--role", "boss"])
        assert result.exit_code != 0

    def test_worker_deactivate(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["worker", "add", "Quinn", "--role", "qa"])
        result = runner.invoke(main, ["worker", "deactivate", "quinn"])
        assert result.exit_code == 0
        listing = runner.invoke(main, ["worker", "list"])
        assert "inactive" in listing.output

        missing = runner.invoke(main, ["worker", "activate", "ghost"])
        assert missing.exit_code == 1

    def test_task_add_and_list(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "add", "Fix login", "-p", "high", "-c", "bug"])
        assert result.exit_code == 0
        assert "Created task: fix-login" in result.output

        result = runner.invoke(main, ["task", "list", "--json"])
        tasks = json.loads(result.output)
        assert tasks[0]["priority"] == "high"
        assert tasks[0]["category"] == "bug"
        assert tasks[0]["status"] == "created"

    def test_task_add_unknown_project(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["task", "add", "Lost", "--project", "nowhere"])
        assert result.exit_code == 1
        assert "Project not found" in result.output

    def test_task_show_and_logs(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "Show me", "-d", "Some details"])
        result = runner.invoke(main, ["task", "show", "show-me"])
        assert result.exit_code == 0
        assert "Description: Some details" in result.output

        logs = runner.invoke(main, ["task", "logs", "show-me"])
        assert "created" in logs.output

        missing = runner.invoke(main, ["task", "show", "nope"])
        assert missing.exit_code == 1

    def test_task_transition(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "Move me"])
        ok = runner.invoke(main, ["task", "transition", "move-me", "in_progress", "--note", "by hand"])
        assert ok.exit_code == 0
        assert "created -> in_progress" in ok.output

        bad = runner.invoke(main, ["task", "transition", "move-me", "done"])
        assert bad.exit_code == 1
        assert "Cannot move" in bad.output

    def test_task_run_with_worker(self, cli_env):
        runner, db_path = cli_env
        runner.invoke(main, ["worker", "add", "Bob", "--role", "backend_dev"])
        runner.invoke(main, ["task", "add", "Add endpoint"])

        engine = FakeEngine()
        engine.script("bob", "Endpoint added")
        with patch("crew_orchestrator.cli.ClaudeCliEngine", return_value=engine):
            result = runner.invoke(main, ["task", "run", "add-endpoint", "--worker", "bob"])

        assert result.exit_code == 0, result.output
        assert "finished in status: review" in result.output
        assert "Endpoint added" in result.output
        with get_db(db_path) as db:
            assert tasks_mod.get_task(db, "add-endpoint").status == "review"

    def test_task_run_workflow(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["worker", "add", "Tina", "--role", "tech_lead"])
        runner.invoke(main, ["worker", "add", "Bob", "--role", "backend_dev"])
        runner.invoke(main, ["task", "add", "Add endpoint"])

        engine = FakeEngine()
        engine.script("tina", "Add the api route\nSIMPLE_TASK")
        with patch("crew_orchestrator.cli.ClaudeCliEngine", return_value=engine):
            result = runner.invoke(main, ["task", "run", "add-endpoint", "--workflow"])

        assert result.exit_code == 0, result.output
        assert engine.started_workers() == ["tina", "bob"]
        assert "finished in status: review" in result.output

    def test_task_run_needs_one_mode(self, cli_env):
        runner, _ = cli_env
        runner.invoke(main, ["task", "add", "Ambiguous"])
        result = runner.invoke(main, ["task", "run", "ambiguous", "--auto", "--workflow"])
        assert result.exit_code == 1
        assert "exactly one" in result.output

    def test_memory_commands(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["memory", "set", "db", "sqlite with WAL", "--category", "decision"])
        assert result.exit_code == 0

        got = runner.invoke(main, ["memory", "get", "db"])
        assert "db = sqlite with WAL [decision]" in got.output

        listing = runner.invoke(main, ["memory", "list", "--category", "decision"])
        assert "sqlite with WAL" in listing.output

        missing = runner.invoke(main, ["memory", "get", "nope"])
        assert missing.exit_code == 1
