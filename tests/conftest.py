"""Shared fixtures: a temp database and a scripted execution engine."""

import asyncio
import tempfile
from pathlib import Path

import pytest

from crew_orchestrator.config import Config
from crew_orchestrator.core import projects as projects_mod
from crew_orchestrator.core.execution import ExecutionEngine, ExecutionHandle, ExecutionResult
from crew_orchestrator.db.engine import init_db


class FakeHandle(ExecutionHandle):
    def __init__(self, result: ExecutionResult, hold: bool):
        self.result = result
        self.cancelled = False
        self._gate = asyncio.Event() if hold else None

    async def wait(self) -> ExecutionResult:
        if self._gate is not None:
            await self._gate.wait()
        if self.cancelled:
            return ExecutionResult(is_error=True, errors=["Execution cancelled"])
        return self.result

    def release(self):
        if self._gate is not None:
            self._gate.set()

    def cancel(self):
        self.cancelled = True
        self.release()


class FakeEngine(ExecutionEngine):
    """Plays back scripted results per worker.

    With ``hold`` set, every run blocks until released so tests can look at
    the scheduler while executions are in flight.
    """

    def __init__(self, hold: bool = False):
        self.hold = hold
        self.scripts: dict[str, list[ExecutionResult]] = {}
        self.starts: list[tuple[str, str]] = []
        self.handles: list[FakeHandle] = []

    def script(self, worker_id: str, *results):
        for r in results:
            if isinstance(r, str):
                r = ExecutionResult(result_text=r, cost=0.01)
            self.scripts.setdefault(worker_id, []).append(r)

    def start(self, worker, prompt, cwd):
        queued = self.scripts.get(worker.id)
        result = queued.pop(0) if queued else ExecutionResult(result_text="Done.", cost=0.01)
        handle = FakeHandle(result, self.hold)
        self.starts.append((worker.id, prompt))
        self.handles.append(handle)
        return handle

    def started_workers(self) -> list[str]:
        return [worker_id for worker_id, _ in self.starts]


def failure(message: str = "boom") -> ExecutionResult:
    return ExecutionResult(is_error=True, errors=[message])


async def settle(rounds: int = 50):
    """Let detached scheduler jobs run without waiting on held executions."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        projects_mod.create_project(conn, "test", "Test Project", tmp)
        yield conn
        conn.close()


@pytest.fixture
def config():
    with tempfile.TemporaryDirectory() as tmp:
        yield Config(
            db_path=Path(tmp) / "crew.db",
            repo_path=Path(tmp),
            max_retries=1,
            retry_delay=0,
        )


@pytest.fixture
def engine():
    return FakeEngine()
