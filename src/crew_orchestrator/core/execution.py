"""Execution engine: prompt construction and the Claude CLI runner.

The scheduler only relies on the small contract defined here: an engine's
``start()`` returns a handle whose ``wait()`` resolves to an
``ExecutionResult`` and whose ``cancel()`` stops the run. Anything that
honours that contract (the CLI runner below, a fake in tests) can drive
workers.
"""

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from crew_orchestrator.core.memory import search_memories
from crew_orchestrator.db.models import Task, Worker

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    result_text: str = ""
    cost: float = 0.0
    is_error: bool = False
    errors: list[str] = field(default_factory=list)


class ExecutionHandle:
    """One running execution."""

    async def wait(self) -> ExecutionResult:
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError


class ExecutionEngine:
    def start(self, worker: Worker, prompt: str, cwd: str | Path) -> ExecutionHandle:
        raise NotImplementedError


# ── Role prompts ─────────────────────────────────────────────────────────────


ROLE_PROMPTS: dict[str, str] = {
    "architect": (
        "You are the Architect of a small engineering crew.\n"
        "You design the structure of changes before anyone writes code: break the work "
        "into concrete steps, name the files and interfaces involved, call out trade-offs "
        "and risks, and say which developer role (frontend_dev or backend_dev) should "
        "carry out the plan.\n"
        "Keep plans actionable. A developer who has not seen the task before should be "
        "able to follow them."
    ),
    "tech_lead": (
        "You are the Tech Lead of a small engineering crew.\n"
        "You triage incoming tasks, decide whether they need architectural planning, "
        "unblock developers who are stuck and keep the work moving in the right order.\n"
        "Be concise and decisive."
    ),
    "frontend_dev": (
        "You are the Frontend Developer of a small engineering crew.\n"
        "You implement user-facing components, pages, styling and client-side state. "
        "Favour small composable components, semantic markup and accessible interactions."
    ),
    "backend_dev": (
        "You are the Backend Developer of a small engineering crew.\n"
        "You implement API routes, data access, integrations and server-side logic. "
        "Validate inputs, use parameterized queries and handle errors explicitly."
    ),
    "qa": (
        "You are the QA Engineer of a small engineering crew.\n"
        "You review finished work for bugs, regressions and missed requirements, and "
        "run or write tests where it helps. Report findings with clear reproduction steps "
        "and focus on issues that matter."
    ),
    "custom": (
        "You are a member of a small engineering crew.\n"
        "Follow the instructions you are given and complete the task accurately."
    ),
}


def get_role_prompt(role: str, custom_prompt: str | None = None) -> str:
    """The system prompt for a role, with any per-worker instructions appended."""
    base = ROLE_PROMPTS.get(role, ROLE_PROMPTS["custom"])
    if custom_prompt:
        return f"{base}\n\n--- Additional Instructions ---\n{custom_prompt}"
    return base


def build_task_prompt(db: sqlite3.Connection | None, task: Task, worker: Worker) -> str:
    """Build the prompt a worker receives for a task."""
    parts = [f"# Task: {task.title}"]

    if task.description:
        parts.append(f"\n## Description\n{task.description}")

    if task.parsed_spec:
        parts.append(f"\n## Specification\n{task.parsed_spec}")

    parts.append("\n## Context")
    parts.append(f"- Priority: {task.priority}")
    if task.category:
        parts.append(f"- Category: {task.category}")
    parts.append(f"- Your role: {worker.role}")
    if task.branch:
        parts.append(f"- Working branch: {task.branch}")

    # Pull relevant memories (best-effort)
    if db is not None:
        try:
            memories = search_memories(db, _fts_query(task.title), project_id=task.project_id)
            if memories:
                parts.append("\n## Relevant Context (from memory)")
                for mem in memories[:5]:
                    parts.append(f"- **{mem.key}**: {mem.value}")
        except sqlite3.Error:
            logger.debug("Memory lookup failed for task %s", task.id, exc_info=True)

    parts.append("\n## Instructions")
    parts.append(
        "Complete this task thoroughly. When done, provide a summary of what was accomplished."
    )
    return "\n".join(parts)


def _fts_query(text: str) -> str:
    """Turn free text into an OR query of quoted FTS5 terms."""
    words = [w for w in "".join(c if c.isalnum() else " " for c in text).split() if len(w) > 2]
    return " OR ".join(f'"{w}"' for w in words) or '""'


# ── Claude CLI runner ────────────────────────────────────────────────────────


class ClaudeCliExecution(ExecutionHandle):
    """A single ``claude -p`` run in a subprocess."""

    def __init__(self, cmd: list[str], cwd: str | Path):
        self.cmd = cmd
        self.cwd = str(cwd)
        self._proc: asyncio.subprocess.Process | None = None
        self._cancelled = False

    async def wait(self) -> ExecutionResult:
        if self._cancelled:
            return ExecutionResult(is_error=True, errors=["Execution cancelled"])
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return ExecutionResult(is_error=True, errors=[f"Failed to launch {self.cmd[0]}: {e}"])

        logger.info("Launched %s (PID %s) in %s", self.cmd[0], self._proc.pid, self.cwd)
        if self._cancelled:
            # cancel() arrived while the process was still being launched
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass
        stdout, _ = await self._proc.communicate()
        output = stdout.decode(errors="replace") if stdout else ""

        if self._cancelled:
            return ExecutionResult(is_error=True, errors=["Execution cancelled"])
        return parse_cli_output(output, self._proc.returncode)

    def cancel(self) -> None:
        self._cancelled = True
        if self._proc is not None and self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass  # Already exited
            logger.info("Terminated PID %s", self._proc.pid)


class ClaudeCliEngine(ExecutionEngine):
    """Runs workers through the Claude CLI in print mode with JSON output."""

    def __init__(self, claude_bin: str = "claude"):
        self.claude_bin = claude_bin

    def build_command(self, worker: Worker, prompt: str) -> list[str]:
        cmd = [self.claude_bin, "-p", prompt, "--output-format", "json"]
        if worker.model:
            cmd += ["--model", worker.model]
        if worker.permission_mode:
            cmd += ["--permission-mode", worker.permission_mode]
        if worker.max_turns:
            cmd += ["--max-turns", str(worker.max_turns)]
        if worker.allowed_tools:
            cmd += ["--allowedTools", ",".join(worker.allowed_tools)]
        cmd += ["--append-system-prompt", get_role_prompt(worker.role, worker.system_prompt)]
        return cmd

    def start(self, worker: Worker, prompt: str, cwd: str | Path) -> ExecutionHandle:
        return ClaudeCliExecution(self.build_command(worker, prompt), cwd)


def parse_cli_output(output: str, exit_code: int | None) -> ExecutionResult:
    """Interpret the JSON document ``claude -p --output-format json`` prints."""
    if not output.strip():
        return ExecutionResult(
            is_error=True, errors=[f"Empty output (exit code {exit_code})"]
        )

    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        if exit_code:
            return ExecutionResult(is_error=True, errors=[output[:500]])
        return ExecutionResult(result_text=output)

    if not isinstance(data, dict):
        return ExecutionResult(result_text=output, is_error=bool(exit_code))

    cost = float(data.get("total_cost_usd") or 0.0)
    is_error = bool(data.get("is_error")) or data.get("subtype", "success") != "success"
    if is_error or exit_code:
        errors = data.get("errors") or [data.get("result") or data.get("subtype") or "Unknown error"]
        return ExecutionResult(
            result_text=data.get("result") or "",
            cost=cost,
            is_error=True,
            errors=[str(e) for e in errors],
        )
    return ExecutionResult(result_text=data.get("result") or "", cost=cost)
