"""Multi-role workflow pipeline layered on top of the scheduler.

A workflow walks one task through the crew:

    tech_lead_triage   -> architect_planning | dev_execution
    architect_planning -> dev_execution
    dev_execution      -> qa_review | completed (no QA worker)
    qa_review          -> completed (approved) | dev_fix
    dev_fix            -> qa_review | tech_lead_fix_plan (escalation)
    tech_lead_fix_plan -> dev_fix_with_plan | architect_fix_plan (escalation)
    dev_fix_with_plan  -> qa_review
    architect_fix_plan -> tech_lead_relay_plan
    tech_lead_relay_plan -> dev_fix_with_plan

Phase changes are driven by the markers workers print (see
``core.markers``). Every hand-off appends the relevant text to the task
description, resets the task to ``created`` and re-enters the scheduler
with the next worker.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from crew_orchestrator.core.lifecycle import transition_task
from crew_orchestrator.core.markers import dev_needs_help, parse_qa_verdict, parse_triage_decision
from crew_orchestrator.core.roles import NON_DEV_ROLES, detect_dev_from_plan
from crew_orchestrator.core.tasks import append_to_description, get_task, record_action
from crew_orchestrator.core.workers import get_worker, list_workers
from crew_orchestrator.db.models import Task, Worker

if TYPE_CHECKING:
    from crew_orchestrator.core.manager import Manager

logger = logging.getLogger(__name__)

PHASES = (
    "tech_lead_triage",
    "architect_planning",
    "dev_execution",
    "qa_review",
    "dev_fix",
    "tech_lead_fix_plan",
    "dev_fix_with_plan",
    "architect_fix_plan",
    "tech_lead_relay_plan",
)

COMPLETED = "completed"

# QA rejections tolerated before the fix loop escalates to the tech lead.
MAX_QA_RETRIES = 2


@dataclass
class WorkflowState:
    phase: str
    tech_lead_id: str
    architect_id: str | None = None
    plan: str | None = None
    selected_dev_id: str | None = None
    qa_retries: int = 0


class Workflow:
    def __init__(self, manager: "Manager"):
        self.manager = manager
        self._states: dict[str, WorkflowState] = {}
        self._handlers: dict[str, Callable[[Task, WorkflowState, str], Awaitable[bool]]] = {
            "tech_lead_triage": self._after_triage,
            "architect_planning": self._after_planning,
            "dev_execution": self._after_dev,
            "qa_review": self._after_qa,
            "dev_fix": self._after_dev_fix,
            "tech_lead_fix_plan": self._after_fix_plan,
            "dev_fix_with_plan": self._after_dev,
            "architect_fix_plan": self._after_architect_fix_plan,
            "tech_lead_relay_plan": self._after_relay,
        }

    @property
    def db(self):
        return self.manager.db

    @property
    def bus(self):
        return self.manager.bus

    def state(self, task_id: str) -> WorkflowState | None:
        return self._states.get(task_id)

    def discard(self, task_id: str) -> None:
        self._states.pop(task_id, None)

    # ── Entry points ─────────────────────────────────────────────────────────

    async def start(self, task_id: str, tech_lead_id: str) -> bool:
        """Launch the pipeline for a task, beginning with tech lead triage."""
        task = get_task(self.db, task_id)
        if not task:
            logger.warning("Task %s not found for workflow", task_id)
            return False
        tech_lead = get_worker(self.db, tech_lead_id)
        if not tech_lead or not tech_lead.is_active:
            logger.warning("Tech lead %s not available for task %s", tech_lead_id, task_id)
            return False
        if task_id in self._states:
            logger.warning("Workflow already running for task %s", task_id)
            return False

        state = WorkflowState(phase="tech_lead_triage", tech_lead_id=tech_lead.id)
        self._states[task_id] = state
        self._announce(task, state, tech_lead, f"{tech_lead.name} triaging the task")
        logger.info("Workflow started for task %s with %s", task_id, tech_lead.name)

        if not await self.manager.assign_task(task_id, tech_lead.id):
            self.discard(task_id)
            return False
        return True

    async def advance(self, task_id: str, result: str | None) -> bool:
        """Move the workflow on after a successful run.

        Returns True when the workflow claimed the task (it was handed to
        another worker, or failed for good). False means the task is not
        in a workflow or the workflow just completed; either way the caller
        moves it to review.
        """
        state = self._states.get(task_id)
        if state is None:
            return False
        task = get_task(self.db, task_id)
        if not task:
            self.discard(task_id)
            return False

        handler = self._handlers.get(state.phase)
        if handler is None:
            logger.warning("Unknown workflow phase %s for task %s", state.phase, task_id)
            self.discard(task_id)
            return False
        return await handler(task, state, result or "")

    async def escalate(self, task_id: str, error: str) -> bool:
        """Escalate a developer who kept failing while fixing QA issues."""
        state = self._states.get(task_id)
        if state is None or state.phase not in ("dev_fix", "dev_fix_with_plan"):
            return False
        task = get_task(self.db, task_id)
        if not task:
            return False

        body = f"The developer could not complete the fix:\n{error}"
        if state.phase == "dev_fix":
            return await self._to_tech_lead_fix_plan(task, state, body)
        return await self._to_architect_fix_plan(task, state, body)

    # ── Phase handlers ───────────────────────────────────────────────────────

    async def _after_triage(self, task: Task, state: WorkflowState, result: str) -> bool:
        decision = parse_triage_decision(result)
        if decision.needs_architect:
            architect = self._find_role("architect")
            if not architect:
                return self._fail(task, state, "Task needs an architect but no active architect is configured")
            state.architect_id = architect.id
            return await self._hand_off(
                task, state, "architect_planning", architect,
                f"{architect.name} creating an execution plan",
                heading="Tech Lead Analysis", body=decision.analysis or result,
            )

        state.plan = decision.plan or result
        return await self._to_developer(task, state, "dev_execution", heading="Tech Lead Plan")

    async def _after_planning(self, task: Task, state: WorkflowState, result: str) -> bool:
        state.plan = result.strip() or "No plan provided"
        return await self._to_developer(task, state, "dev_execution", heading="Architect Plan")

    async def _after_dev(self, task: Task, state: WorkflowState, result: str) -> bool:
        qa = self._find_role("qa")
        if not qa:
            self._complete(task, state, "Workflow completed (no QA worker)")
            return False
        return await self._hand_off(
            task, state, "qa_review", qa,
            f"{qa.name} reviewing the implementation",
        )

    async def _after_qa(self, task: Task, state: WorkflowState, result: str) -> bool:
        verdict = parse_qa_verdict(result)
        if verdict.approved:
            self._complete(task, state, "Workflow completed (QA approved)")
            return False

        state.qa_retries += 1
        feedback = verdict.reason or result
        if state.qa_retries > MAX_QA_RETRIES:
            body = f"QA rejected the work {state.qa_retries} times. Latest feedback:\n{feedback}"
            return await self._to_tech_lead_fix_plan(task, state, body)

        dev = self._selected_dev(state)
        if not dev:
            return self._fail(task, state, "QA rejected the work but no developer is available to fix it")
        return await self._hand_off(
            task, state, "dev_fix", dev,
            f"{dev.name} fixing QA issues (round {state.qa_retries})",
            heading="QA Feedback", body=feedback,
        )

    async def _after_dev_fix(self, task: Task, state: WorkflowState, result: str) -> bool:
        if dev_needs_help(result):
            return await self._to_tech_lead_fix_plan(task, state, result)
        return await self._after_dev(task, state, result)

    async def _after_fix_plan(self, task: Task, state: WorkflowState, result: str) -> bool:
        decision = parse_triage_decision(result, warn=False)
        if decision.needs_architect and decision.marker_found:
            return await self._to_architect_fix_plan(task, state, decision.analysis or result)

        plan = decision.plan or result.strip()
        state.plan = plan
        dev = self._selected_dev(state)
        if not dev:
            return self._fail(task, state, "Fix plan ready but no developer is available")
        return await self._hand_off(
            task, state, "dev_fix_with_plan", dev,
            f"{dev.name} applying the tech lead's fix plan",
            heading="Tech Lead Fix Plan", body=plan, parsed_spec=plan,
        )

    async def _after_architect_fix_plan(self, task: Task, state: WorkflowState, result: str) -> bool:
        plan = result.strip() or "No plan provided"
        state.plan = plan
        tech_lead = self._tech_lead(state)
        if not tech_lead:
            return self._fail(task, state, "Architect fix plan ready but no tech lead is available to relay it")
        return await self._hand_off(
            task, state, "tech_lead_relay_plan", tech_lead,
            f"{tech_lead.name} relaying the architect's fix plan",
            heading="Architect Fix Plan", body=plan, parsed_spec=plan,
        )

    async def _after_relay(self, task: Task, state: WorkflowState, result: str) -> bool:
        plan = result.strip() or state.plan or ""
        state.plan = plan
        dev = self._selected_dev(state)
        if not dev:
            return self._fail(task, state, "Fix plan relayed but no developer is available")
        return await self._hand_off(
            task, state, "dev_fix_with_plan", dev,
            f"{dev.name} applying the relayed fix plan",
            heading="Tech Lead Instructions", body=plan, parsed_spec=plan,
        )

    # ── Escalations ──────────────────────────────────────────────────────────

    async def _to_tech_lead_fix_plan(self, task: Task, state: WorkflowState, body: str) -> bool:
        tech_lead = self._tech_lead(state)
        if not tech_lead:
            return self._fail(task, state, "Developer needs help but no tech lead is available")
        return await self._hand_off(
            task, state, "tech_lead_fix_plan", tech_lead,
            f"Escalated to {tech_lead.name} for a fix plan",
            heading="Escalation: Developer Needs Help", body=body,
        )

    async def _to_architect_fix_plan(self, task: Task, state: WorkflowState, body: str) -> bool:
        architect = self._architect(state)
        if not architect:
            return self._fail(task, state, "Fix needs an architect but no active architect is configured")
        state.architect_id = architect.id
        return await self._hand_off(
            task, state, "architect_fix_plan", architect,
            f"Escalated to {architect.name} for a fix plan",
            heading="Escalation: Architect Review", body=body,
        )

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _to_developer(self, task: Task, state: WorkflowState, phase: str, heading: str) -> bool:
        dev = self.select_developer(state.plan)
        append_to_description(self.db, task.id, heading, state.plan, parsed_spec=state.plan)
        if dev is None:
            logger.warning("No developer available for task %s, falling back to auto-assign", task.id)
            state.phase = phase
            transition_task(self.db, task.id, "created", note="Plan ready, selecting a worker", bus=self.bus)
            await self.manager.auto_assign_task(task.id)
            return True

        state.selected_dev_id = dev.id
        return await self._hand_off(task, state, phase, dev, f"{dev.name} implementing the task")

    def select_developer(self, plan: str | None) -> Worker | None:
        """Pick the developer for a plan.

        Idle worker in the detected role, then any worker in that role, then
        any idle non-coordinating worker, then any worker outside the tech
        lead and architect roles.
        """
        role = detect_dev_from_plan(plan)
        workers = list_workers(self.db, active_only=True)
        busy = self.manager.is_worker_busy

        candidates = (
            [w for w in workers if w.role == role and not busy(w.id)],
            [w for w in workers if w.role == role],
            [w for w in workers if w.role not in NON_DEV_ROLES and not busy(w.id)],
            [w for w in workers if w.role not in ("tech_lead", "architect")],
        )
        for group in candidates:
            if group:
                return group[0]
        return None

    async def _hand_off(
        self,
        task: Task,
        state: WorkflowState,
        phase: str,
        worker: Worker,
        detail: str,
        heading: str | None = None,
        body: str | None = None,
        parsed_spec: str | None = None,
    ) -> bool:
        if heading and body:
            append_to_description(self.db, task.id, heading, body, parsed_spec=parsed_spec)
        state.phase = phase
        transition_task(self.db, task.id, "created", note=detail, bus=self.bus)
        self._announce(task, state, worker, detail)
        logger.info("Workflow for task %s -> %s (%s)", task.id, phase, worker.name)
        await self.manager.assign_task(task.id, worker.id)
        return True

    def _announce(self, task: Task, state: WorkflowState, worker: Worker | None, detail: str) -> None:
        record_action(self.db, task.id, "workflow_phase", worker_id=worker.id if worker else None,
                      detail=f"{state.phase}: {detail}")
        self.bus.emit("workflow:phase", {
            "task_id": task.id,
            "project_id": task.project_id,
            "phase": state.phase,
            "worker_id": worker.id if worker else None,
            "worker_name": worker.name if worker else "",
            "detail": detail,
        })
        self.bus.emit("agent:notification", {
            "worker_id": state.tech_lead_id,
            "project_id": task.project_id,
            "message": detail,
            "level": "info",
        })

    def _complete(self, task: Task, state: WorkflowState, detail: str) -> None:
        state.phase = COMPLETED
        self._announce(task, state, None, detail)
        self.discard(task.id)
        logger.info("Workflow for task %s: %s", task.id, detail)

    def _fail(self, task: Task, state: WorkflowState, reason: str) -> bool:
        logger.warning("Workflow for task %s abandoned: %s", task.id, reason)
        self.discard(task.id)
        transition_task(self.db, task.id, "failed", note=reason, bus=self.bus)
        return True

    def _find_role(self, role: str) -> Worker | None:
        """First active worker in a role, preferring idle ones."""
        workers = list_workers(self.db, active_only=True, role=role)
        for w in workers:
            if not self.manager.is_worker_busy(w.id):
                return w
        return workers[0] if workers else None

    def _active(self, worker_id: str | None) -> Worker | None:
        if not worker_id:
            return None
        worker = get_worker(self.db, worker_id)
        return worker if worker and worker.is_active else None

    def _tech_lead(self, state: WorkflowState) -> Worker | None:
        return self._active(state.tech_lead_id) or self._find_role("tech_lead")

    def _architect(self, state: WorkflowState) -> Worker | None:
        return self._active(state.architect_id) or self._find_role("architect")

    def _selected_dev(self, state: WorkflowState) -> Worker | None:
        dev = self._active(state.selected_dev_id)
        if dev is None:
            dev = self.select_developer(state.plan)
            if dev is not None:
                state.selected_dev_id = dev.id
        return dev
