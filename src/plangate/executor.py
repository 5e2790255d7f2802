"""Drive one approved plan through execution.

The orchestrator never runs steps itself. An external agent does the work
and reports back with one message per outcome:

- ``StepComplete`` / ``StepFailed`` update ``scripts[i]`` and append a
  checkpoint step record,
- ``PlanComplete`` / ``PlanFailed`` finish the plan and free the slot.

Only one plan executes per ``ExecutionSlot``. Starting a second one fails
immediately with ``ExecutionConflict``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from plangate.checkpoint import CheckpointLog, count_completed_steps, make_step_record
from plangate.errors import ExecutionConflict, InvalidState
from plangate.plan_format import Plan, format_step
from plangate.preflight import validate_preflight
from plangate.store import PlanStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepComplete:
    step: int
    summary: str


@dataclass(frozen=True)
class StepFailed:
    step: int
    summary: str


@dataclass(frozen=True)
class PlanComplete:
    summary: str


@dataclass(frozen=True)
class PlanFailed:
    summary: str


ExecutorMessage = StepComplete | StepFailed | PlanComplete | PlanFailed

# Report actions as named by hosts, mapped to message types.
REPORT_ACTIONS: dict[str, type[ExecutorMessage]] = {
    "step_complete": StepComplete,
    "step_failed": StepFailed,
    "plan_complete": PlanComplete,
    "plan_failed": PlanFailed,
}


def make_message(action: str, summary: str, step: int | None = None) -> ExecutorMessage:
    """Build a message from a host report ``{action, step?, summary}``."""
    try:
        cls = REPORT_ACTIONS[action]
    except KeyError:
        raise ValueError(
            f"Unknown report action '{action}'. Must be one of: {sorted(REPORT_ACTIONS)}"
        ) from None
    if cls in (StepComplete, StepFailed):
        if step is None:
            raise ValueError(f"'{action}' requires a step number.")
        return cls(step, summary)  # type: ignore[call-arg]
    return cls(summary)  # type: ignore[call-arg]


@dataclass
class ActiveExecution:
    """Handle for the plan currently holding an ``ExecutionSlot``."""

    plan_id: str
    total_steps: int
    checkpoint: CheckpointLog
    done: bool = False


class ExecutionSlot:
    def __init__(self) -> None:
        self._active: ActiveExecution | None = None

    @property
    def active(self) -> ActiveExecution | None:
        return self._active

    def acquire(self, plan_id: str, total_steps: int, checkpoint: CheckpointLog) -> ActiveExecution:
        if self._active is not None:
            raise ExecutionConflict(
                f"Plan {self._active.plan_id} is already executing; "
                f"cannot start {plan_id} until it finishes."
            )
        self._active = ActiveExecution(plan_id, total_steps, checkpoint)
        return self._active

    def release(self, handle: ActiveExecution) -> None:
        if self._active is handle:
            self._active = None


@dataclass(frozen=True)
class StartedExecution:
    plan: Plan
    prompt: str
    handle: ActiveExecution


class Orchestrator:
    def __init__(self, store: PlanStore, *, slot: ExecutionSlot | None = None) -> None:
        self.store = store
        self.slot = slot if slot is not None else ExecutionSlot()

    @property
    def active(self) -> ActiveExecution | None:
        return self.slot.active

    def _checkpoint(self, plan_id: str) -> CheckpointLog:
        return CheckpointLog(self.store.project_root, plan_id)

    def start(
        self,
        plan_id: str,
        available_tools: Iterable[str],
        *,
        expected_version: int | None = None,
        session: str | None = None,
    ) -> StartedExecution:
        """Preflight, mark executing and open the checkpoint log.

        ``expected_version`` defaults to the version read here. Any failure
        leaves the plan untouched and the slot free.
        """
        if self.slot.active is not None:
            raise ExecutionConflict(
                f"Plan {self.slot.active.plan_id} is already executing; "
                f"cannot start {plan_id} until it finishes."
            )
        plan = self.store.require(plan_id, refresh=True)
        handle = self.slot.acquire(plan_id, len(plan["steps"]), self._checkpoint(plan_id))
        try:
            version = plan["version"] if expected_version is None else expected_version
            validate_preflight(plan, version, available_tools).raise_for_error()
            plan = self.store.mark_executing(plan_id, session=session, expected_version=version)
        except BaseException:
            self.slot.release(handle)
            raise

        handle.checkpoint.log_start()
        log.info("Executing plan %s (%d steps)", plan_id, handle.total_steps)
        return StartedExecution(plan, build_executor_prompt(plan), handle)

    def attach(self, plan_id: str) -> ActiveExecution:
        """Take the slot for a plan that is already executing."""
        plan = self.store.require(plan_id, refresh=True)
        if plan["status"] != "executing":
            raise InvalidState(
                f"Plan {plan_id} is '{plan['status']}', not 'executing'; "
                "reports are only accepted during execution."
            )
        return self.slot.acquire(plan_id, len(plan["steps"]), self._checkpoint(plan_id))

    def handle(self, message: ExecutorMessage) -> Plan:
        active = self.slot.active
        if active is None or active.done:
            raise InvalidState("No plan is executing; reports are only accepted during execution.")
        if isinstance(message, (StepComplete, StepFailed)):
            return self._record_step(active, message)
        if isinstance(message, (PlanComplete, PlanFailed)):
            return self._finish(active, message)
        raise TypeError(f"Unsupported executor message: {message!r}")

    def _record_step(self, active: ActiveExecution, message: StepComplete | StepFailed) -> Plan:
        if not 1 <= message.step <= active.total_steps:
            raise ValueError(
                f"Step {message.step} is out of range (plan has {active.total_steps} steps)."
            )
        index = message.step - 1
        succeeded = isinstance(message, StepComplete)
        status = "success" if succeeded else "failed"

        plan = self.store.update_script(
            active.plan_id,
            index,
            status,
            summary=message.summary if succeeded else None,
            error=None if succeeded else message.summary,
        )
        step = plan["steps"][index]
        active.checkpoint.log_step(
            make_step_record(
                index,
                step["tool"],
                step["operation"],
                status,
                result_summary=message.summary if succeeded else None,
                error=None if succeeded else message.summary,
            )
        )
        log.info("Plan %s step %d: %s", active.plan_id, message.step, status)
        return plan

    def _finish(self, active: ActiveExecution, message: PlanComplete | PlanFailed) -> Plan:
        try:
            if isinstance(message, PlanComplete):
                summary = message.summary or "Execution completed successfully."
                plan = self.store.mark_completed(active.plan_id, summary)
                active.checkpoint.log_end("completed", plan["result_summary"])
            else:
                completed = count_completed_steps(
                    self.store.project_root, active.plan_id, latest_run=True
                )
                summary = (
                    f"{message.summary or 'Unknown error'} "
                    f"({completed}/{active.total_steps} steps completed)"
                )
                plan = self.store.mark_failed(active.plan_id, summary)
                active.checkpoint.log_end("failed", plan["result_summary"])
        finally:
            active.done = True
            self.slot.release(active)
        log.info("Plan %s finished: %s", active.plan_id, plan["status"])
        return plan


def build_executor_prompt(plan: Plan) -> str:
    """Instructions for the agent that carries out ``plan``."""
    steps = "\n".join(format_step(step, i) for i, step in enumerate(plan["steps"]))
    report = f"plangate plan report {plan['id']}"
    sections = [
        "You are now executing an approved plan. Follow the steps exactly.",
        "",
        f"## Plan: {plan['title']}",
        f"## ID: {plan['id']}",
    ]
    if plan.get("executor_model"):
        sections += ["", "## Executor Model", plan["executor_model"]]
    sections += [
        "",
        "## Available Tools",
        ", ".join(plan["tools_required"]),
        "",
        "## Steps",
        steps,
    ]
    if plan.get("context"):
        sections += ["", "## Context", plan["context"]]
    sections += [
        "",
        "## Execution Protocol",
        "Report the outcome of every step:",
        "",
        "1. After each successful step:",
        f'   {report} step_complete --step <step_number> --summary "what was done"',
        "",
        "2. If a step fails:",
        f'   {report} step_failed --step <step_number> --summary "what went wrong"',
        "   Then immediately:",
        f'   {report} plan_failed --summary "Step N failed: reason"',
        "",
        "3. After ALL steps succeed:",
        f'   {report} plan_complete --summary "brief summary of all results"',
        "",
        "## Rules",
        "- Follow the plan steps in order",
        "- If a step fails, STOP immediately and report the failure",
        "- Do NOT improvise beyond the plan scope",
        "- Do NOT use shell commands to work around missing tools",
        "- Report EVERY step outcome",
        "- Always end with exactly one plan_complete or plan_failed report",
        "- If real-world state doesn't match the plan's assumptions, STOP and report plan_failed",
        '- If a step references an entity without a unique identifier, STOP and report "ambiguous step"',
        "- Do NOT attempt to undo previous steps unless the plan explicitly includes rollback steps",
    ]
    return "\n".join(sections)
