"""Plan document store: create, read, list and optimistic-lock updates.

Plans live as Markdown files in ``<project>/.pi/plans/``. Every mutation is
a read -> apply -> conditional-write cycle:

1. read the current on-disk document (never the cache) for the expected version,
2. apply the mutator, bump ``version`` and ``updated_at``,
3. write the result to a temp file next to the target,
4. re-read the target and require its version to still be the expected one,
5. atomically rename the temp file over the target.

A writer that completes its own cycle between steps 1 and 4 is detected
(``VersionConflict``). Writers never block each other; callers own retries.
The in-memory cache is a read-through optimization only.
"""

from __future__ import annotations

import copy
import logging
import os
import uuid
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

from plangate.errors import (
    InvalidState,
    InvalidTransition,
    ParseError,
    PlanNotFound,
    StorageError,
    VersionConflict,
)
from plangate.paths import PLAN_FILE_PREFIX, PLAN_FILE_SUFFIX, plan_path, plans_dir
from plangate.plan_format import (
    VALID_PLAN_STATUSES,
    VALID_SCRIPT_STATUSES,
    Plan,
    PlanScript,
    derive_tools_required,
    parse_plan,
    serialize_plan,
    single_line,
    utcnow,
    validate_body,
    validate_context,
    validate_step,
)

log = logging.getLogger(__name__)

# Named transitions: verb -> (source statuses, target status). cancelled,
# completed and rejected are terminal; the only way forward from them is clone().
PLAN_TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "approve": (frozenset({"proposed"}), "approved"),
    "reject": (frozenset({"proposed"}), "rejected"),
    "cancel": (frozenset({"proposed", "approved", "executing", "stalled", "failed"}), "cancelled"),
    "execute": (frozenset({"approved"}), "executing"),
    "complete": (frozenset({"executing"}), "completed"),
    "fail": (frozenset({"executing", "stalled"}), "failed"),
    "stall": (frozenset({"executing"}), "stalled"),
    "retry": (frozenset({"failed", "stalled"}), "approved"),
}

_EXECUTION_FIELDS = (
    "execution_session",
    "execution_started_at",
    "execution_ended_at",
    "result_summary",
    "scripts",
)

Mutator = Callable[[Plan], None]


def _new_plan_id() -> str:
    return f"{PLAN_FILE_PREFIX}{uuid.uuid4().hex[:8]}"


def _is_safe_plan_id(plan_id: str) -> bool:
    return (
        isinstance(plan_id, str)
        and plan_id.startswith(PLAN_FILE_PREFIX)
        and len(plan_id) > len(PLAN_FILE_PREFIX)
        and not any(ch in plan_id for ch in "/\\")
        and not any(ch.isspace() for ch in plan_id)
    )


def check_transition(plan: Plan, verb: str) -> str:
    """Return the target status of ``verb``, or raise ``InvalidTransition``."""
    sources, target = PLAN_TRANSITIONS[verb]
    current = plan["status"]
    if current in sources:
        return target
    expected = " or ".join(f"'{s}'" for s in sorted(sources))
    raise InvalidTransition(
        f"Cannot {verb} plan {plan['id']} in status '{current}' (expected {expected})."
    )


def _normalize_free_text(plan: Plan) -> None:
    """Strip ``context``/``body`` in place; raises ``ValueError`` if they would not round-trip."""
    context = validate_context(plan.get("context"))
    body = validate_body(plan.get("body"), has_context=context is not None)
    for key, value in (("context", context), ("body", body)):
        if value is None:
            plan.pop(key, None)  # type: ignore[misc]
        else:
            plan[key] = value  # type: ignore[literal-required]


def _normalize_statuses(status: str | Iterable[str] | None) -> set[str] | None:
    if status is None:
        return None
    statuses = {status} if isinstance(status, str) else set(status)
    invalid = statuses - VALID_PLAN_STATUSES
    if invalid:
        raise ValueError(
            f"Invalid status {sorted(invalid)}. Must be one of: {sorted(VALID_PLAN_STATUSES)}"
        )
    return statuses


class PlanStore:
    """Plans for one project root, with a read-through cache keyed by id."""

    def __init__(self, project_root: str | Path) -> None:
        self.project_root = Path(project_root)
        self.plans_dir = plans_dir(self.project_root)
        self._cache: dict[str, Plan] = {}
        self._cache_loaded = False

    # -- files --

    def _path(self, plan_id: str) -> Path:
        if not _is_safe_plan_id(plan_id):
            raise PlanNotFound(plan_id)
        return plan_path(self.project_root, plan_id)

    def _ensure_dir(self) -> None:
        try:
            self.plans_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create plans directory {self.plans_dir}: {exc}") from exc

    def _read_file(self, path: Path, plan_id: str) -> Plan:
        """Parse one known plan file. Malformed content raises ``ParseError``."""
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise PlanNotFound(plan_id) from None
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc
        plan = parse_plan(text, source=str(path))
        if plan["id"] != plan_id:
            raise ParseError(f"id '{plan['id']}' does not match file name", str(path))
        return plan

    def _write_temp(self, path: Path, text: str) -> Path:
        tmp = path.with_name(f"{path.name}.tmp-{uuid.uuid4().hex[:12]}")
        try:
            tmp.write_text(text, encoding="utf-8")
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {tmp}: {exc}") from exc
        return tmp

    def _load_cache(self) -> None:
        """Scan the plans directory once, skipping documents that fail to parse."""
        if self._cache_loaded:
            return
        try:
            entries = sorted(self.plans_dir.iterdir())
        except FileNotFoundError:
            entries = []
        except OSError as exc:
            raise StorageError(f"Failed to list {self.plans_dir}: {exc}") from exc

        for path in entries:
            name = path.name
            if not (name.startswith(PLAN_FILE_PREFIX) and name.endswith(PLAN_FILE_SUFFIX)):
                continue
            plan_id = name[: -len(PLAN_FILE_SUFFIX)]
            try:
                self._cache[plan_id] = self._read_file(path, plan_id)
            except (ParseError, PlanNotFound) as exc:
                log.warning("Skipping unreadable plan file %s: %s", path, exc)
        self._cache_loaded = True

    def invalidate_cache(self) -> None:
        """Drop every cached plan; the next read goes to disk."""
        self._cache.clear()
        self._cache_loaded = False

    # -- create / read --

    def create(
        self,
        title: str,
        steps: Sequence[dict[str, Any]],
        context: str | None = None,
        *,
        tools_required: Iterable[str] | None = None,
        executor_model: str | None = None,
        planner_model: str | None = None,
    ) -> Plan:
        """Write a new ``proposed`` plan at version 1.

        ``tools_required`` is derived from the steps; names passed in are
        appended after the derived ones.
        """
        if not isinstance(title, str) or not title.strip():
            raise ValueError("Plan title must be a non-empty string.")
        normalized_steps = [validate_step(step, i) for i, step in enumerate(steps)]
        context = validate_context(context)

        now = utcnow()
        plan: Plan = {
            "id": _new_plan_id(),
            "title": single_line(title),
            "status": "proposed",
            "version": 1,
            "created_at": now,
            "updated_at": now,
            "tools_required": derive_tools_required(normalized_steps, tools_required),
            "steps": normalized_steps,
        }
        if planner_model and planner_model.strip():
            plan["planner_model"] = single_line(planner_model)
        if executor_model and executor_model.strip():
            plan["executor_model"] = single_line(executor_model)
        if context is not None:
            plan["context"] = context

        self._ensure_dir()
        path = self._path(plan["id"])
        while path.exists():
            plan["id"] = _new_plan_id()
            path = self._path(plan["id"])

        tmp = self._write_temp(path, serialize_plan(plan))
        try:
            os.replace(tmp, path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {path}: {exc}") from exc

        self._cache[plan["id"]] = plan
        log.info("Created plan %s (%d steps)", plan["id"], len(normalized_steps))
        return copy.deepcopy(plan)

    def get(self, plan_id: str, *, refresh: bool = False) -> Plan | None:
        """Return a plan, or None if it does not exist.

        A corrupt document raises ``ParseError``. ``refresh`` skips the cache.
        """
        if not refresh and plan_id in self._cache:
            return copy.deepcopy(self._cache[plan_id])
        if not _is_safe_plan_id(plan_id):
            return None
        try:
            plan = self._read_file(self._path(plan_id), plan_id)
        except PlanNotFound:
            self._cache.pop(plan_id, None)
            return None
        self._cache[plan_id] = plan
        return copy.deepcopy(plan)

    def require(self, plan_id: str, *, refresh: bool = False) -> Plan:
        """Like ``get`` but raises ``PlanNotFound``."""
        plan = self.get(plan_id, refresh=refresh)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan

    def list(self, status: str | Iterable[str] | None = None) -> list[Plan]:
        """List plans ordered by ``created_at``, optionally filtered by status."""
        statuses = _normalize_statuses(status)
        self._load_cache()
        plans = [
            p for p in self._cache.values() if statuses is None or p["status"] in statuses
        ]
        plans.sort(key=lambda p: (p["created_at"], p["id"]))
        return [copy.deepcopy(p) for p in plans]

    # -- update --

    def update(
        self,
        plan_id: str,
        mutator: Mutator,
        *,
        expected_version: int | None = None,
    ) -> Plan:
        """Apply ``mutator`` to the on-disk plan under the optimistic lock.

        ``expected_version`` pins the version the caller last saw; a mismatch
        with disk raises ``VersionConflict`` before anything is written.
        ``status`` can only change through the named transitions, so a
        mutator that touches it raises ``InvalidTransition``.
        """

        def guarded(plan: Plan) -> None:
            before = plan["status"]
            mutator(plan)
            if plan["status"] != before:
                raise InvalidTransition(
                    f"Plan {plan_id}: status changes go through the named transitions "
                    f"(tried '{before}' -> '{plan['status']}')."
                )

        return self._apply(plan_id, guarded, expected_version=expected_version)

    def _apply(
        self,
        plan_id: str,
        mutator: Mutator,
        *,
        expected_version: int | None = None,
    ) -> Plan:
        path = self._path(plan_id)
        plan = self._read_file(path, plan_id)
        found = plan["version"]
        if expected_version is not None and expected_version != found:
            raise VersionConflict(
                f"Plan {plan_id} was modified concurrently "
                f"(expected v{expected_version}, found v{found})",
                expected=expected_version,
                found=found,
            )
        expected = found

        steps_before = copy.deepcopy(plan["steps"])
        mutator(plan)
        if plan["id"] != plan_id:
            raise InvalidState(f"Plan {plan_id}: id is immutable.")
        if plan["steps"] != steps_before:
            raise InvalidState(f"Plan {plan_id}: steps are immutable once created.")
        _normalize_free_text(plan)
        plan["version"] = expected + 1
        plan["updated_at"] = utcnow()
        text = serialize_plan(plan)

        tmp = self._write_temp(path, text)
        try:
            current = self._read_file(path, plan_id)
            if current["version"] != expected:
                raise VersionConflict(
                    f"Plan {plan_id} was modified concurrently "
                    f"(expected v{expected}, found v{current['version']})",
                    expected=expected,
                    found=current["version"],
                )
            try:
                os.replace(tmp, path)
            except OSError as exc:
                raise StorageError(f"Failed to replace {path}: {exc}") from exc
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        # Cache exactly what is on disk, normalizations included.
        stored = parse_plan(text, source=str(path))
        self._cache[plan_id] = stored
        return copy.deepcopy(stored)

    def _transition(
        self,
        plan_id: str,
        verb: str,
        *,
        expected_version: int | None = None,
        apply: Mutator | None = None,
    ) -> Plan:
        previous: list[str] = []

        def mutate(plan: Plan) -> None:
            target = check_transition(plan, verb)
            previous.append(plan["status"])
            plan["status"] = target
            if apply is not None:
                apply(plan)

        updated = self._apply(plan_id, mutate, expected_version=expected_version)
        log.info(
            "Plan %s: %s -> %s (v%d)", plan_id, previous[0], updated["status"], updated["version"]
        )
        return updated

    # -- named transitions --

    def approve(self, plan_id: str, *, expected_version: int | None = None) -> Plan:
        return self._transition(plan_id, "approve", expected_version=expected_version)

    def reject(
        self,
        plan_id: str,
        feedback: str | None = None,
        *,
        expected_version: int | None = None,
    ) -> Plan:
        """Reject a proposed plan, appending feedback to the body."""

        def apply(plan: Plan) -> None:
            if feedback and feedback.strip():
                section = f"## Rejection (v{plan['version']})\n{feedback.strip()}"
                body = (plan.get("body") or "").strip()
                plan["body"] = f"{body}\n\n{section}" if body else section

        return self._transition(plan_id, "reject", expected_version=expected_version, apply=apply)

    def cancel(self, plan_id: str, *, expected_version: int | None = None) -> Plan:
        return self._transition(plan_id, "cancel", expected_version=expected_version)

    def mark_executing(
        self,
        plan_id: str,
        *,
        session: str | None = None,
        expected_version: int | None = None,
    ) -> Plan:
        """approved -> executing; stamps the start time and resets per-step scripts."""

        def apply(plan: Plan) -> None:
            plan["execution_started_at"] = utcnow()
            if session:
                plan["execution_session"] = single_line(session)
            plan.pop("execution_ended_at", None)
            plan.pop("result_summary", None)
            plan["scripts"] = [
                {"stepIndex": i, "status": "pending"} for i in range(len(plan["steps"]))
            ]

        return self._transition(plan_id, "execute", expected_version=expected_version, apply=apply)

    def _finish(self, summary: str) -> Mutator:
        def apply(plan: Plan) -> None:
            plan["execution_ended_at"] = utcnow()
            plan["result_summary"] = single_line(summary)

        return apply

    def mark_completed(
        self, plan_id: str, summary: str, *, expected_version: int | None = None
    ) -> Plan:
        return self._transition(
            plan_id, "complete", expected_version=expected_version, apply=self._finish(summary)
        )

    def mark_failed(self, plan_id: str, error: str, *, expected_version: int | None = None) -> Plan:
        return self._transition(
            plan_id, "fail", expected_version=expected_version, apply=self._finish(error)
        )

    def mark_stalled(self, plan_id: str, *, expected_version: int | None = None) -> Plan:
        return self._transition(plan_id, "stall", expected_version=expected_version)

    def retry(self, plan_id: str, *, expected_version: int | None = None) -> Plan:
        """Reset a failed or stalled plan to approved under the same id."""

        def apply(plan: Plan) -> None:
            for key in _EXECUTION_FIELDS:
                plan.pop(key, None)  # type: ignore[misc]

        return self._transition(plan_id, "retry", expected_version=expected_version, apply=apply)

    def clone(self, plan_id: str) -> Plan:
        """Create a fresh ``proposed`` plan from an existing plan's content."""
        source = self.require(plan_id, refresh=True)
        cloned = self.create(
            source["title"],
            source["steps"],
            source.get("context"),
            tools_required=source["tools_required"],
            executor_model=source.get("executor_model"),
            planner_model=source.get("planner_model"),
        )
        log.info("Cloned plan %s as %s", plan_id, cloned["id"])
        return cloned

    def update_script(
        self,
        plan_id: str,
        step_index: int,
        status: str,
        *,
        summary: str | None = None,
        error: str | None = None,
    ) -> Plan:
        """Record the runtime status of one step of an executing plan."""
        if status not in VALID_SCRIPT_STATUSES:
            raise ValueError(
                f"Invalid step status '{status}'. Must be one of: {sorted(VALID_SCRIPT_STATUSES)}"
            )

        def mutate(plan: Plan) -> None:
            if plan["status"] != "executing":
                raise InvalidState(
                    f"Plan {plan_id} is '{plan['status']}', not 'executing'; "
                    "step outcomes can only be recorded during execution."
                )
            if not 0 <= step_index < len(plan["steps"]):
                raise ValueError(
                    f"Step {step_index + 1} is out of range (plan has {len(plan['steps'])} steps)."
                )
            scripts = plan.get("scripts") or [
                {"stepIndex": i, "status": "pending"} for i in range(len(plan["steps"]))
            ]
            script: PlanScript = {"stepIndex": step_index, "status": status}
            if summary:
                script["summary"] = summary
            if error:
                script["error"] = error
            scripts[step_index] = script
            plan["scripts"] = scripts

        return self.update(plan_id, mutate)

    # -- delete --

    def delete(self, plan_id: str) -> None:
        """Remove a plan document. Refused while the plan is executing.

        Checkpoint logs under ``sessions/`` are left in place.
        """
        path = self._path(plan_id)
        plan = self._read_file(path, plan_id)
        if plan["status"] == "executing":
            raise InvalidState(f"Cannot delete plan {plan_id} while executing.")
        try:
            path.unlink()
        except FileNotFoundError:
            raise PlanNotFound(plan_id) from None
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}: {exc}") from exc
        self._cache.pop(plan_id, None)
        log.info("Deleted plan %s", plan_id)
