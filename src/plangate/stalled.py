"""Detect plans left in ``executing`` by a host that went away.

Detection is a pure scan run on demand (typically when a host starts up);
there is no watchdog. A plan only becomes ``stalled`` when something calls
``recover_stalled``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, TypedDict

from plangate.errors import VersionConflict
from plangate.plan_format import Plan, parse_timestamp

if TYPE_CHECKING:
    from plangate.store import PlanStore

log = logging.getLogger(__name__)


class RecoveryReport(TypedDict):
    stalled: list[Plan]
    executing: list[Plan]
    messages: list[str]
    conflicts: list[str]


def _started_at(plan: Mapping[str, Any]) -> datetime | None:
    value = plan.get("execution_started_at")
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        log.debug("Plan %s has an unparseable execution_started_at %r", plan.get("id"), value)
        return None


def find_stalled(
    executing_plans: Iterable[Plan],
    timeout_minutes: float,
    *,
    now: datetime | None = None,
) -> list[Plan]:
    """Plans whose execution started more than ``timeout_minutes`` ago.

    Plans without a start timestamp never qualify.
    """
    now = now or datetime.now(UTC)
    limit = timedelta(minutes=timeout_minutes)
    stalled = []
    for plan in executing_plans:
        started = _started_at(plan)
        if started is not None and now - started > limit:
            stalled.append(plan)
    return stalled


def format_stalled_message(plan: Mapping[str, Any], *, now: datetime | None = None) -> str:
    started = _started_at(plan)
    elapsed = 0
    if started is not None:
        elapsed = round(((now or datetime.now(UTC)) - started).total_seconds() / 60)
    return (
        f'Plan {plan["id"]} "{plan["title"]}" has been executing for {elapsed}m '
        f'(started: {plan.get("execution_started_at") or "unknown"}). '
        f'Steps: {len(plan["steps"])}'
    )


def recover_stalled(
    store: PlanStore,
    timeout_minutes: float,
    *,
    now: datetime | None = None,
) -> RecoveryReport:
    """Mark every executing plan past the timeout as ``stalled``.

    Each plan is marked under its listed version. One that moved on since the
    scan is left alone and its id goes to ``conflicts``; the rest of the scan
    still runs.
    """
    store.invalidate_cache()
    executing = store.list("executing")
    candidates = find_stalled(executing, timeout_minutes, now=now)
    candidate_ids = {p["id"] for p in candidates}

    report: RecoveryReport = {"stalled": [], "executing": [], "messages": [], "conflicts": []}
    for plan in candidates:
        message = format_stalled_message(plan, now=now)
        try:
            stalled = store.mark_stalled(plan["id"], expected_version=plan["version"])
        except VersionConflict as e:
            log.warning("Skipped plan %s: %s", plan["id"], e)
            report["conflicts"].append(plan["id"])
            continue
        report["stalled"].append(stalled)
        report["messages"].append(message)
        log.warning("Marked stalled: %s", message)
    report["executing"] = [p for p in executing if p["id"] not in candidate_ids]
    return report
