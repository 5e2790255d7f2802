"""Tests for stalled-plan detection and recovery."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from plangate.stalled import find_stalled, format_stalled_message, recover_stalled
from plangate.store import PlanStore

NOW = datetime(2026, 2, 11, 12, 0, tzinfo=UTC)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def make_plan(started_minutes_ago: float | None, **overrides):
    plan = {
        "id": "PLAN-1a2b3c4d",
        "title": "Send reminders",
        "status": "executing",
        "steps": [{"description": "a", "tool": "t", "operation": "o"}] * 3,
    }
    if started_minutes_ago is not None:
        plan["execution_started_at"] = _iso(NOW - timedelta(minutes=started_minutes_ago))
    plan.update(overrides)
    return plan


def test_plan_past_timeout_is_stalled():
    plan = make_plan(45)
    assert find_stalled([plan], 30, now=NOW) == [plan]


def test_plan_within_timeout_is_not_stalled():
    assert find_stalled([make_plan(45)], 60, now=NOW) == []


@pytest.mark.parametrize("timeout", [0, 1, 30, 10_000])
def test_plan_without_start_never_qualifies(timeout):
    assert find_stalled([make_plan(None)], timeout, now=NOW) == []
    assert find_stalled([make_plan(None, execution_started_at="")], timeout, now=NOW) == []


def test_unparseable_start_never_qualifies():
    assert find_stalled([make_plan(None, execution_started_at="yesterday")], 0, now=NOW) == []


def test_format_stalled_message():
    message = format_stalled_message(make_plan(45), now=NOW)
    assert message == (
        'Plan PLAN-1a2b3c4d "Send reminders" has been executing for 45m '
        "(started: 2026-02-11T11:15:00.000Z). Steps: 3"
    )
    assert "for 0m (started: unknown)" in format_stalled_message(make_plan(None), now=NOW)


def _start_at(store: PlanStore, plan_id: str, minutes_ago: float) -> None:
    def backdate(plan):
        plan["execution_started_at"] = _iso(NOW - timedelta(minutes=minutes_ago))

    store.update(plan_id, backdate)


def test_recover_marks_only_timed_out_plans(store, steps):
    old = store.create("old", steps)
    fresh = store.create("fresh", steps)
    idle = store.create("idle", steps)
    for plan in (old, fresh):
        store.approve(plan["id"])
        store.mark_executing(plan["id"])
    _start_at(store, old["id"], 45)
    _start_at(store, fresh["id"], 5)

    report = recover_stalled(PlanStore(store.project_root), 30, now=NOW)

    assert [p["id"] for p in report["stalled"]] == [old["id"]]
    assert report["stalled"][0]["status"] == "stalled"
    assert [p["id"] for p in report["executing"]] == [fresh["id"]]
    assert "has been executing for 45m" in report["messages"][0]
    assert PlanStore(store.project_root).get(old["id"])["status"] == "stalled"
    assert PlanStore(store.project_root).get(idle["id"])["status"] == "proposed"


def test_recover_is_a_no_op_without_executing_plans(store, proposed):
    assert recover_stalled(store, 30, now=NOW) == {
        "stalled": [],
        "executing": [],
        "messages": [],
        "conflicts": [],
    }


def test_recover_does_not_clobber_a_plan_that_moved(store, steps, monkeypatch):
    moved = store.create("moved", steps)
    old = store.create("old", steps)
    for plan in (moved, old):
        store.approve(plan["id"])
        store.mark_executing(plan["id"])
        _start_at(store, plan["id"], 45)
    real_list = store.list

    def list_then_finish(status=None):
        plans = real_list(status)
        PlanStore(store.project_root).mark_completed(moved["id"], "finished meanwhile")
        return plans

    monkeypatch.setattr(store, "list", list_then_finish)
    report = recover_stalled(store, 30, now=NOW)

    assert report["conflicts"] == [moved["id"]]
    assert [p["id"] for p in report["stalled"]] == [old["id"]]
    assert len(report["messages"]) == 1
    assert PlanStore(store.project_root).get(moved["id"])["status"] == "completed"
    assert PlanStore(store.project_root).get(old["id"])["status"] == "stalled"
