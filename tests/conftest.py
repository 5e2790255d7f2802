"""Shared fixtures: a throwaway project root and a store over it."""

from __future__ import annotations

import copy
from pathlib import Path

import pytest

from plangate.paths import plan_path
from plangate.plan_format import Plan, serialize_plan
from plangate.store import PlanStore

SAMPLE_STEPS = [
    {
        "description": "Find overdue invoices",
        "tool": "odoo-toolbox",
        "operation": "search",
        "target": "account.move",
    },
    {"description": "Draft reminder emails", "tool": "go-easy", "operation": "draft"},
    {"description": "Send reminders", "tool": "go-easy", "operation": "send", "target": "customers"},
]


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def store(project_root: Path) -> PlanStore:
    return PlanStore(project_root)


@pytest.fixture()
def steps() -> list[dict]:
    return copy.deepcopy(SAMPLE_STEPS)


@pytest.fixture()
def available_tools() -> list[str]:
    return ["odoo-toolbox", "go-easy", "read"]


@pytest.fixture()
def proposed(store: PlanStore, steps: list[dict]) -> Plan:
    return store.create("Send overdue invoice reminders", steps, "Customers past 30 days.")


@pytest.fixture()
def approved(store: PlanStore, proposed: Plan) -> Plan:
    return store.approve(proposed["id"])


@pytest.fixture()
def executing(store: PlanStore, approved: Plan) -> Plan:
    return store.mark_executing(approved["id"])


@pytest.fixture()
def force_status(store: PlanStore):
    """Rewrite a plan's status on disk without going through the transition table."""

    def _force(plan_id: str, status: str) -> Plan:
        plan = store.require(plan_id, refresh=True)
        plan["status"] = status
        plan["version"] += 1
        plan_path(store.project_root, plan_id).write_text(serialize_plan(plan), encoding="utf-8")
        store.invalidate_cache()
        return plan

    return _force
