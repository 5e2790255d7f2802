"""Concurrent writers against one plans directory."""

from __future__ import annotations

import threading
from pathlib import Path

from plangate.errors import InvalidTransition, VersionConflict
from plangate.paths import plan_path
from plangate.plan_format import parse_plan
from plangate.store import PlanStore


def _join_threads(threads: list[threading.Thread]) -> None:
    for thread in threads:
        thread.join(timeout=15)
        assert not thread.is_alive(), f"Thread {thread.name} did not finish"


def test_concurrent_updates_never_corrupt_the_document(project_root: Path, steps):
    plan = PlanStore(project_root).create("contended", steps)
    workers = 6
    barrier = threading.Barrier(workers)
    results: list[int] = []
    conflicts: list[VersionConflict] = []
    errors: list[BaseException] = []

    def _worker(n: int) -> None:
        store = PlanStore(project_root)
        try:
            barrier.wait(timeout=5)

            def mutate(p):
                p["title"] = f"writer {n}"

            results.append(store.update(plan["id"], mutate)["version"])
        except VersionConflict as exc:
            conflicts.append(exc)
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(i,), name=f"writer-{i}") for i in range(workers)]
    for t in threads:
        t.start()
    _join_threads(threads)

    assert errors == []
    assert len(results) + len(conflicts) == workers
    assert results, "at least one writer must win"

    final = parse_plan(plan_path(project_root, plan["id"]).read_text())
    assert final["title"].startswith("writer ")
    assert 2 <= final["version"] <= 1 + len(results)
    assert final["version"] in results
    assert list((project_root / ".pi" / "plans").glob("*.tmp-*")) == []


def test_concurrent_approvals_admit_one_winner(project_root: Path, steps):
    plan = PlanStore(project_root).create("approve me", steps)
    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    errors: list[BaseException] = []

    def _worker() -> None:
        store = PlanStore(project_root)
        try:
            barrier.wait(timeout=5)
            store.approve(plan["id"], expected_version=1)
            outcomes.append("approved")
        except (VersionConflict, InvalidTransition) as exc:
            outcomes.append(type(exc).__name__)
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)

    threads = [threading.Thread(target=_worker, name=f"approver-{i}") for i in range(2)]
    for t in threads:
        t.start()
    _join_threads(threads)

    assert errors == []
    assert "approved" in outcomes
    final = PlanStore(project_root).get(plan["id"])
    assert final["status"] == "approved"
    assert final["version"] == 2
