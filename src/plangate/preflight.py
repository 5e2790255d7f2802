"""Checks run immediately before a plan starts executing."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from plangate.errors import InvalidState, MissingCapability, PlanError, VersionConflict


@dataclass(frozen=True)
class PreflightResult:
    error: PlanError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def validate_preflight(
    plan: Mapping[str, Any],
    expected_version: int,
    available_tools: Iterable[str],
) -> PreflightResult:
    """Validate status, version freshness and tool availability, in that order.

    The first failing check is returned; nothing is raised.
    """
    if plan["status"] != "approved":
        return PreflightResult(
            InvalidState(f'Plan is in "{plan["status"]}" status, expected "approved"')
        )

    if plan["version"] != expected_version:
        return PreflightResult(
            VersionConflict(
                f"Plan version mismatch: expected v{expected_version}, found v{plan['version']}",
                expected=expected_version,
                found=plan["version"],
            )
        )

    available = set(available_tools)
    missing = [tool for tool in plan.get("tools_required", []) if tool not in available]
    if missing:
        return PreflightResult(MissingCapability(missing))

    return PreflightResult()
