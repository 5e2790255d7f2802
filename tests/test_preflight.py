"""Tests for preflight validation."""

from __future__ import annotations

import pytest

from plangate.errors import InvalidState, MissingCapability, VersionConflict
from plangate.preflight import validate_preflight


def make_plan(**overrides):
    plan = {"status": "approved", "version": 2, "tools_required": ["odoo-toolbox", "go-easy"]}
    plan.update(overrides)
    return plan


def test_passes_when_everything_lines_up():
    result = validate_preflight(make_plan(), 2, ["go-easy", "odoo-toolbox", "extra"])
    assert result.ok
    assert result.error is None
    result.raise_for_error()


def test_wrong_status_mentions_both_statuses():
    result = validate_preflight(make_plan(status="proposed"), 2, ["odoo-toolbox", "go-easy"])
    assert not result.ok
    assert isinstance(result.error, InvalidState)
    assert str(result.error) == 'Plan is in "proposed" status, expected "approved"'


def test_version_mismatch_names_both_versions():
    result = validate_preflight(make_plan(version=3), 2, ["odoo-toolbox", "go-easy"])
    assert isinstance(result.error, VersionConflict)
    assert str(result.error) == "Plan version mismatch: expected v2, found v3"
    assert (result.error.expected, result.error.found) == (2, 3)


def test_missing_tools_are_listed():
    plan = make_plan(tools_required=["odoo-toolbox", "missing-tool", "other-missing"])
    result = validate_preflight(plan, 2, ["odoo-toolbox"])
    assert isinstance(result.error, MissingCapability)
    assert "missing-tool" in str(result.error)
    assert result.error.missing == ["missing-tool", "other-missing"]
    with pytest.raises(MissingCapability, match="Required tools not available: missing-tool, other-missing"):
        result.raise_for_error()


def test_first_failing_check_wins():
    plan = make_plan(status="failed", version=9, tools_required=["missing-tool"])
    assert isinstance(validate_preflight(plan, 2, []).error, InvalidState)
    plan["status"] = "approved"
    assert isinstance(validate_preflight(plan, 2, []).error, VersionConflict)
