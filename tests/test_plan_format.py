"""Tests for the plan document format."""

from __future__ import annotations

import pytest

from plangate.errors import ParseError
from plangate.plan_format import (
    decode_plan,
    derive_tools_required,
    parse_plan,
    serialize_plan,
    validate_body,
    validate_context,
    validate_step,
)

EXPECTED_DOCUMENT = """\
---
id: PLAN-1a2b3c4d
title: "Send overdue invoice reminders"
status: proposed
version: 1
created_at: 2026-02-11T12:00:00.000Z
updated_at: 2026-02-11T12:00:00.000Z
tools_required:
  - odoo-toolbox
  - go-easy
---

## Steps
1. Find overdue invoices (odoo-toolbox: search → account.move)
2. Email each customer (go-easy: send)

## Context
Free text gathered before proposing.

"""


def make_plan(**overrides):
    plan = {
        "id": "PLAN-1a2b3c4d",
        "title": "Send overdue invoice reminders",
        "status": "proposed",
        "version": 1,
        "created_at": "2026-02-11T12:00:00.000Z",
        "updated_at": "2026-02-11T12:00:00.000Z",
        "tools_required": ["odoo-toolbox", "go-easy"],
        "steps": [
            {
                "description": "Find overdue invoices",
                "tool": "odoo-toolbox",
                "operation": "search",
                "target": "account.move",
            },
            {"description": "Email each customer", "tool": "go-easy", "operation": "send"},
        ],
        "context": "Free text gathered before proposing.",
    }
    plan.update(overrides)
    return plan


def test_serialize_writes_exact_document():
    assert serialize_plan(make_plan()) == EXPECTED_DOCUMENT


def test_parse_reads_exact_document():
    plan = parse_plan(EXPECTED_DOCUMENT)
    assert plan == make_plan()


@pytest.mark.parametrize("count", [0, 1, 2, 5])
def test_round_trip_is_idempotent(count):
    steps = [
        {
            "description": f"Step number {i} (with parens)",
            "tool": f"tool-{i % 2}",
            "operation": f"op_{i}",
            **({"target": f"res/{i} → final"} if i % 2 else {}),
        }
        for i in range(count)
    ]
    plan = make_plan(steps=steps, tools_required=derive_tools_required(steps))
    first = serialize_plan(plan)
    parsed = parse_plan(first)
    assert serialize_plan(parsed) == first
    assert parsed["steps"] == steps
    assert parsed["context"] == plan["context"]


def test_round_trip_keeps_execution_metadata():
    plan = make_plan(
        status="failed",
        version=5,
        planner_model="anthropic/planner",
        executor_model="anthropic/executor",
        execution_session="sess-1",
        execution_started_at="2026-02-11T12:05:00.000Z",
        execution_ended_at="2026-02-11T12:06:00.000Z",
        result_summary='Step 2 "send" failed',
        scripts=[
            {"stepIndex": 0, "status": "success", "summary": "found 3"},
            {"stepIndex": 1, "status": "failed", "error": "smtp down"},
        ],
        body="## Rejection (v1)\nToo broad.",
    )
    text = serialize_plan(plan)
    assert 'result_summary: "Step 2 \\"send\\" failed"' in text
    assert '  - {"status":"success","stepIndex":0,"summary":"found 3"}' in text
    assert parse_plan(text) == plan


def test_title_quotes_survive():
    plan = make_plan(title='Rename "legacy" bucket')
    assert parse_plan(serialize_plan(plan))["title"] == 'Rename "legacy" bucket'


def test_body_without_context_stays_body():
    plan = make_plan(body="## Rejection (v1)\nNeeds a dry run first.")
    del plan["context"]
    parsed = parse_plan(serialize_plan(plan))
    assert "context" not in parsed
    assert parsed["body"] == "## Rejection (v1)\nNeeds a dry run first."


def test_decode_reports_failure_without_raising():
    result = decode_plan("no metadata here")
    assert not result.ok
    assert result.plan is None
    assert "metadata" in result.error


def test_parse_error_names_source():
    with pytest.raises(ParseError, match=r"^/tmp/PLAN-x\.md: no metadata block"):
        parse_plan("garbage", source="/tmp/PLAN-x.md")


@pytest.mark.parametrize(
    "mangle, fragment",
    [
        (lambda t: t.replace("status: proposed", "status: paused"), "status"),
        (lambda t: t.replace("version: 1", "version: one"), "version"),
        (lambda t: t.replace("id: PLAN-1a2b3c4d\n", ""), "id"),
        (lambda t: t.replace("status: proposed\n", "status: proposed\nowner: me\n"), "owner"),
        (lambda t: t.replace("status: proposed\n", "status: proposed\nstatus: approved\n"), "duplicate"),
        (lambda t: t.replace("2. Email", "3. Email"), "expected step 2"),
        (lambda t: t.replace("(go-easy: send)", "go-easy send"), "malformed step line"),
        (lambda t: t.replace("title: ", "title "), "unrecognized"),
    ],
)
def test_parse_rejects_malformed_documents(mangle, fragment):
    with pytest.raises(ParseError, match=fragment):
        parse_plan(mangle(EXPECTED_DOCUMENT))


def test_scripts_must_match_steps():
    text = serialize_plan(make_plan(scripts=[{"stepIndex": 0, "status": "pending"}]))
    with pytest.raises(ParseError, match="1 entries for 2 step"):
        parse_plan(text)


def test_scripts_must_be_valid_json():
    text = serialize_plan(make_plan()).replace(
        "updated_at: 2026-02-11T12:00:00.000Z\n",
        "updated_at: 2026-02-11T12:00:00.000Z\nscripts:\n  - {not json}\n  - {}\n",
    )
    with pytest.raises(ParseError, match=r"scripts\[0\]: invalid JSON"):
        parse_plan(text)


class TestValidateStep:
    def test_strips_and_drops_blank_target(self):
        step = validate_step({"description": " Look ", "tool": "rg", "operation": "search", "target": " "})
        assert step == {"description": "Look", "tool": "rg", "operation": "search"}

    @pytest.mark.parametrize(
        "step, message",
        [
            ({"tool": "rg", "operation": "search"}, "'description' must be a non-empty string"),
            ({"description": "x", "tool": "r g", "operation": "search"}, "'tool' must not contain whitespace"),
            ({"description": "a\nb", "tool": "rg", "operation": "search"}, "single line"),
            ({"description": "x", "tool": "rg", "operation": "search", "target": 3}, "'target' must be a string"),
        ],
    )
    def test_rejects_unwritable_steps(self, step, message):
        with pytest.raises(ValueError, match=message):
            validate_step(step, 1)

    def test_rejects_ambiguous_text(self):
        with pytest.raises(ValueError, match="ambiguous"):
            validate_step({"description": "x (t: o → y)", "tool": "t", "operation": "o"})


class TestFreeText:
    def test_context_with_subheadings_round_trips(self):
        context = "Background notes\n\n### Findings\nThree invoices overdue\n\n#### Owners\nbilling"
        plan = make_plan(context=context, body="## Rejection (v1)\nSplit the sends.")
        parsed = parse_plan(serialize_plan(plan))
        assert parsed["context"] == context
        assert parsed["body"] == "## Rejection (v1)\nSplit the sends."
        assert serialize_plan(parsed) == serialize_plan(plan)

    @pytest.mark.parametrize(
        "context, lineno",
        [
            ("## Findings\nThree invoices", 1),
            ("Background notes\n## Findings\nThree invoices overdue", 2),
            ("a\n\nb\n## Steps", 4),
        ],
    )
    def test_context_refuses_section_headings(self, context, lineno):
        with pytest.raises(ValueError, match=f"context line {lineno}: '## ' headings"):
            validate_context(context)

    def test_context_is_stripped_and_blank_means_absent(self):
        assert validate_context("  notes\n") == "notes"
        assert validate_context(" \n ") is None
        assert validate_context(None) is None
        assert validate_context("##no space is fine") == "##no space is fine"

    def test_body_after_context_needs_a_heading(self):
        with pytest.raises(ValueError, match="must start with a '## ' heading"):
            validate_body("free trailing text", has_context=True)
        assert validate_body("free trailing text", has_context=False) == "free trailing text"
        assert validate_body("## Notes\nfree text", has_context=True) == "## Notes\nfree text"

    @pytest.mark.parametrize("heading", ["## Steps", "## Context"])
    def test_body_refuses_reserved_sections(self, heading):
        with pytest.raises(ValueError, match=f"'{heading}' section"):
            validate_body(f"## Notes\nx\n{heading}\ny", has_context=False)


def test_derive_tools_required_keeps_first_appearance_order():
    steps = [{"tool": "b"}, {"tool": "a"}, {"tool": "b"}]
    assert derive_tools_required(steps, ["c", "a"]) == ["b", "a", "c"]
