"""Plan document encoding and strict decoding.

A plan is stored as a Markdown file with a metadata block::

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

    ## Rejection (v1)
    Trailing sections, such as rejection feedback, form the body.

The Context section ends at the next ``## `` heading, so ``validate_context``
and ``validate_body`` refuse text that would move that boundary.
``serialize_plan`` writes exactly this grammar. ``decode_plan`` is the strict
reader: it returns a ``DecodeResult`` that either carries the plan or names
why the document was rejected, and never guesses at malformed content.
``parse_plan`` is the raising variant used for direct reads of a known file.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, NotRequired, TypedDict

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from plangate.errors import ParseError

VALID_PLAN_STATUSES = {
    "proposed",
    "approved",
    "executing",
    "completed",
    "failed",
    "rejected",
    "cancelled",
    "stalled",
}
PLAN_TERMINAL_STATUSES = {"completed", "rejected", "cancelled"}
VALID_SCRIPT_STATUSES = {"pending", "running", "success", "failed", "skipped"}


class PlanStep(TypedDict):
    description: str
    tool: str
    operation: str
    target: NotRequired[str]


class PlanScript(TypedDict):
    stepIndex: int
    status: str
    summary: NotRequired[str]
    error: NotRequired[str]


class _PlanRequired(TypedDict):
    id: str
    title: str
    status: str
    version: int
    created_at: str
    updated_at: str
    tools_required: list[str]
    steps: list[PlanStep]


class Plan(_PlanRequired, total=False):
    planner_model: str
    executor_model: str
    execution_session: str
    execution_started_at: str
    execution_ended_at: str
    result_summary: str
    context: str
    body: str
    scripts: list[PlanScript]


# Optional scalar metadata, in on-disk order. tools_required sits between
# planner_model and executor_model; result_summary and scripts close the block.
_OPTIONAL_SCALARS_HEAD = ("planner_model",)
_OPTIONAL_SCALARS_TAIL = (
    "executor_model",
    "execution_session",
    "execution_started_at",
    "execution_ended_at",
)
_QUOTED_KEYS = ("title", "result_summary")

_STRING = {"type": "string"}

PLAN_METADATA_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "title", "status", "version", "created_at", "updated_at"],
    "additionalProperties": False,
    "properties": {
        "id": {"type": "string", "pattern": r"^PLAN-\S+$"},
        "title": _STRING,
        "status": {"enum": sorted(VALID_PLAN_STATUSES)},
        "version": {"type": "string", "pattern": r"^[1-9][0-9]*$"},
        "created_at": {"type": "string", "minLength": 1},
        "updated_at": {"type": "string", "minLength": 1},
        "planner_model": _STRING,
        "tools_required": {"type": "array", "items": _STRING},
        "executor_model": _STRING,
        "execution_session": _STRING,
        "execution_started_at": _STRING,
        "execution_ended_at": _STRING,
        "result_summary": _STRING,
        "scripts": {"type": "array", "items": _STRING},
    },
}

PLAN_SCRIPT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["stepIndex", "status"],
    "additionalProperties": False,
    "properties": {
        "stepIndex": {"type": "integer", "minimum": 0},
        "status": {"enum": sorted(VALID_SCRIPT_STATUSES)},
        "summary": _STRING,
        "error": _STRING,
    },
}

_METADATA_VALIDATOR = Draft202012Validator(PLAN_METADATA_SCHEMA)
_SCRIPT_VALIDATOR = Draft202012Validator(PLAN_SCRIPT_SCHEMA)

_DOCUMENT_RE = re.compile(r"\A---\n(.*?)\n---\n?(.*)\Z", re.DOTALL)
_LIST_ITEM_RE = re.compile(r"^\s+-\s+(.+)$")
_KEY_VALUE_RE = re.compile(r"^(\S+?):\s*(.*)$")
_STEPS_SECTION_RE = re.compile(r"^## Steps\n(.*?)(?=\n\n|\n## |\Z)", re.DOTALL | re.MULTILINE)
_CONTEXT_SECTION_RE = re.compile(r"^## Context\n(.*?)(?=\n## |\Z)", re.DOTALL | re.MULTILINE)
_STEP_LINE_RE = re.compile(r"^(\d+)\.\s+(.+?)\s+\((\S+?):\s+(\S+?)(?:\s+→\s+(.+?))?\)$")
_LINE_BREAK_RE = re.compile(r"\s*[\r\n]+\s*")
_SECTION_HEADING_RE = re.compile(r"^## ", re.MULTILINE)
_RESERVED_HEADING_RE = re.compile(r"^## (?:Steps|Context)$", re.MULTILINE)


# -- helpers shared with the store and executor --


def utcnow() -> str:
    """ISO 8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp. Naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def single_line(text: str) -> str:
    """Collapse line breaks so free text fits on one metadata line."""
    return _LINE_BREAK_RE.sub(" ", text).strip()


def format_step(step: PlanStep, index: int) -> str:
    """Render one step line; ``index`` is 0-based."""
    target = f" → {step['target']}" if step.get("target") else ""
    return f"{index + 1}. {step['description']} ({step['tool']}: {step['operation']}{target})"


def validate_step(step: dict[str, Any], index: int = 0) -> PlanStep:
    """Check a step can be written and read back unchanged.

    Returns a normalized copy. Raises ``ValueError`` describing the first
    problem found.
    """
    label = f"Step {index + 1}"
    normalized: dict[str, str] = {}
    for field in ("description", "tool", "operation"):
        value = step.get(field)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{label}: '{field}' must be a non-empty string.")
        if "\n" in value or "\r" in value:
            raise ValueError(f"{label}: '{field}' must be a single line.")
        normalized[field] = value.strip()
    for field in ("tool", "operation"):
        if any(ch.isspace() for ch in normalized[field]):
            raise ValueError(f"{label}: '{field}' must not contain whitespace.")

    target = step.get("target")
    if target is not None:
        if not isinstance(target, str):
            raise ValueError(f"{label}: 'target' must be a string.")
        if "\n" in target or "\r" in target:
            raise ValueError(f"{label}: 'target' must be a single line.")
        if target.strip():
            normalized["target"] = target.strip()

    result: PlanStep = {
        "description": normalized["description"],
        "tool": normalized["tool"],
        "operation": normalized["operation"],
    }
    if "target" in normalized:
        result["target"] = normalized["target"]

    m = _STEP_LINE_RE.match(format_step(result, index))
    if not m or (m.group(2), m.group(3), m.group(4), m.group(5)) != (
        result["description"],
        result["tool"],
        result["operation"],
        result.get("target"),
    ):
        raise ValueError(f"{label}: step text is ambiguous in the plan step format.")
    return result


def validate_context(context: Any) -> str | None:
    """Return the stripped context, or None when empty.

    The Context section runs up to the next ``## `` heading, so a context
    may not contain one (``###`` and deeper are fine).
    """
    if context is None:
        return None
    if not isinstance(context, str):
        raise ValueError("Plan context must be a string.")
    text = context.strip()
    heading = _SECTION_HEADING_RE.search(text)
    if heading:
        lineno = text.count("\n", 0, heading.start()) + 1
        raise ValueError(
            f"Plan context line {lineno}: '## ' headings end the Context section; use '###' instead."
        )
    return text or None


def validate_body(body: Any, *, has_context: bool) -> str | None:
    """Return the stripped body, or None when empty.

    After a Context section the body must open with its own ``## `` heading,
    and it may never contain a ``## Steps`` or ``## Context`` section.
    """
    if body is None:
        return None
    if not isinstance(body, str):
        raise ValueError("Plan body must be a string.")
    text = body.strip()
    if not text:
        return None
    if has_context and not text.startswith("## "):
        raise ValueError("Plan body must start with a '## ' heading when the plan has a context.")
    reserved = _RESERVED_HEADING_RE.search(text)
    if reserved:
        raise ValueError(f"Plan body must not contain a '{reserved.group(0)}' section.")
    return text


def derive_tools_required(
    steps: Sequence[PlanStep], extra: Iterable[str] | None = None
) -> list[str]:
    """Distinct step tools in first-appearance order, then any extra names."""
    tools: list[str] = []
    for name in [s["tool"] for s in steps] + list(extra or []):
        if name and name not in tools:
            tools.append(name)
    return tools


# -- encoding --


def _quote(value: str) -> str:
    return '"' + value.replace('"', '\\"') + '"'


def serialize_plan(plan: Plan) -> str:
    """Encode a plan as its on-disk document."""
    lines = ["---"]
    lines.append(f"id: {plan['id']}")
    lines.append(f"title: {_quote(single_line(plan['title']))}")
    lines.append(f"status: {plan['status']}")
    lines.append(f"version: {plan['version']}")
    lines.append(f"created_at: {plan['created_at']}")
    lines.append(f"updated_at: {plan['updated_at']}")

    for key in _OPTIONAL_SCALARS_HEAD:
        if plan.get(key):
            lines.append(f"{key}: {plan[key]}")  # type: ignore[literal-required]
    tools = plan.get("tools_required") or []
    if tools:
        lines.append("tools_required:")
        lines.extend(f"  - {t}" for t in tools)
    for key in _OPTIONAL_SCALARS_TAIL:
        if plan.get(key):
            lines.append(f"{key}: {plan[key]}")  # type: ignore[literal-required]
    if plan.get("result_summary"):
        lines.append(f"result_summary: {_quote(single_line(plan['result_summary']))}")
    scripts = plan.get("scripts") or []
    if scripts:
        lines.append("scripts:")
        lines.extend(
            f"  - {json.dumps(s, sort_keys=True, separators=(',', ':'), ensure_ascii=False)}"
            for s in scripts
        )

    lines.append("---")
    lines.append("")

    steps = plan.get("steps") or []
    if steps:
        lines.append("## Steps")
        lines.extend(format_step(s, i) for i, s in enumerate(steps))
        lines.append("")

    context = (plan.get("context") or "").strip()
    if context:
        lines.append("## Context")
        lines.append(context)
        lines.append("")

    body = (plan.get("body") or "").strip()
    if body:
        lines.append(body)

    return "\n".join(lines) + "\n"


# -- decoding --


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding a plan document: a plan, or the reason there is none."""

    plan: Plan | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class _Malformed(Exception):
    """Internal short-circuit carrying a decode failure message."""


def _parse_metadata(raw: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    list_key: str | None = None

    # Line 1 of the document is the opening fence.
    for lineno, line in enumerate(raw.split("\n"), start=2):
        item = _LIST_ITEM_RE.match(line)
        if item and list_key:
            result.setdefault(list_key, []).append(item.group(1).strip())
            continue

        list_key = None
        if not line.strip():
            continue

        kv = _KEY_VALUE_RE.match(line)
        if not kv:
            raise _Malformed(f"line {lineno}: unrecognized metadata line {line!r}")
        key, value = kv.group(1), kv.group(2).strip()
        if key in result:
            raise _Malformed(f"line {lineno}: duplicate metadata key '{key}'")
        if value == "":
            # Bare key: a list follows (or nothing, which means the key is absent).
            list_key = key
            continue
        if key in _QUOTED_KEYS and len(value) >= 2 and value[0] == '"' and value[-1] == '"':
            value = value[1:-1].replace('\\"', '"')
        result[key] = value

    return result


def _validate_metadata(meta: dict[str, Any]) -> None:
    error = best_match(_METADATA_VALIDATOR.iter_errors(meta))
    if error is not None:
        where = ".".join(str(p) for p in error.absolute_path) or "metadata"
        raise _Malformed(f"{where}: {error.message}")


def _parse_scripts(items: list[str], step_count: int) -> list[PlanScript]:
    scripts: list[PlanScript] = []
    for index, item in enumerate(items):
        try:
            script = json.loads(item)
        except json.JSONDecodeError as exc:
            raise _Malformed(f"scripts[{index}]: invalid JSON ({exc.msg})") from None
        error = best_match(_SCRIPT_VALIDATOR.iter_errors(script))
        if error is not None:
            raise _Malformed(f"scripts[{index}]: {error.message}")
        if script["stepIndex"] != index:
            raise _Malformed(f"scripts[{index}]: stepIndex is {script['stepIndex']}")
        scripts.append(script)
    if len(scripts) != step_count:
        raise _Malformed(f"scripts: {len(scripts)} entries for {step_count} step(s)")
    return scripts


def _parse_steps(section: str) -> list[PlanStep]:
    steps: list[PlanStep] = []
    if not section:
        return steps
    for line in section.split("\n"):
        m = _STEP_LINE_RE.match(line)
        if not m:
            raise _Malformed(f"Steps: malformed step line {line!r}")
        number = int(m.group(1))
        if number != len(steps) + 1:
            raise _Malformed(f"Steps: expected step {len(steps) + 1}, found {number}")
        step: PlanStep = {
            "description": m.group(2),
            "tool": m.group(3),
            "operation": m.group(4),
        }
        if m.group(5):
            step["target"] = m.group(5)
        steps.append(step)
    return steps


def _decode(text: str) -> Plan:
    document = _DOCUMENT_RE.match(text)
    if not document:
        raise _Malformed("no metadata block")

    meta = _parse_metadata(document.group(1))
    _validate_metadata(meta)
    body = document.group(2).strip()

    cut: list[tuple[int, int]] = []
    steps_match = _STEPS_SECTION_RE.search(body)
    steps = _parse_steps(steps_match.group(1)) if steps_match else []
    if steps_match:
        cut.append(steps_match.span())
    context_match = _CONTEXT_SECTION_RE.search(body)
    context = context_match.group(1).strip() if context_match else ""
    if context_match:
        cut.append(context_match.span())

    remaining = body
    for start, end in sorted(cut, reverse=True):
        remaining = remaining[:start] + remaining[end:]
    remaining = remaining.strip()

    plan: Plan = {
        "id": meta["id"],
        "title": meta["title"],
        "status": meta["status"],
        "version": int(meta["version"]),
        "created_at": meta["created_at"],
        "updated_at": meta["updated_at"],
        "tools_required": list(meta.get("tools_required", [])),
        "steps": steps,
    }
    for key in _OPTIONAL_SCALARS_HEAD + _OPTIONAL_SCALARS_TAIL + ("result_summary",):
        if key in meta:
            plan[key] = meta[key]  # type: ignore[literal-required]
    if "scripts" in meta:
        plan["scripts"] = _parse_scripts(meta["scripts"], len(steps))
    if context:
        plan["context"] = context
    if remaining:
        plan["body"] = remaining
    return plan


def decode_plan(text: str) -> DecodeResult:
    """Decode a plan document without raising."""
    try:
        return DecodeResult(plan=_decode(text))
    except _Malformed as exc:
        return DecodeResult(error=str(exc))


def parse_plan(text: str, source: str | None = None) -> Plan:
    """Decode a plan document, raising ``ParseError`` when it is malformed."""
    result = decode_plan(text)
    if result.plan is None:
        raise ParseError(result.error or "invalid plan document", source)
    return result.plan
