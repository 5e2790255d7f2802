"""Append-only execution checkpoints, one JSONL file per plan.

Each line is one of::

    {"type": "execution_start", "plan_id": ..., "timestamp": ...}
    {"step": 0, "tool": ..., "operation": ..., "status": "success", ..., "timestamp": ...}
    {"type": "execution_end", "plan_id": ..., "status": "completed", "summary": ..., "timestamp": ...}

Writes never rewrite earlier lines. A failed append is logged and reported
to the caller as ``False``; execution carries on without that record.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, TypedDict

from jsonschema import Draft202012Validator

from plangate.paths import checkpoint_path
from plangate.plan_format import utcnow

log = logging.getLogger(__name__)

STEP_STATUSES = ("started", "success", "failed")
END_STATUSES = ("completed", "failed")


class _StepRecordRequired(TypedDict):
    step: int
    tool: str
    operation: str
    status: str
    timestamp: str


class StepRecord(_StepRecordRequired, total=False):
    result_summary: str
    error: str


STEP_RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["step", "tool", "operation", "status", "timestamp"],
    "properties": {
        "step": {"type": "integer", "minimum": 0},
        "tool": {"type": "string"},
        "operation": {"type": "string"},
        "status": {"enum": list(STEP_STATUSES)},
        "result_summary": {"type": "string"},
        "error": {"type": "string"},
        "timestamp": {"type": "string"},
    },
}

START_RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type", "plan_id", "timestamp"],
    "properties": {
        "type": {"const": "execution_start"},
        "plan_id": {"type": "string"},
        "timestamp": {"type": "string"},
    },
}

END_RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type", "plan_id", "status", "summary", "timestamp"],
    "properties": {
        "type": {"const": "execution_end"},
        "plan_id": {"type": "string"},
        "status": {"enum": list(END_STATUSES)},
        "summary": {"type": "string"},
        "timestamp": {"type": "string"},
    },
}

_STEP_VALIDATOR = Draft202012Validator(STEP_RECORD_SCHEMA)
_EVENT_VALIDATORS = {
    "execution_start": Draft202012Validator(START_RECORD_SCHEMA),
    "execution_end": Draft202012Validator(END_RECORD_SCHEMA),
}


def make_step_record(
    step: int,
    tool: str,
    operation: str,
    status: str,
    *,
    result_summary: str | None = None,
    error: str | None = None,
) -> StepRecord:
    record: StepRecord = {
        "step": step,
        "tool": tool,
        "operation": operation,
        "status": status,
        "timestamp": utcnow(),
    }
    if result_summary is not None:
        record["result_summary"] = result_summary
    if error is not None:
        record["error"] = error
    return record


def _is_valid_event(entry: Any) -> bool:
    if not isinstance(entry, dict):
        return False
    if "step" in entry:
        return _STEP_VALIDATOR.is_valid(entry)
    validator = _EVENT_VALIDATORS.get(entry.get("type"))
    return validator is not None and validator.is_valid(entry)


class CheckpointLog:
    """Appender for one plan's checkpoint file."""

    def __init__(self, project_root: str | Path, plan_id: str) -> None:
        self.plan_id = plan_id
        self.path = checkpoint_path(project_root, plan_id)

    def _append(self, entry: dict[str, Any]) -> bool:
        line = json.dumps(entry, ensure_ascii=False)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except OSError:
            log.warning(
                "Failed to append checkpoint record for %s to %s",
                self.plan_id,
                self.path,
                exc_info=True,
            )
            return False
        return True

    def log_start(self) -> bool:
        return self._append(
            {"type": "execution_start", "plan_id": self.plan_id, "timestamp": utcnow()}
        )

    def log_step(self, record: StepRecord) -> bool:
        entry = dict(record)
        entry.setdefault("timestamp", utcnow())
        if not _STEP_VALIDATOR.is_valid(entry):
            raise ValueError(f"Invalid checkpoint step record: {entry!r}")
        return self._append(entry)

    def log_end(self, status: str, summary: str) -> bool:
        if status not in END_STATUSES:
            raise ValueError(f"Invalid execution end status '{status}'. Must be one of: {END_STATUSES}")
        return self._append(
            {
                "type": "execution_end",
                "plan_id": self.plan_id,
                "status": status,
                "summary": summary,
                "timestamp": utcnow(),
            }
        )


def read_events(project_root: str | Path, plan_id: str) -> list[dict[str, Any]]:
    """Every well-formed record in file order. Bad lines are skipped one by one."""
    path = checkpoint_path(project_root, plan_id)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError:
        log.warning("Failed to read checkpoint %s", path, exc_info=True)
        return []

    events: list[dict[str, Any]] = []
    for lineno, line in enumerate(text.splitlines(), 1):
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            log.debug("%s:%d: skipping malformed checkpoint line", path, lineno)
            continue
        if not _is_valid_event(entry):
            log.debug("%s:%d: skipping unrecognized checkpoint record", path, lineno)
            continue
        events.append(entry)
    return events


def _latest_run(events: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Events from the last ``execution_start`` on; a retried plan reuses its file."""
    for index in range(len(events) - 1, -1, -1):
        if events[index].get("type") == "execution_start":
            return events[index:]
    return events


def read_checkpoint(
    project_root: str | Path, plan_id: str, *, latest_run: bool = False
) -> list[StepRecord]:
    """Step records in the order they were appended.

    With ``latest_run`` only records of the most recent execution are kept.
    """
    events = read_events(project_root, plan_id)
    if latest_run:
        events = _latest_run(events)
    return [e for e in events if "step" in e]  # type: ignore[misc]


def count_completed_steps(
    project_root: str | Path, plan_id: str, *, latest_run: bool = False
) -> int:
    records = read_checkpoint(project_root, plan_id, latest_run=latest_run)
    return sum(1 for r in records if r["status"] == "success")
