"""Per-project planner configuration.

Projects may declare planner settings in ``.pi/plans/plans.json``::

    {
        "guardedTools": ["odoo-toolbox", "go-easy"],
        "stale_after_days": 30,
        "executor_timeout_minutes": 30
    }

Every field is optional. A field with the wrong type falls back to its
default on its own; a missing or unreadable file yields all defaults.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, TypedDict

from jsonschema import Draft202012Validator

from plangate.paths import config_path

log = logging.getLogger(__name__)


class PlannerConfig(TypedDict):
    guardedTools: list[str]
    stale_after_days: float
    executor_timeout_minutes: float


DEFAULT_CONFIG: PlannerConfig = {
    "guardedTools": [],
    "stale_after_days": 30,
    "executor_timeout_minutes": 30,
}

_NUMBER = {"type": "number"}

CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "guardedTools": {"type": "array", "items": {"type": "string"}},
        "stale_after_days": _NUMBER,
        "executor_timeout_minutes": _NUMBER,
    },
}

_FIELD_VALIDATORS = {
    name: Draft202012Validator(schema) for name, schema in CONFIG_SCHEMA["properties"].items()
}


def _default_config() -> PlannerConfig:
    return {
        "guardedTools": list(DEFAULT_CONFIG["guardedTools"]),
        "stale_after_days": DEFAULT_CONFIG["stale_after_days"],
        "executor_timeout_minutes": DEFAULT_CONFIG["executor_timeout_minutes"],
    }


def _read_config_file(path: Path) -> dict[str, Any] | None:
    """Read the raw JSON object, or None when absent or unparseable."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError:
        log.warning("Failed to read %s", path, exc_info=True)
        return None

    try:
        raw = json.loads(text)
    except json.JSONDecodeError:
        log.warning("Failed to parse %s, using defaults", path)
        return None
    if not isinstance(raw, dict):
        log.warning("%s is not a JSON object, using defaults", path)
        return None
    return raw


def load_config(project_root: str | Path) -> PlannerConfig:
    """Load ``.pi/plans/plans.json`` from a project root, merged over defaults."""
    config = _default_config()
    path = config_path(project_root)
    raw = _read_config_file(path)
    if raw is None:
        return config

    for name, validator in _FIELD_VALIDATORS.items():
        if name not in raw:
            continue
        value = raw[name]
        if not validator.is_valid(value):
            log.warning("plans.json: ignoring invalid %s=%r", name, value)
            continue
        config[name] = list(value) if name == "guardedTools" else value  # type: ignore[literal-required]

    return config
