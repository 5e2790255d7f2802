"""Canonical filesystem paths for plangate state inside a project."""

from __future__ import annotations

from pathlib import Path

PLANS_DIR = Path(".pi") / "plans"

SESSIONS_DIR = PLANS_DIR / "sessions"

CONFIG_FILE = PLANS_DIR / "plans.json"

PLAN_FILE_PREFIX = "PLAN-"
PLAN_FILE_SUFFIX = ".md"


def plans_dir(project_root: str | Path) -> Path:
    return Path(project_root) / PLANS_DIR


def sessions_dir(project_root: str | Path) -> Path:
    return Path(project_root) / SESSIONS_DIR


def config_path(project_root: str | Path) -> Path:
    return Path(project_root) / CONFIG_FILE


def plan_path(project_root: str | Path, plan_id: str) -> Path:
    """Return the document path for a plan id (ids already carry the PLAN- prefix)."""
    return plans_dir(project_root) / f"{plan_id}{PLAN_FILE_SUFFIX}"


def checkpoint_path(project_root: str | Path, plan_id: str) -> Path:
    return sessions_dir(project_root) / f"{plan_id}.jsonl"
