from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

import click
from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from plangate import __version__
from plangate.checkpoint import count_completed_steps, read_checkpoint
from plangate.config import load_config
from plangate.errors import NOT_FOUND, PlanError
from plangate.executor import REPORT_ACTIONS, Orchestrator, make_message
from plangate.plan_format import VALID_PLAN_STATUSES
from plangate.safety import SafetyRegistry, classify_command, load_registry
from plangate.stalled import recover_stalled
from plangate.store import PlanStore

log = logging.getLogger(__name__)

_STEP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["description", "tool", "operation"],
    "additionalProperties": False,
    "properties": {
        "description": {"type": "string", "minLength": 1},
        "tool": {"type": "string", "minLength": 1},
        "operation": {"type": "string", "minLength": 1},
        "target": {"type": "string"},
    },
}

PROPOSE_REQUEST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "steps"],
    "additionalProperties": False,
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "steps": {"type": "array", "items": _STEP_SCHEMA},
        "context": {"type": "string"},
        "executor_model": {"type": "string"},
        "planner_model": {"type": "string"},
    },
}

_PROPOSE_VALIDATOR = Draft202012Validator(PROPOSE_REQUEST_SCHEMA)


class _CodedException(click.ClickException):
    """ClickException that carries a stable error code into the JSON payload."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


def _error_payload(message: str, code: str) -> str:
    return json.dumps({"ok": False, "error": message, "code": code})


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click usage errors and ``PlanError`` failures are both reported as a
    JSON object on stdout with a non-zero exit code.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except PlanError as e:
            log.debug("Command failed", exc_info=True)
            click.echo(_error_payload(str(e), e.code))
            if standalone_mode:
                raise SystemExit(1) from None
            return 1
        except click.ClickException as e:
            code = getattr(e, "code", None)
            if code is None:
                code = "USAGE_ERROR" if isinstance(e, click.UsageError) else "ERROR"
            click.echo(_error_payload(e.format_message(), code))
            exit_code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(exit_code) from None
            return exit_code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "plan": "Run 'plangate plan list' to see plans.",
        "registry": "Pass a JSON file mapping tool names to {\"commands\": {...}}.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return _CodedException(msg, NOT_FOUND)


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@dataclasses.dataclass
class _State:
    root: Path
    _store: PlanStore | None = None

    @property
    def store(self) -> PlanStore:
        if self._store is None:
            self._store = PlanStore(self.root)
        return self._store


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--root",
    "root",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project root holding .pi/plans (default: current directory).",
)
@click.option("-v", "--verbose", count=True, help="Log more (-v info, -vv debug).")
@click.pass_context
def main(ctx: click.Context, root: str, verbose: int):
    """Propose, approve and track guarded execution plans.

    \b
    Quick start:
      plangate plan propose request.json     Create a plan from a JSON request
      plangate plan approve PLAN_ID          Approve it
      plangate plan execute PLAN_ID -t TOOL  Start execution, print executor prompt
      plangate plan report PLAN_ID ACTION    Report step / plan outcomes
      plangate check "git status"            Classify a shell command for plan mode
    """
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = _State(Path(root))


# -- plan --


@main.group()
def plan():
    """Create plans and drive them through approval and execution."""


@plan.command("propose")
@click.argument("request_file", type=click.File("r"), default="-")
@click.pass_obj
def plan_propose(state: _State, request_file):
    """Create a plan from a JSON request (file or stdin).

    \b
    {"title": "...", "steps": [{"description", "tool", "operation", "target"?}],
     "context": "...", "executor_model": "...", "planner_model": "..."}

    tools_required is derived from the steps.
    """
    try:
        request = json.load(request_file)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Plan request is not valid JSON: {e}") from None
    error = best_match(_PROPOSE_VALIDATOR.iter_errors(request))
    if error is not None:
        where = "/".join(str(p) for p in error.absolute_path) or "request"
        raise click.ClickException(f"Invalid plan request at {where}: {error.message}")

    try:
        created = state.store.create(
            request["title"],
            request["steps"],
            request.get("context"),
            executor_model=request.get("executor_model"),
            planner_model=request.get("planner_model"),
        )
    except PlanError:
        raise
    except ValueError as e:
        raise click.ClickException(str(e)) from None
    _echo(created)


@plan.command("list")
@click.option(
    "--status",
    "-s",
    "statuses",
    multiple=True,
    type=click.Choice(sorted(VALID_PLAN_STATUSES)),
    help="Only plans in this status (can be repeated).",
)
@click.pass_obj
def plan_list(state: _State, statuses: tuple[str, ...]):
    """List plans, oldest first."""
    _echo(state.store.list(list(statuses) or None))


@plan.command("show")
@click.argument("plan_id")
@click.pass_obj
def plan_show(state: _State, plan_id: str):
    """Show one plan."""
    p = state.store.get(plan_id)
    if p is None:
        raise _not_found("plan", plan_id)
    _echo(p)


_expected_version_option = click.option(
    "--expected-version",
    type=int,
    default=None,
    help="Fail with VERSION_CONFLICT unless the plan is at this version.",
)


@plan.command("approve")
@click.argument("plan_id")
@_expected_version_option
@click.pass_obj
def plan_approve(state: _State, plan_id: str, expected_version: int | None):
    """Approve a proposed plan."""
    _echo(state.store.approve(plan_id, expected_version=expected_version))


@plan.command("reject")
@click.argument("plan_id")
@click.option("--feedback", "-f", default=None, help="Why the plan was rejected.")
@_expected_version_option
@click.pass_obj
def plan_reject(state: _State, plan_id: str, feedback: str | None, expected_version: int | None):
    """Reject a proposed plan, recording feedback in its body."""
    try:
        rejected = state.store.reject(plan_id, feedback, expected_version=expected_version)
    except PlanError:
        raise
    except ValueError as e:
        raise click.ClickException(str(e)) from None
    _echo(rejected)


@plan.command("cancel")
@click.argument("plan_id")
@_expected_version_option
@click.pass_obj
def plan_cancel(state: _State, plan_id: str, expected_version: int | None):
    """Cancel a plan that has not reached a terminal status."""
    _echo(state.store.cancel(plan_id, expected_version=expected_version))


@plan.command("retry")
@click.argument("plan_id")
@_expected_version_option
@click.pass_obj
def plan_retry(state: _State, plan_id: str, expected_version: int | None):
    """Reset a failed or stalled plan to approved (same id)."""
    _echo(state.store.retry(plan_id, expected_version=expected_version))


@plan.command("clone")
@click.argument("plan_id")
@click.pass_obj
def plan_clone(state: _State, plan_id: str):
    """Create a new proposed plan from an existing one."""
    _echo(state.store.clone(plan_id))


@plan.command("delete")
@click.argument("plan_id")
@click.pass_obj
def plan_delete(state: _State, plan_id: str):
    """Delete a plan document (not allowed while executing)."""
    state.store.delete(plan_id)
    _echo({"ok": True, "deleted": plan_id})


@plan.command("execute")
@click.argument("plan_id")
@click.option(
    "--tool",
    "-t",
    "tools",
    multiple=True,
    help="Tool available to the executor (can be repeated).",
)
@click.option("--session", default=None, help="Execution session identifier to record.")
@_expected_version_option
@click.pass_obj
def plan_execute(
    state: _State,
    plan_id: str,
    tools: tuple[str, ...],
    session: str | None,
    expected_version: int | None,
):
    """Preflight and start executing an approved plan.

    Prints the plan and the executor prompt. Step outcomes are reported
    afterwards with `plan report`.
    """
    started = Orchestrator(state.store).start(
        plan_id, tools, expected_version=expected_version, session=session
    )
    _echo({"ok": True, "plan": started.plan, "prompt": started.prompt})


@plan.command("report")
@click.argument("plan_id")
@click.argument("action", type=click.Choice(sorted(REPORT_ACTIONS)))
@click.option("--summary", required=True, help="What was done, or what went wrong.")
@click.option("--step", type=int, default=None, help="1-based step number (step actions).")
@click.pass_obj
def plan_report(state: _State, plan_id: str, action: str, summary: str, step: int | None):
    """Report a step or plan outcome for an executing plan."""
    try:
        message = make_message(action, summary, step)
    except ValueError as e:
        raise click.UsageError(str(e)) from None

    orchestrator = Orchestrator(state.store)
    orchestrator.attach(plan_id)
    try:
        updated = orchestrator.handle(message)
    except ValueError as e:
        raise click.ClickException(str(e)) from None
    _echo(updated)


@plan.command("checkpoint")
@click.argument("plan_id")
@click.option(
    "--all-runs", is_flag=True, help="Include step records from earlier (retried) executions."
)
@click.pass_obj
def plan_checkpoint(state: _State, plan_id: str, all_runs: bool):
    """Show the step records logged for a plan's latest execution."""
    latest_run = not all_runs
    _echo(
        {
            "plan_id": plan_id,
            "steps": read_checkpoint(state.root, plan_id, latest_run=latest_run),
            "completed": count_completed_steps(state.root, plan_id, latest_run=latest_run),
        }
    )


@plan.command("recover")
@click.option(
    "--timeout",
    "timeout_minutes",
    type=float,
    default=None,
    help="Minutes before an executing plan counts as stalled (default: from plans.json).",
)
@click.pass_obj
def plan_recover(state: _State, timeout_minutes: float | None):
    """Mark plans stuck in executing past the timeout as stalled."""
    if timeout_minutes is None:
        timeout_minutes = load_config(state.root)["executor_timeout_minutes"]
    _echo(recover_stalled(state.store, timeout_minutes))


# -- check / config --


def _load_registry_file(path: str) -> SafetyRegistry:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise _not_found("registry", path) from None
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Registry file {path} is not valid JSON: {e}") from None
    if not isinstance(data, dict):
        raise click.ClickException(f"Registry file {path} must contain a JSON object.")
    try:
        return load_registry(data)
    except ValueError as e:
        raise click.ClickException(str(e)) from None


@main.command("check")
@click.argument("command")
@click.option(
    "--registry",
    "registry_file",
    default=None,
    help='JSON file: {tool: {"commands": {glob: "READ"|"WRITE"}, "default": "WRITE"}}.',
)
@click.pass_obj
def check(state: _State, command: str, registry_file: str | None):
    """Classify a shell command for plan mode."""
    registry = _load_registry_file(registry_file) if registry_file else None
    verdict = classify_command(command, registry)
    _echo({"command": command, **dataclasses.asdict(verdict)})


@main.command("config")
@click.pass_obj
def config(state: _State):
    """Show the effective plans.json configuration."""
    _echo(load_config(state.root))
