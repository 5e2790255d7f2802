"""Shell command classification for plan mode.

A command is resolved in a fixed order:

1. a registry ``WRITE`` match blocks,
2. the static deny-list (destructive commands, file redirects) blocks,
3. a registry ``READ`` match allows,
4. the static allow-list of read-only commands allows,
5. anything else is denied.

Since the deny-list sits above registry ``READ``, ``rm``,
``git push``, ``npm install`` and ``> file`` stay blocked whatever has been
registered. Registration order never affects the outcome.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypedDict

log = logging.getLogger(__name__)

LEVELS = ("READ", "WRITE")
RUNNER_PREFIXES = frozenset({"npx", "pnpm", "bunx", "uvx", "pipx"})
_RUNNER_SUBCOMMANDS = frozenset({"exec", "dlx", "run"})

PLAN_MODE_BLOCKED_TOOLS = frozenset({"write", "edit", "todo"})

SAFE_COMMAND_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    [
        re.compile(rf"^\s*{name}\b")
        for name in (
            "cat", "head", "tail", "less", "more",
            "grep", "rg", "find", "fd",
            "ls", "exa", "tree",
            "pwd", "echo", "printf",
            "wc", "sort", "uniq", "diff",
            "file", "stat", "du", "df",
            "which", "whereis", "type",
            "env", "printenv",
            "uname", "whoami", "id", "date",
            "ps", "uptime",
            "jq", "awk", "bat",
        )
    ]
    + [
        re.compile(r"^\s*git\s+(status|log|diff|show|branch|remote|config\s+--get)", re.I),
        re.compile(r"^\s*git\s+ls-", re.I),
        re.compile(r"^\s*npm\s+(list|ls|view|info|search|outdated|audit)", re.I),
        re.compile(r"^\s*node\s+--version", re.I),
        re.compile(r"^\s*python\s+--version", re.I),
        re.compile(r"^\s*sed\s+-n", re.I),
        re.compile(r"^\s*curl\s", re.I),
    ]
)

DESTRUCTIVE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\brm\b", re.I),
    re.compile(r"\brmdir\b", re.I),
    re.compile(r"\bmv\b", re.I),
    re.compile(
        r"\bgit\s+(add|commit|push|pull|merge|rebase|reset|checkout|stash|cherry-pick)", re.I
    ),
    re.compile(r"\bnpm\s+(install|uninstall|update|ci|link|publish)", re.I),
    re.compile(r"\bsudo\b", re.I),
    re.compile(r"\bkill\b", re.I),
    re.compile(r"\bpkill\b", re.I),
)

_SAFE_REDIRECT_RES = (
    re.compile(r"\d*>\s*/dev/null"),
    re.compile(r"\d*>&\d+"),
    re.compile(r"&>\s*/dev/null"),
)
_REDIRECT_RE = re.compile(r"(?:^|[^<])>")


def has_dangerous_redirect(command: str) -> bool:
    """True if ``command`` writes to a file with ``>`` or ``>>``.

    ``2>/dev/null``, ``>/dev/null``, ``&>/dev/null`` and ``2>&1`` are fine.
    """
    cleaned = command
    for pattern in _SAFE_REDIRECT_RES:
        cleaned = pattern.sub("", cleaned)
    return bool(_REDIRECT_RE.search(cleaned))


def is_destructive(command: str) -> bool:
    return any(p.search(command) for p in DESTRUCTIVE_PATTERNS)


def _deny_reason(command: str) -> str | None:
    if is_destructive(command):
        return "destructive command"
    if has_dangerous_redirect(command):
        return "dangerous redirect"
    return None


def is_safe_command(command: str) -> bool:
    """Static rules only: allow-listed and not vetoed by the deny-list."""
    if _deny_reason(command) is not None:
        return False
    return any(p.search(command) for p in SAFE_COMMAND_PATTERNS)


# -- registry --


def _normalize(text: str) -> str:
    return " ".join(text.split())


def _normalize_level(level: Any) -> str | None:
    if not isinstance(level, str):
        return None
    level = level.strip().upper()
    return level if level in LEVELS else None


def _invokes(tokens: list[str], tool: str) -> bool:
    """True if ``tokens`` run ``tool`` directly or through a package runner."""
    if not tokens:
        return False
    if tokens[0] == tool:
        return True
    if tokens[0] not in RUNNER_PREFIXES:
        return False
    rest = tokens[1:]
    if rest and rest[0] in _RUNNER_SUBCOMMANDS and tool not in _RUNNER_SUBCOMMANDS:
        rest = rest[1:]
    return bool(rest) and rest[0] == tool


def _compile_glob(pattern: str) -> re.Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")), re.DOTALL)


@dataclass(frozen=True)
class RejectedPattern:
    pattern: str
    reason: str


@dataclass(frozen=True)
class RegistrationResult:
    accepted: int
    rejected: list[RejectedPattern] = field(default_factory=list)


@dataclass(frozen=True)
class _Rule:
    pattern: str
    level: str
    regex: re.Pattern[str]


@dataclass(frozen=True)
class _ToolEntry:
    tool: str
    rules: tuple[_Rule, ...]
    default: str


class RegistryEntry(TypedDict):
    tool: str
    patterns: int
    default: str


class SafetyRegistry:
    """Per-tool command globs mapped to ``READ`` or ``WRITE``.

    ``register`` replaces any previous entry for the same tool. During
    ``resolve`` a matching ``WRITE`` glob beats a matching ``READ`` glob; a
    command that runs a registered tool but matches none of its globs gets
    that tool's default level.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _ToolEntry] = {}

    def register(
        self,
        tool: str,
        commands: Mapping[str, str],
        default: str = "WRITE",
    ) -> RegistrationResult:
        tool = tool.strip() if isinstance(tool, str) else ""
        if not tool or any(ch.isspace() for ch in tool):
            raise ValueError(f"Invalid tool name {tool!r}: must be a single non-empty word.")

        default_level = _normalize_level(default)
        if default_level is None:
            log.warning("Safety registry: invalid default %r for %s, using WRITE", default, tool)
            default_level = "WRITE"

        rules: list[_Rule] = []
        rejected: list[RejectedPattern] = []
        for raw_pattern, raw_level in commands.items():
            pattern = _normalize(raw_pattern) if isinstance(raw_pattern, str) else ""
            level = _normalize_level(raw_level)
            if not pattern:
                rejected.append(RejectedPattern(str(raw_pattern), "empty pattern"))
            elif level is None:
                rejected.append(
                    RejectedPattern(raw_pattern, f"invalid level {raw_level!r} (must be READ or WRITE)")
                )
            elif not _invokes(pattern.split(" "), tool):
                rejected.append(
                    RejectedPattern(
                        raw_pattern,
                        f"pattern must start with '{tool}' (or a runner prefix such as npx)",
                    )
                )
            else:
                rules.append(_Rule(pattern, level, _compile_glob(pattern)))

        self._entries[tool] = _ToolEntry(tool, tuple(rules), default_level)
        log.info(
            "Registered %d safety pattern(s) for %s (%d rejected)", len(rules), tool, len(rejected)
        )
        return RegistrationResult(len(rules), rejected)

    def unregister(self, tool: str) -> bool:
        return self._entries.pop(tool, None) is not None

    def resolve(self, command: str) -> str | None:
        """Registry level for ``command``, or None when no registered tool applies."""
        normalized = _normalize(command)
        if not normalized:
            return None

        matched = {
            rule.level
            for entry in self._entries.values()
            for rule in entry.rules
            if rule.regex.fullmatch(normalized)
        }
        if "WRITE" in matched:
            return "WRITE"
        if "READ" in matched:
            return "READ"

        tokens = normalized.split(" ")
        for tool in sorted(self._entries):
            if _invokes(tokens, tool):
                return self._entries[tool].default
        return None

    def inspect(self) -> list[RegistryEntry]:
        return [
            {"tool": e.tool, "patterns": len(e.rules), "default": e.default}
            for e in sorted(self._entries.values(), key=lambda e: e.tool)
        ]

    def __len__(self) -> int:
        return len(self._entries)


def load_registry(data: Mapping[str, Any]) -> SafetyRegistry:
    """Build a registry from ``{tool: {"commands": {...}, "default": "WRITE"}}``."""
    registry = SafetyRegistry()
    for tool, spec in data.items():
        if not isinstance(spec, Mapping) or not isinstance(spec.get("commands", {}), Mapping):
            raise ValueError(f"Registry entry for {tool!r} must be an object with a 'commands' object.")
        result = registry.register(tool, spec.get("commands", {}), spec.get("default", "WRITE"))
        for rejected in result.rejected:
            log.warning("Safety registry: rejected %r for %s: %s", rejected.pattern, tool, rejected.reason)
    return registry


# -- classification --


@dataclass(frozen=True)
class CommandVerdict:
    allowed: bool
    level: str | None
    source: str
    reason: str | None = None


def _blocked(command: str, why: str) -> str:
    return f"Plan mode: command blocked ({why}). Exit plan mode first.\nCommand: {command}"


def classify_command(command: str, registry: SafetyRegistry | None = None) -> CommandVerdict:
    """Decide whether ``command`` may run while in plan mode."""
    registry_level = registry.resolve(command) if registry is not None else None
    if registry_level == "WRITE":
        return CommandVerdict(
            False,
            "WRITE",
            "registry",
            "Plan mode: WRITE operation blocked (per skill safety registry). "
            f"Propose a plan for this action.\nCommand: {command}",
        )

    denied = _deny_reason(command)
    if denied is not None:
        return CommandVerdict(False, "WRITE", "denylist", _blocked(command, denied))
    if registry_level == "READ":
        return CommandVerdict(True, "READ", "registry")
    if any(p.search(command) for p in SAFE_COMMAND_PATTERNS):
        return CommandVerdict(True, "READ", "allowlist")
    return CommandVerdict(False, None, "default", _blocked(command, "not allowlisted"))


@dataclass(frozen=True)
class ToolCallDecision:
    blocked: bool
    reason: str | None = None
    verdict: CommandVerdict | None = None


def is_guarded(tool_name: str, guarded_tools: Iterable[str]) -> bool:
    return any(tool_name == g or tool_name.startswith(f"{g}_") for g in guarded_tools)


def check_tool_call(
    tool_name: str,
    tool_input: Mapping[str, Any] | None,
    *,
    plan_mode: bool,
    registry: SafetyRegistry | None = None,
    guarded_tools: Iterable[str] = (),
    has_active_plan: bool = False,
) -> ToolCallDecision:
    """Gate one agent tool call.

    In plan mode file-editing tools are blocked and ``bash`` goes through
    ``classify_command``. Guarded tools called with no executing plan are
    logged, not blocked.
    """
    tool_input = tool_input or {}
    if plan_mode and tool_name in PLAN_MODE_BLOCKED_TOOLS:
        return ToolCallDecision(
            True, f'Plan mode: "{tool_name}" is blocked (read-only mode). Exit plan mode first.'
        )

    if plan_mode and tool_name == "bash":
        verdict = classify_command(str(tool_input.get("command") or ""), registry)
        if not verdict.allowed:
            return ToolCallDecision(True, verdict.reason, verdict)
        return ToolCallDecision(False, verdict=verdict)

    if not has_active_plan and is_guarded(tool_name, guarded_tools):
        log.warning(
            "Guarded tool call without an executing plan: %s (input: %s)",
            tool_name,
            json.dumps(tool_input, default=str)[:200],
        )
    return ToolCallDecision(False)
