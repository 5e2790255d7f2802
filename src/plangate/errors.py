"""Error kinds raised by the plan store, preflight and executor."""

from __future__ import annotations

from collections.abc import Sequence

NOT_FOUND = "NOT_FOUND"
INVALID_TRANSITION = "INVALID_TRANSITION"
INVALID_STATE = "INVALID_STATE"
VERSION_CONFLICT = "VERSION_CONFLICT"
MISSING_CAPABILITY = "MISSING_CAPABILITY"
PARSE_ERROR = "PARSE_ERROR"
IO_ERROR = "IO_ERROR"
EXECUTION_CONFLICT = "EXECUTION_CONFLICT"


class PlanError(Exception):
    """Base class for every plangate error. ``code`` is a stable identifier."""

    code = "INTERNAL"


class PlanNotFound(PlanError, LookupError):
    code = NOT_FOUND

    def __init__(self, plan_id: str):
        super().__init__(f"Plan {plan_id} not found")
        self.plan_id = plan_id


class InvalidTransition(PlanError):
    """A status precondition was not met."""

    code = INVALID_TRANSITION


class InvalidState(InvalidTransition):
    """The plan (or execution) is in a state that forbids the operation."""

    code = INVALID_STATE


class VersionConflict(PlanError):
    """The optimistic lock was lost: the on-disk version moved."""

    code = VERSION_CONFLICT

    def __init__(self, message: str, *, expected: int, found: int):
        super().__init__(message)
        self.expected = expected
        self.found = found


class MissingCapability(PlanError):
    code = MISSING_CAPABILITY

    def __init__(self, missing: Sequence[str]):
        super().__init__(f"Required tools not available: {', '.join(missing)}")
        self.missing = list(missing)


class ParseError(PlanError, ValueError):
    """A plan document could not be decoded."""

    code = PARSE_ERROR

    def __init__(self, message: str, source: str | None = None):
        super().__init__(f"{source}: {message}" if source else message)
        self.source = source


class StorageError(PlanError, OSError):
    """The plans directory or a plan file could not be written."""

    code = IO_ERROR


class ExecutionConflict(PlanError):
    """Another execution already holds the execution slot."""

    code = EXECUTION_CONFLICT
