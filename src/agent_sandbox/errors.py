# errors.py
# Error taxonomy for the sandbox.
#
# Every failure the core can produce maps to exactly one ErrorKind. Whether a
# kind is retried is decided here, not by the retry controller.

from enum import Enum


class ErrorKind(str, Enum):
    PLANNER_ERROR = "planner_error"
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_EXECUTION_ERROR = "tool_execution_error"
    SCHEMA_VIOLATION = "schema_violation"
    SCHEMA_DEFINITION_ERROR = "schema_definition_error"
    REPAIR_EXHAUSTED = "repair_exhausted"
    TIMEOUT = "timeout"
    CANCELLATION = "cancellation"
    STEP_BUDGET_EXCEEDED = "step_budget_exceeded"
    COMPLETION_ERROR = "completion_error"
    PLAN_INTEGRITY = "plan_integrity"


RETRYABLE_KINDS = frozenset({ErrorKind.TOOL_EXECUTION_ERROR, ErrorKind.COMPLETION_ERROR})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SandboxError(Exception):
    """Base class. Subclasses pin their ErrorKind."""

    kind: ErrorKind = ErrorKind.TOOL_EXECUTION_ERROR

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class ConfigError(SandboxError, ValueError):
    """Raised when a run configuration is malformed or carries unknown fields."""

    kind = ErrorKind.SCHEMA_DEFINITION_ERROR


class PlannerError(SandboxError):
    """Raised for malformed, empty or cyclic plans. Never retried."""

    kind = ErrorKind.PLANNER_ERROR


class ToolNotFound(SandboxError):
    """Raised when a step names a tool absent from the registry."""

    kind = ErrorKind.TOOL_NOT_FOUND


class ToolExecutionError(SandboxError):
    """Raised by tool capabilities for failures worth retrying."""

    kind = ErrorKind.TOOL_EXECUTION_ERROR


class ToolRegistrationError(SandboxError, ValueError):
    """Raised when a different tool is registered under an existing name."""

    kind = ErrorKind.SCHEMA_DEFINITION_ERROR


class SchemaViolation(SandboxError):
    """Raised when data fails validation and cannot be repaired."""

    kind = ErrorKind.SCHEMA_VIOLATION

    def __init__(self, message: str, errors: list | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class SchemaDefinitionError(SandboxError, ValueError):
    """Raised when a schema itself cannot be interpreted."""

    kind = ErrorKind.SCHEMA_DEFINITION_ERROR


class RepairExhausted(SandboxError):
    kind = ErrorKind.REPAIR_EXHAUSTED


class CompletionError(SandboxError):
    """Raised when the completion provider fails (network, timeout, refusal)."""

    kind = ErrorKind.COMPLETION_ERROR


class PlanIntegrityError(SandboxError):
    """Raised when a committed plan no longer matches its Merkle root. Always fatal."""

    kind = ErrorKind.PLAN_INTEGRITY


class StepBudgetExceeded(SandboxError):
    kind = ErrorKind.STEP_BUDGET_EXCEEDED


class TraceError(SandboxError):
    """Raised when an append would break the trace DAG or touches a sealed run."""

    kind = ErrorKind.SCHEMA_DEFINITION_ERROR


class InvalidTransition(RuntimeError):
    """Raised on a run state change the lifecycle does not allow."""


# ---------------------------------------------------------------------------
# Interruptions
# ---------------------------------------------------------------------------


class RunInterrupted(SandboxError):
    """Raised at a suspension point once a run must stop."""


class RunCancelled(RunInterrupted):
    kind = ErrorKind.CANCELLATION


class RunTimeout(RunInterrupted):
    kind = ErrorKind.TIMEOUT


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto the taxonomy. Unknown exceptions count as tool failures."""
    if isinstance(exc, SandboxError):
        return exc.kind
    return ErrorKind.TOOL_EXECUTION_ERROR


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS
