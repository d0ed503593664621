# models.py
# Data contracts for the agent reliability sandbox.
# No business logic lives here: pure schema and validation.

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agent_sandbox.errors import ErrorKind


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RetryConfig(BaseModel):
    """Retry policy shared by tool calls, planning and repair."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    max_attempts: int = Field(default=3, ge=1, description="Total attempts, first one included.")
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = Field(default=0.5, ge=0, description="Seconds.")
    max_delay: float = Field(default=10.0, ge=0, description="Seconds. Every strategy clamps to this.")


class ModelConfig(BaseModel):
    """The part of a run configuration handed to a completion provider."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    model: str
    temperature: float = 0.0


class AgentConfig(BaseModel):
    """Immutable configuration for a single run. Unknown fields are rejected."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    model: str = Field(default="anthropic/claude-3.5-haiku", min_length=1)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_steps: int = Field(default=10, gt=0)
    tools: tuple[str, ...] = Field(default=(), description="Registry tools exposed to the run. Empty means all.")
    output_schema: dict[str, Any] | None = None
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeout: float = Field(default=120.0, gt=0, description="Wall-clock seconds for the whole run.")
    enable_repair: bool = True
    max_concurrency: int = Field(default=4, ge=1, description="Fan-out limit for independent steps.")

    @property
    def completion_settings(self) -> ModelConfig:
        return ModelConfig(model=self.model, temperature=self.temperature)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanStep(BaseModel):
    """A single unit of planned work, optionally bound to a tool."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    description: str = Field(..., description="Human-readable intent of this step.")
    tool: str | None = Field(default=None, description="Registry tool name. None means a direct completion.")
    input: dict[str, Any] = Field(default_factory=dict)
    expected_output: str | None = None
    dependencies: tuple[str, ...] = ()
    optional: bool = Field(default=False, description="Failure of an optional step does not fail the run.")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (list, tuple, set)):
            return tuple(str(v) if isinstance(v, int) else v for v in value)
        return value


class Plan(BaseModel):
    """An ordered plan. Refinement produces a new Plan, never an in-place edit."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    task: str = ""
    steps: tuple[PlanStep, ...] = ()
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    version: int = Field(default=1, ge=1)
    parent_id: str | None = None

    def step(self, step_id: str) -> PlanStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    success: bool
    output: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    latency_ms: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


class ToolCallRecord(BaseModel):
    """One invocation attempt inside a step."""

    model_config = ConfigDict(frozen=True)

    tool: str
    input: dict[str, Any] = Field(default_factory=dict)
    attempt: int
    success: bool
    output: Any = None
    error: str | None = None
    latency_ms: float = 0.0


class StepError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str
    stage: str = "execute"
    attempts: int = 0


class StepResult(BaseModel):
    """Immutable record produced once per executed step."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    success: bool
    output: Any = None
    tool_calls: tuple[ToolCallRecord, ...] = ()
    errors: tuple[StepError, ...] = ()
    attempts: int = 0
    latency_ms: float = 0.0


# ---------------------------------------------------------------------------
# Validation & repair
# ---------------------------------------------------------------------------


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    message: str
    expected: str | None = None


class ValidationResult(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    score: float = Field(default=100.0, ge=0.0, le=100.0)


class RepairResult(BaseModel):
    """Outcome of a repair loop. `repaired` is not guaranteed to be valid."""

    success: bool
    repaired: Any = None
    attempts: int = 0
    original_errors: list[ValidationIssue] = Field(default_factory=list)
    remaining_errors: list[ValidationIssue] = Field(default_factory=list)
    trace_node: str | None = Field(default=None, description="Id of the last repair node, when traced.")


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    VALIDATING = "validating"
    REPAIRING = "repairing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class RunMetrics(BaseModel):
    total_steps: int = 0
    successful_steps: int = 0
    failed_steps: int = 0
    retry_count: int = 0
    total_latency_ms: float = 0.0
    average_latency_ms: float = 0.0
    schema_violations: int = 0
    tool_usage: dict[str, int] = Field(default_factory=dict)
    reliability_score: float = Field(default=0.0, ge=0.0, le=100.0)


class RunFailure(BaseModel):
    """Caller-visible description of why a run did not complete."""

    stage: str
    kind: ErrorKind
    message: str
    step_id: str | None = None
    attempts: int = 0


class AgentRun(BaseModel):
    """Aggregate root for a run. Only `status` and the timestamps move while it executes."""

    id: str = Field(default_factory=_new_id)
    task: str
    config: AgentConfig
    status: RunStatus = RunStatus.IDLE
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    metrics: RunMetrics | None = None
    trace_id: str | None = None


class RunResult(BaseModel):
    run: AgentRun
    plan: Plan | None = None
    output: Any = None
    step_results: list[StepResult] = Field(default_factory=list)
    validation: ValidationResult | None = None
    repair: RepairResult | None = None
    failure: RunFailure | None = None
    metrics: RunMetrics = Field(default_factory=RunMetrics)

    @property
    def status(self) -> RunStatus:
        return self.run.status


class RunEvent(BaseModel):
    """Progress notification published to subscribers of a run."""

    run_id: str
    kind: str = Field(..., description="status | step_started | step_finished | trace")
    status: RunStatus | None = None
    step_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
