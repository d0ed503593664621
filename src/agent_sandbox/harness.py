# harness.py
# Agent Executor: the run state machine.
#
# The harness owns all control flow for a run. Components below it (planner,
# step executor, repair engine) never decide the run's fate; they return
# results or raise, and this class turns that into exactly one terminal state.
#
# Control flow:
#   idle -> planning -> executing -> [validating -> [repairing]] -> completed
#   any failure -> failed, cancel() -> cancelled (at the next suspension point)
#
# Whatever the outcome, the trace is sealed and metrics are computed over the
# steps that finished.

import asyncio
import logging
from typing import Any, AsyncIterator

from agent_sandbox.completion import CompletionProvider, coerce_output
from agent_sandbox.context import RunContext
from agent_sandbox.errors import (
    CompletionError,
    ConfigError,
    ErrorKind,
    InvalidTransition,
    PlannerError,
    RepairExhausted,
    RunCancelled,
    RunInterrupted,
    RunTimeout,
    SandboxError,
    SchemaDefinitionError,
    SchemaViolation,
    StepBudgetExceeded,
    ToolNotFound,
)
from agent_sandbox.events import EventStream
from agent_sandbox.executor import StepExecutor
from agent_sandbox.merkle import PlanCommitment
from agent_sandbox.models import (
    AgentConfig,
    AgentRun,
    Plan,
    PlanStep,
    RepairResult,
    RunEvent,
    RunFailure,
    RunResult,
    RunStatus,
    StepResult,
    ValidationResult,
    utcnow,
)
from agent_sandbox.planner import Planner
from agent_sandbox.repair import RepairEngine
from agent_sandbox.tools import ToolRegistry
from agent_sandbox.trace import ErrorNodeData, PlanNodeData, RetryNodeData, TraceNode, TraceRecorder, ValidationNodeData
from agent_sandbox.validation import SchemaValidator

logger = logging.getLogger(__name__)

TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.IDLE: frozenset({RunStatus.PLANNING, RunStatus.CANCELLED}),
    RunStatus.PLANNING: frozenset({RunStatus.EXECUTING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.EXECUTING: frozenset({RunStatus.VALIDATING, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.VALIDATING: frozenset({RunStatus.REPAIRING, RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.REPAIRING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}),
}


class _RunAborted(Exception):
    """Internal: carries a run-level failure to the terminal handler."""

    def __init__(self, failure: RunFailure) -> None:
        super().__init__(failure.message)
        self.failure = failure


class AgentExecutor:
    """
    Drives one run from task to terminal state.

    Example:
        executor = AgentExecutor(AgentConfig(max_steps=5), default_registry(), OpenRouterProvider())
        result = await executor.execute("Compute 2+2 and explain the answer.")
        print(result.status, result.output, result.metrics.reliability_score)
    """

    def __init__(
        self,
        config: AgentConfig,
        registry: ToolRegistry,
        provider: CompletionProvider,
        recorder: TraceRecorder | None = None,
        validator: SchemaValidator | None = None,
        run_id: str | None = None,
    ) -> None:
        self._config = config
        try:
            self._registry = registry.restricted(config.tools)
        except ToolNotFound as exc:
            raise ConfigError(f"Configured tool list is invalid: {exc}") from exc

        self._validator = validator or SchemaValidator()
        if config.output_schema is not None:
            try:
                self._validator.compile(config.output_schema)
            except SchemaDefinitionError as exc:
                raise ConfigError(f"Configured output_schema is invalid: {exc}") from exc

        self._recorder = recorder or TraceRecorder()
        settings = config.completion_settings
        self._planner = Planner(provider, self._registry, settings)
        self._repair = RepairEngine(provider, self._validator, settings, config.retry)
        self._steps = StepExecutor(self._registry, provider, self._validator, settings, self._repair)

        self._events = EventStream()
        self._run_id = run_id
        self._run: AgentRun | None = None
        self._status = RunStatus.IDLE
        self._stage = "plan"
        self._context: RunContext | None = None
        self._cancel_requested = False

        self._plan: Plan | None = None
        self._validation: ValidationResult | None = None
        self._repair_result: RepairResult | None = None

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def recorder(self) -> TraceRecorder:
        return self._recorder

    @property
    def run(self) -> AgentRun | None:
        return self._run

    @property
    def plan(self) -> Plan | None:
        return self._plan

    def status(self) -> RunStatus:
        return self._status

    def cancel(self) -> None:
        """Request cancellation. Takes effect at the next suspension point."""
        if self._status.terminal:
            return
        self._cancel_requested = True
        if self._context is not None:
            self._context.cancel()
        logger.info("cancellation requested for run %s", self._run.id if self._run else "(not started)")

    def events(self) -> AsyncIterator[RunEvent]:
        return self._events.subscribe()

    async def execute(self, task: str) -> RunResult:
        if self._status != RunStatus.IDLE:
            raise InvalidTransition(f"AgentExecutor already drove a run (status {self._status.value}).")

        run_kwargs: dict[str, Any] = {"task": task, "config": self._config, "started_at": utcnow()}
        if self._run_id is not None:
            run_kwargs["id"] = self._run_id
        run = AgentRun(**run_kwargs)
        run.trace_id = run.id
        self._run = run

        self._recorder.start_run(run.id, self._config)
        self._recorder.subscribe(self._on_trace_node)
        context = RunContext(run.id, self._config, self._recorder, task)
        if self._cancel_requested:
            context.cancel()
        self._context = context

        results: list[StepResult] = []
        output: Any = None
        failure: RunFailure | None = None

        try:
            self._transition(RunStatus.PLANNING)
            plan, commitment = await self._generate_plan(task, context)
            self._plan = plan
            self._transition(RunStatus.EXECUTING)
            self._stage = "execute"
            output = await self._execute_plan(plan, commitment, context, results)

            if self._config.output_schema is not None:
                output = await self._validate_output(output, plan, context)
            self._transition(RunStatus.COMPLETED)
        except RunCancelled as exc:
            failure = self._record_interruption(context, exc)
            self._transition(RunStatus.CANCELLED)
        except RunTimeout as exc:
            failure = self._record_interruption(context, exc)
            self._transition(RunStatus.FAILED)
        except _RunAborted as exc:
            failure = exc.failure
            self._transition(RunStatus.FAILED)
        except SandboxError as exc:
            failure = self._record_failure(context, exc)
            self._transition(RunStatus.FAILED)
        finally:
            if not self._status.terminal:
                self._transition(RunStatus.FAILED)
            metrics = self._recorder.end_run(run.id, results)
            self._recorder.unsubscribe(self._on_trace_node)
            run.metrics = metrics
            self._events.close()

        logger.info(
            "run %s finished: %s (%d steps, reliability %.1f)",
            run.id, self._status.value, len(results), metrics.reliability_score,
        )
        return RunResult(
            run=run,
            plan=self._plan,
            output=output,
            step_results=results,
            validation=self._validation,
            repair=self._repair_result,
            failure=failure,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _generate_plan(self, task: str, context: RunContext) -> tuple[Plan, PlanCommitment]:
        root = context.trace(PlanNodeData(task=task))
        context.plan_node_id = root.id
        last = root.id
        attempt = 0

        while True:
            attempt += 1
            context.checkpoint("planning")
            try:
                plan = await asyncio.wait_for(
                    self._planner.generate_plan(task, {"max_steps": self._config.max_steps}),
                    timeout=max(context.remaining(), 0.001),
                )
            except asyncio.TimeoutError as exc:
                raise RunTimeout(f"Planning did not finish within the {self._config.timeout:g}s timeout.") from exc
            except PlannerError as exc:
                context.trace(
                    ErrorNodeData(kind=ErrorKind.PLANNER_ERROR, message=str(exc), stage="plan", attempt=attempt, terminal=True),
                    parents=[last],
                    edge_type="error",
                )
                raise _RunAborted(
                    RunFailure(stage="plan", kind=ErrorKind.PLANNER_ERROR, message=str(exc), attempts=attempt)
                ) from exc
            except CompletionError as exc:
                error_node = context.trace(
                    ErrorNodeData(kind=exc.kind, message=str(exc), stage="plan", attempt=attempt),
                    parents=[last],
                    edge_type="error",
                )
                if not context.retry.should_retry(attempt, exc):
                    context.trace(
                        ErrorNodeData(kind=exc.kind, message=f"Planning failed after {attempt} attempt(s): {exc}",
                                      stage="plan", attempt=attempt, terminal=True),
                        parents=[error_node.id],
                        edge_type="error",
                    )
                    raise _RunAborted(
                        RunFailure(stage="plan", kind=exc.kind, message=str(exc), attempts=attempt)
                    ) from exc
                delay = context.retry.next_delay(attempt)
                context.checkpoint("planning retry delay")
                retry_node = context.trace(
                    RetryNodeData(failed_attempt=attempt, next_attempt=attempt + 1, delay=delay, reason=exc.kind),
                    parents=[error_node.id],
                    edge_type="retry",
                    label=f"backoff {delay:g}s",
                )
                await context.sleep(delay)
                last = retry_node.id
                continue

            commitment = PlanCommitment(plan)
            plan_node = context.trace(
                PlanNodeData(
                    task=task,
                    plan_id=plan.id,
                    version=plan.version,
                    step_ids=tuple(step.id for step in plan.steps),
                    digest=commitment.root,
                ),
                parents=[last],
                edge_type="success",
                label="plan",
            )
            context.plan_node_id = plan_node.id
            return plan, commitment

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_plan(
        self,
        plan: Plan,
        commitment: PlanCommitment,
        context: RunContext,
        results: list[StepResult],
    ) -> Any:
        if len(plan.steps) > self._config.max_steps:
            message = f"Plan has {len(plan.steps)} steps but max_steps is {self._config.max_steps}."
            raise _RunAborted(self._record_failure(context, StepBudgetExceeded(message)))

        index = {step.id: position for position, step in enumerate(plan.steps)}
        context.step_numbers = {step.id: position + 1 for position, step in enumerate(plan.steps)}
        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        finished: set[str] = set()
        pending = list(plan.steps)

        while pending:
            ready = [step for step in pending if all(dep in finished for dep in step.dependencies)]
            context.checkpoint("step dispatch")
            for step in ready:
                commitment.verify_step(index[step.id], step)

            outcomes = await asyncio.gather(
                *(self._run_step(step, context, semaphore) for step in ready),
                return_exceptions=True,
            )

            interrupted: RunInterrupted | None = None
            fatal: tuple[PlanStep, StepResult] | None = None
            for step, outcome in zip(ready, outcomes):
                if isinstance(outcome, RunInterrupted):
                    interrupted = interrupted or outcome
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                results.append(outcome)
                finished.add(step.id)
                context.outputs[step.id] = outcome.output if outcome.success else None
                if not outcome.success and not step.optional and fatal is None:
                    fatal = (step, outcome)

            pending = [step for step in pending if step.id not in finished]
            if interrupted is not None:
                raise interrupted
            if fatal is not None:
                # A cancel or deadline that cut a step short ends the run as an interruption.
                context.checkpoint("step completion")
                step, outcome = fatal
                error = outcome.errors[-1] if outcome.errors else None
                raise _RunAborted(
                    RunFailure(
                        stage="execute",
                        kind=error.kind if error else ErrorKind.TOOL_EXECUTION_ERROR,
                        message=error.message if error else f"Step '{step.id}' failed.",
                        step_id=step.id,
                        attempts=outcome.attempts,
                    )
                )

        context.checkpoint("finalising output")
        commitment.verify_plan(plan)
        return coerce_output(context.outputs.get(plan.steps[-1].id))

    async def _run_step(self, step: PlanStep, context: RunContext, semaphore: asyncio.Semaphore) -> StepResult:
        async with semaphore:
            self._publish("step_started", step_id=step.id, payload={"tool": step.tool, "description": step.description})
            result = await self._steps.execute_step(step, context)
            self._publish(
                "step_finished",
                step_id=step.id,
                payload={"success": result.success, "attempts": result.attempts, "latency_ms": result.latency_ms},
            )
            return result

    # ------------------------------------------------------------------
    # Output validation & repair
    # ------------------------------------------------------------------

    async def _validate_output(self, output: Any, plan: Plan, context: RunContext) -> Any:
        schema = self._config.output_schema
        self._transition(RunStatus.VALIDATING)
        self._stage = "validate"

        referenced = {dep for step in plan.steps for dep in step.dependencies}
        sinks = [context.step_tails[step.id] for step in plan.steps
                 if step.id not in referenced and step.id in context.step_tails]

        validation = self._validator.validate(output, schema)
        self._validation = validation
        node = context.trace(
            ValidationNodeData(target="output", valid=validation.valid, score=validation.score, errors=tuple(validation.errors)),
            parents=sinks,
            edge_type="success" if validation.valid else "error",
            label="output",
        )
        if validation.valid:
            return output

        summary = "; ".join(f"{issue.path}: {issue.message}" for issue in validation.errors)
        if not self._config.enable_repair:
            raise _RunAborted(self._record_failure(
                context, SchemaViolation(f"Output violates the schema: {summary}", validation.errors), parent=node.id
            ))

        self._transition(RunStatus.REPAIRING)
        self._stage = "repair"
        repair = await self._repair.repair(output, schema, validation.errors, context, parent=node.id)
        self._repair_result = repair
        if repair.success:
            return repair.repaired

        raise _RunAborted(self._record_failure(
            context,
            RepairExhausted(
                f"Output still invalid after {repair.attempts} repair attempt(s): "
                + "; ".join(f"{issue.path}: {issue.message}" for issue in repair.remaining_errors)
            ),
            parent=repair.trace_node or node.id,
            attempts=repair.attempts,
        ))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, target: RunStatus) -> None:
        allowed = TRANSITIONS.get(self._status, frozenset())
        if target not in allowed:
            raise InvalidTransition(f"Cannot move run from {self._status.value} to {target.value}.")
        logger.debug("run %s: %s -> %s", self._run.id if self._run else "-", self._status.value, target.value)
        self._status = target
        if self._run is not None:
            self._run.status = target
            if target.terminal:
                self._run.finished_at = utcnow()
        self._publish("status", status=target)

    def _record_failure(
        self,
        context: RunContext,
        exc: SandboxError,
        parent: str | None = None,
        attempts: int = 0,
    ) -> RunFailure:
        """Trace `exc` as a terminal error node and describe it for the caller."""
        message = str(exc) or type(exc).__name__
        context.trace(
            ErrorNodeData(kind=exc.kind, message=message, stage=self._stage, attempt=attempts, terminal=True),
            parents=[parent],
            edge_type="error",
        )
        logger.warning("run %s failed during %s: %s", context.run_id, self._stage, message)
        return RunFailure(stage=self._stage, kind=exc.kind, message=message, attempts=attempts)

    def _record_interruption(self, context: RunContext, exc: RunInterrupted) -> RunFailure:
        if context.plan_node_id is None:
            # Interrupted before anything was recorded: the trace still needs its root.
            context.plan_node_id = context.trace(PlanNodeData(task=context.task, error=str(exc))).id
        return self._record_failure(context, exc)

    def _on_trace_node(self, run_id: str, node: TraceNode) -> None:
        if self._run is None or run_id != self._run.id:
            return
        self._publish("trace", payload={"node_id": node.id, "type": node.type, "step": node.step})

    def _publish(self, kind: str, **fields: Any) -> None:
        if self._run is None:
            return
        self._events.publish(RunEvent(run_id=self._run.id, kind=kind, **fields))
