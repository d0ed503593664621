# executor.py
# Executes one plan step: tool lookup, input validation/repair, invocation
# and retries, with every attempt recorded in the trace.
#
# Trace shape for a step with two failed attempts and a third failure:
#
#   parent -> tool_call#1 -> error#1 -> retry#1 -> tool_call#2 -> error#2
#          -> retry#2 -> tool_call#3 -> error#3 -> error (terminal)

import json
import logging
import time
from typing import Any

from agent_sandbox.completion import CompletionProvider, coerce_output
from agent_sandbox.context import RunContext
from agent_sandbox.errors import ErrorKind, RunInterrupted, classify_error
from agent_sandbox.models import ModelConfig, PlanStep, StepError, StepResult, ToolCallRecord, ToolResult
from agent_sandbox.repair import RepairEngine
from agent_sandbox.tools import ToolRegistry
from agent_sandbox.trace import ErrorNodeData, RetryNodeData, ToolCallNodeData, ValidationNodeData
from agent_sandbox.validation import SchemaValidator

logger = logging.getLogger(__name__)

COMPLETION_TOOL = "completion"
DYNAMIC = "<DYNAMIC>"

STEP_PROMPT = """\
You are executing one step of a larger plan.

Overall task: {task}
Step: {description}
{expected}
Outputs of the steps this one depends on:
{dependencies}

Respond with the step's result only. Use JSON when the result is structured.\
"""


def derive_input(step: PlanStep, outputs: dict[str, Any]) -> dict[str, Any]:
    """
    Resolve placeholders in a step's planned input.

    "<DYNAMIC>" becomes the output of the step's last dependency and
    "<step:ID>" the output of step ID. Everything else is copied as planned.
    """
    last = outputs.get(step.dependencies[-1]) if step.dependencies else None

    def resolve(value: Any) -> Any:
        if value == DYNAMIC:
            return last
        if isinstance(value, str) and value.startswith("<step:") and value.endswith(">"):
            return outputs.get(value[len("<step:"):-1])
        if isinstance(value, dict):
            return {key: resolve(item) for key, item in value.items()}
        if isinstance(value, list):
            return [resolve(item) for item in value]
        return value

    return resolve(step.input)


class StepExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        provider: CompletionProvider,
        validator: SchemaValidator,
        model_config: ModelConfig,
        repair_engine: RepairEngine | None = None,
    ) -> None:
        self._registry = registry
        self._provider = provider
        self._validator = validator
        self._model_config = model_config
        self._repair = repair_engine

    async def execute_step(self, step: PlanStep, context: RunContext) -> StepResult:
        """
        Run `step` to a StepResult. Step-level failures never raise.

        RunInterrupted propagates only when it strikes before the first tool
        invocation; afterwards it is folded into a failed StepResult.
        """
        number = context.step_numbers.get(step.id, 0)
        started = time.perf_counter()
        parents = context.step_parents(step.id, step.dependencies)

        if step.tool is not None and self._registry.get(step.tool) is None:
            message = f"Tool '{step.tool}' is not in the registry."
            node = context.trace(
                ErrorNodeData(kind=ErrorKind.TOOL_NOT_FOUND, message=message, stage="lookup", step_id=step.id, terminal=True),
                step=number,
                parents=parents,
                edge_type="error",
            )
            context.step_tails[step.id] = node.id
            logger.warning("step %s: %s", step.id, message)
            return self._result(step, started, success=False, errors=[
                StepError(kind=ErrorKind.TOOL_NOT_FOUND, message=message, stage="lookup", attempts=0)
            ])

        payload = derive_input(step, context.outputs)
        if step.tool is not None:
            payload, parents, failure = await self._prepare_input(step, payload, parents, number, context)
            if failure is not None:
                return self._result(step, started, success=False, errors=[failure])

        return await self._run_attempts(step, payload, parents, number, started, context)

    # ------------------------------------------------------------------
    # Input validation & repair
    # ------------------------------------------------------------------

    async def _prepare_input(
        self,
        step: PlanStep,
        payload: dict[str, Any],
        parents: list[str],
        number: int,
        context: RunContext,
    ) -> tuple[dict[str, Any], list[str], StepError | None]:
        tool = self._registry.get(step.tool)
        validation = self._validator.validate(payload, tool.input_schema)
        node = context.trace(
            ValidationNodeData(
                target="tool_input",
                step_id=step.id,
                valid=validation.valid,
                score=validation.score,
                errors=tuple(validation.errors),
            ),
            step=number,
            parents=parents,
            edge_type="success" if validation.valid else "error",
            label="input",
        )
        if validation.valid:
            return payload, [node.id], None

        summary = "; ".join(f"{issue.path}: {issue.message}" for issue in validation.errors)
        if self._repair is None or not context.config.enable_repair:
            return self._fail_input(step, number, node.id, context, ErrorKind.SCHEMA_VIOLATION,
                                    f"Input for '{step.tool}' is invalid: {summary}", attempts=0, payload=payload)

        repaired = await self._repair.repair(
            payload, tool.input_schema, validation.errors, context,
            parent=node.id, step=number, step_id=step.id,
        )
        if repaired.success and isinstance(repaired.repaired, dict):
            return repaired.repaired, [repaired.trace_node or node.id], None

        return self._fail_input(
            step, number, repaired.trace_node or node.id, context, ErrorKind.REPAIR_EXHAUSTED,
            f"Input for '{step.tool}' still invalid after {repaired.attempts} repair attempt(s): {summary}",
            attempts=repaired.attempts, payload=payload,
        )

    def _fail_input(
        self,
        step: PlanStep,
        number: int,
        parent: str,
        context: RunContext,
        kind: ErrorKind,
        message: str,
        attempts: int,
        payload: dict[str, Any],
    ) -> tuple[dict[str, Any], list[str], StepError]:
        node = context.trace(
            ErrorNodeData(kind=kind, message=message, stage="validate_input", step_id=step.id, attempt=attempts, terminal=True),
            step=number,
            parents=[parent],
            edge_type="error",
        )
        context.step_tails[step.id] = node.id
        logger.warning("step %s: %s", step.id, message)
        return payload, [node.id], StepError(kind=kind, message=message, stage="validate_input", attempts=attempts)

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def _run_attempts(
        self,
        step: PlanStep,
        payload: dict[str, Any],
        parents: list[str],
        number: int,
        started: float,
        context: RunContext,
    ) -> StepResult:
        tool_name = step.tool or COMPLETION_TOOL
        calls: list[ToolCallRecord] = []
        errors: list[StepError] = []
        last = parents
        attempt = 0

        while True:
            attempt += 1
            try:
                context.checkpoint(f"step {step.id} attempt {attempt}")
            except RunInterrupted as exc:
                if attempt == 1:
                    raise
                return self._interrupted(step, number, last, started, context, exc, calls, errors, attempt - 1)

            result = await self._invoke(step, payload, context)
            calls.append(
                ToolCallRecord(
                    tool=tool_name,
                    input=payload,
                    attempt=attempt,
                    success=result.success,
                    output=result.output,
                    error=result.error,
                    latency_ms=result.latency_ms,
                )
            )
            call_node = context.trace(
                ToolCallNodeData(
                    step_id=step.id,
                    tool=tool_name,
                    input=payload,
                    attempt=attempt,
                    success=result.success,
                    output=result.output,
                    error=result.error,
                ),
                step=number,
                parents=last,
                edge_type="retry" if attempt > 1 else None,
                label=f"attempt {attempt}",
                latency_ms=result.latency_ms,
            )

            if result.success:
                context.step_tails[step.id] = call_node.id
                return self._result(step, started, success=True, output=result.output, calls=calls, attempts=attempt)

            kind = result.error_kind or ErrorKind.TOOL_EXECUTION_ERROR
            message = result.error or "tool call failed"
            errors.append(StepError(kind=kind, message=message, stage="tool_call", attempts=attempt))
            error_node = context.trace(
                ErrorNodeData(kind=kind, message=message, stage="tool_call", step_id=step.id, attempt=attempt),
                step=number,
                parents=[call_node.id],
                edge_type="error",
            )
            logger.info("step %s attempt %d failed (%s): %s", step.id, attempt, kind.value, message)

            if not context.retry.should_retry(attempt, kind):
                terminal = context.trace(
                    ErrorNodeData(
                        kind=kind,
                        message=f"Step '{step.id}' failed after {attempt} attempt(s): {message}",
                        stage="tool_call",
                        step_id=step.id,
                        attempt=attempt,
                        terminal=True,
                    ),
                    step=number,
                    parents=[error_node.id],
                    edge_type="retry",
                    label="exhausted" if context.retry.attempt_budget <= attempt else "fatal",
                )
                context.step_tails[step.id] = terminal.id
                return self._result(step, started, success=False, calls=calls, errors=errors, attempts=attempt)

            delay = context.retry.next_delay(attempt)
            try:
                context.checkpoint(f"retry delay of step {step.id}")
            except RunInterrupted as exc:
                return self._interrupted(step, number, [error_node.id], started, context, exc, calls, errors, attempt)

            retry_node = context.trace(
                RetryNodeData(step_id=step.id, failed_attempt=attempt, next_attempt=attempt + 1, delay=delay, reason=kind),
                step=number,
                parents=[error_node.id],
                edge_type="retry",
                label=f"backoff {delay:g}s",
            )
            await context.sleep(delay)
            last = [retry_node.id]

    async def _invoke(self, step: PlanStep, payload: dict[str, Any], context: RunContext) -> ToolResult:
        if step.tool is not None:
            return await self._registry.execute(step.tool, payload)

        prompt = STEP_PROMPT.format(
            task=context.task or "(unspecified)",
            description=step.description,
            expected=f"Expected output: {step.expected_output}\n" if step.expected_output else "",
            dependencies=json.dumps(
                {dep: context.outputs.get(dep) for dep in step.dependencies}, indent=2, default=str
            ) if step.dependencies else "(none)",
        )
        start = time.perf_counter()
        try:
            text = await self._provider.complete(prompt, self._model_config)
        except Exception as exc:
            # CompletionError classifies as completion_error, anything else as a tool failure.
            return ToolResult(success=False, error=str(exc) or type(exc).__name__, error_kind=classify_error(exc),
                              latency_ms=(time.perf_counter() - start) * 1000)
        return ToolResult(success=True, output=coerce_output(text), latency_ms=(time.perf_counter() - start) * 1000)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _interrupted(
        self,
        step: PlanStep,
        number: int,
        parents: list[str],
        started: float,
        context: RunContext,
        exc: RunInterrupted,
        calls: list[ToolCallRecord],
        errors: list[StepError],
        attempts: int,
    ) -> StepResult:
        node = context.trace(
            ErrorNodeData(kind=exc.kind, message=str(exc), stage="tool_call", step_id=step.id, attempt=attempts, terminal=True),
            step=number,
            parents=parents,
            edge_type="error",
            label="interrupted",
        )
        context.step_tails[step.id] = node.id
        errors = [*errors, StepError(kind=exc.kind, message=str(exc), stage="tool_call", attempts=attempts)]
        return self._result(step, started, success=False, calls=calls, errors=errors, attempts=attempts)

    @staticmethod
    def _result(
        step: PlanStep,
        started: float,
        *,
        success: bool,
        output: Any = None,
        calls: list[ToolCallRecord] | None = None,
        errors: list[StepError] | None = None,
        attempts: int = 0,
    ) -> StepResult:
        return StepResult(
            step_id=step.id,
            success=success,
            output=output,
            tool_calls=tuple(calls or ()),
            errors=tuple(errors or ()),
            attempts=attempts,
            latency_ms=(time.perf_counter() - started) * 1000,
        )
