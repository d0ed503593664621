# repair.py
# Completion-assisted repair of schema-invalid data.

import json
import logging
from typing import Any

from agent_sandbox.completion import CompletionProvider, extract_json
from agent_sandbox.context import RunContext
from agent_sandbox.errors import CompletionError
from agent_sandbox.models import ModelConfig, RepairResult, RetryConfig, ValidationIssue
from agent_sandbox.retry import RetryController
from agent_sandbox.trace import RepairNodeData
from agent_sandbox.validation import Schema, SchemaValidator, schema_as_json

logger = logging.getLogger(__name__)

REPAIR_PROMPT = """\
The following JSON value does not conform to its schema.

Value:
{data}

Schema:
{schema}

Validation errors:
{errors}

Return ONLY the corrected JSON value. Keep every field that is already valid.\
"""


def _format_errors(errors: list[ValidationIssue]) -> str:
    if not errors:
        return "- (none reported)"
    lines = []
    for issue in errors:
        expected = f" (expected {issue.expected})" if issue.expected else ""
        lines.append(f"- {issue.path}: {issue.message}{expected}")
    return "\n".join(lines)


class RepairEngine:
    """
    Asks the completion provider to fix invalid data, re-validating each
    answer. The attempt budget comes from the retry policy; there is no
    independent loop bound.

    The returned `repaired` value is the last candidate, which is only
    schema-valid when `success` is True.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        validator: SchemaValidator,
        model_config: ModelConfig,
        retry: RetryConfig | None = None,
    ) -> None:
        self._provider = provider
        self._validator = validator
        self._model_config = model_config
        self._controller = RetryController(retry)

    @property
    def max_attempts(self) -> int:
        return self._controller.attempt_budget

    def build_prompt(self, data: Any, schema: Schema, errors: list[ValidationIssue]) -> str:
        return REPAIR_PROMPT.format(
            data=json.dumps(data, indent=2, default=str),
            schema=json.dumps(schema_as_json(schema), indent=2),
            errors=_format_errors(errors),
        )

    async def repair(
        self,
        data: Any,
        schema: Schema,
        errors: list[ValidationIssue] | None = None,
        context: RunContext | None = None,
        *,
        parent: str | None = None,
        step: int = 0,
        step_id: str | None = None,
    ) -> RepairResult:
        current = self._validator.validate(data, schema)
        if current.valid:
            return RepairResult(success=True, repaired=data, attempts=0)

        original = list(errors) if errors else list(current.errors)
        candidate = data
        remaining = list(current.errors)
        last_node = parent

        for attempt in range(1, self.max_attempts + 1):
            if context is not None:
                context.checkpoint(f"repair attempt {attempt}")

            failure: str | None = None
            try:
                text = await self._provider.complete(
                    self.build_prompt(candidate, schema, remaining),
                    self._model_config,
                    schema_as_json(schema),
                )
                proposal = extract_json(text)
            except (CompletionError, ValueError) as exc:
                failure = str(exc)
                logger.info("repair attempt %d produced no candidate: %s", attempt, exc)
            else:
                candidate = proposal
                remaining = list(self._validator.validate(candidate, schema).errors)

            success = failure is None and not remaining
            if context is not None:
                node = context.trace(
                    RepairNodeData(
                        step_id=step_id,
                        attempt=attempt,
                        success=success,
                        candidate=candidate,
                        remaining_errors=tuple(remaining),
                        error=failure,
                    ),
                    step=step,
                    parents=[last_node],
                    edge_type="error" if attempt == 1 else "retry",
                    label="repair" if attempt == 1 else f"repair attempt {attempt}",
                )
                last_node = node.id

            if success:
                logger.info("repair succeeded after %d attempt(s)", attempt)
                return RepairResult(
                    success=True,
                    repaired=candidate,
                    attempts=attempt,
                    original_errors=original,
                    trace_node=last_node,
                )

        logger.info("repair exhausted after %d attempt(s), %d error(s) remain", self.max_attempts, len(remaining))
        return RepairResult(
            success=False,
            repaired=candidate,
            attempts=self.max_attempts,
            original_errors=original,
            remaining_errors=remaining,
            trace_node=last_node,
        )
