# planner.py
# Task -> Plan via the completion provider.
#
# The planner never retries: a malformed plan is a PlannerError, and
# provider failures (CompletionError) propagate so the orchestrator can apply
# its retry policy.

import json
import logging
from typing import Any

import networkx as nx
from pydantic import ValidationError

from agent_sandbox.completion import CompletionProvider, extract_json
from agent_sandbox.errors import PlannerError
from agent_sandbox.models import ModelConfig, Plan
from agent_sandbox.tools import ToolRegistry

logger = logging.getLogger(__name__)

PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "description": {"type": "string"},
                    "tool": {"type": ["string", "null"]},
                    "input": {"type": "object"},
                    "expected_output": {"type": ["string", "null"]},
                    "dependencies": {"type": "array", "items": {"type": "string"}},
                    "optional": {"type": "boolean"},
                },
                "required": ["id", "description"],
            },
        },
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
    "required": ["steps"],
}

PLANNER_PROMPT = """\
You are a planning agent. Break the task into an ordered list of steps.

Each step has:
- "id": short unique string
- "description": what the step does
- "tool": one of the available tool names, or null to answer with the model directly
- "input": JSON arguments matching the tool's input_schema ({{}} when tool is null)
- "dependencies": ids of EARLIER steps whose output this step needs
- "expected_output": optional hint describing the result

If an input value depends on the output of a dependency, use the exact string
"<DYNAMIC>" (last dependency) or "<step:ID>" (a specific step).

Available tools:
{tools}

Context:
{context}

Task:
{task}

Respond with JSON: {{"steps": [...], "confidence": <0..1>}}\
"""

REFINE_PROMPT = """\
You are revising an execution plan after feedback.

Current plan:
{plan}

Feedback:
{feedback}

Available tools:
{tools}

Return the complete revised plan as JSON: {{"steps": [...], "confidence": <0..1>}}\
"""


def check_plan(plan: Plan) -> None:
    """
    Structural validation. Raises PlannerError for an empty plan, duplicate
    ids, unknown or forward dependencies, or a dependency cycle.
    """
    if not plan.steps:
        raise PlannerError("Plan has no steps.")

    seen: set[str] = set()
    for step in plan.steps:
        if step.id in seen:
            raise PlannerError(f"Duplicate step id '{step.id}'.")
        seen.add(step.id)

    graph = nx.DiGraph()
    graph.add_nodes_from(step.id for step in plan.steps)
    for step in plan.steps:
        for dep in step.dependencies:
            if dep not in seen:
                raise PlannerError(f"Step '{step.id}' depends on unknown step '{dep}'.")
            graph.add_edge(dep, step.id)

    if not nx.is_directed_acyclic_graph(graph):
        cycle = nx.find_cycle(graph)
        raise PlannerError(f"Plan dependencies contain a cycle: {cycle}.")

    earlier: set[str] = set()
    for step in plan.steps:
        for dep in step.dependencies:
            if dep not in earlier:
                raise PlannerError(f"Step '{step.id}' references step '{dep}' which does not precede it.")
        earlier.add(step.id)


def _normalise_step(raw: Any) -> Any:
    if isinstance(raw, dict) and "input" not in raw and "args" in raw:
        raw = {**raw, "input": raw["args"]}
        raw.pop("args")
    if isinstance(raw, dict) and raw.get("input") is None:
        raw = {**raw, "input": {}}
    return raw


class Planner:
    def __init__(self, provider: CompletionProvider, registry: ToolRegistry, model_config: ModelConfig) -> None:
        self._provider = provider
        self._registry = registry
        self._model_config = model_config

    def _tool_catalogue(self) -> str:
        tools = [tool.describe() for tool in self._registry.list()]
        return json.dumps(tools, indent=2) if tools else "(none: use tool=null for every step)"

    async def generate_plan(self, task: str, context: dict[str, Any] | None = None) -> Plan:
        if not task or not task.strip():
            raise PlannerError("Task is empty.")
        prompt = PLANNER_PROMPT.format(
            tools=self._tool_catalogue(),
            context=json.dumps(context or {}, indent=2, default=str),
            task=task,
        )
        text = await self._provider.complete(prompt, self._model_config, PLAN_SCHEMA)
        plan = self.parse_plan(text, task)
        logger.info("generated plan %s with %d steps", plan.id, len(plan.steps))
        return plan

    async def refine_plan(self, plan: Plan, feedback: str) -> Plan:
        """Return a new plan revised from `plan`; `plan` itself is untouched."""
        prompt = REFINE_PROMPT.format(
            plan=plan.model_dump_json(indent=2, include={"steps", "confidence"}),
            feedback=feedback,
            tools=self._tool_catalogue(),
        )
        text = await self._provider.complete(prompt, self._model_config, PLAN_SCHEMA)
        refined = self.parse_plan(text, plan.task, version=plan.version + 1, parent_id=plan.id)
        logger.info("refined plan %s -> %s (v%d)", plan.id, refined.id, refined.version)
        return refined

    def parse_plan(self, text: str, task: str, version: int = 1, parent_id: str | None = None) -> Plan:
        try:
            data = extract_json(text)
        except ValueError as exc:
            raise PlannerError(f"Planner output is not JSON: {exc}") from exc

        if isinstance(data, list):
            data = {"steps": data}
        if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
            raise PlannerError("Planner output must be an object with a 'steps' list.")

        try:
            plan = Plan(
                task=task,
                steps=[_normalise_step(raw) for raw in data["steps"]],
                confidence=data.get("confidence"),
                version=version,
                parent_id=parent_id,
            )
        except ValidationError as exc:
            raise PlannerError(f"Plan content is invalid: {exc}") from exc

        check_plan(plan)
        return plan
