# tools.py
# Tool registry and the built-in tools.
#
# A ToolRegistry is an explicit instance built at startup and handed to the
# planner and executor; there is no module-level singleton. Registries hold
# no per-run state and are read-mostly after registration.

import ast
import asyncio
import inspect
import logging
import operator
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from agent_sandbox.errors import ErrorKind, ToolExecutionError, ToolNotFound, ToolRegistrationError, classify_error
from agent_sandbox.models import ToolResult
from agent_sandbox.validation import SchemaValidator, schema_as_json

logger = logging.getLogger(__name__)


class ToolDefinition(BaseModel):
    """A named, schema-typed executable capability."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1)
    description: str = ""
    input_schema: Any = Field(default_factory=lambda: {"type": "object"}, description="Dict schema or pydantic model.")
    executor: Callable[[dict[str, Any]], Any]
    category: str = "general"
    metadata: dict[str, Any] = Field(default_factory=dict)

    def describe(self) -> dict[str, Any]:
        """Prompt-friendly summary: everything except the callable."""
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "input_schema": schema_as_json(self.input_schema),
        }


class ToolRegistry:
    def __init__(self, validator: SchemaValidator | None = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._validator = validator or SchemaValidator()
        self._lock = threading.Lock()

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, tool: ToolDefinition) -> ToolDefinition:
        """Add `tool`. Re-registering an identical definition is a no-op; a different one is an error."""
        self._validator.compile(tool.input_schema)
        with self._lock:
            existing = self._tools.get(tool.name)
            if existing is not None:
                if existing == tool:
                    return existing
                raise ToolRegistrationError(f"Tool '{tool.name}' is already registered with a different definition.")
            self._tools[tool.name] = tool
        logger.debug("registered tool %s (%s)", tool.name, tool.category)
        return tool

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def restricted(self, names: tuple[str, ...] | list[str]) -> "ToolRegistry":
        """A registry exposing only `names`. Empty means every tool."""
        if not names:
            return self
        view = ToolRegistry(self._validator)
        for name in names:
            tool = self.get(name)
            if tool is None:
                raise ToolNotFound(f"Tool '{name}' is not in the registry.")
            view.register(tool)
        return view

    async def execute(self, name: str, input: dict[str, Any]) -> ToolResult:
        """
        Validate `input` and invoke the tool.

        Never raises for tool-side problems: a missing tool, invalid input or a
        capability exception all come back as ToolResult(success=False) with
        an error_kind. Invalid input short-circuits before the capability runs.
        """
        tool = self.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                error=f"Tool '{name}' is not in the registry.",
                error_kind=ErrorKind.TOOL_NOT_FOUND,
            )

        validation = self._validator.validate(input, tool.input_schema)
        if not validation.valid:
            issues = "; ".join(f"{issue.path}: {issue.message}" for issue in validation.errors)
            return ToolResult(
                success=False,
                error=f"Invalid input for '{name}': {issues}",
                error_kind=ErrorKind.SCHEMA_VIOLATION,
                metadata={"validation": validation.model_dump(mode="json")},
            )

        start = time.perf_counter()
        try:
            if inspect.iscoroutinefunction(tool.executor):
                output = await tool.executor(input)
            else:
                output = await asyncio.to_thread(tool.executor, input)
        except Exception as exc:
            latency = (time.perf_counter() - start) * 1000
            logger.info("tool %s failed after %.1fms: %s", name, latency, exc)
            return ToolResult(success=False, error=str(exc) or type(exc).__name__, error_kind=classify_error(exc), latency_ms=latency)

        latency = (time.perf_counter() - start) * 1000
        return ToolResult(success=True, output=output, latency_ms=latency)

    # Defined last: the name shadows the builtin for annotations in this class body.
    def list(self) -> list[ToolDefinition]:
        return list(self._tools.values())


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------

_BINARY_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _evaluate(node: ast.AST) -> int | float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left, right = _evaluate(node.left), _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > 100:
            raise ValueError("Exponent too large.")
        return _BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


def _tool_calculator(args: dict) -> dict:
    expression = args["expression"].strip()
    try:
        tree = ast.parse(expression, mode="eval")
        result = _evaluate(tree)
    except (SyntaxError, ValueError, ZeroDivisionError) as exc:
        raise ToolExecutionError(f"Cannot evaluate '{expression}': {exc}") from exc
    if isinstance(result, float) and result.is_integer():
        result = int(result)
    return {"result": result}


def _tool_echo(args: dict) -> str:
    return args.get("message", "")


def _tool_summarize(args: dict) -> str:
    text = args["text"].strip()
    return text[:4000] if len(text) > 4000 else text


def _tool_search(args: dict) -> list[dict]:
    from ddgs import DDGS

    query = args["query"].strip()
    try:
        # Coerce the generator to a list to ensure actual execution
        results = list(DDGS().text(query, max_results=args.get("max_results") or 4))
    except Exception as exc:
        raise ToolExecutionError(f"Search failed: {exc}") from exc
    return [
        {"title": r.get("title", ""), "body": r.get("body", ""), "href": r.get("href", "")}
        for r in results
    ]


def _workspace_root() -> Path:
    return Path(os.getenv("SANDBOX_WORKSPACE", "workspace")).resolve()


def _tool_file_write(args: dict) -> dict:
    """Write inside the sandbox workspace only. Paths escaping it are refused."""
    root = _workspace_root()
    target = (root / args["path"]).resolve()
    if target != root and root not in target.parents:
        raise PermissionError(f"Path '{args['path']}' escapes the workspace.")
    target.parent.mkdir(parents=True, exist_ok=True)
    content = args.get("content", "")
    target.write_text(content, encoding="utf-8")
    return {"path": str(target), "bytes": len(content.encode("utf-8"))}


async def _tool_http_post(args: dict) -> dict:
    import httpx

    url = args["url"].strip()
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(url, json=args.get("payload", {}))
    except httpx.HTTPError as exc:
        raise ToolExecutionError(f"POST {url} failed: {exc}") from exc
    return {"status_code": response.status_code, "bytes": len(response.content)}


def _object_schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


BUILTIN_TOOLS: list[ToolDefinition] = [
    ToolDefinition(
        name="echo",
        description="Return the given message unchanged.",
        input_schema=_object_schema({"message": {"type": "string"}}, ["message"]),
        executor=_tool_echo,
        category="utility",
    ),
    ToolDefinition(
        name="calculator",
        description="Evaluate an arithmetic expression (+ - * / // % **).",
        input_schema=_object_schema({"expression": {"type": "string", "minLength": 1}}, ["expression"]),
        executor=_tool_calculator,
        category="math",
    ),
    ToolDefinition(
        name="summarize",
        description="Trim text to at most 4000 characters.",
        input_schema=_object_schema({"text": {"type": "string"}}, ["text"]),
        executor=_tool_summarize,
        category="text",
    ),
    ToolDefinition(
        name="search",
        description="Web search returning title, body and link per hit.",
        input_schema=_object_schema(
            {"query": {"type": "string", "minLength": 1}, "max_results": {"type": "integer", "minimum": 1, "maximum": 20}},
            ["query"],
        ),
        executor=_tool_search,
        category="web",
    ),
    ToolDefinition(
        name="file_write",
        description="Write text to a file inside the sandbox workspace.",
        input_schema=_object_schema({"path": {"type": "string", "minLength": 1}, "content": {"type": "string"}}, ["path", "content"]),
        executor=_tool_file_write,
        category="filesystem",
    ),
    ToolDefinition(
        name="http_post",
        description="POST a JSON payload to a URL.",
        input_schema=_object_schema({"url": {"type": "string", "minLength": 1}, "payload": {"type": "object"}}, ["url"]),
        executor=_tool_http_post,
        category="web",
    ),
]


def default_registry(validator: SchemaValidator | None = None) -> ToolRegistry:
    registry = ToolRegistry(validator)
    for tool in BUILTIN_TOOLS:
        registry.register(tool)
    return registry
