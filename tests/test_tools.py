from unittest.mock import MagicMock, patch

import pytest

from agent_sandbox.errors import ErrorKind, ToolExecutionError, ToolNotFound, ToolRegistrationError
from agent_sandbox.tools import (
    ToolRegistry,
    _tool_calculator,
    _tool_file_write,
    _tool_search,
    _tool_summarize,
    default_registry,
)

# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


@patch("ddgs.DDGS")
def test_tool_search_success(mock_ddgs_cls):
    mock_instance = mock_ddgs_cls.return_value
    mock_instance.text.return_value = [
        {"title": "Result 1", "body": "Body 1", "href": "http://1.com"}
    ]

    result = _tool_search({"query": "test"})
    assert result == [{"title": "Result 1", "body": "Body 1", "href": "http://1.com"}]
    mock_instance.text.assert_called_once_with("test", max_results=4)


@patch("ddgs.DDGS")
def test_tool_search_exception_is_retryable(mock_ddgs_cls):
    mock_ddgs_cls.return_value.text.side_effect = Exception("Network timeout")

    with pytest.raises(ToolExecutionError, match="Network timeout"):
        _tool_search({"query": "crash"})


def test_tool_summarize_truncation():
    assert len(_tool_summarize({"text": "a" * 5000})) == 4000
    assert _tool_summarize({"text": "  short  "}) == "short"


@pytest.mark.parametrize(
    "expression, expected",
    [("2+2", 4), ("10 / 4", 2.5), ("-3 * (2 + 1)", -9), ("2 ** 10", 1024), ("7 // 2", 3)],
)
def test_tool_calculator(expression, expected):
    assert _tool_calculator({"expression": expression}) == {"result": expected}


@pytest.mark.parametrize("expression", ["__import__('os')", "1/0", "2 +", "a * 2"])
def test_tool_calculator_rejects_bad_expressions(expression):
    with pytest.raises(ToolExecutionError):
        _tool_calculator({"expression": expression})


def test_tool_file_write_inside_workspace(tmp_path, monkeypatch):
    monkeypatch.setenv("SANDBOX_WORKSPACE", str(tmp_path))
    result = _tool_file_write({"path": "notes/out.txt", "content": "hello"})
    assert (tmp_path / "notes" / "out.txt").read_text() == "hello"
    assert result["bytes"] == 5


def test_tool_file_write_refuses_path_traversal(tmp_path, monkeypatch):
    monkeypatch.setenv("SANDBOX_WORKSPACE", str(tmp_path / "workspace"))
    with pytest.raises(PermissionError):
        _tool_file_write({"path": "../../etc/cron.d/job", "content": "x"})


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def test_default_registry_has_builtins():
    registry = default_registry()
    assert set(registry.names()) == {"echo", "calculator", "summarize", "search", "file_write", "http_post"}
    assert len(registry.list()) == len(registry)


def test_register_is_idempotent_for_identical_definitions(make_tool):
    registry = ToolRegistry()
    executor = MagicMock(return_value="ok")
    registry.register(make_tool("t", executor))
    registry.register(make_tool("t", executor))
    assert len(registry) == 1


def test_conflicting_registration_raises(make_tool):
    registry = ToolRegistry()
    registry.register(make_tool("t", MagicMock()))
    with pytest.raises(ToolRegistrationError):
        registry.register(make_tool("t", MagicMock(), category="other"))


def test_restricted_view(registry):
    view = registry.restricted(["echo"])
    assert view.names() == ["echo"]
    assert registry.restricted([]) is registry
    with pytest.raises(ToolNotFound):
        registry.restricted(["missing"])


@pytest.mark.asyncio
async def test_execute_unknown_tool(registry):
    result = await registry.execute("nope", {})
    assert not result.success
    assert result.error_kind == ErrorKind.TOOL_NOT_FOUND


@pytest.mark.asyncio
async def test_execute_invalid_input_short_circuits(make_tool):
    executor = MagicMock(return_value="never")
    registry = ToolRegistry()
    registry.register(make_tool("t", executor, schema={
        "type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"],
    }))

    result = await registry.execute("t", {"q": 3})
    assert not result.success
    assert result.error_kind == ErrorKind.SCHEMA_VIOLATION
    executor.assert_not_called()


@pytest.mark.asyncio
async def test_execute_sync_and_async_capabilities(make_tool):
    async def async_tool(args):
        return {"async": args["x"]}

    registry = ToolRegistry()
    registry.register(make_tool("sync", lambda args: args["x"] * 2))
    registry.register(make_tool("async", async_tool))

    sync_result = await registry.execute("sync", {"x": 2})
    async_result = await registry.execute("async", {"x": 3})
    assert sync_result.success and sync_result.output == 4
    assert async_result.success and async_result.output == {"async": 3}
    assert sync_result.latency_ms >= 0


@pytest.mark.asyncio
async def test_execute_classifies_capability_exceptions(make_tool):
    def boom(args):
        raise KeyError("missing")

    registry = ToolRegistry()
    registry.register(make_tool("boom", boom))
    result = await registry.execute("boom", {})
    assert not result.success
    assert result.error_kind == ErrorKind.TOOL_EXECUTION_ERROR
    assert "missing" in result.error


@pytest.mark.asyncio
async def test_calculator_through_registry(registry):
    result = await registry.execute("calculator", {"expression": "2+2"})
    assert result.success
    assert result.output == {"result": 4}
