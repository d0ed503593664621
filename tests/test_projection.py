from agent_sandbox.errors import ErrorKind
from agent_sandbox.models import AgentConfig
from agent_sandbox.projection import layout, trace_listing
from agent_sandbox.trace import ErrorNodeData, PlanNodeData, RetryNodeData, ToolCallNodeData, TraceRecorder


def _graph():
    recorder = TraceRecorder()
    recorder.start_run("p", AgentConfig())
    root = recorder.emit("p", PlanNodeData(task="t", plan_id="abc", step_ids=("1",)))
    first = recorder.emit(
        "p", ToolCallNodeData(step_id="1", tool="echo", success=False, error="boom"), step=1, parents=[root.id]
    )
    error = recorder.emit(
        "p", ErrorNodeData(kind=ErrorKind.TOOL_EXECUTION_ERROR, message="boom", step_id="1", attempt=1),
        step=1, parents=[first.id], edge_type="error",
    )
    retry = recorder.emit(
        "p", RetryNodeData(step_id="1", failed_attempt=1, next_attempt=2, delay=0.5, reason=ErrorKind.TOOL_EXECUTION_ERROR),
        step=1, parents=[error.id], edge_type="retry", label="backoff 0.5s",
    )
    recorder.emit(
        "p", ToolCallNodeData(step_id="1", tool="echo", attempt=2, success=True, output="hi"),
        step=1, parents=[retry.id], edge_type="retry", latency_ms=3.0,
    )
    recorder.end_run("p")
    return recorder.get_trace("p")


def test_trace_listing_has_parents_and_children():
    listing = trace_listing(_graph())
    assert listing["run_id"] == "p"
    assert listing["sealed"] is True
    nodes = {node["id"]: node for node in listing["nodes"]}
    assert nodes["plan-1"]["parents"] == []
    assert nodes["plan-1"]["children"] == ["tool_call-2"]
    assert nodes["retry-4"]["parents"] == ["error-3"]
    assert nodes["tool_call-5"]["latency_ms"] == 3.0
    assert nodes["tool_call-2"]["summary"] == "echo #1 failed"
    assert nodes["retry-4"]["summary"] == "retry -> #2 after 0.5s"
    assert len(listing["edges"]) == 4


def test_layout_layers_follow_edges():
    projection = layout(_graph())
    layers = {node["id"]: node["layer"] for node in projection["nodes"]}
    assert layers == {"plan-1": 0, "tool_call-2": 1, "error-3": 2, "retry-4": 3, "tool_call-5": 4}
    for edge in projection["edges"]:
        assert layers[edge["source"]] < layers[edge["target"]]
    labels = {(edge["source"], edge["target"]): edge["label"] for edge in projection["edges"]}
    assert labels[("error-3", "retry-4")] == "backoff 0.5s"
    assert labels[("plan-1", "tool_call-2")] == ""


def test_layout_spreads_siblings_horizontally():
    recorder = TraceRecorder()
    recorder.start_run("s", AgentConfig())
    root = recorder.emit("s", PlanNodeData(task="t"))
    for step_id in ("a", "b"):
        recorder.emit("s", ToolCallNodeData(step_id=step_id, tool="echo", success=True), parents=[root.id])
    projection = layout(recorder.get_trace("s"), x_gap=100)
    xs = sorted(node["x"] for node in projection["nodes"] if node["layer"] == 1)
    assert xs == [0, 100]
