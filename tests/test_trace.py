import threading

import pytest

from agent_sandbox.errors import ErrorKind, TraceError
from agent_sandbox.models import AgentConfig, StepResult, ToolCallRecord
from agent_sandbox.trace import (
    ErrorNodeData,
    InMemoryTraceStorage,
    PlanNodeData,
    RetryNodeData,
    ToolCallNodeData,
    TraceNode,
    TraceRecorder,
)


def _call(step_id="1", success=True, attempt=1):
    return ToolCallNodeData(step_id=step_id, tool="echo", input={"message": "hi"}, attempt=attempt, success=success)


@pytest.fixture
def recorder():
    rec = TraceRecorder()
    rec.start_run("r1", AgentConfig())
    return rec


@pytest.fixture
def root(recorder):
    return recorder.emit("r1", PlanNodeData(task="t"))


# ---------------------------------------------------------------------------
# Shape invariants
# ---------------------------------------------------------------------------


def test_first_node_must_be_plan(recorder):
    with pytest.raises(TraceError, match="plan node"):
        recorder.emit("r1", _call())


def test_non_root_node_needs_a_parent(recorder, root):
    with pytest.raises(TraceError, match="needs a parent"):
        recorder.emit("r1", _call())


def test_emit_links_every_parent(recorder, root):
    a = recorder.emit("r1", _call("a"), parents=[root.id], edge_type="success")
    b = recorder.emit("r1", _call("b"), parents=[root.id], edge_type="success")
    joined = recorder.emit("r1", _call("c"), parents=[a.id, b.id])

    graph = recorder.get_trace("r1")
    assert {edge.source for edge in graph.incoming(joined.id)} == {a.id, b.id}
    assert joined.parent_id == a.id
    assert graph.is_dag()
    assert graph.orphans() == []


def test_node_ids_are_unique_and_typed(recorder, root):
    node = recorder.emit("r1", _call(), parents=[root.id])
    assert node.id.startswith("tool_call-")
    with pytest.raises(TraceError, match="Duplicate"):
        recorder.record_node("r1", TraceNode(id=node.id, data=_call(), parent_id=root.id))


def test_record_node_adds_parent_edge(recorder, root):
    node = recorder.record_node("r1", TraceNode(id="custom", data=_call(), parent_id=root.id))
    graph = recorder.get_trace("r1")
    assert graph.incoming(node.id)[0].source == root.id


def test_edges_must_follow_recording_order(recorder, root):
    a = recorder.emit("r1", _call("a"), parents=[root.id])
    b = recorder.emit("r1", _call("b"), parents=[a.id])
    with pytest.raises(TraceError, match="causal order"):
        recorder.record_edge("r1", b.id, a.id)
    with pytest.raises(TraceError, match="already recorded"):
        recorder.record_edge("r1", a.id, b.id)
    with pytest.raises(TraceError, match="unknown node"):
        recorder.record_edge("r1", a.id, "ghost")


def test_retry_edges_are_typed(recorder, root):
    call = recorder.emit("r1", _call(success=False), parents=[root.id])
    error = recorder.emit(
        "r1", ErrorNodeData(kind=ErrorKind.TOOL_EXECUTION_ERROR, message="boom", step_id="1", attempt=1),
        parents=[call.id], edge_type="error",
    )
    retry = recorder.emit(
        "r1", RetryNodeData(step_id="1", failed_attempt=1, next_attempt=2, delay=0.1, reason=ErrorKind.TOOL_EXECUTION_ERROR),
        parents=[error.id], edge_type="retry",
    )
    graph = recorder.get_trace("r1")
    assert graph.incoming(retry.id)[0].type == "retry"
    assert [n.type for n in graph.nodes] == ["plan", "tool_call", "error", "retry"]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_start_run_twice_raises(recorder):
    with pytest.raises(TraceError):
        recorder.start_run("r1")


def test_unknown_run_raises():
    recorder = TraceRecorder()
    with pytest.raises(TraceError, match="No trace"):
        recorder.get_trace("missing")
    with pytest.raises(TraceError, match="No trace started"):
        recorder.emit("missing", PlanNodeData(task="t"))


def test_end_run_seals_and_hands_off_to_storage():
    storage = InMemoryTraceStorage()
    recorder = TraceRecorder(storage)
    recorder.start_run("r2", AgentConfig())
    plan = recorder.emit("r2", PlanNodeData(task="t"))
    recorder.emit("r2", _call(), parents=[plan.id])
    result = StepResult(
        step_id="1",
        success=True,
        output="hi",
        tool_calls=(ToolCallRecord(tool="echo", input={}, attempt=1, success=True, output="hi"),),
        attempts=1,
        latency_ms=5.0,
    )

    metrics = recorder.end_run("r2", [result])

    graph = recorder.get_trace("r2")
    assert graph.sealed and graph.ended_at is not None
    assert storage.metrics("r2") == metrics
    assert metrics.total_steps == 1
    assert metrics.tool_usage == {"echo": 1}
    with pytest.raises(TraceError, match="sealed"):
        recorder.emit("r2", _call(), parents=[plan.id])


def test_get_trace_returns_a_copy(recorder, root):
    snapshot = recorder.get_trace("r1")
    recorder.emit("r1", _call(), parents=[root.id])
    assert len(snapshot.nodes) == 1
    assert len(recorder.get_trace("r1").nodes) == 2


def test_listeners_receive_nodes(recorder):
    seen = []
    recorder.subscribe(lambda run_id, node: seen.append((run_id, node.type)))
    recorder.emit("r1", PlanNodeData(task="t"))
    assert seen == [("r1", "plan")]


def test_concurrent_appends_keep_ids_unique(recorder, root):
    def worker():
        for _ in range(50):
            recorder.emit("r1", _call(), parents=[root.id])

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    graph = recorder.get_trace("r1")
    assert len({node.id for node in graph.nodes}) == len(graph.nodes) == 201
    assert graph.orphans() == []
