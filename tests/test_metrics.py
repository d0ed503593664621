from agent_sandbox.errors import ErrorKind
from agent_sandbox.metrics import compute_metrics, reliability_score
from agent_sandbox.models import AgentConfig, StepResult, ToolCallRecord, ValidationIssue
from agent_sandbox.trace import PlanNodeData, RetryNodeData, TraceRecorder, ValidationNodeData


def _result(step_id, success, tools, latency=100.0):
    calls = tuple(
        ToolCallRecord(tool=tool, input={}, attempt=n + 1, success=success or n == len(tools) - 1)
        for n, tool in enumerate(tools)
    )
    return StepResult(step_id=step_id, success=success, tool_calls=calls, attempts=len(tools), latency_ms=latency)


def test_perfect_run_scores_near_100():
    assert reliability_score(1.0, 100.0, 0, 3, 0.0) == 100.0


def test_score_components_are_weighted():
    # No successes, no compliance, every attempt a retry, latency at budget.
    assert reliability_score(0.0, 0.0, 5, 5, 10_000.0) == 0.0
    # Only success counts: 40 points.
    assert reliability_score(1.0, 0.0, 5, 5, 10_000.0) == 40.0


def test_compute_metrics_without_trace_counts_extra_attempts():
    metrics = compute_metrics([_result("1", True, ["echo"]), _result("2", False, ["search", "search", "search"])])
    assert metrics.total_steps == 2
    assert metrics.successful_steps == 1
    assert metrics.failed_steps == 1
    assert metrics.retry_count == 2
    assert metrics.tool_usage == {"echo": 1, "search": 3}
    assert metrics.average_latency_ms == 100.0


def test_compute_metrics_reads_retries_and_violations_from_trace():
    recorder = TraceRecorder()
    recorder.start_run("m", AgentConfig())
    root = recorder.emit("m", PlanNodeData(task="t"))
    invalid = recorder.emit(
        "m",
        ValidationNodeData(target="output", valid=False, score=80, errors=(ValidationIssue(path="a", message="missing"),)),
        parents=[root.id],
    )
    recorder.emit("m", ValidationNodeData(target="output", valid=True, score=100), parents=[invalid.id])
    recorder.emit(
        "m",
        RetryNodeData(failed_attempt=1, next_attempt=2, delay=0.5, reason=ErrorKind.TOOL_EXECUTION_ERROR),
        parents=[root.id],
    )

    metrics = recorder.end_run("m", [_result("1", True, ["echo", "echo"])])

    assert metrics.retry_count == 1
    assert metrics.schema_violations == 1
    assert 0 < metrics.reliability_score < 100


def test_empty_run_scores_zero():
    metrics = compute_metrics([])
    assert metrics.total_steps == 0
    assert metrics.reliability_score == 0.0
