# metrics.py
# Run metrics and the reliability score.
#
# Derived read-only from the final step results and the sealed trace.
# Everything here is a pure function so the same run always scores the same.

from collections import Counter

from agent_sandbox.models import RunMetrics, StepResult
from agent_sandbox.trace import TraceGraph

# Weights of the reliability composite. They sum to 1.
SUCCESS_WEIGHT = 0.40
COMPLIANCE_WEIGHT = 0.25
RETRY_WEIGHT = 0.20
LATENCY_WEIGHT = 0.15

# Average step latency at which the latency component reaches zero.
LATENCY_BUDGET_MS = 10_000.0


def reliability_score(
    success_rate: float,
    compliance: float,
    retries: int,
    attempts: int,
    average_latency_ms: float,
) -> float:
    """
    Weighted composite in [0, 100].

    success_rate is a fraction, compliance a 0-100 schema score, retries and
    attempts are tool-call counts for the whole run.
    """
    retry_component = 100.0 * (1.0 - min(1.0, retries / attempts)) if attempts else 100.0
    latency_component = 100.0 * max(0.0, 1.0 - average_latency_ms / LATENCY_BUDGET_MS)
    score = (
        SUCCESS_WEIGHT * success_rate * 100.0
        + COMPLIANCE_WEIGHT * compliance
        + RETRY_WEIGHT * retry_component
        + LATENCY_WEIGHT * latency_component
    )
    return round(max(0.0, min(100.0, score)), 2)


def compute_metrics(step_results: list[StepResult], graph: TraceGraph | None = None) -> RunMetrics:
    total = len(step_results)
    successful = sum(1 for result in step_results if result.success)
    total_latency = sum(result.latency_ms for result in step_results)
    average_latency = total_latency / total if total else 0.0

    usage: Counter[str] = Counter()
    attempts = 0
    for result in step_results:
        for call in result.tool_calls:
            usage[call.tool] += 1
            attempts += 1

    if graph is not None:
        retries = len(graph.of_type("retry"))
        validations = graph.of_type("validation")
        violations = sum(1 for node in validations if not node.data.valid)
        compliance = (
            sum(node.data.score for node in validations) / len(validations) if validations else 100.0
        )
    else:
        retries = sum(max(0, result.attempts - 1) for result in step_results)
        violations = 0
        compliance = 100.0

    score = reliability_score(
        successful / total, compliance, retries, attempts, average_latency
    ) if total else 0.0

    return RunMetrics(
        total_steps=total,
        successful_steps=successful,
        failed_steps=total - successful,
        retry_count=retries,
        total_latency_ms=round(total_latency, 3),
        average_latency_ms=round(average_latency, 3),
        schema_violations=violations,
        tool_usage=dict(usage),
        reliability_score=score,
    )
