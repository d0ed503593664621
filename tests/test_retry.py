import pytest

from agent_sandbox.errors import ErrorKind, PlannerError, ToolExecutionError
from agent_sandbox.models import RetryConfig
from agent_sandbox.retry import RetryController

# ---------------------------------------------------------------------------
# Backoff strategies
# ---------------------------------------------------------------------------


def test_fixed_delay_is_constant():
    controller = RetryController(RetryConfig(strategy="fixed", initial_delay=0.1))
    assert [controller.next_delay(n) for n in (1, 2, 5)] == [0.1, 0.1, 0.1]


def test_linear_delay_grows_with_attempt():
    controller = RetryController(RetryConfig(strategy="linear", initial_delay=0.5, max_delay=100))
    assert controller.next_delay(1) == 0.5
    assert controller.next_delay(3) == 1.5


def test_exponential_delay_doubles_and_clamps():
    controller = RetryController(RetryConfig(strategy="exponential", initial_delay=0.5, max_delay=3.0))
    assert controller.next_delay(1) == 0.5
    assert controller.next_delay(2) == 1.0
    assert controller.next_delay(3) == 2.0
    assert controller.next_delay(4) == 3.0


@pytest.mark.parametrize("strategy", ["fixed", "linear", "exponential"])
def test_delays_are_non_decreasing_and_bounded(strategy):
    config = RetryConfig(strategy=strategy, initial_delay=0.25, max_delay=4.0)
    controller = RetryController(config)
    delays = [controller.next_delay(n) for n in range(1, 200)]
    assert delays == sorted(delays)
    assert max(delays) <= config.max_delay


def test_attempt_below_one_is_treated_as_first():
    controller = RetryController(RetryConfig(strategy="linear", initial_delay=1.0))
    assert controller.next_delay(0) == controller.next_delay(1)


# ---------------------------------------------------------------------------
# Retry decisions
# ---------------------------------------------------------------------------


def test_should_retry_until_budget_spent():
    controller = RetryController(RetryConfig(max_attempts=3))
    assert controller.should_retry(1, ErrorKind.TOOL_EXECUTION_ERROR)
    assert controller.should_retry(2, ErrorKind.COMPLETION_ERROR)
    assert not controller.should_retry(3, ErrorKind.TOOL_EXECUTION_ERROR)


@pytest.mark.parametrize(
    "kind",
    [ErrorKind.TOOL_NOT_FOUND, ErrorKind.SCHEMA_VIOLATION, ErrorKind.PLANNER_ERROR, ErrorKind.TIMEOUT],
)
def test_non_retryable_kinds_never_retry(kind):
    assert not RetryController().should_retry(1, kind)


def test_should_retry_classifies_exceptions():
    controller = RetryController()
    assert controller.should_retry(1, ToolExecutionError("boom"))
    assert controller.should_retry(1, RuntimeError("unknown failures count as tool errors"))
    assert not controller.should_retry(1, PlannerError("bad plan"))


def test_disabled_policy_means_single_attempt():
    controller = RetryController(RetryConfig(enabled=False, max_attempts=5))
    assert controller.attempt_budget == 1
    assert not controller.should_retry(1, ErrorKind.TOOL_EXECUTION_ERROR)


def test_retry_config_rejects_unknown_fields():
    with pytest.raises(ValueError):
        RetryConfig(max_retries=3)
