# retry.py
# Retry decisions and backoff delays.
#
# Stateless: the controller only answers questions about a RetryConfig.
# Which errors are retryable lives in errors.py; callers record the retry
# nodes in the trace.

from agent_sandbox.errors import ErrorKind, classify_error, is_retryable
from agent_sandbox.models import BackoffStrategy, RetryConfig


class RetryController:
    """
    Answers "retry again?" and "after how long?" for one retry policy.

    Attempts are 1-based: attempt 1 is the first try. A disabled policy
    behaves as max_attempts=1, so every error is immediately final.

    Example:
        controller = RetryController(RetryConfig(strategy="fixed", initial_delay=0.1))
        if controller.should_retry(1, ErrorKind.TOOL_EXECUTION_ERROR):
            await asyncio.sleep(controller.next_delay(1))
    """

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config or RetryConfig()

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def attempt_budget(self) -> int:
        """Total attempts allowed, first one included."""
        if not self._config.enabled:
            return 1
        return self._config.max_attempts

    def should_retry(self, attempt: int, error: ErrorKind | BaseException) -> bool:
        kind = error if isinstance(error, ErrorKind) else classify_error(error)
        if not is_retryable(kind):
            return False
        return attempt < self.attempt_budget

    def next_delay(self, attempt: int) -> float:
        """Seconds to wait after failed `attempt`. Non-decreasing in attempt, capped at max_delay."""
        attempt = max(1, attempt)
        initial = self._config.initial_delay
        strategy = self._config.strategy

        if strategy == BackoffStrategy.FIXED:
            delay = initial
        elif strategy == BackoffStrategy.LINEAR:
            delay = initial * attempt
        else:
            # Cap the exponent so huge attempt numbers cannot overflow the float.
            delay = initial * (2 ** min(attempt - 1, 64))

        return min(self._config.max_delay, delay)
