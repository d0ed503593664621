# context.py
# Per-run execution context shared by the orchestrator, executor and repair
# engine: identity, budgets, cancellation and the trace sink.

import asyncio
import time
from typing import Any, Iterable

from agent_sandbox.errors import RunCancelled, RunTimeout
from agent_sandbox.models import AgentConfig
from agent_sandbox.retry import RetryController
from agent_sandbox.trace import EdgeType, TraceNode, TraceRecorder


class RunContext:
    """
    Everything a component needs to act on behalf of one run.

    `checkpoint()` is the suspension-point check: it raises RunCancelled or
    RunTimeout once the run must stop. Components call it before planning,
    before each tool invocation, before each retry delay and before each
    repair attempt, never in the middle of an invocation.
    """

    def __init__(self, run_id: str, config: AgentConfig, recorder: TraceRecorder, task: str = "") -> None:
        self.run_id = run_id
        self.task = task
        self.config = config
        self.recorder = recorder
        self.retry = RetryController(config.retry)
        self.deadline = time.monotonic() + config.timeout
        self.plan_node_id: str | None = None
        self.step_numbers: dict[str, int] = {}
        self.step_tails: dict[str, str] = {}
        self.outputs: dict[str, Any] = {}
        self._cancelled = False
        self._cancel_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Budgets & cancellation
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self) -> None:
        self._cancelled = True
        self._cancel_event.set()

    def checkpoint(self, stage: str) -> None:
        if self._cancelled:
            raise RunCancelled(f"Run {self.run_id} cancelled before {stage}.")
        if self.expired:
            raise RunTimeout(f"Run {self.run_id} exceeded its {self.config.timeout:g}s timeout before {stage}.")

    async def sleep(self, delay: float) -> None:
        """Back off for `delay` seconds, waking early on cancellation or deadline."""
        timeout = min(delay, self.remaining())
        if timeout <= 0:
            return
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        done, _ = await asyncio.wait({waiter}, timeout=timeout)
        if not done:
            waiter.cancel()

    # ------------------------------------------------------------------
    # Trace
    # ------------------------------------------------------------------

    def trace(
        self,
        data: Any,
        *,
        step: int = 0,
        parents: Iterable[str | None] = (),
        edge_type: EdgeType | None = None,
        label: str | None = None,
        latency_ms: float = 0.0,
    ) -> TraceNode:
        parent_ids = [p for p in parents if p is not None]
        if not parent_ids and self.plan_node_id is not None:
            parent_ids = [self.plan_node_id]
        return self.recorder.emit(
            self.run_id,
            data,
            step=step,
            parents=parent_ids,
            edge_type=edge_type,
            label=label,
            latency_ms=latency_ms,
        )

    def step_parents(self, step_id: str, dependencies: Iterable[str]) -> list[str]:
        """Where a step's first node hangs: its dependencies' last nodes, else the plan node."""
        tails = [self.step_tails[dep] for dep in dependencies if dep in self.step_tails]
        if tails:
            return tails
        return [self.plan_node_id] if self.plan_node_id else []
