# run.py
# Entry point. Config and wiring only; no logic lives here.
#
# Swap the model string for any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import asyncio
import logging
import sys

from rich.logging import RichHandler

from agent_sandbox import display
from agent_sandbox.completion import OpenRouterProvider
from agent_sandbox.config import load_config
from agent_sandbox.errors import SandboxError
from agent_sandbox.harness import AgentExecutor
from agent_sandbox.models import AgentConfig, RunResult, RunStatus
from agent_sandbox.tools import default_registry
from agent_sandbox.trace import TraceRecorder


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="agent-sandbox", description="Run a task through the agent reliability sandbox.")
    p.add_argument("task", help="Task for the agent to plan and execute.")
    p.add_argument("--config", type=str, default=None, help="JSON file with AgentConfig fields. Defaults to the environment.")
    p.add_argument("--model", type=str, default=None, help="Override the completion model.")
    p.add_argument("--max-steps", type=int, default=None)
    p.add_argument("--timeout", type=float, default=None, help="Wall-clock seconds for the whole run.")
    p.add_argument("--show-trace", action="store_true", help="Print the trace tree after the run.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p


def _apply_overrides(config: AgentConfig, args: argparse.Namespace) -> AgentConfig:
    overrides = {
        key: value
        for key, value in (("model", args.model), ("max_steps", args.max_steps), ("timeout", args.timeout))
        if value is not None
    }
    if not overrides:
        return config
    return load_config({**config.model_dump(), **overrides})


async def _run(task: str, config: AgentConfig, show_trace: bool) -> RunResult:
    recorder = TraceRecorder()
    executor = AgentExecutor(config, default_registry(), OpenRouterProvider(), recorder=recorder)

    async def follow() -> None:
        async for event in executor.events():
            display.run_event(event)

    follower = asyncio.create_task(follow())
    result = await executor.execute(task)
    await follower

    if result.plan is not None:
        display.plan_table(result.plan)
    if show_trace:
        display.trace_tree(recorder.get_trace(result.run.id))
    display.final_result(result)
    return result


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=display.console, show_path=False)],
    )

    try:
        config = _apply_overrides(load_config(args.config), args)
    except SandboxError as exc:
        display.console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        return 2

    display.banner(config)
    display.task_received(args.task)
    result = asyncio.run(_run(args.task, config, args.show_trace))
    return 0 if result.status == RunStatus.COMPLETED else 1


if __name__ == "__main__":
    sys.exit(main())
