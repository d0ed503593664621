# display.py
# All terminal output for the sandbox CLI.
#
# Core modules never import this file. run.py feeds it run events and the
# final RunResult; swap this file to change the entire UI.
#
# Colour language:
#   cyan    - planning and run status
#   blue    - tool calls
#   yellow  - validation, repair and retries
#   green   - success
#   red     - errors and failed runs
#   magenta - cancellation

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from agent_sandbox.models import AgentConfig, Plan, RunEvent, RunMetrics, RunResult, RunStatus
from agent_sandbox.projection import trace_listing
from agent_sandbox.trace import TraceGraph

console = Console()

STATUS_COLORS = {
    RunStatus.IDLE: "dim",
    RunStatus.PLANNING: "cyan",
    RunStatus.EXECUTING: "cyan",
    RunStatus.VALIDATING: "yellow",
    RunStatus.REPAIRING: "yellow",
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
    RunStatus.CANCELLED: "magenta",
}

NODE_STYLES = {
    "plan": ("🗂️ ", "cyan"),
    "tool_call": ("⚙️ ", "blue"),
    "validation": ("🔎", "yellow"),
    "repair": ("🔧", "yellow"),
    "retry": ("🔁", "yellow"),
    "error": ("💥", "red"),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: Any, max_len: int = 120) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = text.replace("\n", " ")
    if len(text) > max_len:
        return text[:max_len] + "…"
    return text


# ---------------------------------------------------------------------------
# Run entry
# ---------------------------------------------------------------------------


def banner(config: AgentConfig) -> None:
    retry = config.retry
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Agent Reliability Sandbox[/bold cyan]\n"
            "[dim]plan → execute → validate/repair → retry → trace[/dim]\n\n"
            f"[dim]Model      :[/dim] [white]{config.model}[/white]\n"
            f"[dim]Max steps  :[/dim] [white]{config.max_steps}[/white]\n"
            f"[dim]Timeout    :[/dim] [white]{config.timeout:g}s[/white]\n"
            f"[dim]Retry      :[/dim] [white]"
            f"{retry.strategy.value} x{retry.max_attempts}{'' if retry.enabled else ' (disabled)'}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def task_received(task: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW RUN[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{task}[/white]",
            title=_label("TASK", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


def run_event(event: RunEvent) -> None:
    if event.kind == "status" and event.status is not None:
        color = STATUS_COLORS.get(event.status, "white")
        console.print()
        console.print(_label(event.status.value.upper(), color))
    elif event.kind == "step_started":
        tool = event.payload.get("tool") or "completion"
        console.print(
            f"  [bold cyan]STEP {event.step_id}[/bold cyan]  [bold white]{tool}[/bold white]"
            f"  [dim]{_mono(event.payload.get('description', ''), 80)}[/dim]"
        )
    elif event.kind == "step_finished":
        ok = event.payload.get("success")
        mark = "[bold green]✓[/bold green]" if ok else "[bold red]✗[/bold red]"
        console.print(
            f"  {mark} step {event.step_id}"
            f"  [dim]{event.payload.get('attempts', 0)} attempt(s),"
            f" {event.payload.get('latency_ms', 0.0):.0f} ms[/dim]"
        )
    elif event.kind == "trace":
        node_type = event.payload.get("type", "")
        icon, color = NODE_STYLES.get(node_type, ("•", "white"))
        console.print(f"    [{color}]{icon} {node_type}[/{color}] [dim]{event.payload.get('node_id')}[/dim]")


# ---------------------------------------------------------------------------
# Plan, trace and metrics
# ---------------------------------------------------------------------------


def plan_table(plan: Plan) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("ID", justify="center", width=4)
    table.add_column("Tool", style="bold white", width=12)
    table.add_column("Input", style="dim white", width=32)
    table.add_column("Depends", justify="center", width=8)
    table.add_column("Description", style="white")

    for step in plan.steps:
        table.add_row(
            step.id,
            step.tool or "completion",
            _mono(step.input, 30),
            ",".join(step.dependencies) or "-",
            step.description + (" [dim](optional)[/dim]" if step.optional else ""),
        )

    console.print(
        Panel(
            table,
            title=_label(f"PLAN v{plan.version}", "cyan"),
            subtitle=f"[dim]Task: {_mono(plan.task, 80)}[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


def trace_tree(graph: TraceGraph) -> None:
    """Render the trace as a tree. Nodes with several parents hang under the first."""
    listing = trace_listing(graph)
    entries = {entry["id"]: entry for entry in listing["nodes"]}
    if not entries:
        console.print("[dim]Empty trace.[/dim]")
        return

    def describe(entry: dict) -> str:
        icon, color = NODE_STYLES.get(entry["type"], ("•", "white"))
        latency = f" [dim]{entry['latency_ms']:.0f} ms[/dim]" if entry["latency_ms"] else ""
        step = f"[dim]step {entry['step']}[/dim] " if entry["step"] else ""
        return f"{icon} [{color}]{entry['summary']}[/{color}] {step}[dim]({entry['id']})[/dim]{latency}"

    root_entry = listing["nodes"][0]
    tree = Tree(describe(root_entry))
    branches = {root_entry["id"]: tree}
    for entry in listing["nodes"][1:]:
        parent = branches.get(entry["parents"][0]) if entry["parents"] else None
        branches[entry["id"]] = (parent or tree).add(describe(entry))

    console.print()
    console.print(Panel(tree, title=_label(f"TRACE {graph.run_id[:8]}", "blue"), border_style="blue", padding=(0, 1)))


def metrics_table(metrics: RunMetrics) -> None:
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="white")

    table.add_row("Steps", f"{metrics.successful_steps}/{metrics.total_steps} succeeded")
    table.add_row("Retries", str(metrics.retry_count))
    table.add_row("Schema violations", str(metrics.schema_violations))
    table.add_row("Avg latency", f"{metrics.average_latency_ms:.0f} ms")
    table.add_row("Tool usage", ", ".join(f"{k}×{v}" for k, v in sorted(metrics.tool_usage.items())) or "-")
    score_color = "green" if metrics.reliability_score >= 80 else "yellow" if metrics.reliability_score >= 50 else "red"
    table.add_row("Reliability", f"[bold {score_color}]{metrics.reliability_score:.2f}[/bold {score_color}]")

    console.print(Panel(table, title="[dim]RUN METRICS[/dim]", border_style="dim", padding=(0, 1)))


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: RunResult) -> None:
    console.print()
    if result.status == RunStatus.COMPLETED:
        console.print(
            Panel(
                f"[white]{_mono(result.output, 2000)}[/white]",
                title=_label("RESULT", "green"),
                border_style="green",
                padding=(1, 2),
            )
        )
    else:
        halt(result)
    metrics_table(result.metrics)
    console.print()


def halt(result: RunResult) -> None:
    color = STATUS_COLORS.get(result.status, "red")
    failure = result.failure
    if failure is None:
        body = f"[bold white]Run ended as {result.status.value}.[/bold white]"
    else:
        where = f" at step {failure.step_id}" if failure.step_id else ""
        body = (
            f"[bold white]{failure.message}[/bold white]\n\n"
            f"[dim]stage={failure.stage}{where} kind={failure.kind.value} attempts={failure.attempts}[/dim]"
        )
    console.print(Panel(body, title=_label(result.status.value.upper(), color), border_style=color, padding=(0, 2)))
