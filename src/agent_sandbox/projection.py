# projection.py
# Read-side views of a sealed TraceGraph: a flat listing for inspection and a
# layered projection a dashboard can draw without its own layout pass.

from typing import Any

import networkx as nx

from agent_sandbox.trace import TraceGraph, TraceNode


def _summary(node: TraceNode) -> str:
    data = node.data
    if data.type == "plan":
        if data.error:
            return f"plan failed: {data.error}"
        if data.plan_id is None:
            return f"task: {data.task}"
        return f"plan v{data.version} ({len(data.step_ids)} steps)"
    if data.type == "tool_call":
        status = "ok" if data.success else "failed"
        return f"{data.tool} #{data.attempt} {status}"
    if data.type == "validation":
        return f"{data.target} {'valid' if data.valid else 'invalid'} ({data.score:g})"
    if data.type == "repair":
        return f"repair #{data.attempt} {'ok' if data.success else 'failed'}"
    if data.type == "retry":
        return f"retry -> #{data.next_attempt} after {data.delay:g}s"
    return f"{data.kind.value}: {data.message}"


def trace_listing(graph: TraceGraph) -> dict[str, Any]:
    """Every node with its parents, children, timestamp and latency, in recording order."""
    parents: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    children: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        parents[edge.target].append(edge.source)
        children[edge.source].append(edge.target)

    return {
        "run_id": graph.run_id,
        "sealed": graph.sealed,
        "started_at": graph.started_at.isoformat(),
        "ended_at": graph.ended_at.isoformat() if graph.ended_at else None,
        "nodes": [
            {
                "id": node.id,
                "type": node.type,
                "step": node.step,
                "summary": _summary(node),
                "parents": parents[node.id],
                "children": children[node.id],
                "timestamp": node.timestamp.isoformat(),
                "latency_ms": node.latency_ms,
                "data": node.data.model_dump(mode="json"),
            }
            for node in graph.nodes
        ],
        "edges": [edge.model_dump(mode="json") for edge in graph.edges],
    }


def layout(graph: TraceGraph, x_gap: float = 220.0, y_gap: float = 120.0) -> dict[str, Any]:
    """
    Layered positions for drawing the trace.

    Layers come from networkx.topological_generations, so every edge points
    to a deeper layer. Within a layer, nodes keep recording order.
    """
    dag = graph.to_networkx()
    order = {node.id: index for index, node in enumerate(graph.nodes)}
    by_id = {node.id: node for node in graph.nodes}

    positioned = []
    for depth, generation in enumerate(nx.topological_generations(dag)):
        for column, node_id in enumerate(sorted(generation, key=order.__getitem__)):
            node = by_id[node_id]
            positioned.append(
                {
                    "id": node_id,
                    "type": node.type,
                    "label": _summary(node),
                    "layer": depth,
                    "x": column * x_gap,
                    "y": depth * y_gap,
                }
            )

    return {
        "run_id": graph.run_id,
        "nodes": positioned,
        "edges": [
            {"source": edge.source, "target": edge.target, "label": edge.label or edge.type or "", "type": edge.type}
            for edge in graph.edges
        ],
    }
