# trace.py
# Append-only causal trace of a run.
#
# Every planning, tool call, validation, repair, retry and error event becomes
# a TraceNode; causality becomes TraceEdges. The recorder enforces the DAG
# shape on append, so a sealed graph never needs repair:
#   - node ids are unique within a run
#   - only the first node (the plan node) may lack an incoming edge
#   - an edge's source must have been recorded before its target (no cycles)
#   - nothing is ever updated or removed; a sealed run rejects appends

import logging
import threading
from datetime import datetime
from typing import Annotated, Any, Callable, Iterable, Literal, Protocol, Union

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field

from agent_sandbox.errors import ErrorKind, TraceError
from agent_sandbox.models import AgentConfig, RunMetrics, StepResult, ValidationIssue, utcnow

logger = logging.getLogger(__name__)

EdgeType = Literal["success", "error", "retry"]


# ---------------------------------------------------------------------------
# Node payloads: one closed variant per node kind
# ---------------------------------------------------------------------------


class PlanNodeData(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["plan"] = "plan"
    task: str
    plan_id: str | None = None
    version: int = 1
    step_ids: tuple[str, ...] = ()
    digest: str | None = Field(default=None, description="Merkle root of the committed plan.")
    error: str | None = None


class ToolCallNodeData(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    step_id: str
    tool: str
    input: dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    success: bool
    output: Any = None
    error: str | None = None


class ValidationNodeData(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["validation"] = "validation"
    target: str = Field(..., description="tool_input | output")
    step_id: str | None = None
    valid: bool
    score: float
    errors: tuple[ValidationIssue, ...] = ()


class RepairNodeData(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["repair"] = "repair"
    step_id: str | None = None
    attempt: int
    success: bool
    candidate: Any = None
    remaining_errors: tuple[ValidationIssue, ...] = ()
    error: str | None = None


class ErrorNodeData(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    kind: ErrorKind
    message: str
    stage: str = "execute"
    step_id: str | None = None
    attempt: int = 0
    terminal: bool = False


class RetryNodeData(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["retry"] = "retry"
    step_id: str | None = None
    failed_attempt: int
    next_attempt: int
    delay: float = Field(..., description="Backoff in seconds before the next attempt.")
    reason: ErrorKind


NodeData = Annotated[
    Union[PlanNodeData, ToolCallNodeData, ValidationNodeData, RepairNodeData, ErrorNodeData, RetryNodeData],
    Field(discriminator="type"),
]


class TraceNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    step: int = Field(default=0, description="1-based plan step index; 0 for run-level events.")
    timestamp: datetime = Field(default_factory=utcnow)
    data: NodeData
    parent_id: str | None = None
    latency_ms: float = 0.0

    @property
    def type(self) -> str:
        return self.data.type


class TraceEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    label: str | None = None
    type: EdgeType | None = None


class TraceGraph(BaseModel):
    """Nodes and edges of one run. Mutated only by TraceRecorder."""

    run_id: str
    config: dict[str, Any] = Field(default_factory=dict)
    nodes: list[TraceNode] = Field(default_factory=list)
    edges: list[TraceEdge] = Field(default_factory=list)
    sealed: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None

    def node(self, node_id: str) -> TraceNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def of_type(self, node_type: str) -> list[TraceNode]:
        return [node for node in self.nodes if node.type == node_type]

    def incoming(self, node_id: str) -> list[TraceEdge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing(self, node_id: str) -> list[TraceEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    @property
    def root(self) -> TraceNode | None:
        return self.nodes[0] if self.nodes else None

    def to_networkx(self) -> nx.DiGraph:
        graph = nx.DiGraph(run_id=self.run_id)
        for node in self.nodes:
            graph.add_node(node.id, type=node.type, step=node.step, latency_ms=node.latency_ms)
        for edge in self.edges:
            graph.add_edge(edge.source, edge.target, label=edge.label, type=edge.type)
        return graph

    def is_dag(self) -> bool:
        return nx.is_directed_acyclic_graph(self.to_networkx())

    def orphans(self) -> list[str]:
        """Non-root node ids with no incoming edge. Always empty for recorder-built graphs."""
        targets = {edge.target for edge in self.edges}
        return [node.id for node in self.nodes[1:] if node.id not in targets]


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class TraceStorage(Protocol):
    """Durable home for sealed traces. The core never reads back mid-run."""

    def save(self, graph: TraceGraph, metrics: RunMetrics) -> None: ...

    def load(self, run_id: str) -> TraceGraph | None: ...


class InMemoryTraceStorage:
    def __init__(self) -> None:
        self._graphs: dict[str, TraceGraph] = {}
        self._metrics: dict[str, RunMetrics] = {}

    def save(self, graph: TraceGraph, metrics: RunMetrics) -> None:
        self._graphs[graph.run_id] = graph
        self._metrics[graph.run_id] = metrics

    def load(self, run_id: str) -> TraceGraph | None:
        return self._graphs.get(run_id)

    def metrics(self, run_id: str) -> RunMetrics | None:
        return self._metrics.get(run_id)


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class _RunTrace:
    __slots__ = ("graph", "order", "edge_keys")

    def __init__(self, graph: TraceGraph) -> None:
        self.graph = graph
        self.order: dict[str, int] = {}
        self.edge_keys: set[tuple[str, str]] = set()


NodeListener = Callable[[str, TraceNode], None]


class TraceRecorder:
    """
    Owns the per-run trace graphs while runs execute.

    All appends go through one threading.Lock that is never held across an
    await, so the orchestrator, concurrently running steps and worker-thread
    tools can all record into the same run.
    """

    def __init__(self, storage: TraceStorage | None = None) -> None:
        self._storage = storage if storage is not None else InMemoryTraceStorage()
        self._runs: dict[str, _RunTrace] = {}
        self._lock = threading.Lock()
        self._listeners: list[NodeListener] = []

    @property
    def storage(self) -> TraceStorage:
        return self._storage

    def subscribe(self, listener: NodeListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: NodeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_run(self, run_id: str, config: AgentConfig | dict[str, Any] | None = None) -> None:
        snapshot = config.model_dump(mode="json") if isinstance(config, AgentConfig) else dict(config or {})
        with self._lock:
            if run_id in self._runs:
                raise TraceError(f"Trace for run '{run_id}' already started.")
            self._runs[run_id] = _RunTrace(TraceGraph(run_id=run_id, config=snapshot))
        logger.debug("trace started for run %s", run_id)

    def end_run(self, run_id: str, step_results: Iterable[StepResult] = ()) -> RunMetrics:
        """Seal the run's graph, aggregate metrics and hand both to storage."""
        from agent_sandbox.metrics import compute_metrics

        with self._lock:
            state = self._live(run_id)
            state.graph.sealed = True
            state.graph.ended_at = utcnow()
            graph = state.graph

        metrics = compute_metrics(list(step_results), graph)
        self._storage.save(graph, metrics)
        with self._lock:
            self._runs.pop(run_id, None)
        logger.debug("trace sealed for run %s (%d nodes, %d edges)", run_id, len(graph.nodes), len(graph.edges))
        return metrics

    def get_trace(self, run_id: str) -> TraceGraph:
        with self._lock:
            state = self._runs.get(run_id)
            if state is not None:
                return state.graph.model_copy(deep=True)
        graph = self._storage.load(run_id)
        if graph is None:
            raise TraceError(f"No trace recorded for run '{run_id}'.")
        return graph

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    def record_node(self, run_id: str, node: TraceNode) -> TraceNode:
        with self._lock:
            state = self._live(run_id)
            self._append_node(state, node)
            if node.parent_id is not None:
                self._append_edge(state, TraceEdge(source=node.parent_id, target=node.id))
        self._notify(run_id, node)
        return node

    def record_edge(
        self,
        run_id: str,
        source: str,
        target: str,
        label: str | None = None,
        type: EdgeType | None = None,
    ) -> TraceEdge:
        edge = TraceEdge(source=source, target=target, label=label, type=type)
        with self._lock:
            self._append_edge(self._live(run_id), edge)
        return edge

    def emit(
        self,
        run_id: str,
        data: Any,
        *,
        step: int = 0,
        parents: Iterable[str] = (),
        edge_type: EdgeType | None = None,
        label: str | None = None,
        latency_ms: float = 0.0,
    ) -> TraceNode:
        """Build a node for `data`, append it and link it from every parent atomically."""
        parent_ids = list(dict.fromkeys(parents))
        with self._lock:
            state = self._live(run_id)
            node = TraceNode(
                id=f"{data.type}-{len(state.order) + 1}",
                step=step,
                data=data,
                parent_id=parent_ids[0] if parent_ids else None,
                latency_ms=latency_ms,
            )
            self._append_node(state, node)
            for parent_id in parent_ids:
                self._append_edge(
                    state, TraceEdge(source=parent_id, target=node.id, label=label, type=edge_type)
                )
        self._notify(run_id, node)
        return node

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _live(self, run_id: str) -> _RunTrace:
        state = self._runs.get(run_id)
        if state is None:
            if self._storage.load(run_id) is not None:
                raise TraceError(f"Trace for run '{run_id}' is sealed.")
            raise TraceError(f"No trace started for run '{run_id}'.")
        if state.graph.sealed:
            raise TraceError(f"Trace for run '{run_id}' is sealed.")
        return state

    def _append_node(self, state: _RunTrace, node: TraceNode) -> None:
        if node.id in state.order:
            raise TraceError(f"Duplicate trace node id '{node.id}'.")
        if not state.order:
            if node.type != "plan":
                raise TraceError("The first node of a run must be its plan node.")
        elif node.parent_id is None:
            raise TraceError(f"Node '{node.id}' needs a parent: only the root plan node may be unlinked.")
        elif node.parent_id not in state.order:
            raise TraceError(f"Parent '{node.parent_id}' of node '{node.id}' is not recorded.")
        state.order[node.id] = len(state.order)
        state.graph.nodes.append(node)

    def _append_edge(self, state: _RunTrace, edge: TraceEdge) -> None:
        if edge.source not in state.order or edge.target not in state.order:
            raise TraceError(f"Edge {edge.source} -> {edge.target} references an unknown node.")
        if state.order[edge.source] >= state.order[edge.target]:
            raise TraceError(f"Edge {edge.source} -> {edge.target} does not follow causal order.")
        key = (edge.source, edge.target)
        if key in state.edge_keys:
            raise TraceError(f"Edge {edge.source} -> {edge.target} already recorded.")
        state.edge_keys.add(key)
        state.graph.edges.append(edge)

    def _notify(self, run_id: str, node: TraceNode) -> None:
        for listener in list(self._listeners):
            listener(run_id, node)
