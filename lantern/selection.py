from __future__ import annotations

# Optimistic and pessimistic subgraphs that bracket a metric's estimate.
#
# The optimistic graph keeps only the work a metric most likely waited on;
# the pessimistic graph keeps everything that could have delayed it.

from types import MappingProxyType
from typing import Callable, Mapping

from lantern.graph import BaseNode, CpuNode, DependencyGraph, NetworkNode
from lantern.records import ResourceType, TaskCategory

FCP_MARKER = "first-contentful-paint"
LCP_MARKER = "largest-contentful-paint"
OPTIMISTIC_CPU_TASK_MS = 20.0

GraphPair = tuple[DependencyGraph, DependencyGraph]
GraphSelection = Callable[[DependencyGraph], GraphPair]


def _copy(node: BaseNode) -> BaseNode:
    if isinstance(node, NetworkNode):
        copy = NetworkNode(node.record, node.final_url)
        copy.is_main_document = node.is_main_document
        return copy
    if isinstance(node, CpuNode):
        return CpuNode(node.task)
    raise TypeError(f"cannot copy {node!r}")


def subgraph(
    graph: DependencyGraph, keep: Callable[[BaseNode], bool]
) -> DependencyGraph:
    """The root, every node matching `keep`, and everything those depend on.

    Discovery order is preserved. Returns `graph` itself when nothing is left
    out, so callers can tell a whole-graph selection apart.
    """

    kept: set[str] = set()
    stack = [graph.root, *(n for n in graph if keep(n))]
    while stack:
        node = stack.pop()
        if node.node_id in kept:
            continue
        kept.add(node.node_id)
        stack.extend(node.dependencies)
    if len(kept) == len(graph):
        return graph

    copies = {n.node_id: _copy(n) for n in graph if n.node_id in kept}
    for n in graph:
        if n.node_id in kept:
            for d in n.dependencies:
                copies[n.node_id].add_dependency(copies[d.node_id])
    root = copies[graph.root.node_id]
    assert isinstance(root, NetworkNode)
    selected = DependencyGraph(root, copies.values())
    selected.seal()
    return selected


def observed_paint_end(graph: DependencyGraph, marker: str) -> float | None:
    """Recorded end of the paint behind `marker`, or None without one."""

    marked = [n for n in graph.cpu_nodes() if n.marker == marker]
    if marker == FCP_MARKER and not marked:
        marked = [n for n in graph.cpu_nodes() if n.category == TaskCategory.PAINT]
    if not marked:
        return None
    ends = [n.task.end_time_ms for n in marked]
    # The first contentful paint is the earliest; the largest is the last.
    return min(ends) if marker == FCP_MARKER else max(ends)


def paint_graphs(marker: str) -> GraphSelection:
    """Nodes that started before the recorded paint.

    The optimistic side keeps render-blocking requests only.
    """

    def select(graph: DependencyGraph) -> GraphPair:
        cutoff = observed_paint_end(graph, marker)
        if cutoff is None:
            return graph, graph

        def started(node: BaseNode, blocking_only: bool) -> bool:
            if node.observed_start_ms > cutoff:
                return False
            if blocking_only and isinstance(node, NetworkNode):
                return node.has_render_blocking_priority()
            return True

        optimistic = subgraph(graph, lambda n: started(n, True))
        pessimistic = subgraph(graph, lambda n: started(n, False))
        return optimistic, pessimistic

    return select


def _holds_back_interactive(node: BaseNode) -> bool:
    if isinstance(node, CpuNode):
        return node.duration_ms > OPTIMISTIC_CPU_TASK_MS or node.marker is not None
    assert isinstance(node, NetworkNode)
    if node.resource_type == ResourceType.IMAGE:
        return False
    is_script = node.resource_type == ResourceType.SCRIPT
    return is_script or node.record.priority in ("High", "VeryHigh")


def interactive_graphs(graph: DependencyGraph) -> GraphPair:
    """Long tasks plus scripts and high priority requests, against everything."""

    return subgraph(graph, _holds_back_interactive), graph


DEFAULT_SELECTIONS: Mapping[str, GraphSelection] = MappingProxyType(
    {
        "first-contentful-paint": paint_graphs(FCP_MARKER),
        "largest-contentful-paint": paint_graphs(LCP_MARKER),
        "interactive": interactive_graphs,
    }
)


def select_graphs(
    metric_name: str,
    graph: DependencyGraph,
    selections: Mapping[str, GraphSelection] = DEFAULT_SELECTIONS,
) -> GraphPair:
    """(optimistic, pessimistic) graphs; metrics without a selection use `graph`."""

    select = selections.get(metric_name)
    if select is None:
        return graph, graph
    return select(graph)
