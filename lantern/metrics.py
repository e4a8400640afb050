from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Protocol

import numpy as np

from lantern.errors import MetricNotComputableError
from lantern.graph import CpuNode, DependencyGraph
from lantern.records import ResourceType, TaskCategory
from lantern.selection import (
    DEFAULT_SELECTIONS,
    FCP_MARKER,
    LCP_MARKER,
    GraphSelection,
    select_graphs,
)
from lantern.settings import Calibration
from lantern.types import SimulationResult

LONG_TASK_THRESHOLD_MS = 50.0

# Requests that can hold back interactivity; images and media never do.
_INTERACTIVE_RESOURCE_TYPES = frozenset(
    {
        ResourceType.DOCUMENT,
        ResourceType.SCRIPT,
        ResourceType.XHR,
        ResourceType.FETCH,
        ResourceType.STYLESHEET,
    }
)


@dataclass(frozen=True)
class MetricResult:
    timing: float
    timestamp: float
    # Set on blended estimates only.
    optimistic: float | None = None
    pessimistic: float | None = None


class MetricExtractor(Protocol):
    name: str

    def compute(self, result: SimulationResult, graph: DependencyGraph) -> MetricResult:
        raise NotImplementedError


def _at(
    graph: DependencyGraph, timing: float, sim_time: float | None = None
) -> MetricResult:
    when = timing if sim_time is None else sim_time
    return MetricResult(
        timing=float(timing), timestamp=graph.navigation_start_ms + when
    )


def _marked(graph: DependencyGraph, marker: str) -> list[CpuNode]:
    return [n for n in graph.cpu_nodes() if n.marker == marker]


def _paint_end(name: str, result: SimulationResult, graph: DependencyGraph) -> float:
    marked = _marked(graph, FCP_MARKER)
    if not marked:
        marked = [n for n in graph.cpu_nodes() if n.category == TaskCategory.PAINT]
    if not marked:
        raise MetricNotComputableError(name, "no paint in the simulated timeline")
    return min(result.end_time(n.node_id) for n in marked)


def _long_tasks(
    result: SimulationResult, graph: DependencyGraph
) -> list[tuple[float, float]]:
    spans = [
        (result.start_time(n.node_id), result.end_time(n.node_id))
        for n in graph.cpu_nodes()
    ]
    return [(s, e) for s, e in spans if e - s > LONG_TASK_THRESHOLD_MS]


@dataclass(frozen=True)
class TimeToFirstByte:
    name: str = "time-to-first-byte"

    def compute(self, result: SimulationResult, graph: DependencyGraph) -> MetricResult:
        t = result[graph.root.node_id]
        ct = t.connection_timing
        if ct is None:
            return _at(graph, t.start_time_ms)
        return _at(graph, t.start_time_ms + ct.setup_ms + ct.ttfb_ms)


@dataclass(frozen=True)
class FirstContentfulPaint:
    name: str = "first-contentful-paint"

    def compute(self, result: SimulationResult, graph: DependencyGraph) -> MetricResult:
        return _at(graph, _paint_end(self.name, result, graph))


@dataclass(frozen=True)
class LargestContentfulPaint:
    name: str = "largest-contentful-paint"

    def compute(self, result: SimulationResult, graph: DependencyGraph) -> MetricResult:
        marked = _marked(graph, LCP_MARKER)
        if not marked:
            raise MetricNotComputableError(
                self.name, "no largest contentful paint marker"
            )
        # The last candidate wins, and LCP is never before FCP.
        lcp = max(result.end_time(n.node_id) for n in marked)
        return _at(graph, max(lcp, _paint_end(self.name, result, graph)))


@dataclass(frozen=True)
class Interactive:
    name: str = "interactive"

    def compute(self, result: SimulationResult, graph: DependencyGraph) -> MetricResult:
        candidates = [
            result.end_time(n.node_id)
            for n in graph.network_nodes()
            if n.resource_type in _INTERACTIVE_RESOURCE_TYPES
        ]
        candidates.extend(e for _, e in _long_tasks(result, graph))
        try:
            candidates.append(_paint_end(self.name, result, graph))
        except MetricNotComputableError:
            pass
        if not candidates:
            raise MetricNotComputableError(self.name, "no interactivity-relevant nodes")
        return _at(graph, max(candidates))


def _blocking_window(
    result: SimulationResult, graph: DependencyGraph, name: str
) -> tuple[float, float]:
    fcp = _paint_end(name, result, graph)
    tti = Interactive().compute(result, graph).timing
    return fcp, tti


@dataclass(frozen=True)
class TotalBlockingTime:
    name: str = "total-blocking-time"

    def compute(self, result: SimulationResult, graph: DependencyGraph) -> MetricResult:
        fcp, tti = _blocking_window(result, graph, self.name)
        total = 0.0
        for start, end in _long_tasks(result, graph):
            # Only the part of a task beyond the first 50ms blocks input.
            blocking_start = max(start + LONG_TASK_THRESHOLD_MS, fcp)
            blocking_end = min(end, tti)
            total += max(0.0, blocking_end - blocking_start)
        return _at(graph, total, sim_time=tti)


@dataclass(frozen=True)
class MaxPotentialFid:
    name: str = "max-potential-fid"

    def compute(self, result: SimulationResult, graph: DependencyGraph) -> MetricResult:
        fcp = _paint_end(self.name, result, graph)
        spans = [
            (result.start_time(n.node_id), result.end_time(n.node_id))
            for n in graph.cpu_nodes()
        ]
        after = [(e - s, e) for s, e in spans if e > fcp]
        if not after:
            return _at(graph, 0.0, sim_time=fcp)
        duration, end = max(after)
        return _at(graph, duration, sim_time=end)


@dataclass(frozen=True)
class Load:
    name: str = "load"

    def compute(self, result: SimulationResult, graph: DependencyGraph) -> MetricResult:
        return _at(graph, result.end_time_ms)


DEFAULT_EXTRACTORS: Mapping[str, MetricExtractor] = MappingProxyType(
    {
        e.name: e
        for e in (
            TimeToFirstByte(),
            FirstContentfulPaint(),
            LargestContentfulPaint(),
            Interactive(),
            TotalBlockingTime(),
            MaxPotentialFid(),
            Load(),
        )
    }
)


def extract(
    metric_name: str,
    result: SimulationResult,
    graph: DependencyGraph,
    *,
    extractors: Mapping[str, MetricExtractor] = DEFAULT_EXTRACTORS,
) -> MetricResult:
    try:
        extractor = extractors[metric_name]
    except KeyError:
        raise KeyError(
            f"Unknown metric {metric_name!r} (known: {', '.join(sorted(extractors))})"
        ) from None
    return extractor.compute(result, graph)


def extract_many(
    metric_names: Iterable[str],
    result: SimulationResult,
    graph: DependencyGraph,
    *,
    skip_not_computable: bool = True,
    extractors: Mapping[str, MetricExtractor] = DEFAULT_EXTRACTORS,
) -> dict[str, MetricResult | None]:
    out: dict[str, MetricResult | None] = {}
    for name in metric_names:
        try:
            out[name] = extract(name, result, graph, extractors=extractors)
        except MetricNotComputableError:
            if not skip_not_computable:
                raise
            out[name] = None
    return out


Run = Callable[[DependencyGraph], SimulationResult]


def estimate(
    metric_name: str,
    graph: DependencyGraph,
    run: Run,
    calibration: Calibration,
    *,
    extractors: Mapping[str, MetricExtractor] = DEFAULT_EXTRACTORS,
    selections: Mapping[str, GraphSelection] = DEFAULT_SELECTIONS,
) -> MetricResult:
    """Blend a metric's optimistic and pessimistic estimates.

    `run` simulates one graph under `calibration`. Metrics without a graph
    selection are simulated once and that result feeds both sides.
    """

    optimistic_graph, pessimistic_graph = select_graphs(
        metric_name, graph, selections
    )
    optimistic = extract(
        metric_name, run(optimistic_graph), optimistic_graph, extractors=extractors
    )
    if pessimistic_graph is optimistic_graph:
        pessimistic = optimistic
    else:
        pessimistic = extract(
            metric_name,
            run(pessimistic_graph),
            pessimistic_graph,
            extractors=extractors,
        )

    c = calibration.coefficients_for(metric_name)
    nav = graph.navigation_start_ms
    sim_time = c.blend(optimistic.timestamp - nav, pessimistic.timestamp - nav)
    return MetricResult(
        timing=c.blend(optimistic.timing, pessimistic.timing),
        timestamp=nav + sim_time,
        optimistic=optimistic.timing,
        pessimistic=pessimistic.timing,
    )


def estimate_many(
    metric_names: Iterable[str],
    graph: DependencyGraph,
    run: Run,
    calibration: Calibration,
    *,
    skip_not_computable: bool = True,
    extractors: Mapping[str, MetricExtractor] = DEFAULT_EXTRACTORS,
) -> dict[str, MetricResult | None]:
    out: dict[str, MetricResult | None] = {}
    for name in metric_names:
        try:
            out[name] = estimate(
                name, graph, run, calibration, extractors=extractors
            )
        except MetricNotComputableError:
            if not skip_not_computable:
                raise
            out[name] = None
    return out


def _percentiles(values: list[float], ps: list[int]) -> dict[str, float]:
    if not values:
        return {f"p{p}": float("nan") for p in ps}
    arr = np.asarray(values, dtype=float)
    return {f"p{p}": float(np.percentile(arr, p)) for p in ps}


def aggregate_profiles(
    per_profile: Mapping[str, Mapping[str, MetricResult | None]],
) -> dict[str, Any]:
    """Summary of metric timings across throttling profiles."""

    names = sorted({name for metrics in per_profile.values() for name in metrics})
    summary: dict[str, Any] = {"profiles": len(per_profile), "metrics": {}}
    for name in names:
        values = [
            m[name].timing
            for m in per_profile.values()
            if m.get(name) is not None
        ]
        summary["metrics"][name] = {
            "computed": len(values),
            **_percentiles(values, [0, 50, 90, 100]),
            "by_profile": {
                profile: (m[name].timing if m.get(name) is not None else None)
                for profile, m in sorted(per_profile.items())
            },
        }
    return summary
