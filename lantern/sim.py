from __future__ import annotations

# Public simulation entrypoints.
#
# Each run is a pure function of (graph, calibration); host-level parallelism
# across profiles goes through the RunExecutor abstraction.

from typing import Iterable, Mapping

from lantern.cache import ComputedCache
from lantern.executors import RunExecutor, default_executor
from lantern.graph import DEFAULT_SIGNIFICANT_TASK_MS, DependencyGraph, build_graph
from lantern.metrics import MetricResult, estimate_many
from lantern.network_analysis import calibrate_from_records
from lantern.records import NetworkRecord, TraceTask
from lantern.settings import Calibration
from lantern.simulator import Observer, Simulator
from lantern.types import SimulationResult


def simulate(
    graph: DependencyGraph,
    calibration: Calibration,
    *,
    observer: Observer | None = None,
) -> SimulationResult:
    return Simulator(calibration, observer=observer).simulate(graph)


def simulate_profiles(
    graph: DependencyGraph,
    calibrations: Mapping[str, Calibration],
    *,
    executor: RunExecutor | None = None,
) -> dict[str, SimulationResult]:
    names = list(calibrations)
    executor = executor or default_executor(len(names))
    results = executor.execute(
        graph=graph, calibrations=[calibrations[n] for n in names]
    )
    return dict(zip(names, results))


def blended_metrics(
    metric_names: Iterable[str],
    graph: DependencyGraph,
    calibration: Calibration,
    *,
    result: SimulationResult | None = None,
) -> dict[str, MetricResult | None]:
    """Metrics blended from optimistic and pessimistic runs of `graph`.

    `result`, when given, stands in for the run of the whole graph.
    """

    def run(g: DependencyGraph) -> SimulationResult:
        if g is graph and result is not None:
            return result
        return simulate(g, calibration)

    return estimate_many(metric_names, graph, run, calibration)


def estimate_metrics(
    *,
    records: Iterable[NetworkRecord],
    trace: Iterable[TraceTask] = (),
    calibration: Calibration,
    metric_names: Iterable[str],
    observed: bool = False,
    cache: ComputedCache | None = None,
    significant_task_ms: float = DEFAULT_SIGNIFICANT_TASK_MS,
) -> tuple[SimulationResult, dict[str, MetricResult | None]]:
    """Build, simulate and extract in one call.

    With `observed`, per-origin server response times and latency measured in
    the log are layered onto `calibration` first. Passing the same `cache`
    across calls reuses graphs and simulations built from identical inputs.
    Metrics are blended from optimistic and pessimistic runs, which share the
    cache too.
    """

    records = tuple(records)
    trace = tuple(trace)
    cache = cache if cache is not None else ComputedCache()

    if observed:
        calibration = calibrate_from_records(records, calibration)

    graph_key = ("graph", records, trace, significant_task_ms)
    graph = cache.get_or_compute(
        graph_key,
        lambda: build_graph(records, trace, significant_task_ms=significant_task_ms),
    )

    def run(g: DependencyGraph) -> SimulationResult:
        node_ids = frozenset(n.node_id for n in g)
        return cache.get_or_compute(
            ("simulation", graph_key, node_ids, calibration),
            lambda: simulate(g, calibration),
        )

    result = run(graph)
    return result, estimate_many(metric_names, graph, run, calibration)
