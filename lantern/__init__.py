"""Lantern: predicts page-load timing by simulating a recorded load.

A recorded network log and CPU trace become a dependency graph, which is
replayed on a simulated clock under a throttling profile:

    graph = build_graph(records, trace)
    result = simulate(graph, profile("mobileSlow4G"))
    extract("interactive", result, graph)
"""

from __future__ import annotations

from lantern.errors import (
    GraphCycleError,
    LanternError,
    MalformedRecordError,
    MetricNotComputableError,
    UnreachableNodeError,
)
from lantern.graph import build_graph
from lantern.metrics import MetricResult, estimate, extract, extract_many
from lantern.settings import Calibration, MetricCoefficients, OriginOverride, profile
from lantern.sim import blended_metrics, estimate_metrics, simulate, simulate_profiles
from lantern.types import SimulationResult

__all__ = [
    "Calibration",
    "GraphCycleError",
    "LanternError",
    "MalformedRecordError",
    "MetricCoefficients",
    "MetricNotComputableError",
    "MetricResult",
    "OriginOverride",
    "SimulationResult",
    "UnreachableNodeError",
    "__version__",
    "blended_metrics",
    "build_graph",
    "estimate",
    "estimate_metrics",
    "extract",
    "extract_many",
    "profile",
    "simulate",
    "simulate_profiles",
]

__version__ = "0.1.0"
