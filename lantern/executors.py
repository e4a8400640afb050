from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol, Sequence

from lantern.graph import DependencyGraph
from lantern.settings import Calibration
from lantern.simulator import Simulator
from lantern.types import SimulationResult


class RunExecutor(Protocol):
    def execute(
        self,
        *,
        graph: DependencyGraph,
        calibrations: Sequence[Calibration],
    ) -> list[SimulationResult]:
        raise NotImplementedError


def _simulate_one(graph: DependencyGraph, calibration: Calibration) -> SimulationResult:
    return Simulator(calibration).simulate(graph)


@dataclass(frozen=True)
class SerialExecutor:
    def execute(
        self,
        *,
        graph: DependencyGraph,
        calibrations: Sequence[Calibration],
    ) -> list[SimulationResult]:
        return [_simulate_one(graph, c) for c in calibrations]


@dataclass(frozen=True)
class ThreadPoolRunExecutor:
    # Runs only read the graph, so they can share it across workers.
    max_workers: int | None = None

    def execute(
        self,
        *,
        graph: DependencyGraph,
        calibrations: Sequence[Calibration],
    ) -> list[SimulationResult]:
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(_simulate_one, graph, c) for c in calibrations]
            return [f.result() for f in futures]


def default_executor(runs: int) -> RunExecutor:
    if runs <= 1:
        return SerialExecutor()
    return ThreadPoolRunExecutor()
