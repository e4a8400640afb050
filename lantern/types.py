from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from lantern.connections import ConnectionTiming


@dataclass(frozen=True)
class NodeTiming:
    node_id: str
    node_type: str  # "network" or "cpu"
    queued_time_ms: float
    start_time_ms: float
    end_time_ms: float
    duration_ms: float
    connection_id: int | None = None
    connection_timing: ConnectionTiming | None = None
    capacity_parent_id: str | None = None  # resource causality

    @property
    def queue_wait_ms(self) -> float:
        return self.start_time_ms - self.queued_time_ms


@dataclass(frozen=True)
class TimelineEvent:
    time_ms: float
    kind: str  # "start" or "end"
    node_id: str


@dataclass(frozen=True)
class SimulationResult:
    timings: Mapping[str, NodeTiming]
    timeline: tuple[TimelineEvent, ...]
    end_time_ms: float
    critical_path: tuple[str, ...]

    def __getitem__(self, node_id: str) -> NodeTiming:
        return self.timings[node_id]

    def start_time(self, node_id: str) -> float:
        return self.timings[node_id].start_time_ms

    def end_time(self, node_id: str) -> float:
        return self.timings[node_id].end_time_ms

    def schedule(self) -> list[tuple[str, float, float]]:
        """(node_id, start, end) in start order."""

        return [
            (t.node_id, t.start_time_ms, t.end_time_ms)
            for t in sorted(
                self.timings.values(), key=lambda t: (t.start_time_ms, t.end_time_ms)
            )
        ]
