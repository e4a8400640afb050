from __future__ import annotations

# Event-driven, resource-constrained scheduler over a dependency graph.

import bisect
import heapq
import logging
from enum import Enum
from types import MappingProxyType
from typing import Callable

from lantern.connections import (
    Connection,
    ConnectionPool,
    ConnectionTiming,
    cached_request_ms,
)
from lantern.errors import UnreachableNodeError
from lantern.graph import BaseNode, CpuNode, DependencyGraph, NetworkNode
from lantern.settings import Calibration
from lantern.types import NodeTiming, SimulationResult, TimelineEvent
from lantern.validate import validate_calibration

logger = logging.getLogger(__name__)

CPU_RESOURCE = "__cpu__"

# (event, node_id, time_ms); event is "queued", "start" or "end".
Observer = Callable[[str, str, float], None]


class NodeState(Enum):
    PENDING = "pending"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class Simulator:
    def __init__(
        self, calibration: Calibration, *, observer: Observer | None = None
    ) -> None:
        validate_calibration(calibration)
        self.calibration = calibration
        self.observer = observer

    def simulate(self, graph: DependencyGraph) -> SimulationResult:
        return _Run(graph, self.calibration, self.observer).execute()


class _Run:
    """Mutable state of one simulation; discarded once the result is built."""

    def __init__(
        self,
        graph: DependencyGraph,
        calibration: Calibration,
        observer: Observer | None,
    ) -> None:
        self.graph = graph
        self.calibration = calibration
        self.observer = observer
        self.pool = ConnectionPool(calibration)

        self.clock = 0.0
        self.state = {n.node_id: NodeState.PENDING for n in graph}
        self.unmet = {n.node_id: len(n.dependencies) for n in graph}

        # Sorted by discovery index, the stable tie-break for waiting nodes.
        self.queued: list[tuple[int, str]] = []
        self.queued_at: dict[str, float] = {}

        # (end_time, discovery_index, node_id)
        self.completion_heap: list[tuple[float, int, str]] = []
        self.cpu_busy = False
        self.held: dict[str, Connection] = {}
        self.last_release: dict[str, str] = {}

        self.started: dict[str, tuple[float, float]] = {}
        self.extras: dict[str, dict] = {}
        self.timings: dict[str, NodeTiming] = {}
        self.timeline: list[TimelineEvent] = []

    def _emit(self, event: str, node_id: str) -> None:
        if self.observer is not None:
            self.observer(event, node_id, self.clock)

    def _enqueue(self, node: BaseNode) -> None:
        self.state[node.node_id] = NodeState.QUEUED
        self.queued_at[node.node_id] = self.clock
        bisect.insort(self.queued, (node.discovery_index, node.node_id))
        self._emit("queued", node.node_id)

    def _resource_key(self, node: BaseNode) -> str:
        if isinstance(node, CpuNode):
            return CPU_RESOURCE
        assert isinstance(node, NetworkNode)
        return node.origin

    def _is_h2(self, node: NetworkNode) -> bool:
        return node.record.is_h2 or node.origin in self.calibration.h2_origins

    def _cpu_duration(self, node: CpuNode) -> float:
        cal = self.calibration
        if node.is_layout:
            multiplier = cal.effective_layout_multiplier
        else:
            multiplier = cal.cpu_slowdown_multiplier
        return min(node.duration_ms * multiplier, cal.maximum_cpu_task_ms)

    def _try_start(self, node: BaseNode) -> bool:
        extras: dict = {}
        if isinstance(node, CpuNode):
            if self.cpu_busy:
                return False
            self.cpu_busy = True
            duration = self._cpu_duration(node)
        else:
            assert isinstance(node, NetworkNode)
            record = node.record
            if node.is_connectionless:
                timing = ConnectionTiming(download_ms=cached_request_ms(record))
            else:
                conn = self.pool.acquire(
                    node.origin, ssl=record.is_secure, h2=self._is_h2(node)
                )
                if conn is None:
                    return False
                self.held[node.node_id] = conn
                timing = self.pool.timing_for(conn, record)
                extras["connection_id"] = conn.connection_id
            extras["connection_timing"] = timing
            duration = timing.total_ms

        start = self.clock
        end = start + duration
        queued_at = self.queued_at[node.node_id]
        if start > queued_at:
            resource = self._resource_key(node)
            extras["capacity_parent_id"] = self.last_release.get(resource)

        self.state[node.node_id] = NodeState.IN_PROGRESS
        self.started[node.node_id] = (start, end)
        self.extras[node.node_id] = extras
        heapq.heappush(self.completion_heap, (end, node.discovery_index, node.node_id))
        self.timeline.append(TimelineEvent(start, "start", node.node_id))
        self._emit("start", node.node_id)
        return True

    def _start_eligible(self) -> None:
        waiting: list[tuple[int, str]] = []
        for entry in self.queued:
            node = self.graph.get(entry[1])
            if not self._try_start(node):
                waiting.append(entry)
        self.queued = waiting

    def _complete(self, node: BaseNode) -> None:
        node_id = node.node_id
        start, end = self.started[node_id]
        extras = self.extras.pop(node_id)

        if isinstance(node, CpuNode):
            self.cpu_busy = False
        elif node_id in self.held:
            self.pool.release(self.held.pop(node_id), node_id)
        self.last_release[self._resource_key(node)] = node_id

        self.state[node_id] = NodeState.COMPLETE
        self.timings[node_id] = NodeTiming(
            node_id=node_id,
            node_type="cpu" if isinstance(node, CpuNode) else "network",
            queued_time_ms=self.queued_at[node_id],
            start_time_ms=start,
            end_time_ms=end,
            duration_ms=end - start,
            connection_id=extras.get("connection_id"),
            connection_timing=extras.get("connection_timing"),
            capacity_parent_id=extras.get("capacity_parent_id"),
        )
        self.timeline.append(TimelineEvent(end, "end", node_id))
        self._emit("end", node_id)

        for dependent in node.dependents:
            self.unmet[dependent.node_id] -= 1
            if self.unmet[dependent.node_id] == 0:
                self._enqueue(dependent)

    def execute(self) -> SimulationResult:
        total = len(self.graph)
        for node in self.graph:
            if self.unmet[node.node_id] == 0:
                self._enqueue(node)

        while len(self.timings) < total:
            self._start_eligible()

            if not self.completion_heap:
                stuck = tuple(
                    node_id
                    for node_id, state in self.state.items()
                    if state is not NodeState.COMPLETE
                )
                raise UnreachableNodeError(stuck, self.clock)

            # Jump straight to the next completion.
            next_time = self.completion_heap[0][0]
            assert next_time >= self.clock
            self.clock = next_time

            while self.completion_heap and self.completion_heap[0][0] <= self.clock:
                _, _, node_id = heapq.heappop(self.completion_heap)
                self._complete(self.graph.get(node_id))

        end_time = max((t.end_time_ms for t in self.timings.values()), default=0.0)
        logger.info(
            "simulated %d node(s); end at %.1fms; %d connection(s) opened",
            total,
            end_time,
            self.pool.opened,
        )
        return SimulationResult(
            timings=MappingProxyType(dict(self.timings)),
            timeline=tuple(self.timeline),
            end_time_ms=end_time,
            critical_path=self._critical_path(),
        )

    def _critical_path(self) -> tuple[str, ...]:
        if not self.timings:
            return ()
        last = max(
            self.timings.values(),
            key=lambda t: (t.end_time_ms, self.graph.get(t.node_id).discovery_index),
        )
        path: list[str] = []
        cur: NodeTiming | None = last
        while cur is not None:
            path.append(cur.node_id)
            node = self.graph.get(cur.node_id)

            dep_pred = max(
                (self.timings[d.node_id] for d in node.dependencies),
                key=lambda t: t.end_time_ms,
                default=None,
            )
            cap_pred = (
                self.timings.get(cur.capacity_parent_id)
                if cur.capacity_parent_id is not None
                else None
            )
            dep_time = dep_pred.end_time_ms if dep_pred is not None else float("-inf")
            cap_time = cap_pred.end_time_ms if cap_pred is not None else float("-inf")

            if cap_pred is not None and cap_time > dep_time:
                cur = cap_pred
            else:
                cur = dep_pred
        path.reverse()
        return tuple(path)
