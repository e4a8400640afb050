from __future__ import annotations

# Dependency graph of network requests and CPU tasks for one page load.

import logging
from collections import deque
from typing import Iterable, Iterator

from lantern.errors import GraphCycleError, MalformedRecordError
from lantern.records import (
    NetworkRecord,
    ResourceType,
    TaskCategory,
    TraceTask,
    resolve_redirects,
)
from lantern.validate import validate_inputs

logger = logging.getLogger(__name__)

DEFAULT_SIGNIFICANT_TASK_MS = 10.0


class BaseNode:
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        self.discovery_index = -1
        self._dependencies: list[BaseNode] = []
        self._dependents: list[BaseNode] = []
        self._sealed = False

    @property
    def dependencies(self) -> tuple["BaseNode", ...]:
        return tuple(self._dependencies)

    @property
    def dependents(self) -> tuple["BaseNode", ...]:
        return tuple(self._dependents)

    @property
    def is_network(self) -> bool:
        return False

    @property
    def is_cpu(self) -> bool:
        return False

    @property
    def observed_start_ms(self) -> float:
        raise NotImplementedError

    def add_dependency(self, node: "BaseNode") -> None:
        if self._sealed or node._sealed:
            raise RuntimeError("graph structure is immutable once built")
        if node is self:
            raise GraphCycleError((self.node_id, self.node_id))
        if node in self._dependencies:
            return
        self._dependencies.append(node)
        node._dependents.append(self)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.node_id!r})"


class NetworkNode(BaseNode):
    def __init__(self, record: NetworkRecord, final_url: str | None = None) -> None:
        super().__init__(record.request_id)
        self.record = record
        # Where the redirect chain starting at this request lands.
        self.final_url = final_url or record.url
        self.is_main_document = False

    @property
    def is_network(self) -> bool:
        return True

    @property
    def url(self) -> str:
        return self.record.url

    @property
    def origin(self) -> str:
        return self.record.origin

    @property
    def resource_type(self) -> str:
        return self.record.resource_type

    @property
    def is_redirect(self) -> bool:
        return self.record.is_redirect

    @property
    def is_connectionless(self) -> bool:
        return self.record.is_connectionless

    @property
    def observed_start_ms(self) -> float:
        return self.record.start_time_ms

    def has_render_blocking_priority(self) -> bool:
        priority = self.record.priority
        is_script = self.resource_type == ResourceType.SCRIPT
        is_document = self.resource_type == ResourceType.DOCUMENT
        return priority == "VeryHigh" or (
            priority == "High" and (is_script or is_document)
        )


class CpuNode(BaseNode):
    def __init__(self, task: TraceTask) -> None:
        super().__init__(task.task_id)
        self.task = task

    @property
    def is_cpu(self) -> bool:
        return True

    @property
    def duration_ms(self) -> float:
        return self.task.duration_ms

    @property
    def category(self) -> str:
        return self.task.category

    @property
    def marker(self) -> str | None:
        return self.task.marker

    @property
    def is_layout(self) -> bool:
        return self.category in (TaskCategory.LAYOUT, TaskCategory.RECALCULATE_STYLE)

    @property
    def observed_start_ms(self) -> float:
        return self.task.start_time_ms


class DependencyGraph:
    def __init__(self, root: NetworkNode, nodes: Iterable[BaseNode]) -> None:
        self.root = root
        self._nodes: list[BaseNode] = list(nodes)
        self._by_id = {n.node_id: n for n in self._nodes}
        for i, n in enumerate(self._nodes):
            n.discovery_index = i

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[BaseNode]:
        return iter(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_id

    @property
    def navigation_start_ms(self) -> float:
        return self.root.record.start_time_ms

    def get(self, node_id: str) -> BaseNode:
        return self._by_id[node_id]

    def network_nodes(self) -> list[NetworkNode]:
        return [n for n in self._nodes if isinstance(n, NetworkNode)]

    def cpu_nodes(self) -> list[CpuNode]:
        return [n for n in self._nodes if isinstance(n, CpuNode)]

    def edges(self) -> list[tuple[str, str]]:
        """(dependent, dependency) pairs in discovery order."""

        return [(n.node_id, d.node_id) for n in self._nodes for d in n.dependencies]

    def seal(self) -> None:
        for n in self._nodes:
            n._sealed = True

    def topological_order(self) -> list[BaseNode]:
        indegree = {n.node_id: len(n.dependencies) for n in self._nodes}
        ready = deque(n for n in self._nodes if indegree[n.node_id] == 0)
        order: list[BaseNode] = []
        while ready:
            n = ready.popleft()
            order.append(n)
            for d in n.dependents:
                indegree[d.node_id] -= 1
                if indegree[d.node_id] == 0:
                    ready.append(d)
        if len(order) != len(self._nodes):
            raise GraphCycleError(self._find_cycle({n.node_id for n in order}))
        return order

    def _find_cycle(self, acyclic: set[str]) -> tuple[str, ...]:
        # Every node outside `acyclic` reaches a cycle through its dependencies.
        start = next(n for n in self._nodes if n.node_id not in acyclic)
        path: list[BaseNode] = []
        index: dict[str, int] = {}
        cur = start
        while cur.node_id not in index:
            index[cur.node_id] = len(path)
            path.append(cur)
            cur = next(d for d in cur.dependencies if d.node_id not in acyclic)
        cycle = [n.node_id for n in path[index[cur.node_id]:]]
        return tuple(cycle + [cur.node_id])


def _pick_main_document(records: list[NetworkRecord]) -> NetworkRecord:
    redirect_targets = {
        r.redirect_destination_id for r in records if r.redirect_destination_id
    }
    documents = [
        (r.start_time_ms, i, r)
        for i, r in enumerate(records)
        if r.resource_type == ResourceType.DOCUMENT
        and r.request_id not in redirect_targets
    ]
    if not documents:
        raise MalformedRecordError("no main document request found in network records")
    return min(documents, key=lambda x: (x[0], x[1]))[2]


class _UrlIndex:
    """Network nodes for one URL, sorted by observed start."""

    def __init__(self) -> None:
        self._by_url: dict[str, list[NetworkNode]] = {}

    def add(self, node: NetworkNode) -> None:
        self._by_url.setdefault(node.url, []).append(node)

    def latest_started_before(
        self, url: str, time_ms: float, exclude: BaseNode
    ) -> NetworkNode | None:
        candidates = [n for n in self._by_url.get(url, []) if n is not exclude]
        before = [n for n in candidates if n.record.start_time_ms < time_ms]
        if before:
            return before[-1]
        return candidates[-1] if candidates else None

    def latest_ended_by(self, url: str, time_ms: float) -> NetworkNode | None:
        candidates = sorted(
            self._by_url.get(url, []), key=lambda n: n.record.end_time_ms
        )
        ended = [n for n in candidates if n.record.end_time_ms <= time_ms]
        if ended:
            return ended[-1]
        return candidates[-1] if candidates else None


def _task_url(task: TraceTask, records_by_id: dict[str, NetworkRecord]) -> str | None:
    if task.initiator_url is not None:
        return task.initiator_url
    if task.initiator_node_id in records_by_id:
        return records_by_id[task.initiator_node_id].url
    return None


def build_graph(
    records: Iterable[NetworkRecord],
    trace: Iterable[TraceTask] = (),
    *,
    significant_task_ms: float = DEFAULT_SIGNIFICANT_TASK_MS,
) -> DependencyGraph:
    records = list(records)
    trace = list(trace)
    if not records:
        raise MalformedRecordError("no network records")
    validate_inputs(records, trace)
    final_urls = resolve_redirects(records)

    main = _pick_main_document(records)
    records_by_id = {r.request_id: r for r in records}
    redirect_source = {
        r.redirect_destination_id: r.request_id
        for r in records
        if r.redirect_destination_id is not None
    }

    network: dict[str, NetworkNode] = {}
    for r in records:
        network[r.request_id] = NetworkNode(r, final_urls[r.request_id])
    root = network[main.request_id]
    root.is_main_document = True

    task_urls = {t.task_id: _task_url(t, records_by_id) for t in trace}
    tasks_by_url: dict[str, list[TraceTask]] = {}
    for t in sorted(trace, key=lambda t: t.start_time_ms):
        url = task_urls[t.task_id]
        if url is not None:
            tasks_by_url.setdefault(url, []).append(t)

    def _triggering_task(r: NetworkRecord) -> TraceTask | None:
        if r.initiator_url is None:
            return None
        running = [
            t
            for t in tasks_by_url.get(r.initiator_url, [])
            if t.start_time_ms <= r.start_time_ms <= t.end_time_ms
        ]
        return running[-1] if running else None

    triggers = {r.request_id: _triggering_task(r) for r in records}
    triggering_ids = {t.task_id for t in triggers.values() if t is not None}
    referenced_ids = {t.initiator_node_id for t in trace if t.initiator_node_id}

    cpu: dict[str, CpuNode] = {}
    for t in trace:
        significant = (
            t.duration_ms >= significant_task_ms
            or t.marker is not None
            or t.task_id in triggering_ids
            or t.task_id in referenced_ids
        )
        if significant:
            cpu[t.task_id] = CpuNode(t)

    # Discovery order: the root first, then everything by observed start time.
    ordered: list[tuple[float, int, int, BaseNode]] = []
    for i, r in enumerate(records):
        if r.request_id != root.node_id:
            ordered.append((r.start_time_ms, 0, i, network[r.request_id]))
    for i, t in enumerate(trace):
        if t.task_id in cpu:
            ordered.append((t.start_time_ms, 1, i, cpu[t.task_id]))
    ordered.sort(key=lambda x: (x[0], x[1], x[2]))
    nodes: list[BaseNode] = [root, *(x[3] for x in ordered)]

    url_index = _UrlIndex()
    for n in nodes:
        if isinstance(n, NetworkNode):
            url_index.add(n)

    for node in nodes:
        if node is root:
            continue
        if isinstance(node, NetworkNode):
            r = node.record
            source = redirect_source.get(r.request_id)
            if source is not None:
                node.add_dependency(network[source])
                continue
            trigger = triggers[r.request_id]
            if trigger is not None and trigger.task_id in cpu:
                node.add_dependency(cpu[trigger.task_id])
                continue
            if r.initiator_url is not None:
                initiator = url_index.latest_started_before(
                    r.initiator_url, r.start_time_ms, exclude=node
                )
                if initiator is not None:
                    node.add_dependency(initiator)
                    continue
            node.add_dependency(root)
        elif isinstance(node, CpuNode):
            t = node.task
            linked_id = t.initiator_node_id
            if linked_id is not None:
                linked = network.get(linked_id) or cpu.get(linked_id)
                if linked is not None and linked is not node:
                    node.add_dependency(linked)
                    continue
            url = task_urls[t.task_id]
            if url is not None:
                response = url_index.latest_ended_by(url, t.start_time_ms)
                if response is not None:
                    node.add_dependency(response)
                    continue
            node.add_dependency(_latest_response_before(nodes, t.start_time_ms, root))

    graph = DependencyGraph(root, nodes)
    graph.topological_order()
    orphans = [n.node_id for n in graph if n is not root and not n.dependencies]
    if orphans:
        raise MalformedRecordError(f"nodes unreachable from the root: {orphans}")
    graph.seal()

    logger.debug(
        "built graph: %d network node(s), %d cpu node(s), %d dropped task(s)",
        len(network),
        len(cpu),
        len(trace) - len(cpu),
    )
    return graph


def _latest_response_before(
    nodes: list[BaseNode], time_ms: float, root: NetworkNode
) -> NetworkNode:
    ended = [
        (n.record.end_time_ms, i, n)
        for i, n in enumerate(nodes)
        if isinstance(n, NetworkNode) and n.record.end_time_ms <= time_ms
    ]
    if not ended:
        return root
    return max(ended, key=lambda x: (x[0], x[1]))[2]
