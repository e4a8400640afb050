from __future__ import annotations

import pytest

from conftest import record, task
from lantern.errors import UnreachableNodeError
from lantern.graph import DependencyGraph, NetworkNode, build_graph
from lantern.settings import Calibration
from lantern.simulator import Simulator
from lantern.validate import CalibrationError

DOC = "https://a.com/"


def _doc(**kw: object):
    return record("doc", DOC, 0, 100, resource_type="Document", **kw)


def _sub(request_id: str, path: str, start: float = 110, **kw: object):
    kw.setdefault("resource_type", "Image")
    kw.setdefault("initiator_url", DOC)
    return record(request_id, f"https://a.com/{path}", start, start + 50, **kw)


def test_single_cold_https_document(calibration: Calibration) -> None:
    graph = build_graph([_doc()])
    result = Simulator(calibration).simulate(graph)

    t = result["doc"]
    assert (t.start_time_ms, t.end_time_ms) == (0.0, 505.0)
    assert t.queue_wait_ms == 0.0
    assert t.node_type == "network"
    assert t.connection_id == 1
    assert result.end_time_ms == 505.0
    assert result.critical_path == ("doc",)


def test_per_origin_limit_serializes_and_records_capacity_parent(
    calibration: Calibration,
) -> None:
    records = [
        _doc(),
        _sub("x", "x.png", transfer_size=2000),
        _sub("y", "y.png", start=111, transfer_size=2000),
    ]
    cal = calibration.with_overrides(max_connections_per_origin=1)
    result = Simulator(cal).simulate(build_graph(records))

    # x rides the warm connection the document left behind.
    assert (result.start_time("x"), result.end_time("x")) == (505.0, 615.0)
    assert result["x"].connection_timing.setup_ms == 0.0
    assert result["x"].capacity_parent_id is None

    assert (result.start_time("y"), result.end_time("y")) == (615.0, 725.0)
    assert result["y"].queued_time_ms == 505.0
    assert result["y"].queue_wait_ms == 110.0
    assert result["y"].capacity_parent_id == "x"
    assert result.critical_path == ("doc", "x", "y")


def test_second_connection_to_origin_skips_dns(calibration: Calibration) -> None:
    records = [
        _doc(),
        _sub("x", "x.png", transfer_size=2000),
        _sub("y", "y.png", start=111, transfer_size=2000),
    ]
    result = Simulator(calibration).simulate(build_graph(records))

    assert result["x"].connection_id == 1
    assert result["y"].connection_id == 2
    ct = result["y"].connection_timing
    assert (ct.dns_ms, ct.setup_ms) == (0.0, 200.0)
    assert result.end_time("y") == 505.0 + 200.0 + 110.0


def test_cpu_tasks_share_one_main_thread(calibration: Calibration) -> None:
    records = [
        _doc(),
        record("s", "https://a.com/s.js", 110, 200, resource_type="Script",
               initiator_url=DOC),
    ]
    tasks = [
        task("t1", 210, 30, initiator_url="https://a.com/s.js"),
        task("t2", 215, 30, initiator_url="https://a.com/s.js"),
    ]
    result = Simulator(calibration).simulate(build_graph(records, tasks))

    assert result.end_time("s") == 615.0
    assert (result.start_time("t1"), result.end_time("t1")) == (615.0, 645.0)
    assert (result.start_time("t2"), result.end_time("t2")) == (645.0, 675.0)
    assert result["t2"].capacity_parent_id == "t1"
    assert result["t1"].node_type == "cpu"
    assert result.critical_path == ("doc", "s", "t1", "t2")


def test_every_node_starts_after_its_dependencies(page, calibration) -> None:
    records, tasks = page
    graph = build_graph(records, tasks)
    result = Simulator(calibration).simulate(graph)

    assert set(result.timings) == {n.node_id for n in graph}
    for dependent, dependency in graph.edges():
        assert result.start_time(dependent) >= result.end_time(dependency)
    assert result.end_time_ms == max(t.end_time_ms for t in result.timings.values())


def test_in_flight_work_never_exceeds_resource_limits(page) -> None:
    records, tasks = page
    graph = build_graph(records, tasks)
    cal = Calibration(max_connections_per_origin=2, max_connections=3)
    result = Simulator(cal).simulate(graph)

    def overlapping(ids: list[str]) -> int:
        spans = [(result.start_time(i), result.end_time(i)) for i in ids]
        points = sorted({s for s, _ in spans})
        return max(sum(1 for s, e in spans if s <= p < e) for p in points)

    cpu = [n.node_id for n in graph.cpu_nodes()]
    assert overlapping(cpu) == 1
    for origin in {n.origin for n in graph.network_nodes()}:
        ids = [n.node_id for n in graph.network_nodes() if n.origin == origin]
        assert overlapping(ids) <= 2
    assert overlapping([n.node_id for n in graph.network_nodes()]) <= 3


def test_simulation_is_deterministic(page, calibration) -> None:
    records, tasks = page
    graph = build_graph(records, tasks)
    sim = Simulator(calibration)
    first = sim.simulate(graph)
    second = sim.simulate(graph)

    assert dict(first.timings) == dict(second.timings)
    assert first.timeline == second.timeline
    assert first.critical_path == second.critical_path


def test_timeline_orders_ends_before_starts_at_same_instant(calibration) -> None:
    graph = build_graph([_doc(), _sub("x", "x.png")])
    result = Simulator(calibration).simulate(graph)
    kinds = [(e.kind, e.node_id, e.time_ms) for e in result.timeline]
    assert kinds == [
        ("start", "doc", 0.0),
        ("end", "doc", 505.0),
        ("start", "x", 505.0),
        ("end", "x", 610.0),
    ]
    assert result.schedule() == [("doc", 0.0, 505.0), ("x", 505.0, 610.0)]


def test_observer_sees_every_transition(calibration: Calibration) -> None:
    events: list[tuple[str, str, float]] = []
    graph = build_graph([_doc(), _sub("x", "x.png")])
    Simulator(calibration, observer=lambda *e: events.append(e)).simulate(graph)

    assert events == [
        ("queued", "doc", 0.0),
        ("start", "doc", 0.0),
        ("end", "doc", 505.0),
        ("queued", "x", 505.0),
        ("start", "x", 505.0),
        ("end", "x", 610.0),
    ]


def test_h2_origin_runs_requests_concurrently(calibration: Calibration) -> None:
    records = [
        _doc(),
        _sub("x", "x.png", transfer_size=2000),
        _sub("y", "y.png", start=111, transfer_size=2000),
    ]
    cal = calibration.with_overrides(
        max_connections_per_origin=1, h2_origins={"https://a.com"}
    )
    result = Simulator(cal).simulate(build_graph(records))

    # Both streams ride the warm connection with no extra round trip.
    assert result.schedule()[1:] == [("x", 505.0, 515.0), ("y", 505.0, 515.0)]
    assert result["x"].connection_id == result["y"].connection_id == 1


def test_cached_and_data_requests_need_no_connection(calibration: Calibration) -> None:
    records = [
        _doc(),
        _sub("c", "c.png", from_cache=True, transfer_size=0, resource_size=1024 * 1024),
        record("d", "data:image/png;base64,AA", 120, 121, resource_type="Image",
               initiator_url=DOC, transfer_size=0, resource_size=0),
    ]
    result = Simulator(calibration).simulate(build_graph(records))

    assert result["c"].connection_id is None
    assert result["c"].duration_ms == pytest.approx(28.0)
    assert result["d"].duration_ms == 8.0


def test_cpu_duration_is_scaled_and_capped() -> None:
    records = [_doc()]
    tasks = [
        task("huge", 200, 3000, category="EvaluateScript", initiator_url=DOC),
        task("layout", 3300, 100, category="Layout", initiator_url=DOC),
    ]
    cal = Calibration(cpu_slowdown_multiplier=4.0)
    result = Simulator(cal).simulate(build_graph(records, tasks))

    assert result["huge"].duration_ms == 10_000.0
    assert result["layout"].duration_ms == 200.0


def test_unschedulable_nodes_raise() -> None:
    root = NetworkNode(_doc())
    a = NetworkNode(_sub("a", "a.png"))
    b = NetworkNode(_sub("b", "b.png"))
    a.add_dependency(b)
    b.add_dependency(a)
    graph = DependencyGraph(root, [root, a, b])

    with pytest.raises(UnreachableNodeError) as exc:
        Simulator(Calibration(rtt_ms=100.0, throughput_kbps=1600.0)).simulate(graph)
    assert exc.value.node_ids == ("a", "b")
    assert exc.value.node_id == "a"
    assert exc.value.time_ms == 505.0


def test_invalid_calibration_is_rejected_up_front() -> None:
    with pytest.raises(CalibrationError, match="rtt_ms"):
        Simulator(Calibration(rtt_ms=0.0))
