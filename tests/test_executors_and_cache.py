from __future__ import annotations

from conftest import record
from lantern.cache import ComputedCache
from lantern.executors import (
    SerialExecutor,
    ThreadPoolRunExecutor,
    default_executor,
)
from lantern.graph import build_graph
from lantern.records import RecordTiming
from lantern.settings import Calibration, profile
from lantern.sim import estimate_metrics, simulate, simulate_profiles


def test_default_executor_selection() -> None:
    assert isinstance(default_executor(1), SerialExecutor)
    assert isinstance(default_executor(3), ThreadPoolRunExecutor)


def test_thread_pool_matches_serial_results(page) -> None:
    records, tasks = page
    graph = build_graph(records, tasks)
    calibrations = [profile("slow4g"), profile("3g"), profile("desktop")]

    serial = SerialExecutor().execute(graph=graph, calibrations=calibrations)
    pooled = ThreadPoolRunExecutor(max_workers=2).execute(
        graph=graph, calibrations=calibrations
    )
    assert [r.schedule() for r in serial] == [r.schedule() for r in pooled]


def test_simulate_profiles_keeps_profile_names(page) -> None:
    records, tasks = page
    graph = build_graph(records, tasks)
    results = simulate_profiles(
        graph, {"fast": profile("desktop"), "slow": profile("3g")}
    )
    assert list(results) == ["fast", "slow"]
    assert results["fast"].end_time_ms < results["slow"].end_time_ms
    assert results["fast"].schedule() == simulate(graph, profile("desktop")).schedule()


def test_computed_cache_counts_hits_and_misses() -> None:
    cache = ComputedCache()
    calls: list[int] = []

    def compute() -> int:
        calls.append(1)
        return 42

    assert cache.get_or_compute("k", compute) == 42
    assert cache.get_or_compute("k", compute) == 42
    assert len(calls) == 1
    assert (cache.hits, cache.misses) == (1, 1)
    assert "k" in cache
    assert len(cache) == 1

    cache.clear()
    assert "k" not in cache


def test_estimate_metrics_reuses_graph_and_simulation(page) -> None:
    records, tasks = page
    cache = ComputedCache()
    cal = profile("slow4g")

    first, metrics = estimate_metrics(
        records=records, trace=tasks, calibration=cal,
        metric_names=["first-contentful-paint", "load"], cache=cache,
    )
    again, _ = estimate_metrics(
        records=records, trace=tasks, calibration=cal,
        metric_names=["load"], cache=cache,
    )
    # Misses: the graph, then the full, optimistic and pessimistic paint runs.
    assert (cache.hits, cache.misses) == (4, 4)
    assert again is first
    assert metrics["load"].timing == first.end_time_ms

    # A different profile reuses the graph but simulates again.
    estimate_metrics(
        records=records, trace=tasks, calibration=profile("desktop"),
        metric_names=["load"], cache=cache,
    )
    assert (cache.hits, cache.misses) == (6, 5)


def test_estimate_metrics_with_observed_server_time() -> None:
    doc = record("doc", "https://a.com/", 0, 900, headers_end_time_ms=800,
                 resource_type="Document",
                 timing=RecordTiming(dns_ms=0, connect_ms=200, ssl_ms=100))
    base = Calibration(rtt_ms=100.0, throughput_kbps=1600.0)

    plain, _ = estimate_metrics(records=[doc], calibration=base, metric_names=[])
    observed, _ = estimate_metrics(
        records=[doc], calibration=base, metric_names=[], observed=True
    )
    # 800ms to first byte = 200 connect + 100 rtt + 500 server time.
    assert observed.end_time_ms - plain.end_time_ms == 500.0
