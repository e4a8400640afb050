from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any

from lantern.errors import LanternError
from lantern.graph import DEFAULT_SIGNIFICANT_TASK_MS, build_graph
from lantern.io import (
    read_calibration,
    read_records,
    read_trace,
    write_summary_json,
    write_timings_csv,
)
from lantern.metrics import DEFAULT_EXTRACTORS, MetricResult, aggregate_profiles
from lantern.network_analysis import calibrate_from_records
from lantern.settings import PROFILE_ALIASES, PROFILES, profile
from lantern.sim import blended_metrics, simulate_profiles
from lantern.validate import validate_calibration

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lantern", description="Lantern page-load simulator"
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    sim = sub.add_parser("simulate", help="Simulate a recorded page load")
    sim.add_argument("--records", required=True, type=Path)
    sim.add_argument("--trace", required=False, type=Path)
    sim.add_argument(
        "--profile",
        action="append",
        choices=sorted([*PROFILES, *PROFILE_ALIASES]),
        help="Throttling profile; repeat to simulate several (default: mobileSlow4G)",
    )
    sim.add_argument(
        "--calibration",
        required=False,
        type=Path,
        help="JSON overrides applied on top of every profile",
    )
    sim.add_argument(
        "--observed",
        action="store_true",
        help="Carry observed per-origin latency and server response times over",
    )
    sim.add_argument(
        "--metric",
        action="append",
        choices=sorted(DEFAULT_EXTRACTORS),
        help="Metric to extract; repeat for several (default: all)",
    )
    sim.add_argument(
        "--significant-task-ms",
        type=float,
        default=DEFAULT_SIGNIFICANT_TASK_MS,
        help="CPU tasks shorter than this are left out of the graph",
    )
    sim.add_argument("--out-summary", required=True, type=Path)
    sim.add_argument("--out-timings", required=False, type=Path)
    sim.add_argument("-v", "--verbose", action="store_true")
    return p


def _metric_json(m: MetricResult | None) -> dict[str, float] | None:
    if m is None:
        return None
    out = {"timing": m.timing, "timestamp": m.timestamp}
    if m.optimistic is not None and m.pessimistic is not None:
        out["optimistic"] = m.optimistic
        out["pessimistic"] = m.pessimistic
    return out


def _simulate(args: argparse.Namespace) -> int:
    records = read_records(args.records)
    trace = read_trace(args.trace) if args.trace else []
    graph = build_graph(records, trace, significant_task_ms=args.significant_task_ms)

    calibrations = {}
    for name in args.profile or ["mobileSlow4G"]:
        calibration = profile(name)
        if args.calibration:
            calibration = read_calibration(args.calibration, base=calibration)
        if args.observed:
            calibration = calibrate_from_records(records, calibration)
        validate_calibration(calibration)
        calibrations[name] = calibration

    results = simulate_profiles(graph, calibrations)
    metric_names = args.metric or list(DEFAULT_EXTRACTORS)

    per_profile = {
        name: blended_metrics(
            metric_names, graph, calibrations[name], result=result
        )
        for name, result in results.items()
    }
    summary: dict[str, Any] = {
        "nodes": len(graph),
        "network_nodes": len(graph.network_nodes()),
        "cpu_nodes": len(graph.cpu_nodes()),
        "profiles": {
            name: {
                "end_time_ms": result.end_time_ms,
                "critical_path": list(result.critical_path),
                "metrics": {k: _metric_json(v) for k, v in per_profile[name].items()},
            }
            for name, result in results.items()
        },
        "aggregate": aggregate_profiles(per_profile),
    }
    write_summary_json(args.out_summary, summary)
    if args.out_timings:
        write_timings_csv(args.out_timings, results, graph)
    return 0


def main(argv: list[str] | None = None) -> int:
    p = _build_parser()
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.cmd == "simulate":
        try:
            return _simulate(args)
        except (LanternError, ValueError, TypeError) as exc:
            logger.error("simulation failed: %s", exc)
            return 2

    raise AssertionError(f"Unhandled command: {args.cmd}")
