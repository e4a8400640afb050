from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any

from lantern.graph import CpuNode, DependencyGraph, NetworkNode
from lantern.records import NetworkRecord, TraceTask, load_records, load_trace
from lantern.settings import Calibration
from lantern.types import SimulationResult


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _unwrap(raw: Any, key: str) -> list[dict[str, Any]]:
    if isinstance(raw, dict):
        raw = raw.get(key, [])
    if not isinstance(raw, list):
        raise TypeError(f"expected a list or an object with a '{key}' list")
    return raw


def read_records(path: Path) -> list[NetworkRecord]:
    return load_records(_unwrap(_read_json(path), "records"))


def read_trace(path: Path) -> list[TraceTask]:
    return load_trace(_unwrap(_read_json(path), "tasks"))


def read_calibration(path: Path, *, base: Calibration) -> Calibration:
    raw = _read_json(path)
    if not isinstance(raw, dict):
        raise TypeError("calibration file must contain a JSON object")
    return Calibration.from_json(raw, base=base)


def write_summary_json(path: Path, summary: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")


def write_timings_csv(
    path: Path,
    results: dict[str, SimulationResult],
    graph: DependencyGraph,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(
            [
                "profile",
                "node_id",
                "node_type",
                "label",
                "queued_time_ms",
                "start_time_ms",
                "end_time_ms",
                "queue_wait_ms",
                "duration_ms",
                "connection_id",
                "setup_ms",
                "ttfb_ms",
                "download_ms",
            ]
        )
        for profile, result in results.items():
            for node in graph:
                t = result[node.node_id]
                ct = t.connection_timing
                if isinstance(node, NetworkNode):
                    label = node.url
                else:
                    assert isinstance(node, CpuNode)
                    label = node.category
                w.writerow(
                    [
                        profile,
                        t.node_id,
                        t.node_type,
                        label,
                        t.queued_time_ms,
                        t.start_time_ms,
                        t.end_time_ms,
                        t.queue_wait_ms,
                        t.duration_ms,
                        t.connection_id if t.connection_id is not None else "",
                        ct.setup_ms if ct is not None else "",
                        ct.ttfb_ms if ct is not None else "",
                        ct.download_ms if ct is not None else "",
                    ]
                )
