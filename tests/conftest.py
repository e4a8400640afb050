from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from lantern.records import NetworkRecord, TraceTask
from lantern.settings import Calibration


@pytest.fixture(scope="session", autouse=True)
def _add_repo_root_to_syspath() -> None:
    """Make the local package importable when running tests from `tests/`."""

    root = Path(__file__).resolve().parents[1]
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


def record(
    request_id: str,
    url: str,
    start: float = 0.0,
    end: float | None = None,
    **kw: Any,
) -> NetworkRecord:
    end = start + 100.0 if end is None else end
    kw.setdefault("headers_end_time_ms", end)
    kw.setdefault("transfer_size", 1000)
    if "resource_size" not in kw:
        kw["resource_size"] = kw["transfer_size"]
    return NetworkRecord(
        request_id=request_id,
        url=url,
        start_time_ms=start,
        end_time_ms=end,
        **kw,
    )


def task(task_id: str, start: float, duration: float, **kw: Any) -> TraceTask:
    return TraceTask(task_id=task_id, start_time_ms=start, duration_ms=duration, **kw)


@pytest.fixture
def make_record() -> Callable[..., NetworkRecord]:
    return record


@pytest.fixture
def make_task() -> Callable[..., TraceTask]:
    return task


@pytest.fixture
def calibration() -> Calibration:
    """Round numbers: 100ms RTT, 1600kbps (200 bytes/ms), no CPU slowdown."""

    return Calibration(
        rtt_ms=100.0,
        throughput_kbps=1600.0,
        cpu_slowdown_multiplier=1.0,
        layout_task_multiplier=1.0,
    )


@pytest.fixture
def page() -> tuple[list[NetworkRecord], list[TraceTask]]:
    """A small two-origin page load with script-driven work."""

    doc = "https://a.com/"
    records = [
        record("doc", doc, 0, 300, resource_type="Document", transfer_size=20000,
               priority="VeryHigh"),
        record("css", "https://a.com/style.css", 310, 400, resource_type="Stylesheet",
               initiator_url=doc, transfer_size=8000),
        record("app", "https://a.com/app.js", 310, 500, resource_type="Script",
               initiator_url=doc, transfer_size=50000),
        record("vendor", "https://cdn.b.com/vendor.js", 315, 600,
               resource_type="Script", initiator_url=doc, transfer_size=90000),
        record("img1", "https://cdn.b.com/hero.png", 320, 700, resource_type="Image",
               initiator_url=doc, transfer_size=120000),
        record("img2", "https://a.com/logo.png", 330, 450, resource_type="Image",
               initiator_url=doc, transfer_size=5000),
        record("api", "https://api.c.com/data.json", 560, 640, resource_type="Fetch",
               initiator_url="https://a.com/app.js", transfer_size=3000),
    ]
    tasks = [
        task("parse", 305, 35, category="ParseHTML", initiator_url=doc),
        task("eval_app", 510, 70, category="EvaluateScript",
             initiator_url="https://a.com/app.js"),
        task("tiny", 590, 2, category="FunctionCall"),
        task("eval_vendor", 610, 90, category="EvaluateScript",
             initiator_url="https://cdn.b.com/vendor.js"),
        task("paint", 420, 10, category="Paint", marker="first-contentful-paint"),
        task("lcp", 710, 15, category="Paint", marker="largest-contentful-paint",
             initiator_node_id="img1"),
    ]
    return records, tasks
