from __future__ import annotations

import math
from typing import Iterable

from lantern.errors import MalformedRecordError
from lantern.records import NetworkRecord, TraceTask
from lantern.settings import Calibration, MetricCoefficients, OriginOverride


class CalibrationError(ValueError):
    pass


def _check_positive(name: str, value: float) -> None:
    if not math.isfinite(value) or value <= 0:
        raise CalibrationError(f"{name} must be a finite number > 0 (got {value})")


def _check_override(origin: str, o: OriginOverride) -> None:
    if o.rtt_ms is not None:
        _check_positive(f"per_origin['{origin}'].rtt_ms", o.rtt_ms)
    if o.throughput_kbps is not None:
        _check_positive(f"per_origin['{origin}'].throughput_kbps", o.throughput_kbps)
    for name in ("server_response_time_ms", "connection_time_ms"):
        v = getattr(o, name)
        if v is not None and (not math.isfinite(v) or v < 0):
            raise CalibrationError(
                f"per_origin['{origin}'].{name} must be >= 0 (got {v})"
            )


def _check_coefficients(metric_name: str, c: MetricCoefficients) -> None:
    name = f"coefficients['{metric_name}']"
    if not all(math.isfinite(v) for v in (c.intercept, c.optimistic, c.pessimistic)):
        raise CalibrationError(f"{name} must be finite (got {c})")
    if min(c.optimistic, c.pessimistic) < 0 or c.optimistic + c.pessimistic <= 0:
        raise CalibrationError(
            f"{name} weights must be >= 0 with a positive sum (got {c})"
        )


def validate_calibration(calibration: Calibration) -> None:
    _check_positive("rtt_ms", calibration.rtt_ms)
    _check_positive("throughput_kbps", calibration.throughput_kbps)
    _check_positive("maximum_cpu_task_ms", calibration.maximum_cpu_task_ms)

    if calibration.cpu_slowdown_multiplier <= 0:
        raise CalibrationError(
            "cpu_slowdown_multiplier must be > 0 "
            f"(got {calibration.cpu_slowdown_multiplier})"
        )
    if (
        calibration.layout_task_multiplier is not None
        and calibration.layout_task_multiplier <= 0
    ):
        raise CalibrationError(
            "layout_task_multiplier must be > 0 "
            f"(got {calibration.layout_task_multiplier})"
        )
    if calibration.server_response_time_ms < 0:
        raise CalibrationError(
            "server_response_time_ms must be >= 0 "
            f"(got {calibration.server_response_time_ms})"
        )

    if calibration.max_connections_per_origin < 1:
        raise CalibrationError(
            "max_connections_per_origin must be >= 1 "
            f"(got {calibration.max_connections_per_origin})"
        )
    if calibration.max_connections < calibration.max_connections_per_origin:
        raise CalibrationError(
            (
                f"max_connections ({calibration.max_connections}) must be >= "
                f"max_connections_per_origin ({calibration.max_connections_per_origin})"
            )
        )

    for origin, override in calibration.per_origin.items():
        _check_override(origin, override)
    for metric_name, c in calibration.coefficients.items():
        _check_coefficients(metric_name, c)


def validate_inputs(
    records: Iterable[NetworkRecord], trace: Iterable[TraceTask] = ()
) -> None:
    """Cross-record checks that a single record cannot make on its own."""

    records = list(records)
    ids = {r.request_id for r in records}
    for r in records:
        target = r.redirect_destination_id
        if target is not None and target not in ids:
            raise MalformedRecordError(
                f"redirect destination '{target}' not found",
                record_id=r.request_id,
                field="redirect_destination_id",
            )
        if target == r.request_id:
            raise MalformedRecordError(
                "record redirects to itself",
                record_id=r.request_id,
                field="redirect_destination_id",
            )

    trace = list(trace)
    task_ids: set[str] = set()
    for t in trace:
        if t.task_id in ids:
            raise MalformedRecordError(
                "task id collides with a request id",
                record_id=t.task_id,
                field="task_id",
            )
        task_ids.add(t.task_id)

    known = ids | task_ids
    for t in trace:
        if t.initiator_node_id is not None and t.initiator_node_id not in known:
            raise MalformedRecordError(
                f"initiator node '{t.initiator_node_id}' not found",
                record_id=t.task_id,
                field="initiator_node_id",
            )
