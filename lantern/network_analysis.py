"""Per-origin estimates from an observed network log.

These feed the calibration layer: observed server response times and any
extra round-trip latency of far-away origins are carried over onto a
synthetic throttling profile, so unmeasured conditions can be extrapolated
from one lab run.
"""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np

from lantern.records import NetworkRecord
from lantern.settings import Calibration, OriginOverride

logger = logging.getLogger(__name__)


def _network_records(records: Iterable[NetworkRecord]) -> list[NetworkRecord]:
    return [r for r in records if not r.is_connectionless]


def _median_by_origin(samples: dict[str, list[float]]) -> dict[str, float]:
    return {
        origin: float(np.median(np.asarray(values, dtype=float)))
        for origin, values in sorted(samples.items())
        if values
    }


def estimate_rtt_by_origin(records: Iterable[NetworkRecord]) -> dict[str, float]:
    connect_samples: dict[str, list[float]] = {}
    ttfb_samples: dict[str, list[float]] = {}

    for r in _network_records(records):
        t = r.timing
        if t is not None and t.connect_ms is not None and not r.connection_reused:
            # The connect phase includes the TLS handshake when there is one.
            tcp_ms = t.connect_ms - (t.ssl_ms or 0.0)
            if tcp_ms > 0:
                connect_samples.setdefault(r.origin, []).append(tcp_ms)
            if t.ssl_ms:
                connect_samples.setdefault(r.origin, []).append(t.ssl_ms)
        elif r.ttfb_ms > 0:
            ttfb_samples.setdefault(r.origin, []).append(r.ttfb_ms)

    estimates = _median_by_origin(connect_samples)
    for origin, values in sorted(ttfb_samples.items()):
        if origin not in estimates:
            # TTFB also contains server time, so the fastest response is an upper bound.
            estimates[origin] = float(np.min(np.asarray(values, dtype=float)))
    return estimates


def estimate_server_response_time_by_origin(
    records: Iterable[NetworkRecord],
    rtt_by_origin: dict[str, float] | None = None,
) -> dict[str, float]:
    records = _network_records(records)
    if rtt_by_origin is None:
        rtt_by_origin = estimate_rtt_by_origin(records)

    samples: dict[str, list[float]] = {}
    for r in records:
        rtt = rtt_by_origin.get(r.origin)
        if rtt is None:
            continue
        setup = 0.0
        t = r.timing
        if t is not None and not r.connection_reused:
            setup = (t.dns_ms or 0.0) + (t.connect_ms or 0.0)
        samples.setdefault(r.origin, []).append(max(0.0, r.ttfb_ms - setup - rtt))
    return _median_by_origin(samples)


def estimate_throughput_kbps(records: Iterable[NetworkRecord]) -> float | None:
    """Bytes over the union of body-download intervals, in kbps."""

    intervals: list[tuple[float, float]] = []
    total_bytes = 0
    for r in _network_records(records):
        if r.transfer_size <= 0 or r.download_ms <= 0:
            continue
        intervals.append((r.headers_end_time_ms, r.end_time_ms))
        total_bytes += r.transfer_size
    if not intervals:
        return None

    intervals.sort()
    busy_ms = 0.0
    cur_start, cur_end = intervals[0]
    for start, end in intervals[1:]:
        if start > cur_end:
            busy_ms += cur_end - cur_start
            cur_start, cur_end = start, end
        else:
            cur_end = max(cur_end, end)
    busy_ms += cur_end - cur_start

    return total_bytes * 8 / busy_ms


def calibrate_from_records(
    records: Iterable[NetworkRecord],
    base: Calibration,
    *,
    use_observed_connection_time: bool = False,
) -> Calibration:
    """`base` plus per-origin overrides derived from the observed log.

    Each origin keeps the profile's RTT plus whatever latency it showed above
    the closest origin, and its observed server response time.
    """

    records = _network_records(records)
    rtt_by_origin = estimate_rtt_by_origin(records)
    server_by_origin = estimate_server_response_time_by_origin(records, rtt_by_origin)

    connection_by_origin: dict[str, float] = {}
    if use_observed_connection_time:
        samples: dict[str, list[float]] = {}
        for r in records:
            if r.timing is not None and r.timing.connect_ms and not r.connection_reused:
                samples.setdefault(r.origin, []).append(r.timing.connect_ms)
        connection_by_origin = _median_by_origin(samples)

    min_rtt = min(rtt_by_origin.values(), default=0.0)
    per_origin: dict[str, OriginOverride] = {}
    for origin in sorted(set(rtt_by_origin) | set(server_by_origin)):
        existing = base.override_for(origin)
        additional = rtt_by_origin.get(origin, min_rtt) - min_rtt
        per_origin[origin] = OriginOverride(
            rtt_ms=existing.rtt_ms
            if existing.rtt_ms is not None
            else base.rtt_ms + additional,
            throughput_kbps=existing.throughput_kbps,
            server_response_time_ms=server_by_origin.get(origin),
            connection_time_ms=connection_by_origin.get(origin),
        )

    logger.debug("derived observed overrides for %d origin(s)", len(per_origin))
    return base.with_overrides(per_origin=per_origin)
