from __future__ import annotations

# Per-origin TCP/TLS connection pool and the request cost model.

import logging
import math
from dataclasses import dataclass

from lantern.records import NetworkRecord
from lantern.settings import Calibration

logger = logging.getLogger(__name__)

INITIAL_CONGESTION_WINDOW = 10
TCP_SEGMENT_SIZE = 1460
DNS_RESOLUTION_RTT_MULTIPLIER = 2
CACHED_REQUEST_BASE_MS = 8.0
CACHED_REQUEST_MS_PER_MB = 20.0


@dataclass(frozen=True)
class ConnectionTiming:
    dns_ms: float = 0.0
    connect_ms: float = 0.0
    ssl_ms: float = 0.0
    ttfb_ms: float = 0.0
    download_ms: float = 0.0

    @property
    def setup_ms(self) -> float:
        return self.dns_ms + self.connect_ms + self.ssl_ms

    @property
    def total_ms(self) -> float:
        return self.setup_ms + self.ttfb_ms + self.download_ms


class Connection:
    def __init__(self, connection_id: int, origin: str, *, ssl: bool, h2: bool) -> None:
        self.connection_id = connection_id
        self.origin = origin
        self.ssl = ssl
        self.h2 = h2
        self.warm = False
        self.active_streams = 0
        self.served: list[str] = []
        self.congestion_window = INITIAL_CONGESTION_WINDOW

    @property
    def state(self) -> str:
        return "warm" if self.warm else "cold"

    @property
    def is_busy(self) -> bool:
        # HTTP/2 multiplexes any number of streams over one connection.
        return self.active_streams > 0 and not self.h2

    @property
    def is_idle(self) -> bool:
        return self.active_streams == 0

    def __repr__(self) -> str:
        return (
            f"Connection(id={self.connection_id}, origin={self.origin!r}, "
            f"state={self.state}, active={self.active_streams})"
        )


def maximum_saturated_connections(rtt_ms: float, throughput_kbps: float) -> int:
    """How many connections can each move one segment per round trip."""

    round_trips_per_second = 1000 / rtt_ms
    bits_per_second_per_connection = round_trips_per_second * TCP_SEGMENT_SIZE * 8
    return math.floor(throughput_kbps * 1000 / bits_per_second_per_connection)


def cached_request_ms(record: NetworkRecord) -> float:
    size_mb = record.resource_size / 1024 / 1024
    return CACHED_REQUEST_BASE_MS + CACHED_REQUEST_MS_PER_MB * size_mb


class ConnectionPool:
    """Connections owned by a single simulation run.

    Idle connections to the requested origin are reused before new ones are
    opened; new connections respect the per-origin and global limits.
    """

    def __init__(self, calibration: Calibration) -> None:
        self.calibration = calibration
        self._by_origin: dict[str, list[Connection]] = {}
        self._resolved_origins: set[str] = set()
        self._next_id = 1
        self.opened = 0
        self.closed = 0

    @property
    def open_connections(self) -> int:
        return sum(len(conns) for conns in self._by_origin.values())

    def connections(self, origin: str) -> tuple[Connection, ...]:
        return tuple(self._by_origin.get(origin, ()))

    def acquire(self, origin: str, *, ssl: bool, h2: bool = False) -> Connection | None:
        conns = self._by_origin.setdefault(origin, [])

        if h2 and conns:
            conn = conns[0]
            conn.active_streams += 1
            return conn

        idle = [c for c in conns if c.is_idle]
        if idle:
            conn = min(idle, key=lambda c: (not c.warm, c.connection_id))
            conn.active_streams += 1
            return conn

        if len(conns) >= self.calibration.max_connections_per_origin:
            return None
        if self.open_connections >= self.calibration.max_connections:
            if not self._evict_idle(exclude=origin):
                return None

        conn = Connection(self._next_id, origin, ssl=ssl, h2=h2)
        self._next_id += 1
        self.opened += 1
        conns.append(conn)
        conn.active_streams += 1
        logger.debug("opened %r", conn)
        return conn

    def release(self, connection: Connection, request_id: str | None = None) -> None:
        if connection.active_streams <= 0:
            raise RuntimeError(f"release of idle connection {connection!r}")
        connection.active_streams -= 1
        connection.warm = True
        if request_id is not None:
            connection.served.append(request_id)

    def _evict_idle(self, *, exclude: str) -> bool:
        candidates = [
            c
            for origin, conns in self._by_origin.items()
            if origin != exclude
            for c in conns
            if c.is_idle
        ]
        if not candidates:
            return False
        victim = min(candidates, key=lambda c: c.connection_id)
        self._by_origin[victim.origin].remove(victim)
        self.closed += 1
        logger.debug("closed %r to stay under the global limit", victim)
        return True

    def timing_for(
        self, connection: Connection, record: NetworkRecord
    ) -> ConnectionTiming:
        """Cost of serving `record` on `connection`, given its current state.

        Resolves the origin in this pool's DNS cache as a side effect, so call
        it once per request, when the request starts.
        """

        cal = self.calibration
        origin = record.origin
        rtt = cal.origin_rtt(origin)
        override = cal.override_for(origin)

        dns_ms = connect_ms = ssl_ms = 0.0
        if not connection.warm:
            if origin not in self._resolved_origins:
                dns_ms = rtt * DNS_RESOLUTION_RTT_MULTIPLIER
            if override.connection_time_ms is not None:
                connect_ms = override.connection_time_ms
            else:
                connect_ms = rtt
                ssl_ms = rtt if connection.ssl else 0.0
        self._resolved_origins.add(origin)

        # A warm HTTP/2 connection streams the response without a new round trip.
        if connection.warm and connection.h2:
            ttfb_ms = 0.0
        else:
            ttfb_ms = rtt + cal.origin_server_response_time(origin)
        download_ms = self._download_ms(connection, record.size_on_network, origin)

        return ConnectionTiming(
            dns_ms=dns_ms,
            connect_ms=connect_ms,
            ssl_ms=ssl_ms,
            ttfb_ms=ttfb_ms,
            download_ms=download_ms,
        )

    def _download_ms(self, connection: Connection, size: int, origin: str) -> float:
        throughput = self.calibration.origin_throughput(origin)
        # kbps is bits per millisecond.
        linear_ms = size * 8 / throughput
        if not self.calibration.slow_start or size <= 0:
            return linear_ms

        rtt = self.calibration.origin_rtt(origin)
        bytes_per_round_trip = throughput * rtt / 8
        max_window = max(math.floor(bytes_per_round_trip / TCP_SEGMENT_SIZE), 1)

        # The first window arrives together with the first byte.
        window = min(connection.congestion_window, max_window)
        remaining = size - window * TCP_SEGMENT_SIZE
        elapsed = 0.0
        while remaining > 0:
            elapsed += rtt
            window = max(min(max_window, window * 2), 1)
            remaining -= window * TCP_SEGMENT_SIZE
        connection.congestion_window = window
        return max(elapsed, linear_ms)
