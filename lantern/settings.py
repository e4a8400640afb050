from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping

DEFAULT_MAX_CONNECTIONS_PER_ORIGIN = 6
DEFAULT_MAX_CONNECTIONS = 10
DEFAULT_MAXIMUM_CPU_TASK_DURATION_MS = 10_000.0


@dataclass(frozen=True)
class OriginOverride:
    rtt_ms: float | None = None
    throughput_kbps: float | None = None
    # Observed lab timings; preferred over the synthetic formula when present.
    server_response_time_ms: float | None = None
    connection_time_ms: float | None = None

    @staticmethod
    def from_json(obj: dict[str, Any]) -> "OriginOverride":
        def _opt(*keys: str) -> float | None:
            for k in keys:
                if obj.get(k) is not None:
                    return float(obj[k])
            return None

        return OriginOverride(
            rtt_ms=_opt("rtt_ms", "rttMs"),
            throughput_kbps=_opt("throughput_kbps", "throughputKbps"),
            server_response_time_ms=_opt(
                "server_response_time_ms", "serverResponseTimeMs"
            ),
            connection_time_ms=_opt("connection_time_ms", "connectionTimeMs", "tcpMs"),
        )


@dataclass(frozen=True)
class MetricCoefficients:
    """Weights that blend the optimistic and pessimistic runs of a metric."""

    intercept: float = 0.0
    optimistic: float = 0.5
    pessimistic: float = 0.5

    def blend(self, optimistic: float, pessimistic: float) -> float:
        return (
            self.intercept
            + self.optimistic * optimistic
            + self.pessimistic * pessimistic
        )

    @staticmethod
    def from_json(obj: dict[str, Any]) -> "MetricCoefficients":
        default = MetricCoefficients()
        return MetricCoefficients(
            intercept=float(obj.get("intercept", default.intercept)),
            optimistic=float(obj.get("optimistic", default.optimistic)),
            pessimistic=float(obj.get("pessimistic", default.pessimistic)),
        )


DEFAULT_METRIC_COEFFICIENTS: Mapping[str, MetricCoefficients] = MappingProxyType(
    {
        "first-contentful-paint": MetricCoefficients(),
        "largest-contentful-paint": MetricCoefficients(),
        "interactive": MetricCoefficients(optimistic=0.45, pessimistic=0.55),
    }
)


def _frozen(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Calibration:
    rtt_ms: float = 150.0
    throughput_kbps: float = 1638.4
    cpu_slowdown_multiplier: float = 4.0
    layout_task_multiplier: float | None = None
    server_response_time_ms: float = 0.0
    max_connections_per_origin: int = DEFAULT_MAX_CONNECTIONS_PER_ORIGIN
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    maximum_cpu_task_ms: float = DEFAULT_MAXIMUM_CPU_TASK_DURATION_MS
    slow_start: bool = False
    h2_origins: frozenset[str] = frozenset()
    per_origin: Mapping[str, OriginOverride] = field(
        default_factory=lambda: MappingProxyType({})
    )
    # Per-metric blend weights; metrics not listed use the defaults.
    coefficients: Mapping[str, MetricCoefficients] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self) -> None:
        for name in ("per_origin", "coefficients"):
            value = getattr(self, name)
            if not isinstance(value, MappingProxyType):
                object.__setattr__(self, name, _frozen(value))
        if not isinstance(self.h2_origins, frozenset):
            object.__setattr__(self, "h2_origins", frozenset(self.h2_origins))

    def __hash__(self) -> int:
        return hash(
            (
                self.rtt_ms,
                self.throughput_kbps,
                self.cpu_slowdown_multiplier,
                self.layout_task_multiplier,
                self.server_response_time_ms,
                self.max_connections_per_origin,
                self.max_connections,
                self.maximum_cpu_task_ms,
                self.slow_start,
                self.h2_origins,
                tuple(sorted(self.per_origin.items())),
                tuple(sorted(self.coefficients.items())),
            )
        )

    @property
    def effective_layout_multiplier(self) -> float:
        if self.layout_task_multiplier is not None:
            return self.layout_task_multiplier
        return max(1.0, self.cpu_slowdown_multiplier / 2)

    def override_for(self, origin: str) -> OriginOverride:
        return self.per_origin.get(origin) or OriginOverride()

    def origin_rtt(self, origin: str) -> float:
        o = self.override_for(origin)
        return o.rtt_ms if o.rtt_ms is not None else self.rtt_ms

    def origin_throughput(self, origin: str) -> float:
        o = self.override_for(origin)
        if o.throughput_kbps is not None:
            return o.throughput_kbps
        return self.throughput_kbps

    def origin_server_response_time(self, origin: str) -> float:
        o = self.override_for(origin)
        if o.server_response_time_ms is not None:
            return o.server_response_time_ms
        return self.server_response_time_ms

    def coefficients_for(self, metric_name: str) -> MetricCoefficients:
        if metric_name in self.coefficients:
            return self.coefficients[metric_name]
        return DEFAULT_METRIC_COEFFICIENTS.get(metric_name, MetricCoefficients())

    def with_overrides(self, **changes: Any) -> "Calibration":
        """A new calibration; the receiver is never modified."""

        for name in ("per_origin", "coefficients"):
            if name in changes:
                merged = dict(getattr(self, name))
                merged.update(changes[name])
                changes[name] = _frozen(merged)
        return replace(self, **changes)

    @staticmethod
    def from_json(
        obj: dict[str, Any], *, base: "Calibration | None" = None
    ) -> "Calibration":
        base = base or Calibration()
        aliases = {
            "rtt_ms": ("rtt_ms", "rttMs"),
            "throughput_kbps": ("throughput_kbps", "throughputKbps"),
            "cpu_slowdown_multiplier": (
                "cpu_slowdown_multiplier",
                "cpuSlowdownMultiplier",
            ),
            "layout_task_multiplier": (
                "layout_task_multiplier",
                "layoutTaskMultiplier",
            ),
            "server_response_time_ms": (
                "server_response_time_ms",
                "serverResponseTimeMs",
            ),
            "max_connections_per_origin": (
                "max_connections_per_origin",
                "connectionsPerOriginLimit",
            ),
            "max_connections": ("max_connections", "maxConnections"),
            "maximum_cpu_task_ms": ("maximum_cpu_task_ms", "maximumCpuTaskMs"),
        }
        changes: dict[str, Any] = {}
        for name, keys in aliases.items():
            for k in keys:
                if obj.get(k) is not None:
                    value = obj[k]
                    is_count = name.startswith("max_connections")
                    changes[name] = int(value) if is_count else float(value)
                    break

        slow_start = obj.get("slow_start", obj.get("slowStart"))
        if slow_start is not None:
            changes["slow_start"] = bool(slow_start)

        h2 = obj.get("h2_origins", obj.get("h2Origins"))
        if h2 is not None:
            changes["h2_origins"] = frozenset(str(o) for o in h2)

        per_origin_raw = obj.get("per_origin", obj.get("perOriginOverrides"))
        if per_origin_raw:
            changes["per_origin"] = {
                str(origin): OriginOverride.from_json(o)
                for origin, o in per_origin_raw.items()
            }

        coefficients_raw = obj.get("coefficients", obj.get("metricCoefficients"))
        if coefficients_raw:
            changes["coefficients"] = {
                str(metric): MetricCoefficients.from_json(c)
                for metric, c in coefficients_raw.items()
            }

        return base.with_overrides(**changes)


# Throttling presets matching the common DevTools/Lighthouse conditions.
PROFILES: dict[str, Calibration] = {
    "mobileSlow4G": Calibration(
        rtt_ms=150.0, throughput_kbps=1.6 * 1024, cpu_slowdown_multiplier=4.0
    ),
    "mobileRegular3G": Calibration(
        rtt_ms=300.0, throughput_kbps=700.0, cpu_slowdown_multiplier=4.0
    ),
    "desktopDense4G": Calibration(
        rtt_ms=40.0, throughput_kbps=10 * 1024, cpu_slowdown_multiplier=1.0
    ),
}
PROFILE_ALIASES = {
    "slow4g": "mobileSlow4G",
    "3g": "mobileRegular3G",
    "desktop": "desktopDense4G",
}


def profile(name: str) -> Calibration:
    key = PROFILE_ALIASES.get(name, name)
    try:
        return PROFILES[key]
    except KeyError:
        known = ", ".join(sorted([*PROFILES, *PROFILE_ALIASES]))
        raise ValueError(
            f"Unknown throttling profile {name!r} (known: {known})"
        ) from None
