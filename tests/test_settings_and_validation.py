from __future__ import annotations

import pytest

from conftest import record, task
from lantern.errors import MalformedRecordError
from lantern.settings import (
    PROFILES,
    Calibration,
    MetricCoefficients,
    OriginOverride,
    profile,
)
from lantern.validate import CalibrationError, validate_calibration, validate_inputs


def test_profiles_and_aliases() -> None:
    assert profile("slow4g") is PROFILES["mobileSlow4G"]
    assert profile("mobileSlow4G").rtt_ms == 150.0
    assert profile("mobileSlow4G").throughput_kbps == pytest.approx(1638.4)
    assert profile("3g").rtt_ms == 300.0
    assert profile("desktop").cpu_slowdown_multiplier == 1.0
    with pytest.raises(ValueError, match="Unknown throttling profile"):
        profile("dialup")


def test_layout_multiplier_defaults_to_half_the_cpu_slowdown() -> None:
    assert Calibration(cpu_slowdown_multiplier=4.0).effective_layout_multiplier == 2.0
    assert Calibration(cpu_slowdown_multiplier=1.0).effective_layout_multiplier == 1.0
    explicit = Calibration(cpu_slowdown_multiplier=4.0, layout_task_multiplier=3.0)
    assert explicit.effective_layout_multiplier == 3.0


def test_origin_lookups_fall_back_to_profile_values() -> None:
    cal = Calibration(
        rtt_ms=100.0,
        per_origin={
            "https://far.com": OriginOverride(rtt_ms=400.0, throughput_kbps=50.0)
        },
    )
    assert cal.origin_rtt("https://far.com") == 400.0
    assert cal.origin_rtt("https://near.com") == 100.0
    assert cal.origin_throughput("https://far.com") == 50.0
    assert cal.origin_server_response_time("https://far.com") == 0.0


def test_with_overrides_merges_per_origin_and_leaves_receiver_alone() -> None:
    base = Calibration(per_origin={"https://a.com": OriginOverride(rtt_ms=10.0)})
    derived = base.with_overrides(
        rtt_ms=50.0, per_origin={"https://b.com": OriginOverride(rtt_ms=20.0)}
    )
    assert base.rtt_ms == 150.0
    assert set(base.per_origin) == {"https://a.com"}
    assert set(derived.per_origin) == {"https://a.com", "https://b.com"}
    with pytest.raises(TypeError):
        derived.per_origin["https://c.com"] = OriginOverride()  # type: ignore[index]


def test_calibrations_are_hashable_by_value() -> None:
    a = Calibration(per_origin={"https://a.com": OriginOverride(rtt_ms=10.0)})
    b = Calibration(per_origin={"https://a.com": OriginOverride(rtt_ms=10.0)})
    assert a == b
    assert hash(a) == hash(b)
    assert len({a, b, Calibration()}) == 2


def test_from_json_accepts_camel_case_overrides() -> None:
    cal = Calibration.from_json(
        {
            "rttMs": 80,
            "connectionsPerOriginLimit": 4,
            "slowStart": True,
            "h2Origins": ["https://a.com"],
            "perOriginOverrides": {
                "https://a.com": {"serverResponseTimeMs": 25, "tcpMs": 40}
            },
        },
        base=profile("desktop"),
    )
    assert cal.rtt_ms == 80.0
    assert cal.throughput_kbps == 10 * 1024
    assert cal.max_connections_per_origin == 4
    assert cal.slow_start
    assert cal.h2_origins == frozenset({"https://a.com"})
    override = cal.override_for("https://a.com")
    assert override.server_response_time_ms == 25.0
    assert override.connection_time_ms == 40.0


def test_metric_coefficients_fall_back_to_defaults() -> None:
    cal = Calibration.from_json(
        {"coefficients": {"interactive": {"intercept": 20, "optimistic": 1}}}
    )
    assert cal.coefficients_for("interactive") == MetricCoefficients(20.0, 1.0, 0.5)
    assert cal.coefficients_for("first-contentful-paint") == MetricCoefficients()
    assert Calibration().coefficients_for("interactive") == MetricCoefficients(
        0.0, 0.45, 0.55
    )
    assert MetricCoefficients(10.0, 0.25, 0.75).blend(100.0, 200.0) == 185.0
    with pytest.raises(TypeError):
        cal.coefficients["load"] = MetricCoefficients()  # type: ignore[index]


def test_coefficients_take_part_in_calibration_identity() -> None:
    weighted = Calibration(coefficients={"load": MetricCoefficients(intercept=5.0)})
    same = Calibration().with_overrides(
        coefficients={"load": MetricCoefficients(intercept=5.0)}
    )
    assert weighted == same
    assert hash(weighted) == hash(same)
    assert weighted != Calibration()


def test_default_calibration_is_valid() -> None:
    validate_calibration(Calibration())
    for cal in PROFILES.values():
        validate_calibration(cal)


@pytest.mark.parametrize(
    ("changes", "message"),
    [
        ({"rtt_ms": 0.0}, "rtt_ms"),
        ({"throughput_kbps": float("inf")}, "throughput_kbps"),
        ({"cpu_slowdown_multiplier": 0.0}, "cpu_slowdown_multiplier"),
        ({"layout_task_multiplier": -1.0}, "layout_task_multiplier"),
        ({"server_response_time_ms": -5.0}, "server_response_time_ms"),
        ({"max_connections_per_origin": 0}, "max_connections_per_origin"),
        ({"max_connections": 2}, "max_connections"),
        ({"per_origin": {"https://a.com": OriginOverride(rtt_ms=-1.0)}}, "a.com"),
        (
            {"coefficients": {"interactive": MetricCoefficients(optimistic=-1.0)}},
            "interactive",
        ),
        (
            {"coefficients": {"load": MetricCoefficients(0.0, 0.0, 0.0)}},
            "positive sum",
        ),
    ],
)
def test_invalid_calibrations_are_rejected(changes: dict, message: str) -> None:
    with pytest.raises(CalibrationError, match=message):
        validate_calibration(Calibration().with_overrides(**changes))


def test_calibration_error_is_a_value_error() -> None:
    assert issubclass(CalibrationError, ValueError)


def test_validate_inputs_rejects_self_redirect() -> None:
    r = record("r", "https://a.com/", resource_type="Document",
               redirect_destination_id="r")
    with pytest.raises(MalformedRecordError, match="itself"):
        validate_inputs([r])


def test_validate_inputs_rejects_task_ids_colliding_with_requests() -> None:
    r = record("x", "https://a.com/", resource_type="Document")
    with pytest.raises(MalformedRecordError) as exc:
        validate_inputs([r], [task("x", 0, 20)])
    assert exc.value.field == "task_id"


def test_validate_inputs_accepts_links_between_tasks() -> None:
    r = record("doc", "https://a.com/", resource_type="Document")
    validate_inputs(
        [r], [task("t1", 0, 20), task("t2", 20, 20, initiator_node_id="t1")]
    )
