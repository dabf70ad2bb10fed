from datetime import datetime, timedelta, timezone

import pytest

from echo_gateway.config import EchoConfig
from echo_gateway.engine import EchoGateway
from echo_gateway.models import ActorContext, Layer, Provenance, ReasoningFrame, Role, Severity
from echo_gateway.registry import EventRegistry
from echo_gateway import rpl

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _prov():
    return Provenance.parse("observed", "direct", "rpl-test")


def _frame(framework, weight, last_used=NOW):
    return ReasoningFrame(
        framework=framework,
        confidence_weight=weight,
        actor_id="alice",
        decision_point="dp",
        provenance=_prov(),
        first_used=last_used,
        last_used=last_used,
    )


@pytest.mark.parametrize(
    "weights",
    [
        [("A", 0.5)],
        [("A", 0.5), ("B", 0.5)],
        [("A", 0.9), ("B", 0.1), ("C", 0.4)],
        [("A", 0.2), ("B", 0.2), ("C", 0.2), ("D", 0.2)],
    ],
)
def test_dominance_is_within_unit_range(weights):
    metric = rpl.compute_dominance([_frame(f, w) for f, w in weights], EchoConfig(), NOW)
    n = len({f for f, _ in weights})
    assert 1.0 / n - 1e-9 <= metric.dominance <= 1.0
    assert (metric.dominance == 1.0) == (n == 1)


def test_dominance_is_one_when_only_one_framework_has_weight():
    frames = [_frame("A", 0.6), _frame("B", 0.0), _frame("C", 0.0)]
    metric = rpl.compute_dominance(frames, EchoConfig(), NOW)
    assert metric.dominance == 1.0
    assert metric.dominant_framework == "A"
    assert metric.severity is Severity.HIGH


def test_no_frames_is_neutral():
    metric = rpl.compute_dominance([], EchoConfig(), NOW)
    assert metric.dominance == 0.0
    assert metric.dominant_framework is None
    assert metric.exceeded is False
    assert rpl.resilience(metric) == 100.0


def test_exactly_at_threshold_does_not_exceed():
    metric = rpl.compute_dominance([_frame("A", 0.7), _frame("B", 0.3)], EchoConfig(), NOW)
    assert metric.dominance == 0.7
    assert metric.exceeded is False
    assert metric.severity is Severity.LOW

    metric = rpl.compute_dominance([_frame("A", 0.7000001), _frame("B", 0.2999999)], EchoConfig(), NOW)
    assert metric.dominance > 0.7
    assert metric.exceeded is True


def test_severity_tiers():
    cfg = EchoConfig()
    assert rpl.severity_for(0.9, cfg) is Severity.HIGH
    assert rpl.severity_for(0.8, cfg) is Severity.MEDIUM
    assert rpl.severity_for(0.72, cfg) is Severity.LOW


def test_severity_bands_come_from_config():
    cfg = EchoConfig(dominance_medium_threshold=0.8)
    assert rpl.severity_for(0.78, cfg) is Severity.LOW
    assert rpl.severity_for(0.82, cfg) is Severity.MEDIUM


def test_distribution_reports_share_per_framework():
    usage = rpl.framework_distribution([_frame("A", 0.6), _frame("A", 0.2), _frame("B", 0.2)])
    assert [u.framework for u in usage] == ["A", "B"]
    assert usage[0].usage_count == 2
    assert usage[0].percentage == pytest.approx(80.0)


def test_window_prefers_the_larger_of_days_and_decisions():
    registry = EventRegistry()
    cfg = EchoConfig(rpl_window_decisions=3, rpl_window_days=7)
    for i in range(5):
        registry.record(rpl.RPL_KEY, _frame("old", 0.5, NOW - timedelta(days=30 + i)))
    registry.record(rpl.RPL_KEY, _frame("new", 0.5, NOW - timedelta(days=1)))

    # Only one frame in the last 7 days; the last three decisions win.
    frames = rpl.window_frames(registry, NOW, cfg)
    assert len(frames) == 3
    assert frames[-1].framework == "new"


def test_rotation_queue_takes_two_alternatives():
    queue = rpl.RotationQueue(("A", "B", "C", "D"))
    assert queue.enqueue_for("B") == ["A", "C"]
    assert queue.snapshot() == ["A", "C"]
    assert queue.pop() == "A"
    assert len(queue) == 1


def test_track_reasoning_alerts_once_and_queues_rotation():
    gw = EchoGateway(clock=lambda: NOW)
    ctx = ActorContext("alice", Role.ADMIN)

    first = gw.track_reasoning(ctx, "Beneficiary_Tracing", 0.8, "dp1", _prov())
    assert first.alert is not None
    assert first.alert.layer is Layer.RPL
    assert first.alert.magnitude == 1.0
    assert gw.rotation_queue() == ["Devil_Lens_Critique", "RSGD_360_Spiral"]

    gw.gate.release("alice")
    second = gw.track_reasoning(ctx, "Beneficiary_Tracing", 0.8, "dp2", _prov())
    # Still dominant, but the open alert suppresses a duplicate.
    assert second.alert is None
    assert len(gw.list_alerts(layer=Layer.RPL)) == 1
    assert len(gw.rotation_queue()) == 2


def test_dominance_reads_are_idempotent():
    gw = EchoGateway(clock=lambda: NOW)
    ctx = ActorContext("alice", Role.ADMIN)
    gw.track_reasoning(ctx, "A", 0.9, "dp", _prov())

    before = gw.dominance().as_dict()
    alerts_before = [a.as_dict() for a in gw.list_alerts()]
    assert gw.dominance().as_dict() == before
    assert [a.as_dict() for a in gw.list_alerts()] == alerts_before
