import json
from datetime import datetime, timedelta, timezone

import pytest

from echo_gateway import oli
from echo_gateway.audit_log import AuditSigner, TamperEvidentAuditLog
from echo_gateway.config import EchoConfig
from echo_gateway.engine import EchoGateway
from echo_gateway.errors import AdmissionError, KIND_COOLDOWN_ACTIVE
from echo_gateway.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from echo_gateway.models import ActorContext, BreakRecord, CooldownReason, FatigueRisk, Layer, Provenance, Role
from echo_gateway.registry import EventRegistry, SqliteEventStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _prov():
    return Provenance.parse("observed", "direct", "oli-test")


def test_fatigue_example_reaches_ten():
    score = oli.fatigue_score(25, 0.6, 0.8, None)
    assert score == 10
    cfg = EchoConfig()
    assert oli.fatigue_tier(score, cfg) is FatigueRisk.CRITICAL
    assert oli.cooldown_hours(score, cfg) == 72


@pytest.mark.parametrize(
    "score,tier,hours",
    [
        (0, FatigueRisk.LOW, 24),
        (4, FatigueRisk.MEDIUM, 24),
        (7, FatigueRisk.HIGH, 48),
        (9, FatigueRisk.CRITICAL, 72),
    ],
)
def test_tiers_and_cooldown_durations(score, tier, hours):
    cfg = EchoConfig()
    assert oli.fatigue_tier(score, cfg) is tier
    assert oli.cooldown_hours(score, cfg) == hours


def test_recent_break_lowers_the_score():
    assert oli.fatigue_score(0, 0.0, 0.0, hours_since_break=2) == 0
    assert oli.fatigue_score(0, 0.0, 0.0, hours_since_break=30) == 1
    assert oli.fatigue_score(0, 0.0, 0.0, hours_since_break=None) == 2


def test_critical_load_installs_cooldown_and_blocks_admission():
    gw = EchoGateway(clock=lambda: NOW)
    ctx = ActorContext("obs-1", Role.OBSERVER)

    status = gw.update_load(ctx, "obs-1", 25, 0.6, 0.8, _prov())
    assert status["fatigue_score"] == 10
    assert status["fatigue_risk"] == "critical"
    assert status["cooldown_required"] is True
    assert status["cooldown_until"] == (NOW + timedelta(hours=72)).isoformat()
    assert status["alert"]["layer"] == "OLI"

    entry = gw.gate.active_cooldown("obs-1", NOW)
    assert entry.reason is CooldownReason.CRITICAL_FATIGUE

    with pytest.raises(AdmissionError) as exc:
        gw.track_reasoning(ctx, "A", 0.5, "dp", _prov())
    assert exc.value.kind == KIND_COOLDOWN_ACTIVE
    assert exc.value.details["remaining_minutes"] == 72 * 60


def test_break_is_used_for_hours_since_break():
    gw = EchoGateway(clock=lambda: NOW)
    ctx = ActorContext("obs-2", Role.OBSERVER)
    gw.record_break(ctx, "obs-2", _prov(), taken_at=NOW - timedelta(hours=1))
    status = gw.update_load(ctx, "obs-2", 3, 0.0, 0.0, _prov())
    assert status["fatigue_score"] == 0
    assert status["hours_since_break"] == pytest.approx(1.0)
    assert status["cooldown_required"] is False
    assert status["alert"] is None


def test_manual_cooldown_uses_current_score():
    gw = EchoGateway(clock=lambda: NOW)
    admin = ActorContext("root", Role.ADMIN)
    gw.update_load(admin, "obs-3", 15, 0.3, 0.5, _prov())  # 2 + 2 + 1 + 2 = 7

    entry = gw.install_cooldown(admin, "obs-3")
    assert entry.duration_hours == 48
    assert entry.reason is CooldownReason.MANUAL

    # Unknown actors get the shortest cooldown.
    assert gw.install_cooldown(admin, "nobody").duration_hours == 24


def test_redistribution_moves_half_to_low_risk_observers():
    gw = EchoGateway(clock=lambda: NOW)
    admin = ActorContext("root", Role.ADMIN)
    gw.update_load(admin, "tired", 25, 0.6, 0.8, _prov())
    gw.record_break(admin, "fresh", _prov())
    gw.update_load(admin, "fresh", 1, 0.0, 0.0, _prov())

    gw.assign_tasks(admin, "tired", ["t1", "t2", "t3", "t4", "t5"])
    result = gw.redistribute(admin)
    assert result["count"] == 2
    assert [m["task_id"] for m in result["moved"]] == ["t1", "t2"]
    assert gw.work.pending("tired") == ["t3", "t4", "t5"]
    assert gw.work.pending("fresh") == ["t1", "t2"]


def test_redistribution_without_low_risk_targets_is_a_noop():
    book = oli.PendingWorkBook()
    book.assign("tired", ["t1", "t2"])
    assert book.redistribute(["tired"], []) == []
    assert book.pending("tired") == ["t1", "t2"]


def test_resilience_penalises_high_risk_share():
    gw = EchoGateway(clock=lambda: NOW)
    admin = ActorContext("root", Role.ADMIN)
    gw.update_load(admin, "tired", 25, 0.6, 0.8, _prov())
    gw.record_break(admin, "fresh", _prov())
    gw.update_load(admin, "fresh", 1, 0.0, 0.0, _prov())

    metrics = gw.fatigue_status()
    assert [m.observer_id for m in metrics] == ["tired", "fresh"]
    assert oli.resilience(metrics) == 0.0
    assert oli.resilience([]) == 100.0
    assert gw.list_alerts(layer=Layer.OLI)[0].magnitude == 10.0


def test_break_submission_id_is_the_stored_break_id():
    gw = EchoGateway(clock=lambda: NOW)
    ctx = ActorContext("obs-4", Role.OBSERVER)
    submission = gw.record_break(ctx, "obs-4", _prov())
    stored = [e for e in gw.registry.query(oli.observer_key("obs-4")) if isinstance(e, BreakRecord)]
    assert [b.break_id for b in stored] == [submission.event_id]


def test_cooldown_that_is_not_installed_is_not_audited(tmp_path):
    log = TamperEvidentAuditLog(str(tmp_path / "audit.jsonl"), AuditSigner.generate())
    gw = EchoGateway(audit_log=log, clock=lambda: NOW)
    admin = ActorContext("root", Role.ADMIN)
    gw.update_load(admin, "obs-5", 25, 0.6, 0.8, _prov())

    # The existing 72h cooldown ends no earlier than a new one would.
    entry = gw.install_cooldown(admin, "obs-5")
    assert entry.reason is CooldownReason.CRITICAL_FATIGUE
    assert gw.gate.offer_cooldown("obs-5", 24, CooldownReason.MANUAL, NOW)[1] is False

    kinds = [json.loads(line)["event"]["event_type"] for line in open(log.path, encoding="utf-8")]
    assert kinds.count("cooldown_installed") == 1


def test_cooldown_survives_a_restart(tmp_path):
    def _registry():
        cfg = CircuitBreakerConfig(latency_threshold_ms=60000)
        return EventRegistry(SqliteEventStore(str(tmp_path / "events.db"), DbCircuitBreaker(cfg)))

    ctx = ActorContext("obs-6", Role.OBSERVER)
    EchoGateway(registry=_registry(), clock=lambda: NOW).update_load(ctx, "obs-6", 25, 0.6, 0.8, _prov())

    later = NOW + timedelta(hours=1)
    gw = EchoGateway(registry=_registry(), clock=lambda: later)
    entry = gw.gate.active_cooldown("obs-6", later)
    assert entry.reason is CooldownReason.CRITICAL_FATIGUE
    assert entry.ends_at == NOW + timedelta(hours=72)
    assert gw.gate.concurrent_audits("obs-6") == 0
    assert len(gw.list_alerts(layer=Layer.OLI, open_only=True)) == 1

    with pytest.raises(AdmissionError) as exc:
        gw.track_reasoning(ctx, "A", 0.5, "dp", _prov())
    assert exc.value.kind == KIND_COOLDOWN_ACTIVE
    assert exc.value.details["remaining_minutes"] == 71 * 60
