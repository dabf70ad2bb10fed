from datetime import datetime, timedelta, timezone

import pytest

from echo_gateway import qem
from echo_gateway.config import EchoConfig
from echo_gateway.engine import EchoGateway
from echo_gateway.errors import ValidationError
from echo_gateway.models import ActorContext, Layer, Provenance, Question, Role, Severity

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
DOMAIN = "vendor-oversight"


def _prov():
    return Provenance.parse("observed", "direct", "qem-test")


def _q(days_ago, domain=DOMAIN):
    return Question(
        domain=domain,
        text="Who audits the auditors?",
        asked_by="alice",
        asked_at=NOW - timedelta(days=days_ago),
        complexity=3,
        sensitivity=4,
        provenance=_prov(),
    )


def test_gap_of_sixty_percent_is_a_medium_breach():
    questions = [_q(120) for _ in range(10)] + [_q(10) for _ in range(4)]
    metric = qem.compute_entropy(DOMAIN, questions, EchoConfig(), NOW)
    assert metric.historical_count == 10
    assert metric.current_count == 4
    assert metric.gap == pytest.approx(0.6)
    assert metric.exceeded is True
    assert metric.severity is Severity.MEDIUM
    assert metric.trend == "DROPPING"


def test_rising_rate_floors_gap_at_zero():
    questions = [_q(120) for _ in range(2)] + [_q(5) for _ in range(8)]
    metric = qem.compute_entropy(DOMAIN, questions, EchoConfig(), NOW)
    assert metric.gap == 0.0
    assert metric.exceeded is False
    assert metric.trend == "RISING"


def test_no_history_is_neutral():
    metric = qem.compute_entropy(DOMAIN, [_q(3)], EchoConfig(), NOW)
    assert metric.gap == 0.0
    assert metric.severity is Severity.LOW
    assert qem.resilience([]) == 100.0


def test_questions_older_than_both_windows_are_ignored():
    metric = qem.compute_entropy(DOMAIN, [_q(400), _q(10)], EchoConfig(), NOW)
    assert metric.historical_count == 0
    assert metric.current_count == 1


def test_suggestions_fall_back_for_unknown_domains():
    assert len(qem.suggestions_for(DOMAIN)) == 4
    assert qem.suggestions_for("unheard-of") == list(qem.FALLBACK_QUESTIONS)


def test_register_question_raises_medium_alert_with_suggestions():
    gw = EchoGateway(clock=lambda: NOW)
    for q in [_q(120) for _ in range(10)] + [_q(10) for _ in range(3)]:
        gw.registry.record(qem.domain_key(DOMAIN), q)

    result = gw.register_question(ActorContext("alice", Role.ANALYST), DOMAIN, "Who signs?", 2, 2, _prov())
    assert result.alert is not None
    assert result.alert.layer is Layer.QEM
    assert result.alert.magnitude == pytest.approx(0.6)
    assert len(result.extra["suggested_questions"]) == 4

    metric = gw.entropy(DOMAIN)
    assert metric.severity is Severity.MEDIUM


def test_register_question_validates_scales():
    gw = EchoGateway(clock=lambda: NOW)
    with pytest.raises(ValidationError):
        gw.register_question(ActorContext("alice", Role.ANALYST), DOMAIN, "Q?", 6, 2, _prov())
    assert gw.registry.keys("qem/") == []
