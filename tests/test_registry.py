import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from echo_gateway.engine import EchoGateway
from echo_gateway.errors import NotFoundError, StorageError, StorageLockdownError, ValidationError
from echo_gateway.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from echo_gateway.models import ActorContext, Provenance, Question, ReasoningFrame, Role
from echo_gateway.registry import EventRegistry, InMemoryEventStore, SqliteEventStore, decode_event, encode_event

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _prov():
    return Provenance.parse("observed", "direct", "registry-test")


def _question(text, asked_at=NOW):
    return Question(
        domain="vendor-oversight",
        text=text,
        asked_by="alice",
        asked_at=asked_at,
        complexity=2,
        sensitivity=3,
        provenance=_prov(),
    )


def _sqlite_store(tmp_path, **overrides):
    cfg = CircuitBreakerConfig(latency_threshold_ms=60000, **overrides)
    return SqliteEventStore(str(tmp_path / "events.db"), DbCircuitBreaker(cfg))


@pytest.fixture(params=["memory", "sqlite"])
def registry(request, tmp_path):
    if request.param == "memory":
        return EventRegistry(InMemoryEventStore())
    return EventRegistry(_sqlite_store(tmp_path))


def test_view_is_restartable_and_sees_later_appends(registry):
    registry.record("qem/vendor-oversight", _question("Who audits the auditors?"))
    view = registry.query("qem/vendor-oversight")
    assert [q.text for q in view] == ["Who audits the auditors?"]

    registry.record("qem/vendor-oversight", _question("Who signs off?"))
    # Second pass re-reads the store, in insertion order.
    assert [q.text for q in view] == ["Who audits the auditors?", "Who signs off?"]
    assert len(view) == 2


def test_query_time_range_is_inclusive(registry):
    registry.record("qem/d", _question("old", asked_at=NOW - timedelta(days=10)))
    registry.record("qem/d", _question("edge", asked_at=NOW - timedelta(days=5)))
    registry.record("qem/d", _question("new", asked_at=NOW))

    got = [q.text for q in registry.query("qem/d", start=NOW - timedelta(days=5), end=NOW)]
    assert got == ["edge", "new"]


def test_unknown_key_is_empty_unless_strict(registry):
    assert list(registry.query("qem/nothing")) == []
    with pytest.raises(NotFoundError):
        registry.query("qem/nothing", must_exist=True)


def test_keys_are_listed_by_prefix(registry):
    registry.record("qem/b", _question("q1"))
    registry.record("qem/a", _question("q2"))
    registry.record("rpl/frames", _frame())
    assert registry.keys("qem/") == ["qem/a", "qem/b"]


def test_record_rejects_unknown_event_types():
    registry = EventRegistry()
    with pytest.raises(ValidationError):
        registry.record("x", {"not": "an event"})
    with pytest.raises(ValidationError):
        registry.record("", _question("q"))


def _frame():
    return ReasoningFrame(
        framework="Beneficiary_Tracing",
        confidence_weight=0.6,
        actor_id="alice",
        decision_point="vendor renewal",
        provenance=_prov(),
        first_used=NOW - timedelta(hours=1),
        last_used=NOW,
        alternatives_considered=("Devil_Lens_Critique",),
    )


def test_codec_restores_typed_fields():
    frame = _frame()
    decoded = decode_event(encode_event(frame))
    assert decoded == frame
    assert decoded.last_used.tzinfo is not None
    assert decoded.alternatives_considered == ("Devil_Lens_Critique",)


def test_sqlite_store_persists_across_instances(tmp_path):
    EventRegistry(_sqlite_store(tmp_path)).record("rpl/frames", _frame())
    reopened = EventRegistry(_sqlite_store(tmp_path))
    frames = list(reopened.query("rpl/frames"))
    assert len(frames) == 1
    assert frames[0].framework == "Beneficiary_Tracing"


def test_sqlite_failures_trip_lockdown(tmp_path, monkeypatch):
    store = _sqlite_store(tmp_path, failure_threshold=1, lockdown_seconds=60)
    registry = EventRegistry(store)

    import echo_gateway.registry as registry_mod

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(registry_mod.sqlite3, "connect", _boom)

    with pytest.raises(StorageError) as exc:
        list(registry.query("rpl/frames"))
    assert exc.value.retryable is True
    assert exc.value.http_status == 503

    # Once tripped, operations fail fast for the rest of the window.
    with pytest.raises(StorageLockdownError):
        list(registry.query("rpl/frames"))
    assert store.circuit.is_lockdown_active()


def test_lockdown_expires_with_the_clock():
    t = [100.0]
    circuit = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=30), monotonic=lambda: t[0])
    circuit.record_failure(RuntimeError("boom"))
    with pytest.raises(StorageLockdownError) as exc:
        circuit.raise_if_lockdown()
    assert exc.value.details["retry_after_seconds"] == 30

    t[0] += 31
    circuit.raise_if_lockdown()
    assert not circuit.is_lockdown_active()


def test_storage_failures_surface_instead_of_neutral_metrics(tmp_path, monkeypatch):
    store = _sqlite_store(tmp_path, failure_threshold=1, lockdown_seconds=60)
    gw = EchoGateway(registry=EventRegistry(store), clock=lambda: NOW)
    gw.register_question(ActorContext("alice", Role.ANALYST), "d", "Who benefits?", 2, 3, _prov())

    import echo_gateway.registry as registry_mod

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(registry_mod.sqlite3, "connect", _boom)

    with pytest.raises(StorageError):
        gw.dominance()
    with pytest.raises(StorageError):
        gw.entropy("d")
    with pytest.raises(StorageError):
        gw.resilience()
    assert gw.health()["database"] == "disconnected"
    assert gw.aggregator.history() == []
