"""EchoGateway: orchestration of the registry, calculators, alerts and gate.

Every write follows the same path::

    caller -> Gate (reasoning only) -> Registry.record -> calculator
           -> AlertEngine.evaluate -> audit trail

Reads recompute from the registry on demand; recomputation never emits or
resolves alerts, so repeated reads are idempotent.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import loa, oli, pds, qem, rpl
from .alerts import AlertEngine
from .audit_log import TamperEvidentAuditLog
from .config import EchoConfig
from .cooldown import CooldownGate
from .errors import (
    ECHO_E_PURPOSE_PAUSED,
    ECHO_E_RECOMMITMENT_REJECTED,
    AdmissionError,
    StateError,
    StorageError,
    not_found,
    validation_error,
)
from .models import (
    ActorContext,
    Alert,
    BreakRecord,
    CooldownEntry,
    CooldownReason,
    FatigueRisk,
    LaggedOutcome,
    Layer,
    ObserverSession,
    Provenance,
    PurposeState,
    PurposeTransition,
    Question,
    ReasoningFrame,
    Recommitment,
    SystemPurpose,
    UsageEvent,
    _new_id,
    _now_utc,
    ensure_utc,
)
from .registry import EventRegistry
from .resilience import ResilienceAggregator, ResilienceScore

logger = logging.getLogger("echo_gateway.engine")


@dataclass(frozen=True)
class Submission:
    """Outcome of an accepted write."""

    event_id: str
    recorded_at: datetime
    alert: Optional[Alert] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "success": True,
            "id": self.event_id,
            "created_at": self.recorded_at.isoformat(),
            "alert": self.alert.as_dict() if self.alert else None,
        }
        d.update(self.extra)
        return d


class EchoGateway:
    def __init__(
        self,
        config: Optional[EchoConfig] = None,
        registry: Optional[EventRegistry] = None,
        audit_log: Optional[TamperEvidentAuditLog] = None,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.config = config or EchoConfig()
        self.registry = registry or EventRegistry()
        self.audit_log = audit_log
        self.clock = clock

        self.gate = CooldownGate(self.config, registry=self.registry)
        self.alerts = AlertEngine(registry=self.registry)
        self.aggregator = ResilienceAggregator(self.config)
        self.rotation = rpl.RotationQueue(self.config.rotation_frameworks, maxlen=self.config.rotation_queue_max)
        self.work = oli.PendingWorkBook()

        # Serialise read-decide-append sequences per layer.
        self._loa_lock = threading.Lock()
        self._pds_lock = threading.Lock()

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _audit(self, event_type: str, ctx: Optional[ActorContext], **fields: Any) -> None:
        if self.audit_log is None:
            return
        event: Dict[str, Any] = {"event_type": event_type}
        if ctx is not None:
            event["actor_id"] = ctx.actor_id
            event["role"] = ctx.role.value
        event.update(fields)
        self.audit_log.append_event(event, ts_utc=self._now().isoformat())

    def _audit_alert(self, alert: Optional[Alert]) -> None:
        if alert is not None:
            self._audit("alert_emitted", None, **alert.as_dict())

    # ---------------------------
    # RPL
    # ---------------------------

    def track_reasoning(
        self,
        ctx: ActorContext,
        framework: str,
        confidence_weight: float,
        decision_point: str,
        provenance: Provenance,
        context: Optional[str] = None,
        alternatives_considered: Sequence[str] = (),
        first_used: Optional[datetime] = None,
    ) -> Submission:
        now = self._now()
        try:
            with self.gate.admit(ctx, now, confidence_weight=confidence_weight, data_scope=provenance.data_scope):
                frame = ReasoningFrame(
                    framework=framework,
                    confidence_weight=confidence_weight,
                    actor_id=ctx.actor_id,
                    decision_point=decision_point,
                    provenance=provenance,
                    first_used=first_used or now,
                    last_used=now,
                    context=context,
                    alternatives_considered=tuple(alternatives_considered or ()),
                )
                self.registry.record(rpl.RPL_KEY, frame)
        except AdmissionError as e:
            self._audit("admission_rejected", ctx, kind=e.kind, code=e.code)
            raise

        metric = self.dominance()
        alert = None
        if metric.exceeded and metric.dominant_framework:
            alert = self.alerts.evaluate(
                Layer.RPL,
                metric.dominant_framework,
                metric.dominance,
                metric.threshold,
                metric.exceeded,
                provenance,
                now,
            )
            if alert is not None:
                queued = self.rotation.enqueue_for(metric.dominant_framework)
                logger.info("Queued rotation frameworks %s", queued)

        self._audit("reasoning_tracked", ctx, id=frame.frame_id, framework=framework, **provenance.as_dict())
        self._audit_alert(alert)
        return Submission(event_id=frame.frame_id, recorded_at=now, alert=alert)

    def dominance(self) -> rpl.DominanceMetric:
        now = self._now()
        return rpl.compute_dominance(rpl.window_frames(self.registry, now, self.config), self.config, now)

    def rotation_queue(self) -> List[str]:
        return self.rotation.snapshot()

    # ---------------------------
    # QEM
    # ---------------------------

    def register_question(
        self,
        ctx: ActorContext,
        domain: str,
        text: str,
        complexity: int,
        sensitivity: int,
        provenance: Provenance,
        asked_at: Optional[datetime] = None,
    ) -> Submission:
        now = self._now()
        question = Question(
            domain=domain,
            text=text,
            asked_by=ctx.actor_id,
            asked_at=asked_at or now,
            complexity=complexity,
            sensitivity=sensitivity,
            provenance=provenance,
        )
        self.registry.record(qem.domain_key(domain), question)

        metric = qem.domain_entropy(self.registry, domain, self.config, now)
        alert = self.alerts.evaluate(
            Layer.QEM, domain, metric.gap, metric.threshold, metric.exceeded, provenance, now
        )
        extra: Dict[str, Any] = {}
        if alert is not None:
            extra["suggested_questions"] = qem.suggestions_for(domain)

        self._audit("question_registered", ctx, id=question.question_id, domain=domain, **provenance.as_dict())
        self._audit_alert(alert)
        return Submission(event_id=question.question_id, recorded_at=now, alert=alert, extra=extra)

    def entropy(self, domain: str) -> qem.EntropyMetric:
        if not domain:
            raise validation_error("domain required")
        return qem.domain_entropy(self.registry, domain, self.config, self._now())

    def suggestions(self, domain: str) -> Dict[str, Any]:
        metric = self.entropy(domain)
        return {
            "domain": domain,
            "exceeded": metric.exceeded,
            "suggested_questions": qem.suggestions_for(domain),
        }

    # ---------------------------
    # LOA
    # ---------------------------

    def track_outcome(
        self,
        ctx: ActorContext,
        decision_id: str,
        decision_date: datetime,
        beneficiary: str,
        benefit_realized_date: datetime,
        provenance: Provenance,
        context: Optional[str] = None,
    ) -> Submission:
        now = self._now()
        decision_date = ensure_utc(decision_date)
        benefit_realized_date = ensure_utc(benefit_realized_date)
        if benefit_realized_date < decision_date:
            raise validation_error("benefit_realized_date must not precede decision_date")
        if not beneficiary or not str(beneficiary).strip():
            raise validation_error("beneficiary must be a non-empty string", field="beneficiary")

        key = loa.beneficiary_key(beneficiary)
        lag = loa.lag_days_between(decision_date, benefit_realized_date)
        with self._loa_lock:
            prior = list(self.registry.query(key))
            outcome = LaggedOutcome(
                decision_id=decision_id,
                decision_date=decision_date,
                beneficiary=beneficiary,
                benefit_realized_date=benefit_realized_date,
                lag_days=lag,
                risk_score=loa.score_outcome(lag, prior),
                detected_at=now,
                provenance=provenance,
                context=context,
            )
            self.registry.record(key, outcome)

        window_start = now - timedelta(days=self.config.loa_window_days)
        windowed = [o for o in prior + [outcome] if window_start <= o.detected_at <= now]
        pattern = loa.beneficiary_pattern(beneficiary, windowed, self.config)
        alert = self.alerts.evaluate(
            Layer.LOA,
            beneficiary,
            pattern.avg_risk_score,
            pattern.threshold,
            pattern.exceeded,
            provenance,
            now,
            dedup_window=timedelta(days=self.config.loa_dedup_days),
        )

        self._audit("outcome_tracked", ctx, id=outcome.outcome_id, beneficiary=beneficiary, **provenance.as_dict())
        self._audit_alert(alert)
        return Submission(
            event_id=outcome.outcome_id,
            recorded_at=now,
            alert=alert,
            extra={"lag_days": outcome.lag_days, "risk_score": outcome.risk_score},
        )

    def loa_patterns(self) -> List[loa.BeneficiaryPattern]:
        return loa.patterns(self.registry, self.config, self._now())

    # ---------------------------
    # OLI
    # ---------------------------

    def _observer_metric(self, observer_id: str, now: datetime) -> Optional[oli.ObserverMetric]:
        return oli.observer_metric(
            observer_id,
            list(self.registry.query(oli.observer_key(observer_id), end=now)),
            self.config,
            now,
            concurrent_audits=self.gate.concurrent_audits(observer_id),
            cooldown_until=self.gate.cooldown_until(observer_id, now),
        )

    def update_load(
        self,
        ctx: ActorContext,
        observer_id: str,
        audits_reviewed: int,
        correction_rate: float,
        contradiction_exposure: float,
        provenance: Provenance,
    ) -> Dict[str, Any]:
        now = self._now()
        session = ObserverSession(
            observer_id=observer_id,
            audits_reviewed=audits_reviewed,
            correction_rate=correction_rate,
            contradiction_exposure=contradiction_exposure,
            occurred_at=now,
            provenance=provenance,
        )
        self.registry.record(oli.observer_key(observer_id), session)

        metric = self._observer_metric(observer_id, now)
        cooldown: Optional[CooldownEntry] = None
        if metric.fatigue_risk is FatigueRisk.CRITICAL:
            cooldown, installed = self.gate.offer_cooldown(
                observer_id, oli.cooldown_hours(metric.fatigue_score, self.config), CooldownReason.CRITICAL_FATIGUE, now
            )
            metric = self._observer_metric(observer_id, now)
            if installed:
                self._audit("cooldown_installed", ctx, **cooldown.as_dict())

        alert = self.alerts.evaluate(
            Layer.OLI,
            observer_id,
            metric.fatigue_score,
            metric.threshold,
            metric.exceeded,
            provenance,
            now,
        )

        self._audit("load_updated", ctx, observer_id=observer_id, fatigue_score=metric.fatigue_score, **provenance.as_dict())
        self._audit_alert(alert)
        d = metric.as_dict()
        d["cooldown_required"] = cooldown is not None
        d["alert"] = alert.as_dict() if alert else None
        return d

    def record_break(
        self, ctx: ActorContext, observer_id: str, provenance: Provenance, taken_at: Optional[datetime] = None
    ) -> Submission:
        now = self._now()
        record = BreakRecord(observer_id=observer_id, taken_at=taken_at or now, provenance=provenance)
        self.registry.record(oli.observer_key(observer_id), record)
        self._audit("break_recorded", ctx, observer_id=observer_id, **provenance.as_dict())
        return Submission(event_id=record.break_id, recorded_at=now)

    def complete_audit(self, ctx: ActorContext, actor_id: Optional[str] = None) -> Dict[str, Any]:
        target = actor_id or ctx.actor_id
        remaining = self.gate.release(target)
        self._audit("audit_completed", ctx, target=target, concurrent_audits=remaining)
        return {"actor_id": target, "concurrent_audits": remaining}

    def install_cooldown(self, ctx: ActorContext, actor_id: str) -> CooldownEntry:
        """Manual cooldown; duration follows the actor's current fatigue score."""
        now = self._now()
        metric = self._observer_metric(actor_id, now)
        hours = oli.cooldown_hours(metric.fatigue_score if metric else 0, self.config)
        entry, installed = self.gate.offer_cooldown(actor_id, hours, CooldownReason.MANUAL, now)
        if installed:
            self._audit("cooldown_installed", ctx, **entry.as_dict())
        return entry

    def assign_tasks(self, ctx: ActorContext, actor_id: str, task_ids: Sequence[str]) -> Dict[str, Any]:
        if not actor_id:
            raise validation_error("actor_id required")
        tasks = self.work.assign(actor_id, [str(t) for t in task_ids])
        self._audit("tasks_assigned", ctx, target=actor_id, count=len(task_ids))
        return {"actor_id": actor_id, "pending": tasks}

    def redistribute(self, ctx: ActorContext) -> Dict[str, Any]:
        metrics = self.fatigue_status()
        high = sorted(m.observer_id for m in metrics if oli.is_high_risk(m.fatigue_risk))
        low = sorted(m.observer_id for m in metrics if m.fatigue_risk is FatigueRisk.LOW)
        moves = self.work.redistribute(high, low)
        self._audit("work_redistributed", ctx, moved=len(moves))
        return {
            "moved": [{"task_id": t, "from": s, "to": d} for t, s, d in moves],
            "count": len(moves),
            "pending": self.work.snapshot(),
        }

    def fatigue_status(self) -> List[oli.ObserverMetric]:
        now = self._now()
        found = [m for m in (self._observer_metric(o, now) for o in oli.known_observers(self.registry)) if m]
        found.sort(key=lambda m: (-m.fatigue_score, -m.audits_reviewed, m.observer_id))
        return found

    # ---------------------------
    # PDS
    # ---------------------------

    def _purpose(self, purpose_id: str) -> pds.PurposeRecord:
        record = pds.load_purpose(self.registry, purpose_id) if purpose_id else None
        if record is None:
            raise not_found("Purpose not found", purpose_id=purpose_id)
        return record

    def declare_purpose(
        self,
        ctx: ActorContext,
        original_intent: str,
        domain: str,
        provenance: Provenance,
        purpose_id: Optional[str] = None,
    ) -> SystemPurpose:
        now = self._now()
        purpose = SystemPurpose(
            purpose_id=purpose_id or _new_id(),
            original_intent=original_intent,
            declared_at=now,
            domain=domain,
            provenance=provenance,
        )
        if not pds.extract_keywords(original_intent):
            raise validation_error("original_intent must contain at least one keyword", field="original_intent")
        with self._pds_lock:
            if pds.load_purpose(self.registry, purpose.purpose_id) is not None:
                raise StateError(
                    code="ECHO_E_CONFLICT",
                    message="purpose already declared",
                    details={"purpose_id": purpose.purpose_id},
                )
            self.registry.record(pds.purpose_key(purpose.purpose_id), purpose)
        self._audit("purpose_declared", ctx, purpose_id=purpose.purpose_id, **provenance.as_dict())
        return purpose

    def track_usage(
        self,
        ctx: ActorContext,
        purpose_id: str,
        event_type: str,
        description: str,
        provenance: Provenance,
        occurred_at: Optional[datetime] = None,
    ) -> Submission:
        now = self._now()
        event = UsageEvent(
            purpose_id=purpose_id,
            event_type=event_type,
            description=description,
            occurred_at=occurred_at or now,
            provenance=provenance,
        )
        with self._pds_lock:
            record = self._purpose(purpose_id)
            if record.state is PurposeState.PAUSED:
                raise StateError(
                    code=ECHO_E_PURPOSE_PAUSED,
                    message="purpose is paused pending recommitment",
                    http_status=423,
                    details={"purpose_id": purpose_id},
                )
            self.registry.record(pds.usage_key(purpose_id), event)

            metric = pds.compute_drift(
                record, list(self.registry.query(pds.usage_key(purpose_id))), self.config, now
            )
            state = pds.next_state(record.state, metric.overall_drift, self.config)
            if state is not record.state:
                self.registry.record(
                    pds.purpose_key(purpose_id),
                    PurposeTransition(purpose_id=purpose_id, state=state, changed_at=now, provenance=provenance),
                )
                if state is PurposeState.PAUSED:
                    logger.warning("Purpose %s paused; drift=%.4f", purpose_id, metric.overall_drift)
            alert = self.alerts.evaluate(
                Layer.PDS, purpose_id, metric.overall_drift, metric.threshold, metric.exceeded, provenance, now
            )

        self._audit("usage_tracked", ctx, id=event.event_id, purpose_id=purpose_id, **provenance.as_dict())
        self._audit_alert(alert)
        return Submission(event_id=event.event_id, recorded_at=now, alert=alert, extra={"state": state.value})

    def drift_status(self, purpose_id: str) -> pds.DriftMetric:
        now = self._now()
        record = self._purpose(purpose_id)
        return pds.compute_drift(
            record,
            list(self.registry.query(pds.usage_key(purpose_id))),
            self.config,
            now,
        )

    def recommit(self, ctx: ActorContext, purpose_id: str, statement: str, provenance: Provenance) -> Dict[str, Any]:
        now = self._now()
        record = self._purpose(purpose_id)
        alignment = pds.recommitment_alignment(record.purpose.original_intent, statement)
        if alignment < self.config.recommitment_alignment:
            self._audit("recommitment_rejected", ctx, purpose_id=purpose_id, alignment=alignment)
            raise StateError(
                code=ECHO_E_RECOMMITMENT_REJECTED,
                message="Insufficient alignment with original intent",
                http_status=422,
                details={"alignment": alignment, "required": self.config.recommitment_alignment},
            )

        commitment = Recommitment(purpose_id=purpose_id, statement=statement, committed_at=now, provenance=provenance)
        with self._pds_lock:
            self.registry.record(pds.purpose_key(purpose_id), commitment)
            resolved = self.alerts.resolve_by_key(Layer.PDS, purpose_id, now)

        self._audit("recommitment_accepted", ctx, purpose_id=purpose_id, alignment=alignment, **provenance.as_dict())
        return {
            "purpose_id": purpose_id,
            "accepted": True,
            "alignment": alignment,
            "state": PurposeState.ACTIVE.value,
            "last_recommitment": now.isoformat(),
            "resolved_alerts": [a.alert_id for a in resolved],
        }

    # ---------------------------
    # Alerts & resilience
    # ---------------------------

    def list_alerts(self, layer: Optional[Layer] = None, open_only: bool = False) -> List[Alert]:
        return self.alerts.list(layer=layer, open_only=open_only)

    def resolve_alert(self, ctx: ActorContext, alert_id: str) -> Alert:
        alert = self.alerts.resolve(alert_id, self._now())
        self._audit("alert_resolved", ctx, alert_id=alert_id)
        return alert

    def layer_resilience(self) -> Dict[Layer, float]:
        now = self._now()
        dominance = rpl.compute_dominance(rpl.window_frames(self.registry, now, self.config), self.config, now)
        entropy = [qem.domain_entropy(self.registry, d, self.config, now) for d in qem.known_domains(self.registry)]
        observers = [m for m in self.fatigue_status() if oli.active_in_window(m, self.config, now)]
        drifts = [self.drift_status(p) for p in pds.known_purposes(self.registry)]
        return {
            Layer.RPL: rpl.resilience(dominance),
            Layer.QEM: qem.resilience(entropy),
            Layer.LOA: loa.resilience(self.registry, self.config, now),
            Layer.OLI: oli.resilience(observers),
            Layer.PDS: pds.resilience(drifts),
        }

    def resilience(self) -> ResilienceScore:
        return self.aggregator.aggregate(self.layer_resilience(), self._now())

    def health(self) -> Dict[str, Any]:
        try:
            self.registry.keys("")
            database = "connected"
        except StorageError as e:
            logger.warning("Health check storage failure: %s", e)
            database = "disconnected"
        return {
            "status": "healthy" if database == "connected" else "unhealthy",
            "timestamp": self._now().isoformat(),
            "database": database,
        }
