"""PDS: purpose drift sentinel.

Drift is a keyword-overlap approximation: how far recent usage
descriptions wander from the declared intent, blended with how much the
mix of event types has shifted. Sustained drift pauses the purpose until
an aligned recommitment is accepted.

The lifecycle state is not held in memory. Drift-driven transitions are
appended under the purpose key next to the declaration and recommitments,
and :func:`load_purpose` folds them in order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from .config import EchoConfig
from .models import PurposeState, PurposeTransition, Recommitment, SystemPurpose, UsageEvent
from .registry import EventRegistry

PDS_PREFIX = "pds/"

RECENT_EVENTS = 20
SHIFT_SAMPLE = 10
SEMANTIC_WEIGHT = 0.7
SHIFT_WEIGHT = 0.3


def purpose_key(purpose_id: str) -> str:
    return f"{PDS_PREFIX}{purpose_id}/purpose"


def usage_key(purpose_id: str) -> str:
    return f"{PDS_PREFIX}{purpose_id}/usage"


def extract_keywords(text: str) -> FrozenSet[str]:
    return frozenset(w for w in re.split(r"\W+", (text or "").lower()) if len(w) > 3)


def overlap_ratio(reference: FrozenSet[str], other: FrozenSet[str]) -> float:
    if not reference:
        return 0.0
    return len(reference & other) / len(reference)


def semantic_divergence(intent: FrozenSet[str], events: Sequence[UsageEvent]) -> float:
    recent = list(events)[-RECENT_EVENTS:]
    if not recent:
        return 0.0
    total = 0.0
    for e in recent:
        if intent:
            total += 1.0 - overlap_ratio(intent, extract_keywords(e.description))
    return total / len(recent)


def usage_pattern_shift(events: Sequence[UsageEvent]) -> float:
    """``1 - Jaccard`` of event types, first ten ever against the last ten."""
    if len(events) < 2 * SHIFT_SAMPLE:
        return 0.0
    early = {e.event_type for e in events[:SHIFT_SAMPLE]}
    late = {e.event_type for e in events[-SHIFT_SAMPLE:]}
    union = early | late
    return 1.0 - len(early & late) / len(union) if union else 0.0


def trend_for(drift: float, config: EchoConfig) -> str:
    if drift > config.drift_trend_critical:
        return "CRITICAL"
    if drift > config.drift_trend_drifting:
        return "DRIFTING"
    return "STABLE"


@dataclass(frozen=True)
class DriftMetric:
    purpose_id: str
    semantic_divergence: float
    usage_pattern_shift: float
    overall_drift: float
    threshold: float
    exceeded: bool
    trend: str
    event_count: int
    state: PurposeState
    last_recommitment: datetime
    calculated_at: datetime

    @property
    def magnitude(self) -> float:
        return self.overall_drift

    def as_dict(self) -> Dict[str, Any]:
        return {
            "purpose_id": self.purpose_id,
            "magnitude": self.overall_drift,
            "threshold": self.threshold,
            "exceeded": self.exceeded,
            "semantic_divergence": self.semantic_divergence,
            "usage_pattern_shift": self.usage_pattern_shift,
            "overall_drift": self.overall_drift,
            "trend": self.trend,
            "event_count": self.event_count,
            "state": self.state.value,
            "last_recommitment": self.last_recommitment.isoformat(),
            "calculated_at": self.calculated_at.isoformat(),
        }


@dataclass(frozen=True)
class PurposeRecord:
    purpose: SystemPurpose
    last_recommitment: datetime
    state: PurposeState = PurposeState.ACTIVE


def load_purpose(registry: EventRegistry, purpose_id: str) -> Optional[PurposeRecord]:
    declared: Optional[SystemPurpose] = None
    last = None
    state = PurposeState.ACTIVE
    for e in registry.query(purpose_key(purpose_id)):
        if isinstance(e, SystemPurpose) and declared is None:
            declared = e
        elif isinstance(e, PurposeTransition):
            state = e.state
        elif isinstance(e, Recommitment):
            last = e.committed_at if last is None else max(last, e.committed_at)
            state = PurposeState.ACTIVE
    if declared is None:
        return None
    return PurposeRecord(
        purpose=declared,
        last_recommitment=max(declared.declared_at, last or declared.declared_at),
        state=state,
    )


def known_purposes(registry: EventRegistry) -> List[str]:
    suffix = "/purpose"
    return [k[len(PDS_PREFIX):-len(suffix)] for k in registry.keys(PDS_PREFIX) if k.endswith(suffix)]


def compute_drift(
    record: PurposeRecord,
    all_events: Sequence[UsageEvent],
    config: EchoConfig,
    now: datetime,
) -> DriftMetric:
    ordered = sorted((e for e in all_events if e.occurred_at <= now), key=lambda e: e.occurred_at)
    window_start = now - timedelta(days=config.pds_window_days)
    windowed = [e for e in ordered if e.occurred_at >= window_start]

    if len(windowed) < config.pds_min_events:
        semantic = shift = overall = 0.0
    else:
        semantic = semantic_divergence(extract_keywords(record.purpose.original_intent), windowed)
        shift = usage_pattern_shift(ordered)
        overall = SEMANTIC_WEIGHT * semantic + SHIFT_WEIGHT * shift

    return DriftMetric(
        purpose_id=record.purpose.purpose_id,
        semantic_divergence=semantic,
        usage_pattern_shift=shift,
        overall_drift=overall,
        threshold=config.drift_alert_threshold,
        exceeded=overall > config.drift_alert_threshold,
        trend=trend_for(overall, config),
        event_count=len(windowed),
        state=record.state,
        last_recommitment=record.last_recommitment,
        calculated_at=now,
    )


def next_state(current: PurposeState, drift: float, config: EchoConfig) -> PurposeState:
    """Drift only ever escalates the state; only a recommitment de-escalates it."""
    if current is PurposeState.PAUSED:
        return current
    if drift > config.drift_pause_threshold:
        return PurposeState.PAUSED
    if drift > config.drift_alert_threshold:
        return PurposeState.ALERTED
    return current


def recommitment_alignment(original_intent: str, statement: str) -> float:
    return overlap_ratio(extract_keywords(original_intent), extract_keywords(statement))


def resilience(metrics: Sequence[DriftMetric]) -> float:
    if not metrics:
        return 100.0
    return 100.0 * (1.0 - sum(m.overall_drift for m in metrics) / len(metrics))

