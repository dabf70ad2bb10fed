"""Domain entities for the Echo gateway.

Every observation carries a :class:`Provenance` triple. Entities validate
themselves on construction, so an entity that exists has already passed
every invariant and may be recorded as-is.

Entities are frozen; the registry only ever appends them.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import ECHO_E_OUT_OF_RANGE, ECHO_E_PROVENANCE, validation_error

# Hard ceiling on any declared confidence. Configuration may lower it, never raise it.
MAX_CONFIDENCE_WEIGHT = 0.95


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_utc(ts: Any) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted) into aware UTC."""
    if isinstance(ts, datetime):
        return ensure_utc(ts)
    s = str(ts or "").strip()
    if not s:
        raise validation_error("timestamp required")
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(s))
    except ValueError:
        raise validation_error(f"invalid timestamp: {ts!r}") from None


class DataScope(str, Enum):
    INFERRED = "inferred"
    OBSERVED = "observed"
    SIMULATED = "simulated"


class EvidenceType(str, Enum):
    DIRECT = "direct"
    PROXY = "proxy"
    ESTIMATED = "estimated"


class Role(str, Enum):
    OBSERVER = "observer"
    ANALYST = "analyst"
    ADMIN = "admin"


# Highest privilege tier; the only role allowed to submit simulated data.
HIGHEST_ROLE = Role.ADMIN


class Layer(str, Enum):
    RPL = "RPL"
    QEM = "QEM"
    LOA = "LOA"
    OLI = "OLI"
    PDS = "PDS"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class FatigueRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CooldownReason(str, Enum):
    CRITICAL_FATIGUE = "critical_fatigue"
    HIGH_FATIGUE = "high_fatigue"
    MANUAL = "manual"


class PurposeState(str, Enum):
    ACTIVE = "ACTIVE"
    ALERTED = "ALERTED"
    PAUSED = "PAUSED"


def _parse_enum(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise validation_error(
            f"{field_name} must be one of: {allowed}",
            code=ECHO_E_PROVENANCE if field_name in ("data_scope", "evidence_type") else ECHO_E_OUT_OF_RANGE,
            field=field_name,
        ) from None


def parse_role(value: Any) -> Role:
    return _parse_enum(Role, value, "role")


@dataclass(frozen=True)
class Provenance:
    """The mandatory (data_scope, evidence_type, origin) triple."""

    data_scope: DataScope
    evidence_type: EvidenceType
    origin: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "data_scope", _parse_enum(DataScope, self.data_scope, "data_scope"))
        object.__setattr__(self, "evidence_type", _parse_enum(EvidenceType, self.evidence_type, "evidence_type"))
        if not isinstance(self.origin, str) or not self.origin.strip():
            raise validation_error("origin must be a non-empty string", code=ECHO_E_PROVENANCE, field="origin")

    @classmethod
    def parse(cls, data_scope: Any, evidence_type: Any, origin: Any) -> "Provenance":
        if data_scope is None or data_scope == "":
            raise validation_error("data_scope required", code=ECHO_E_PROVENANCE, field="data_scope")
        if evidence_type is None or evidence_type == "":
            raise validation_error("evidence_type required", code=ECHO_E_PROVENANCE, field="evidence_type")
        return cls(data_scope=data_scope, evidence_type=evidence_type, origin=origin)

    def as_dict(self) -> Dict[str, str]:
        return {
            "data_scope": self.data_scope.value,
            "evidence_type": self.evidence_type.value,
            "origin": self.origin,
        }


@dataclass(frozen=True)
class ActorContext:
    """Caller identity as resolved by the authentication collaborator."""

    actor_id: str
    role: Role

    def __post_init__(self) -> None:
        if not self.actor_id:
            raise validation_error("actor_id required")
        object.__setattr__(self, "role", parse_role(self.role))


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise validation_error(f"{field_name} must be a non-empty string", field=field_name)
    return value


def _require_fraction(value: float, field_name: str, upper: float = 1.0) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise validation_error(f"{field_name} must be a number", code=ECHO_E_OUT_OF_RANGE, field=field_name) from None
    if math.isnan(v) or v < 0.0 or v > upper:
        raise validation_error(
            f"{field_name} must be within [0, {upper}]", code=ECHO_E_OUT_OF_RANGE, field=field_name, provided=value
        )
    return v


def _require_scale(value: int, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value or not 1 <= value <= 5:
        raise validation_error(f"{field_name} must be an integer 1-5", code=ECHO_E_OUT_OF_RANGE, field=field_name)
    return int(value)


# ---------------------------
# Registry events
# ---------------------------


@dataclass(frozen=True)
class ReasoningFrame:
    framework: str
    confidence_weight: float
    actor_id: str
    decision_point: str
    provenance: Provenance
    first_used: datetime
    last_used: datetime
    context: Optional[str] = None
    alternatives_considered: Tuple[str, ...] = ()
    frame_id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        _require_text(self.framework, "framework")
        _require_fraction(self.confidence_weight, "confidence_weight", upper=MAX_CONFIDENCE_WEIGHT)
        object.__setattr__(self, "confidence_weight", float(self.confidence_weight))
        object.__setattr__(self, "first_used", ensure_utc(self.first_used))
        object.__setattr__(self, "last_used", ensure_utc(self.last_used))
        object.__setattr__(self, "alternatives_considered", tuple(self.alternatives_considered or ()))
        if self.last_used < self.first_used:
            raise validation_error("last_used must not precede first_used", code=ECHO_E_OUT_OF_RANGE)

    @property
    def timestamp(self) -> datetime:
        return self.last_used


@dataclass(frozen=True)
class Question:
    domain: str
    text: str
    asked_by: str
    asked_at: datetime
    complexity: int
    sensitivity: int
    provenance: Provenance
    answered: bool = False
    question_id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        _require_text(self.domain, "domain")
        _require_text(self.text, "text")
        object.__setattr__(self, "complexity", _require_scale(self.complexity, "complexity"))
        object.__setattr__(self, "sensitivity", _require_scale(self.sensitivity, "sensitivity"))
        object.__setattr__(self, "asked_at", ensure_utc(self.asked_at))

    @property
    def timestamp(self) -> datetime:
        return self.asked_at


@dataclass(frozen=True)
class LaggedOutcome:
    """A decision whose benefit arrived later. ``lag_days``/``risk_score`` are derived."""

    decision_id: str
    decision_date: datetime
    beneficiary: str
    benefit_realized_date: datetime
    lag_days: int
    risk_score: float
    detected_at: datetime
    provenance: Provenance
    context: Optional[str] = None
    outcome_id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        _require_text(self.decision_id, "decision_id")
        _require_text(self.beneficiary, "beneficiary")
        object.__setattr__(self, "decision_date", ensure_utc(self.decision_date))
        object.__setattr__(self, "benefit_realized_date", ensure_utc(self.benefit_realized_date))
        object.__setattr__(self, "detected_at", ensure_utc(self.detected_at))
        if self.benefit_realized_date < self.decision_date:
            raise validation_error(
                "benefit_realized_date must not precede decision_date", code=ECHO_E_OUT_OF_RANGE
            )
        if self.lag_days < 0:
            raise validation_error("lag_days must be >= 0", code=ECHO_E_OUT_OF_RANGE)
        if not 0.0 <= float(self.risk_score) <= 10.0:
            raise validation_error("risk_score must be within [0, 10]", code=ECHO_E_OUT_OF_RANGE)

    @property
    def timestamp(self) -> datetime:
        return self.detected_at


@dataclass(frozen=True)
class ObserverSession:
    """One workload report for an observer."""

    observer_id: str
    audits_reviewed: int
    correction_rate: float
    contradiction_exposure: float
    occurred_at: datetime
    provenance: Provenance

    def __post_init__(self) -> None:
        _require_text(self.observer_id, "observer_id")
        if isinstance(self.audits_reviewed, bool) or int(self.audits_reviewed) < 0:
            raise validation_error("audits_reviewed must be >= 0", code=ECHO_E_OUT_OF_RANGE)
        object.__setattr__(self, "audits_reviewed", int(self.audits_reviewed))
        object.__setattr__(self, "correction_rate", _require_fraction(self.correction_rate, "correction_rate"))
        object.__setattr__(
            self, "contradiction_exposure", _require_fraction(self.contradiction_exposure, "contradiction_exposure")
        )
        object.__setattr__(self, "occurred_at", ensure_utc(self.occurred_at))

    @property
    def timestamp(self) -> datetime:
        return self.occurred_at


@dataclass(frozen=True)
class BreakRecord:
    observer_id: str
    taken_at: datetime
    provenance: Provenance
    break_id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        _require_text(self.observer_id, "observer_id")
        object.__setattr__(self, "taken_at", ensure_utc(self.taken_at))

    @property
    def timestamp(self) -> datetime:
        return self.taken_at


@dataclass(frozen=True)
class SystemPurpose:
    purpose_id: str
    original_intent: str
    declared_at: datetime
    domain: str
    provenance: Provenance

    def __post_init__(self) -> None:
        _require_text(self.purpose_id, "purpose_id")
        _require_text(self.original_intent, "original_intent")
        _require_text(self.domain, "domain")
        object.__setattr__(self, "declared_at", ensure_utc(self.declared_at))

    @property
    def timestamp(self) -> datetime:
        return self.declared_at


@dataclass(frozen=True)
class Recommitment:
    purpose_id: str
    statement: str
    committed_at: datetime
    provenance: Provenance

    def __post_init__(self) -> None:
        _require_text(self.statement, "statement")
        object.__setattr__(self, "committed_at", ensure_utc(self.committed_at))

    @property
    def timestamp(self) -> datetime:
        return self.committed_at


@dataclass(frozen=True)
class UsageEvent:
    purpose_id: str
    event_type: str
    description: str
    occurred_at: datetime
    provenance: Provenance
    event_id: str = field(default_factory=_new_id)

    def __post_init__(self) -> None:
        _require_text(self.event_type, "event_type")
        _require_text(self.description, "description")
        object.__setattr__(self, "occurred_at", ensure_utc(self.occurred_at))

    @property
    def timestamp(self) -> datetime:
        return self.occurred_at


@dataclass(frozen=True)
class PurposeTransition:
    """Lifecycle change of a purpose caused by drift. Recommitments reset it to ACTIVE."""

    purpose_id: str
    state: PurposeState
    changed_at: datetime
    provenance: Provenance

    def __post_init__(self) -> None:
        object.__setattr__(self, "state", PurposeState(self.state))
        object.__setattr__(self, "changed_at", ensure_utc(self.changed_at))

    @property
    def timestamp(self) -> datetime:
        return self.changed_at


# ---------------------------
# Derived / owned records
# ---------------------------


@dataclass(frozen=True)
class Alert:
    """A threshold breach. Deliberately has no reason/cause/explanation field."""

    alert_id: str
    layer: Layer
    magnitude: float
    threshold: float
    detected_at: datetime
    provenance: Provenance
    resolved_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "layer", Layer(self.layer))
        object.__setattr__(self, "detected_at", parse_iso_utc(self.detected_at))
        if self.resolved_at is not None:
            object.__setattr__(self, "resolved_at", parse_iso_utc(self.resolved_at))

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    @property
    def timestamp(self) -> datetime:
        return self.detected_at

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.alert_id,
            "layer": self.layer.value,
            "magnitude": self.magnitude,
            "threshold": self.threshold,
            "detected_at": self.detected_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass(frozen=True)
class AlertResolution:
    alert_id: str
    resolved_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "resolved_at", ensure_utc(self.resolved_at))

    @property
    def timestamp(self) -> datetime:
        return self.resolved_at


@dataclass(frozen=True)
class CooldownEntry:
    actor_id: str
    start_time: datetime
    duration_hours: int
    reason: CooldownReason

    def __post_init__(self) -> None:
        object.__setattr__(self, "start_time", ensure_utc(self.start_time))
        object.__setattr__(self, "duration_hours", int(self.duration_hours))
        object.__setattr__(self, "reason", CooldownReason(self.reason))

    @property
    def timestamp(self) -> datetime:
        return self.start_time

    @property
    def ends_at(self) -> datetime:
        return self.start_time + timedelta(hours=self.duration_hours)

    def is_active(self, now: datetime) -> bool:
        return now < self.ends_at

    def as_dict(self) -> Dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "start_time": self.start_time.isoformat(),
            "duration_hours": self.duration_hours,
            "reason": self.reason.value,
            "cooldown_until": self.ends_at.isoformat(),
        }
