"""LOA: lagged outcome attribution.

Each outcome's risk score (0-10) is derived, never submitted. It combines
the benefit lag with how often and how regularly the same beneficiary has
benefited before. Only history *prior* to the outcome being scored counts.
"""

from __future__ import annotations

import math
import statistics
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Sequence

from .config import EchoConfig
from .models import LaggedOutcome, Severity
from .registry import EventRegistry

LOA_PREFIX = "loa/"

# Prior average lag above which consistency starts to count.
CONSISTENCY_MIN_AVG_LAG = 60.0


def beneficiary_key(beneficiary: str) -> str:
    return LOA_PREFIX + beneficiary


def lag_days_between(decision_date: datetime, benefit_realized_date: datetime) -> int:
    return math.floor((benefit_realized_date - decision_date).total_seconds() / 86400.0)


def _lag_points(lag_days: int) -> int:
    if lag_days > 180:
        return 4
    if lag_days > 90:
        return 3
    if lag_days > 30:
        return 2
    if lag_days > 7:
        return 1
    return 0


def _frequency_points(prior_count: int) -> int:
    if prior_count > 10:
        return 3
    if prior_count > 5:
        return 2
    if prior_count > 2:
        return 1
    return 0


def consistency(lags: Sequence[int]) -> float:
    """``max(0, 1 - pstdev/mean)``; 0 with fewer than two lags or a zero mean."""
    if len(lags) < 2:
        return 0.0
    avg = statistics.mean(lags)
    if avg <= 0:
        return 0.0
    return max(0.0, 1.0 - statistics.pstdev(lags) / avg)


def _consistency_points(value: float) -> int:
    if value > 0.8:
        return 3
    if value > 0.6:
        return 2
    if value > 0.4:
        return 1
    return 0


def score_outcome(lag_days: int, prior: Sequence[LaggedOutcome]) -> float:
    score = _lag_points(lag_days) + _frequency_points(len(prior))
    if prior:
        lags = [o.lag_days for o in prior]
        if statistics.mean(lags) > CONSISTENCY_MIN_AVG_LAG:
            score += _consistency_points(consistency(lags))
    return float(min(10, score))


def severity_for(avg_risk: float, config: EchoConfig) -> Severity:
    if avg_risk > config.beneficiary_risk_high_threshold:
        return Severity.HIGH
    if avg_risk > config.beneficiary_risk_medium_threshold:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass(frozen=True)
class BeneficiaryPattern:
    beneficiary: str
    occurrence_count: int
    avg_lag_days: float
    avg_risk_score: float
    last_benefit: datetime
    threshold: float
    exceeded: bool
    severity: Severity

    @property
    def magnitude(self) -> float:
        return self.avg_risk_score

    def as_dict(self) -> Dict[str, Any]:
        return {
            "beneficiary": self.beneficiary,
            "magnitude": self.avg_risk_score,
            "threshold": self.threshold,
            "exceeded": self.exceeded,
            "occurrence_count": self.occurrence_count,
            "avg_lag_days": self.avg_lag_days,
            "avg_risk_score": self.avg_risk_score,
            "last_benefit": self.last_benefit.isoformat(),
            "severity": self.severity.value,
        }


def beneficiary_pattern(beneficiary: str, outcomes: Sequence[LaggedOutcome], config: EchoConfig) -> BeneficiaryPattern:
    count = len(outcomes)
    avg_risk = sum(o.risk_score for o in outcomes) / count if count else 0.0
    exceeded = avg_risk > config.beneficiary_risk_threshold and count >= config.loa_min_decisions
    return BeneficiaryPattern(
        beneficiary=beneficiary,
        occurrence_count=count,
        avg_lag_days=sum(o.lag_days for o in outcomes) / count if count else 0.0,
        avg_risk_score=avg_risk,
        last_benefit=max(o.benefit_realized_date for o in outcomes) if outcomes else datetime.min,
        threshold=config.beneficiary_risk_threshold,
        exceeded=exceeded,
        severity=severity_for(avg_risk, config) if exceeded else Severity.LOW,
    )


def windowed_outcomes(registry: EventRegistry, config: EchoConfig, now: datetime) -> Dict[str, List[LaggedOutcome]]:
    start = now - timedelta(days=config.loa_window_days)
    out: Dict[str, List[LaggedOutcome]] = {}
    for key in registry.keys(LOA_PREFIX):
        events = list(registry.query(key, start=start, end=now))
        if events:
            out[key[len(LOA_PREFIX):]] = events
    return out


def patterns(registry: EventRegistry, config: EchoConfig, now: datetime) -> List[BeneficiaryPattern]:
    """Beneficiaries with enough windowed outcomes, highest average risk first."""
    found = [
        beneficiary_pattern(b, outcomes, config)
        for b, outcomes in windowed_outcomes(registry, config, now).items()
        if len(outcomes) >= config.loa_min_decisions
    ]
    found.sort(key=lambda p: (-p.avg_risk_score, p.beneficiary))
    return found


def resilience(registry: EventRegistry, config: EchoConfig, now: datetime) -> float:
    outcomes = [o for group in windowed_outcomes(registry, config, now).values() for o in group]
    if not outcomes:
        return 100.0
    high = sum(1 for o in outcomes if o.risk_score > config.beneficiary_risk_threshold)
    return max(0.0, 100.0 * (1.0 - high / len(outcomes)))
