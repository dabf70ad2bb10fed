"""QEM: question entropy gap.

Compares the weekly question rate of a domain in the current window
against the rate in the preceding historical window. A sharp drop means
questions stopped being asked.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Sequence, Tuple

from .config import EchoConfig
from .models import Question, Severity
from .registry import EventRegistry

QEM_PREFIX = "qem/"


DOMAIN_TEMPLATES: Dict[str, Tuple[str, ...]] = {
    "vendor-oversight": (
        "Who audits the auditors?",
        "What conflicts of interest exist in vendor selection?",
        "How are vendor performance metrics independently verified?",
        "What happens when vendors fail to meet SLAs?",
    ),
    "financial-controls": (
        "Who has override authority for financial controls?",
        "How often are override logs reviewed?",
        "What triggers an independent financial audit?",
        "Who benefits from budget reallocations?",
    ),
    "policy-compliance": (
        "Who determines when policies can be waived?",
        "How are policy exceptions documented?",
        "What percentage of operations have policy waivers?",
        "Who reviews waiver justifications?",
    ),
}

FALLBACK_QUESTIONS: Tuple[str, ...] = (
    "What questions should we be asking about this domain?",
    "Who benefits from not asking certain questions?",
    "What assumptions are we not challenging?",
)


def domain_key(domain: str) -> str:
    return QEM_PREFIX + domain


@dataclass(frozen=True)
class EntropyMetric:
    domain: str
    historical_count: int
    current_count: int
    historical_rate: float
    current_rate: float
    gap: float
    threshold: float
    exceeded: bool
    severity: Severity
    trend: str
    calculated_at: datetime

    @property
    def magnitude(self) -> float:
        return self.gap

    def as_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "magnitude": self.gap,
            "threshold": self.threshold,
            "exceeded": self.exceeded,
            "historical_count": self.historical_count,
            "current_count": self.current_count,
            "historical_rate": self.historical_rate,
            "current_rate": self.current_rate,
            "severity": self.severity.value,
            "trend": self.trend,
            "calculated_at": self.calculated_at.isoformat(),
        }


def suggestions_for(domain: str) -> List[str]:
    return list(DOMAIN_TEMPLATES.get(domain, FALLBACK_QUESTIONS))


def compute_entropy(
    domain: str, questions: Sequence[Question], config: EchoConfig, now: datetime
) -> EntropyMetric:
    current_start = now - timedelta(days=config.qem_current_days)
    historical_start = now - timedelta(days=config.qem_historical_days)

    historical = sum(1 for q in questions if historical_start <= q.asked_at < current_start)
    current = sum(1 for q in questions if current_start <= q.asked_at <= now)

    h_rate = historical / ((config.qem_historical_days - config.qem_current_days) / 7.0)
    c_rate = current / (config.qem_current_days / 7.0)

    raw_gap = (h_rate - c_rate) / h_rate if h_rate > 0 else 0.0
    gap = max(0.0, raw_gap)
    exceeded = gap > config.entropy_gap_threshold

    if raw_gap > config.entropy_trend_band:
        trend = "DROPPING"
    elif raw_gap < -config.entropy_trend_band:
        trend = "RISING"
    else:
        trend = "STABLE"

    if not exceeded:
        severity = Severity.LOW
    elif gap > config.entropy_gap_high_threshold:
        severity = Severity.HIGH
    else:
        severity = Severity.MEDIUM

    return EntropyMetric(
        domain=domain,
        historical_count=historical,
        current_count=current,
        historical_rate=h_rate,
        current_rate=c_rate,
        gap=gap,
        threshold=config.entropy_gap_threshold,
        exceeded=exceeded,
        severity=severity,
        trend=trend,
        calculated_at=now,
    )


def domain_entropy(registry: EventRegistry, domain: str, config: EchoConfig, now: datetime) -> EntropyMetric:
    start = now - timedelta(days=config.qem_historical_days)
    return compute_entropy(domain, list(registry.query(domain_key(domain), start=start, end=now)), config, now)


def known_domains(registry: EventRegistry) -> List[str]:
    return [k[len(QEM_PREFIX):] for k in registry.keys(QEM_PREFIX)]


def resilience(metrics: Sequence[EntropyMetric]) -> float:
    if not metrics:
        return 100.0
    return 100.0 * (1.0 - sum(m.gap for m in metrics) / len(metrics))
