"""OLI: observer load index.

An observer's fatigue score (integer 0-10) is derived from the latest
workload session plus the time since the last recorded break. The tier
drives cooldowns (through the gate) and work redistribution.
"""

from __future__ import annotations

import itertools
import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import EchoConfig
from .models import BreakRecord, FatigueRisk, ObserverSession
from .registry import EventRegistry

logger = logging.getLogger("echo_gateway.oli")

OLI_PREFIX = "oli/"

# Assumed hours since break for an observer with no break on record.
DEFAULT_HOURS_SINCE_BREAK = 72.0

# Share of a high-risk actor's pending work that is moved.
REDISTRIBUTION_SHARE = 0.5


def observer_key(observer_id: str) -> str:
    return OLI_PREFIX + observer_id


def fatigue_score(
    audits_reviewed: int,
    correction_rate: float,
    contradiction_exposure: float,
    hours_since_break: Optional[float],
) -> int:
    score = 0

    if audits_reviewed > 20:
        score += 3
    elif audits_reviewed > 10:
        score += 2
    elif audits_reviewed > 5:
        score += 1

    if correction_rate > 0.5:
        score += 3
    elif correction_rate > 0.25:
        score += 2
    elif correction_rate > 0.1:
        score += 1

    if contradiction_exposure > 0.7:
        score += 2
    elif contradiction_exposure > 0.4:
        score += 1

    hours = DEFAULT_HOURS_SINCE_BREAK if hours_since_break is None else hours_since_break
    if hours > 48:
        score += 2
    elif hours > 24:
        score += 1

    return min(10, score)


def fatigue_tier(score: int, config: EchoConfig) -> FatigueRisk:
    if score >= config.fatigue_critical_threshold:
        return FatigueRisk.CRITICAL
    if score >= config.fatigue_high_threshold:
        return FatigueRisk.HIGH
    if score >= 4:
        return FatigueRisk.MEDIUM
    return FatigueRisk.LOW


def cooldown_hours(score: int, config: EchoConfig) -> int:
    if score >= config.fatigue_critical_threshold:
        return 72
    if score >= config.fatigue_high_threshold:
        return 48
    return 24


def is_high_risk(tier: FatigueRisk) -> bool:
    return tier in (FatigueRisk.HIGH, FatigueRisk.CRITICAL)


@dataclass(frozen=True)
class ObserverMetric:
    """Derived per-observer view. ``fatigue_risk`` is never set directly."""

    observer_id: str
    audits_reviewed: int
    correction_rate: float
    contradiction_exposure: float
    hours_since_break: Optional[float]
    fatigue_score: int
    fatigue_risk: FatigueRisk
    threshold: int
    concurrent_audits: int
    cooldown_until: Optional[datetime]
    last_activity: datetime
    calculated_at: datetime

    @property
    def magnitude(self) -> float:
        return float(self.fatigue_score)

    @property
    def exceeded(self) -> bool:
        return self.fatigue_score >= self.threshold

    def as_dict(self) -> Dict[str, Any]:
        return {
            "observer_id": self.observer_id,
            "magnitude": self.fatigue_score,
            "threshold": self.threshold,
            "exceeded": self.exceeded,
            "audits_reviewed": self.audits_reviewed,
            "correction_rate": self.correction_rate,
            "contradiction_exposure": self.contradiction_exposure,
            "hours_since_break": self.hours_since_break,
            "fatigue_score": self.fatigue_score,
            "fatigue_risk": self.fatigue_risk.value,
            "concurrent_audits": self.concurrent_audits,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "last_activity": self.last_activity.isoformat(),
            "calculated_at": self.calculated_at.isoformat(),
        }


def observer_metric(
    observer_id: str,
    events: Sequence[Any],
    config: EchoConfig,
    now: datetime,
    concurrent_audits: int = 0,
    cooldown_until: Optional[datetime] = None,
) -> Optional[ObserverMetric]:
    """Build the view from an observer's events; None when no session exists yet."""
    sessions = [e for e in events if isinstance(e, ObserverSession) and e.occurred_at <= now]
    if not sessions:
        return None
    latest = max(sessions, key=lambda s: s.occurred_at)
    breaks = [e.taken_at for e in events if isinstance(e, BreakRecord) and e.taken_at <= now]
    hours = (now - max(breaks)).total_seconds() / 3600.0 if breaks else None

    score = fatigue_score(latest.audits_reviewed, latest.correction_rate, latest.contradiction_exposure, hours)
    return ObserverMetric(
        observer_id=observer_id,
        audits_reviewed=latest.audits_reviewed,
        correction_rate=latest.correction_rate,
        contradiction_exposure=latest.contradiction_exposure,
        hours_since_break=hours,
        fatigue_score=score,
        fatigue_risk=fatigue_tier(score, config),
        threshold=config.fatigue_high_threshold,
        concurrent_audits=concurrent_audits,
        cooldown_until=cooldown_until,
        last_activity=max([latest.occurred_at] + breaks),
        calculated_at=now,
    )


def known_observers(registry: EventRegistry) -> List[str]:
    return [k[len(OLI_PREFIX):] for k in registry.keys(OLI_PREFIX)]


def active_in_window(metric: ObserverMetric, config: EchoConfig, now: datetime) -> bool:
    return metric.last_activity >= now - timedelta(days=config.oli_window_days)


def resilience(metrics: Sequence[ObserverMetric]) -> float:
    if not metrics:
        return 100.0
    pct_high = 100.0 * sum(1 for m in metrics if is_high_risk(m.fatigue_risk)) / len(metrics)
    return max(0.0, 100.0 - 2.0 * pct_high)


class PendingWorkBook:
    """In-process ledger of pending task ids per actor."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: Dict[str, List[str]] = {}

    def assign(self, actor_id: str, task_ids: Sequence[str]) -> List[str]:
        with self._lock:
            tasks = self._tasks.setdefault(actor_id, [])
            tasks.extend(t for t in task_ids if t not in tasks)
            return list(tasks)

    def pending(self, actor_id: str) -> List[str]:
        with self._lock:
            return list(self._tasks.get(actor_id, ()))

    def snapshot(self) -> Dict[str, List[str]]:
        with self._lock:
            return {a: list(t) for a, t in self._tasks.items() if t}

    def redistribute(self, high_risk: Sequence[str], low_risk: Sequence[str]) -> List[Tuple[str, str, str]]:
        """Move ``floor(50%)`` of each high-risk actor's tasks round-robin to
        the low-risk actors. Returns ``(task_id, from, to)`` moves."""
        targets = [a for a in low_risk if a not in high_risk]
        if not targets:
            return []
        moves: List[Tuple[str, str, str]] = []
        rotation = itertools.cycle(targets)
        with self._lock:
            for source in high_risk:
                tasks = self._tasks.get(source, [])
                n = math.floor(len(tasks) * REDISTRIBUTION_SHARE)
                moving, self._tasks[source] = tasks[:n], tasks[n:]
                for task_id in moving:
                    target = next(rotation)
                    self._tasks.setdefault(target, []).append(task_id)
                    moves.append((task_id, source, target))
        if moves:
            logger.info("Redistributed %d pending task(s) to %d low-risk actor(s)", len(moves), len(targets))
        return moves
