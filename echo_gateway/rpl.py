"""RPL: reasoning provenance / framework dominance.

Dominance is the share of summed confidence weight held by the single
heaviest framework inside the rolling window. A dominant framework queues
up to two alternatives for forced rotation.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence

from .config import EchoConfig
from .models import ReasoningFrame, Severity
from .registry import EventRegistry

RPL_KEY = "rpl/frames"

# Alternatives queued per dominance alert.
ROTATION_BATCH = 2


@dataclass(frozen=True)
class FrameworkUsage:
    framework: str
    weight: float
    percentage: float
    usage_count: int
    last_used: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "framework": self.framework,
            "weight": self.weight,
            "percentage": self.percentage,
            "usage_count": self.usage_count,
            "last_used": self.last_used.isoformat(),
        }


@dataclass(frozen=True)
class DominanceMetric:
    dominant_framework: Optional[str]
    dominance: float
    threshold: float
    exceeded: bool
    severity: Severity
    total_weight: float
    frame_count: int
    distribution: Sequence[FrameworkUsage]
    calculated_at: datetime

    @property
    def magnitude(self) -> float:
        return self.dominance

    def as_dict(self) -> Dict[str, Any]:
        return {
            "magnitude": self.dominance,
            "threshold": self.threshold,
            "exceeded": self.exceeded,
            "dominant_framework": self.dominant_framework,
            "severity": self.severity.value,
            "total_weight": self.total_weight,
            "frame_count": self.frame_count,
            "dominance": [u.as_dict() for u in self.distribution],
            "calculated_at": self.calculated_at.isoformat(),
        }


def window_frames(registry: EventRegistry, now: datetime, config: EchoConfig) -> List[ReasoningFrame]:
    """Frames used in the last ``rpl_window_days``, or the last
    ``rpl_window_decisions`` frames overall, whichever set is larger."""
    every = sorted(registry.query(RPL_KEY, end=now), key=lambda f: f.last_used)
    cutoff = now - timedelta(days=config.rpl_window_days)
    recent = [f for f in every if f.last_used >= cutoff]
    tail = every[-config.rpl_window_decisions:]
    return recent if len(recent) >= len(tail) else tail


def framework_distribution(frames: Iterable[ReasoningFrame]) -> List[FrameworkUsage]:
    weights: Dict[str, float] = {}
    counts: Dict[str, int] = {}
    last: Dict[str, datetime] = {}
    for f in frames:
        weights[f.framework] = weights.get(f.framework, 0.0) + f.confidence_weight
        counts[f.framework] = counts.get(f.framework, 0) + 1
        if f.framework not in last or f.last_used > last[f.framework]:
            last[f.framework] = f.last_used
    total = sum(weights.values())
    usage = [
        FrameworkUsage(
            framework=name,
            weight=w,
            percentage=(w / total) * 100.0 if total > 0 else 0.0,
            usage_count=counts[name],
            last_used=last[name],
        )
        for name, w in weights.items()
    ]
    usage.sort(key=lambda u: (-u.weight, u.framework))
    return usage


def severity_for(dominance: float, config: EchoConfig) -> Severity:
    if dominance > config.dominance_high_threshold:
        return Severity.HIGH
    if dominance > config.dominance_medium_threshold:
        return Severity.MEDIUM
    return Severity.LOW


def compute_dominance(frames: Sequence[ReasoningFrame], config: EchoConfig, now: datetime) -> DominanceMetric:
    distribution = framework_distribution(frames)
    total = sum(u.weight for u in distribution)
    if total <= 0:
        dominant, dominance = None, 0.0
    else:
        top = distribution[0]
        dominant, dominance = top.framework, top.weight / total

    exceeded = dominance > config.dominance_threshold
    return DominanceMetric(
        dominant_framework=dominant,
        dominance=dominance,
        threshold=config.dominance_threshold,
        exceeded=exceeded,
        severity=severity_for(dominance, config) if exceeded else Severity.LOW,
        total_weight=total,
        frame_count=len(frames),
        distribution=tuple(distribution),
        calculated_at=now,
    )


def resilience(metric: DominanceMetric) -> float:
    return 100.0 * (1.0 - metric.dominance)


class RotationQueue:
    """FIFO of framework names to rotate to. Unbounded unless ``maxlen`` is set."""

    def __init__(self, frameworks: Sequence[str], maxlen: Optional[int] = None):
        self.frameworks = tuple(frameworks)
        self._lock = threading.Lock()
        self._queue: Deque[str] = deque(maxlen=maxlen)

    def alternatives(self, dominant: str) -> List[str]:
        return [f for f in self.frameworks if f != dominant]

    def enqueue_for(self, dominant: str) -> List[str]:
        picked = self.alternatives(dominant)[:ROTATION_BATCH]
        with self._lock:
            self._queue.extend(picked)
        return picked

    def pop(self) -> Optional[str]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def snapshot(self) -> List[str]:
        with self._lock:
            return list(self._queue)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
