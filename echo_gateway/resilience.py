"""Resilience Aggregator.

Folds the five layer health scores (0-100) into one overall score with a
fixed weighted average. Scores round half-up, so 72.5 becomes 73.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Mapping, Optional

from . import metrics
from .config import EchoConfig
from .models import Layer

NEUTRAL_SCORE = 100


def round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


def clamp_score(value: float) -> int:
    return min(100, max(0, round_half_up(value)))


@dataclass(frozen=True)
class ResilienceScore:
    layer_scores: Mapping[Layer, int]
    overall: int
    calculated_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"overall_score": self.overall}
        for layer in Layer:
            d[f"{layer.value.lower()}_score"] = self.layer_scores[layer]
        d["calculated_at"] = self.calculated_at.isoformat()
        return d


class ResilienceAggregator:
    def __init__(self, config: Optional[EchoConfig] = None):
        self.config = config or EchoConfig()
        self._lock = threading.Lock()
        self._history: Deque[ResilienceScore] = deque(maxlen=self.config.resilience_history_max)

    def aggregate(self, raw_scores: Mapping[Layer, float], now: datetime) -> ResilienceScore:
        """Layers absent from ``raw_scores`` count as neutral (100)."""
        layer_scores = {layer: clamp_score(raw_scores.get(layer, NEUTRAL_SCORE)) for layer in Layer}
        weights = self.config.normalised_weights()
        overall = clamp_score(sum(weights[layer] * layer_scores[layer] for layer in Layer))
        score = ResilienceScore(layer_scores=layer_scores, overall=overall, calculated_at=now)
        with self._lock:
            self._history.append(score)
        metrics.set_resilience({l.value: s for l, s in layer_scores.items()}, overall)
        return score

    def latest(self) -> Optional[ResilienceScore]:
        with self._lock:
            return self._history[-1] if self._history else None

    def history(self) -> List[ResilienceScore]:
        with self._lock:
            return list(self._history)
