"""Alert Engine: generic threshold evaluator with deduplication.

Alerts are keyed by a dedup key chosen by the caller (one per layer
subject, e.g. ``"LOA:<beneficiary>"``). Two dedup modes:

- with a window: suppress when an alert with the same key was detected
  within the window, resolved or not
- without a window: suppress while an alert with the same key is open

Alerts are never auto-resolved by recomputation; only :meth:`resolve` and
:meth:`resolve_by_key` close them.

With a registry, every emitted alert and every resolution is appended under
``alerts/<dedup key>`` and replayed on construction, so open alerts and
dedup windows outlive the process.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from . import metrics
from .errors import not_found
from .models import Alert, AlertResolution, Layer, Provenance, _new_id
from .registry import EventRegistry

logger = logging.getLogger("echo_gateway.alerts")

ALERT_PREFIX = "alerts/"


def dedup_key(layer: Layer, subject: str) -> str:
    return f"{Layer(layer).value}:{subject}"


def alert_key(key: str) -> str:
    return ALERT_PREFIX + key


class AlertEngine:
    def __init__(self, max_alerts: int = 10000, registry: Optional[EventRegistry] = None):
        self._lock = threading.Lock()
        self._alerts: Dict[str, Alert] = {}
        self._keys: Dict[str, str] = {}
        self._max_alerts = max(1, int(max_alerts))
        self.registry = registry
        if registry is not None:
            self._load()

    def _load(self) -> None:
        for reg_key in self.registry.keys(ALERT_PREFIX):
            key = reg_key[len(ALERT_PREFIX):]
            for event in self.registry.query(reg_key):
                if isinstance(event, Alert):
                    self._alerts[event.alert_id] = event
                    self._keys[event.alert_id] = key
                elif isinstance(event, AlertResolution) and event.alert_id in self._alerts:
                    self._alerts[event.alert_id] = replace(self._alerts[event.alert_id], resolved_at=event.resolved_at)
        self._evict()
        if self._alerts:
            open_count = sum(1 for a in self._alerts.values() if a.is_open)
            logger.info("Restored %d alert(s), %d open", len(self._alerts), open_count)

    def _close(self, alert_id: str, now: datetime) -> Alert:
        # Caller holds self._lock.
        if self.registry is not None:
            self.registry.record(alert_key(self._keys[alert_id]), AlertResolution(alert_id=alert_id, resolved_at=now))
        alert = replace(self._alerts[alert_id], resolved_at=now)
        self._alerts[alert_id] = alert
        return alert

    def evaluate(
        self,
        layer: Layer,
        subject: str,
        magnitude: float,
        threshold: float,
        exceeded: bool,
        provenance: Provenance,
        now: datetime,
        dedup_window: Optional[timedelta] = None,
    ) -> Optional[Alert]:
        """Emit an alert when ``exceeded`` and no duplicate is live. Returns the new alert or None."""
        if not exceeded:
            return None
        layer = Layer(layer)
        key = dedup_key(layer, subject)
        with self._lock:
            if self._is_duplicate(key, now, dedup_window):
                metrics.record_alert(layer.value, "suppressed")
                logger.debug("Suppressed duplicate %s alert for %s", layer.value, key)
                return None
            alert = Alert(
                alert_id=_new_id(),
                layer=layer,
                magnitude=float(magnitude),
                threshold=float(threshold),
                detected_at=now,
                provenance=provenance,
            )
            if self.registry is not None:
                self.registry.record(alert_key(key), alert)
            self._alerts[alert.alert_id] = alert
            self._keys[alert.alert_id] = key
            self._evict()
        metrics.record_alert(layer.value, "emitted")
        logger.info("%s alert magnitude=%.4f threshold=%.4f", layer.value, alert.magnitude, alert.threshold)
        return alert

    def _is_duplicate(self, key: str, now: datetime, window: Optional[timedelta]) -> bool:
        for alert_id, k in self._keys.items():
            if k != key:
                continue
            alert = self._alerts[alert_id]
            if window is not None:
                if alert.detected_at > now - window:
                    return True
            elif alert.is_open:
                return True
        return False

    def _evict(self) -> None:
        # Drop the oldest resolved alerts first; open alerts are kept.
        if len(self._alerts) <= self._max_alerts:
            return
        for alert_id in [a.alert_id for a in self._alerts.values() if not a.is_open]:
            if len(self._alerts) <= self._max_alerts:
                break
            del self._alerts[alert_id]
            del self._keys[alert_id]

    def resolve(self, alert_id: str, now: datetime) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise not_found(f"unknown alert: {alert_id}", alert_id=alert_id)
            if alert.is_open:
                alert = self._close(alert_id, now)
        return alert

    def resolve_by_key(self, layer: Layer, subject: str, now: datetime) -> List[Alert]:
        key = dedup_key(layer, subject)
        resolved: List[Alert] = []
        with self._lock:
            for alert_id, k in list(self._keys.items()):
                if k == key and self._alerts[alert_id].is_open:
                    resolved.append(self._close(alert_id, now))
        if resolved:
            logger.info("Resolved %d open alert(s) for %s", len(resolved), key)
        return resolved

    def list(self, layer: Optional[Layer] = None, open_only: bool = False) -> List[Alert]:
        with self._lock:
            alerts = list(self._alerts.values())
        if layer is not None:
            alerts = [a for a in alerts if a.layer is Layer(layer)]
        if open_only:
            alerts = [a for a in alerts if a.is_open]
        alerts.sort(key=lambda a: a.detected_at, reverse=True)
        return alerts

    def get(self, alert_id: str) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
        if alert is None:
            raise not_found(f"unknown alert: {alert_id}", alert_id=alert_id)
        return alert
