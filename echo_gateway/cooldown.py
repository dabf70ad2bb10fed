"""Cooldown & Rate Gate.

Admission guard run before every submission that counts as new reasoning.
Checks short-circuit in a fixed order:

1. CooldownActive        - an installed cooldown has not yet expired
2. ConcurrencyExceeded   - the actor already holds its role's slot limit
3. ConfidenceCapExceeded - declared confidence above the configured cap
4. UnauthorizedScope     - simulated data from anyone but an admin

The gate exclusively owns per-actor concurrency counters and cooldown
entries. Check, write and slot increment run under one per-actor lock:

    with gate.admit(ctx, now, confidence_weight=0.6, data_scope=scope):
        registry.record(key, frame)

The slot is taken only if the block completes, so a failed append leaves
no trace.

With a registry, installed cooldowns are appended under
``cooldown/<actor_id>`` and the one ending last per actor is restored on
construction. Concurrency counters count in-flight work and start at zero.
"""

from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, Optional, Tuple

from . import metrics
from .config import EchoConfig
from .errors import (
    AdmissionError,
    concurrency_exceeded,
    confidence_cap_exceeded,
    cooldown_active,
    unauthorized_scope,
)
from .models import HIGHEST_ROLE, ActorContext, CooldownEntry, CooldownReason, DataScope
from .registry import EventRegistry

logger = logging.getLogger("echo_gateway.cooldown")

COOLDOWN_PREFIX = "cooldown/"


def cooldown_key(actor_id: str) -> str:
    return COOLDOWN_PREFIX + actor_id


@dataclass
class _ActorState:
    concurrent_audits: int = 0
    cooldown: Optional[CooldownEntry] = None


class CooldownGate:
    def __init__(self, config: Optional[EchoConfig] = None, registry: Optional[EventRegistry] = None):
        self.config = config or EchoConfig()
        self.registry = registry
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._states: Dict[str, _ActorState] = {}
        if registry is not None:
            self._load()

    def _load(self) -> None:
        for reg_key in self.registry.keys(COOLDOWN_PREFIX):
            entries = [e for e in self.registry.query(reg_key) if isinstance(e, CooldownEntry)]
            if entries:
                _, state = self._actor(reg_key[len(COOLDOWN_PREFIX):])
                state.cooldown = max(entries, key=lambda e: e.ends_at)

    def _actor(self, actor_id: str):
        with self._guard:
            lock = self._locks.get(actor_id)
            if lock is None:
                lock = self._locks[actor_id] = threading.Lock()
                self._states[actor_id] = _ActorState()
            return lock, self._states[actor_id]

    def _check(
        self,
        ctx: ActorContext,
        state: _ActorState,
        now: datetime,
        confidence_weight: Optional[float],
        data_scope: Optional[DataScope],
    ) -> None:
        entry = state.cooldown
        if entry is not None and entry.is_active(now):
            remaining = math.ceil((entry.ends_at - now).total_seconds() / 60.0)
            raise cooldown_active(remaining, entry.ends_at.isoformat())

        limit = self.config.role_limit(ctx.role)
        if state.concurrent_audits >= limit:
            raise concurrency_exceeded(state.concurrent_audits, limit, ctx.role.value)

        if confidence_weight is not None and float(confidence_weight) > self.config.confidence_cap:
            raise confidence_cap_exceeded(float(confidence_weight), self.config.confidence_cap)

        if data_scope is not None and DataScope(data_scope) is DataScope.SIMULATED and ctx.role is not HIGHEST_ROLE:
            raise unauthorized_scope(ctx.role.value)

    @contextmanager
    def admit(
        self,
        ctx: ActorContext,
        now: datetime,
        confidence_weight: Optional[float] = None,
        data_scope: Optional[DataScope] = None,
    ) -> Iterator[None]:
        lock, state = self._actor(ctx.actor_id)
        with lock:
            try:
                self._check(ctx, state, now, confidence_weight, data_scope)
            except AdmissionError as e:
                metrics.record_admission("rejected", e.kind)
                logger.warning("Admission rejected actor=%s kind=%s", ctx.actor_id, e.kind)
                raise
            yield
            state.concurrent_audits += 1
        metrics.record_admission("admitted")

    def release(self, actor_id: str) -> int:
        """Free one concurrent slot; returns the remaining count (never below 0)."""
        lock, state = self._actor(actor_id)
        with lock:
            if state.concurrent_audits > 0:
                state.concurrent_audits -= 1
            return state.concurrent_audits

    def offer_cooldown(
        self, actor_id: str, duration_hours: int, reason: CooldownReason, now: datetime
    ) -> Tuple[CooldownEntry, bool]:
        """Install a cooldown unless an active one ends at or after it.

        Returns the entry in force and whether this call installed it.
        """
        entry = CooldownEntry(actor_id=actor_id, start_time=now, duration_hours=int(duration_hours), reason=reason)
        lock, state = self._actor(actor_id)
        with lock:
            current = state.cooldown
            if current is not None and current.is_active(now) and current.ends_at >= entry.ends_at:
                return current, False
            if self.registry is not None:
                self.registry.record(cooldown_key(actor_id), entry)
            state.cooldown = entry
        metrics.record_cooldown(reason.value)
        logger.info("Cooldown installed actor=%s hours=%s reason=%s", actor_id, duration_hours, reason.value)
        return entry, True

    def install_cooldown(
        self, actor_id: str, duration_hours: int, reason: CooldownReason, now: datetime
    ) -> CooldownEntry:
        """Install a cooldown. An active one is replaced only by one ending later."""
        return self.offer_cooldown(actor_id, duration_hours, reason, now)[0]

    def cooldown_until(self, actor_id: str, now: datetime) -> Optional[datetime]:
        lock, state = self._actor(actor_id)
        with lock:
            entry = state.cooldown
            return entry.ends_at if entry is not None and entry.is_active(now) else None

    def active_cooldown(self, actor_id: str, now: datetime) -> Optional[CooldownEntry]:
        lock, state = self._actor(actor_id)
        with lock:
            entry = state.cooldown
            return entry if entry is not None and entry.is_active(now) else None

    def concurrent_audits(self, actor_id: str) -> int:
        lock, state = self._actor(actor_id)
        with lock:
            return state.concurrent_audits
