"""Storage circuit breaker.

The event registry is the only durable state the gateway has. When the
backing SQLite file becomes slow or locked, the store trips into LOCKDOWN
and every registry operation fails fast with :class:`StorageLockdownError`
until the window passes. A degraded store therefore surfaces as an error,
never as a neutral metric computed over missing data.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from . import metrics
from .errors import ECHO_E_LOCKDOWN_ACTIVE, StorageLockdownError

logger = logging.getLogger("echo_gateway.lockdown")


@dataclass
class CircuitBreakerConfig:
    """Configuration for DbCircuitBreaker.

    Environment variables:
    - ECHO_DB_LATENCY_THRESHOLD_MS: trip immediately on ops slower than this.
    - ECHO_DB_FAILURE_THRESHOLD: number of failures required to trip.
    - ECHO_DB_LOCKDOWN_SECONDS: duration of lockdown window.
    - ECHO_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect timeout.
    - ECHO_DB_ERROR_STRICT: if '0', only lock/busy OperationalErrors count.
    """

    latency_threshold_ms: int = 250
    failure_threshold: int = 2
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0
    error_strict: bool = True

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        def _get(name: str, caster, default):
            raw = os.getenv(name)
            if raw is None or not raw.strip():
                return default
            try:
                return caster(raw.strip())
            except ValueError:
                logger.warning("Invalid value for %s=%r (using %r)", name, raw, default)
                return default

        latency = _get("ECHO_DB_LATENCY_THRESHOLD_MS", int, cls.latency_threshold_ms)
        failures = _get("ECHO_DB_FAILURE_THRESHOLD", int, cls.failure_threshold)
        lockdown = _get("ECHO_DB_LOCKDOWN_SECONDS", int, cls.lockdown_seconds)
        timeout = _get("ECHO_DB_CONNECT_TIMEOUT_SECONDS", float, cls.connect_timeout_seconds)
        strict = os.getenv("ECHO_DB_ERROR_STRICT", "1").strip().lower() not in ("0", "false", "no")

        return cls(
            latency_threshold_ms=latency if latency >= 0 else cls.latency_threshold_ms,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
            error_strict=strict,
        )


class DbCircuitBreaker:
    """Counts storage failures and holds the store in LOCKDOWN once tripped."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig.from_env()
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._failure_count = 0
        self._lockdown_until: float = 0.0

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def is_lockdown_active(self) -> bool:
        return self._monotonic() < self._lockdown_until

    def raise_if_lockdown(self) -> None:
        if self._lockdown_until and not self.is_lockdown_active():
            self._lockdown_until = 0.0
            metrics.set_lockdown_active(False)
        if self.is_lockdown_active():
            raise StorageLockdownError(
                code=ECHO_E_LOCKDOWN_ACTIVE,
                message="event registry is in lockdown; retry later",
                details={"retry_after_seconds": max(1, int(self._lockdown_until - self._monotonic()))},
            )

    def _trip(self) -> None:
        self._lockdown_until = self._monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold
        logger.warning("Storage circuit breaker tripped; lockdown for %ss", self.config.lockdown_seconds)
        metrics.set_lockdown_active(True)

    def record_success(self) -> None:
        with self._lock:
            if self._failure_count > 0:
                self._failure_count -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms >= float(self.config.latency_threshold_ms):
            with self._lock:
                self._failure_count += 1
                self._trip()

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failure_count += 1
            if exc is not None:
                logger.warning("Storage failure %d/%d: %s", self._failure_count, self.config.failure_threshold, exc)
            if self._failure_count >= self.config.failure_threshold:
                self._trip()

    def counts_as_failure(self, message: str) -> bool:
        if self.config.error_strict:
            return True
        msg = (message or "").lower()
        return "database is locked" in msg or "database is busy" in msg
