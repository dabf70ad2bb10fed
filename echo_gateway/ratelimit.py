"""Best-effort in-process request rate limiting.

A fixed-window counter per client key guards the HTTP surface (default 100
requests per 15 minutes). Per-process only; put a proxy limiter in front
for distributed deployments.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

_SPEC_RE = re.compile(r"^\s*(\d+)\s*/\s*(\d*)\s*([a-z]+)\s*$")

_UNIT_SECONDS = {
    "s": 1.0, "sec": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hour": 3600.0, "hours": 3600.0,
}


def parse_rate_limit(spec: str) -> Tuple[int, float]:
    """Parse a compact spec like '100/15m', '30/m' or '10/s'.

    Returns (max_requests, window_seconds).
    """
    m = _SPEC_RE.match((spec or "").lower())
    if not m:
        raise ValueError("invalid rate limit spec; expected like '100/15m' or '10/s'")
    n, mult, unit = int(m.group(1)), m.group(2), m.group(3)
    if unit not in _UNIT_SECONDS:
        raise ValueError(f"unsupported rate unit: {unit}")
    if n <= 0:
        raise ValueError("rate must be positive")
    window = _UNIT_SECONDS[unit] * (int(mult) if mult else 1)
    if window <= 0:
        raise ValueError("window must be positive")
    return n, window


@dataclass
class _Window:
    started: float
    count: int


class FixedWindowLimiter:
    """Keyed fixed-window limiter. ``allow`` returns (allowed, retry_after_seconds)."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        max_keys: int = 20000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests <= 0 or window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")
        self.max_requests = int(max_requests)
        self.window_seconds = float(window_seconds)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}

    @classmethod
    def from_spec(cls, spec: str, **kwargs) -> "FixedWindowLimiter":
        n, window = parse_rate_limit(spec)
        return cls(n, window, **kwargs)

    def allow(self, key: str) -> Tuple[bool, int]:
        key = key or "_anon"
        now = self._clock()
        with self._lock:
            w = self._windows.get(key)
            if w is None or now - w.started >= self.window_seconds:
                if w is None and len(self._windows) >= self._max_keys:
                    self._prune(now)
                    if len(self._windows) >= self._max_keys:
                        return False, int(self.window_seconds)
                w = self._windows[key] = _Window(started=now, count=0)
            if w.count >= self.max_requests:
                return False, max(1, int(w.started + self.window_seconds - now))
            w.count += 1
            return True, 0

    def _prune(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now - w.started >= self.window_seconds]
        for k in expired:
            del self._windows[k]
