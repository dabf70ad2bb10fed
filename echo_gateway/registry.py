"""Event Registry: append-only per-key storage of raw observations.

The registry holds no policy. Calculators read from it. The gateway appends
observations; the alert engine and the gate append their own state changes
so both survive a restart. Two backends are provided:

- :class:`InMemoryEventStore` (default; per-store lock makes append
  linearizable per key)
- :class:`SqliteEventStore` (WAL, JSON-encoded events, guarded by the
  storage circuit breaker)

A query returns an :class:`EventView`: lazy, finite and restartable. Each
iteration re-reads the store, so two passes over the same view observe every
append that completed in between, in insertion order.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, get_type_hints

from .errors import ECHO_E_STORAGE, StorageError, not_found, validation_error
from .lockdown import DbCircuitBreaker
from .models import (
    Alert,
    AlertResolution,
    BreakRecord,
    CooldownEntry,
    LaggedOutcome,
    ObserverSession,
    Provenance,
    PurposeTransition,
    Question,
    ReasoningFrame,
    Recommitment,
    SystemPurpose,
    UsageEvent,
    ensure_utc,
    parse_iso_utc,
)

logger = logging.getLogger("echo_gateway.registry")

EVENT_TYPES = {
    cls.__name__: cls
    for cls in (
        ReasoningFrame,
        Question,
        LaggedOutcome,
        ObserverSession,
        BreakRecord,
        SystemPurpose,
        Recommitment,
        UsageEvent,
        PurposeTransition,
        Alert,
        AlertResolution,
        CooldownEntry,
    )
}


def _ts_key(dt: datetime) -> str:
    """Fixed-width UTC timestamp; sorts lexicographically."""
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _in_range(ts: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and ts < start:
        return False
    if end is not None and ts > end:
        return False
    return True


# ---------------------------
# JSON codec (SQLite backend)
# ---------------------------


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Provenance):
        return value.as_dict()
    if isinstance(value, tuple):
        return [_encode_value(v) for v in value]
    return value


def encode_event(event: Any) -> str:
    kind = type(event).__name__
    if kind not in EVENT_TYPES:
        raise validation_error(f"unsupported event type: {kind}")
    data = {f.name: _encode_value(getattr(event, f.name)) for f in fields(event)}
    return json.dumps({"kind": kind, "data": data}, sort_keys=True, separators=(",", ":"))


def decode_event(payload: str) -> Any:
    obj = json.loads(payload)
    cls = EVENT_TYPES[obj["kind"]]
    hints = get_type_hints(cls)
    kwargs: Dict[str, Any] = {}
    for name, value in obj["data"].items():
        hint = hints.get(name)
        if hint is datetime and value is not None:
            value = parse_iso_utc(value)
        elif hint is Provenance:
            value = Provenance(**value)
        kwargs[name] = value
    return cls(**kwargs)


# ---------------------------
# Backends
# ---------------------------


class EventStore:
    """Backend contract. Implementations must make ``append`` atomic per key."""

    def append(self, key: str, event: Any) -> None:
        raise NotImplementedError

    def scan(self, key: str, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Any]:
        raise NotImplementedError

    def has_key(self, key: str) -> bool:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class InMemoryEventStore(EventStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: Dict[str, List[Any]] = {}

    def append(self, key: str, event: Any) -> None:
        with self._lock:
            self._events.setdefault(key, []).append(event)

    def scan(self, key: str, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Any]:
        with self._lock:
            snapshot = list(self._events.get(key, ()))
        return [e for e in snapshot if _in_range(e.timestamp, start, end)]

    def has_key(self, key: str) -> bool:
        with self._lock:
            return key in self._events

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._events if k.startswith(prefix))


class SqliteEventStore(EventStore):
    """Durable backend. One row per event; ``seq`` preserves insertion order."""

    def __init__(self, db_path: str = "echo_gateway.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = db_path
        self.circuit = circuit or DbCircuitBreaker()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str):
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(self.db_path, timeout=float(self.circuit.config.connect_timeout_seconds))
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
        except sqlite3.Error as e:
            if self.circuit.counts_as_failure(str(e)):
                self.circuit.record_failure(e)
            raise StorageError(code=ECHO_E_STORAGE, message=f"{op_name} failed", details={"op": op_name}) from e
        elapsed_ms = (time.monotonic() - start) * 1000.0
        if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
            self.circuit.record_latency(elapsed_ms)
        else:
            self.circuit.record_success()

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    domain_key TEXT NOT NULL,
                    ts_utc TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_key ON events(domain_key, seq)")

    def append(self, key: str, event: Any) -> None:
        payload = encode_event(event)
        with self._db("append") as conn:
            conn.execute(
                "INSERT INTO events (domain_key, ts_utc, kind, payload) VALUES (?, ?, ?, ?)",
                (key, _ts_key(event.timestamp), type(event).__name__, payload),
            )

    def scan(self, key: str, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Any]:
        sql = "SELECT payload FROM events WHERE domain_key = ?"
        params: Tuple[Any, ...] = (key,)
        if start is not None:
            sql += " AND ts_utc >= ?"
            params += (_ts_key(start),)
        if end is not None:
            sql += " AND ts_utc <= ?"
            params += (_ts_key(end),)
        sql += " ORDER BY seq"
        with self._db("scan") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [decode_event(r[0]) for r in rows]

    def has_key(self, key: str) -> bool:
        with self._db("has_key") as conn:
            row = conn.execute("SELECT 1 FROM events WHERE domain_key = ? LIMIT 1", (key,)).fetchone()
        return row is not None

    def keys(self, prefix: str = "") -> List[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._db("keys") as conn:
            rows = conn.execute(
                "SELECT DISTINCT domain_key FROM events WHERE domain_key LIKE ? ESCAPE '\\' ORDER BY domain_key",
                (escaped + "%",),
            ).fetchall()
        return [r[0] for r in rows]


# ---------------------------
# Registry facade
# ---------------------------


class EventView:
    """Lazy, restartable view over one key's events within ``[start, end]``."""

    def __init__(self, store: EventStore, key: str, start: Optional[datetime], end: Optional[datetime]):
        self._store = store
        self.key = key
        self.start = start
        self.end = end

    def __iter__(self) -> Iterator[Any]:
        return iter(self._store.scan(self.key, self.start, self.end))

    def __len__(self) -> int:
        return len(self._store.scan(self.key, self.start, self.end))

    def __repr__(self) -> str:
        return f"EventView(key={self.key!r}, start={self.start!r}, end={self.end!r})"


class EventRegistry:
    def __init__(self, store: Optional[EventStore] = None):
        self.store = store or InMemoryEventStore()

    def record(self, domain_key: str, event: Any) -> None:
        if not domain_key:
            raise validation_error("domain_key required")
        if not is_dataclass(event) or type(event).__name__ not in EVENT_TYPES:
            raise validation_error(f"unsupported event type: {type(event).__name__}")
        self.store.append(domain_key, event)
        logger.debug("Recorded %s under %s", type(event).__name__, domain_key)

    def query(
        self,
        domain_key: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        must_exist: bool = False,
    ) -> EventView:
        if must_exist and not self.store.has_key(domain_key):
            raise not_found(f"unknown registry key: {domain_key}", key=domain_key)
        return EventView(
            self.store,
            domain_key,
            ensure_utc(start) if start is not None else None,
            ensure_utc(end) if end is not None else None,
        )

    def keys(self, prefix: str = "") -> List[str]:
        return self.store.keys(prefix)
