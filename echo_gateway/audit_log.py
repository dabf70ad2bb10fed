"""Tamper-evident append-only audit trail for the Echo gateway.

Every accepted write, admission rejection and emitted alert is appended to
a JSONL file. Each record includes:
- prev_hash: entry_hash of the previous record (hex; genesis is 64 zeros)
- event_hash: SHA256 of the canonical event JSON (hex)
- entry_hash: SHA256(prev_hash || event_hash || ts) (hex)
- signature_b64: Ed25519 signature over the length-prefixed payload

Editing, dropping or reordering any record breaks the chain or a signature,
which :meth:`TamperEvidentAuditLog.verify_file` reports.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .models import _now_utc

logger = logging.getLogger("echo_gateway.audit_log")

AUDIT_VERSION = "ECHO_AUDIT_V1"
GENESIS_HASH = "0" * 64
ENV_SIGNING_KEY = "ECHO_AUDIT_SIGNING_KEY"
ENV_SIGNING_KEY_ID = "ECHO_AUDIT_KEY_ID"


def canonical_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """Length-prefixed encoding; no delimiter collisions between components."""
    out = b""
    for component in components:
        encoded = component.encode("utf-8")
        out += len(encoded).to_bytes(8, byteorder="big") + encoded
    return out


@dataclass(frozen=True)
class AuditSigner:
    """Ed25519 signing key with a stable identifier."""

    key_id: str
    private_key: Ed25519PrivateKey

    @classmethod
    def generate(cls, key_id: str = "echo-gateway") -> "AuditSigner":
        return cls(key_id=key_id, private_key=Ed25519PrivateKey.generate())

    @classmethod
    def from_seed_hex(cls, seed_hex: str, key_id: str = "echo-gateway") -> "AuditSigner":
        seed = bytes.fromhex(seed_hex.strip())
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls(key_id=key_id, private_key=Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_env(cls) -> "AuditSigner":
        """Load the seed from ECHO_AUDIT_SIGNING_KEY, or generate an ephemeral key."""
        key_id = (os.getenv(ENV_SIGNING_KEY_ID) or "echo-gateway").strip()
        seed_hex = (os.getenv(ENV_SIGNING_KEY) or "").strip()
        if not seed_hex:
            logger.warning("%s not set; audit log signed with an ephemeral key", ENV_SIGNING_KEY)
            return cls.generate(key_id)
        return cls.from_seed_hex(seed_hex, key_id)

    @property
    def public_key_hex(self) -> str:
        raw = self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return raw.hex()

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)


def _verify(public_key_hex: str, payload: bytes, signature: bytes) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex)).verify(signature, payload)
        return True
    except (InvalidSignature, ValueError):
        return False


@dataclass
class AuditLogRecord:
    version: str
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str
    key_id: str
    signature_b64: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "ts_utc": self.ts_utc,
                "prev_hash": self.prev_hash,
                "event": self.event,
                "event_hash": self.event_hash,
                "entry_hash": self.entry_hash,
                "key_id": self.key_id,
                "signature_b64": self.signature_b64,
            },
            sort_keys=True,
        )


class TamperEvidentAuditLog:
    """Append-only hash-chained audit log."""

    def __init__(self, path: str, signer: AuditSigner):
        self.path = str(path)
        self.signer = signer
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH

        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.exists() and p.stat().st_size > 0:
            last_line = self._read_last_line(p)
            try:
                self._last_hash = str(json.loads(last_line).get("entry_hash", GENESIS_HASH))
            except ValueError:
                # Corrupt tail: keep genesis so verify_file reports the break.
                logger.warning("Audit log %s has an unreadable last record", self.path)

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            pos = max(0, end - 4096)
            f.seek(pos)
            lines = f.read(end - pos).splitlines()
            return lines[-1].decode("utf-8") if lines else ""

    def append_event(self, event: Dict[str, Any], ts_utc: Optional[str] = None) -> AuditLogRecord:
        ts = ts_utc or _now_utc().isoformat()
        event_hash = _sha256_hex(canonical_json_dumps(event).encode("utf-8"))

        with self._lock:
            prev = self._last_hash
            entry_hash = _sha256_hex(_safe_hash_encode([prev, event_hash, ts]))
            payload = _safe_hash_encode([AUDIT_VERSION, ts, prev, event_hash, entry_hash])
            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                ts_utc=ts,
                prev_hash=prev,
                event=event,
                event_hash=event_hash,
                entry_hash=entry_hash,
                key_id=self.signer.key_id,
                signature_b64=base64.b64encode(self.signer.sign(payload)).decode("ascii"),
            )
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")
            self._last_hash = entry_hash
        return rec

    @staticmethod
    def verify_file(path: str, public_keys: Mapping[str, str]) -> Tuple[bool, str, int]:
        """Verify an audit log file against ``{key_id: public_key_hex}``.

        Returns (ok, reason, count) where count is the record that failed (or the total).
        """
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev = GENESIS_HASH
        count = 0
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    rec = json.loads(line)
                except ValueError:
                    return False, "PARSE_ERROR", count
                if not isinstance(rec, dict):
                    return False, "PARSE_ERROR", count
                if rec.get("version") != AUDIT_VERSION:
                    return False, f"BAD_VERSION:{rec.get('version')}", count
                ts = str(rec.get("ts_utc"))
                if str(rec.get("prev_hash")) != prev:
                    return False, "CHAIN_BROKEN", count

                event = rec.get("event")
                if not isinstance(event, dict):
                    return False, "BAD_EVENT", count
                event_hash = _sha256_hex(canonical_json_dumps(event).encode("utf-8"))
                if event_hash != str(rec.get("event_hash")):
                    return False, "EVENT_HASH_MISMATCH", count

                entry_hash = _sha256_hex(_safe_hash_encode([prev, event_hash, ts]))
                if entry_hash != str(rec.get("entry_hash")):
                    return False, "ENTRY_HASH_MISMATCH", count

                public_key_hex = public_keys.get(str(rec.get("key_id")))
                if public_key_hex is None:
                    return False, "UNKNOWN_KEY", count
                try:
                    sig = base64.b64decode(str(rec.get("signature_b64")), validate=True)
                except ValueError:
                    return False, "BAD_SIGNATURE_ENCODING", count
                payload = _safe_hash_encode([AUDIT_VERSION, ts, prev, event_hash, entry_hash])
                if not _verify(public_key_hex, payload, sig):
                    return False, "INVALID_SIGNATURE", count

                prev = entry_hash

        return True, "OK", count
