"""Stable error taxonomy for the Echo gateway.

Every failure the core can report is an :class:`EchoError` carrying a
machine-readable ``code``. Transport layers render ``as_dict()`` directly.

Design goals:
- Stable `code` string suitable for programmatic handling.
- `retryable` flag and `http_status` for transport layers.
- Admission rejections carry a `kind` tag and an optional `retry_after`.
- Nothing here ever carries a stack trace or computation internals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


# Validation
ECHO_E_PROVENANCE = "ECHO_E_PROVENANCE"
ECHO_E_OUT_OF_RANGE = "ECHO_E_OUT_OF_RANGE"
ECHO_E_BAD_REQUEST = "ECHO_E_BAD_REQUEST"

# Admission (cooldown & rate gate)
ECHO_E_COOLDOWN_ACTIVE = "ECHO_E_COOLDOWN_ACTIVE"
ECHO_E_CONCURRENCY_EXCEEDED = "ECHO_E_CONCURRENCY_EXCEEDED"
ECHO_E_CONFIDENCE_CAP = "ECHO_E_CONFIDENCE_CAP"
ECHO_E_UNAUTHORIZED_SCOPE = "ECHO_E_UNAUTHORIZED_SCOPE"

# Lookup / state
ECHO_E_NOT_FOUND = "ECHO_E_NOT_FOUND"
ECHO_E_PURPOSE_PAUSED = "ECHO_E_PURPOSE_PAUSED"
ECHO_E_RECOMMITMENT_REJECTED = "ECHO_E_RECOMMITMENT_REJECTED"

# Auth / transport
ECHO_E_AUTH_REQUIRED = "ECHO_E_AUTH_REQUIRED"
ECHO_E_FORBIDDEN = "ECHO_E_FORBIDDEN"
ECHO_E_RATE_LIMITED = "ECHO_E_RATE_LIMITED"

# Storage
ECHO_E_STORAGE = "ECHO_E_STORAGE"
ECHO_E_LOCKDOWN_ACTIVE = "ECHO_E_LOCKDOWN_ACTIVE"

# Admission rejection kinds (wire tags)
KIND_COOLDOWN_ACTIVE = "CooldownActive"
KIND_CONCURRENCY_EXCEEDED = "ConcurrencyExceeded"
KIND_CONFIDENCE_CAP_EXCEEDED = "ConfidenceCapExceeded"
KIND_UNAUTHORIZED_SCOPE = "UnauthorizedScope"


@dataclass
class EchoError(Exception):
    """Base Echo exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class ValidationError(EchoError):
    """Submission rejected synchronously; nothing was recorded."""

    http_status: int = 400


@dataclass
class NotFoundError(EchoError):
    http_status: int = 404


@dataclass
class StateError(EchoError):
    """Operation refused because of the target's lifecycle state."""

    http_status: int = 409


@dataclass
class StorageError(EchoError):
    """Registry unavailable. Transient; the caller is expected to retry."""

    retryable: bool = True
    http_status: int = 503


@dataclass
class StorageLockdownError(StorageError):
    """Raised while the storage circuit breaker holds the store in LOCKDOWN."""


@dataclass
class AdmissionError(EchoError):
    """One of the four cooldown & rate gate rejections."""

    kind: str = ""
    retry_after: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        d = super().as_dict()
        d["kind"] = self.kind
        if self.retry_after is not None:
            d["retry_after"] = int(self.retry_after)
        return d


def validation_error(message: str, *, code: str = ECHO_E_BAD_REQUEST, **details: Any) -> ValidationError:
    return ValidationError(code=code, message=message, details=details)


def not_found(message: str, **details: Any) -> NotFoundError:
    return NotFoundError(code=ECHO_E_NOT_FOUND, message=message, details=details)


def cooldown_active(remaining_minutes: int, cooldown_until: str) -> AdmissionError:
    return AdmissionError(
        code=ECHO_E_COOLDOWN_ACTIVE,
        message=f"Must wait {remaining_minutes} minutes before next audit",
        retryable=True,
        http_status=429,
        kind=KIND_COOLDOWN_ACTIVE,
        retry_after=remaining_minutes * 60,
        details={"remaining_minutes": remaining_minutes, "cooldown_until": cooldown_until},
    )


def concurrency_exceeded(current: int, limit: int, role: str) -> AdmissionError:
    return AdmissionError(
        code=ECHO_E_CONCURRENCY_EXCEEDED,
        message=f"Maximum {limit} concurrent audits allowed for {role}",
        retryable=True,
        http_status=429,
        kind=KIND_CONCURRENCY_EXCEEDED,
        details={"current": current, "max": limit},
    )


def confidence_cap_exceeded(provided: float, cap: float) -> AdmissionError:
    return AdmissionError(
        code=ECHO_E_CONFIDENCE_CAP,
        message=f"Maximum allowed confidence weight is {cap}",
        http_status=400,
        kind=KIND_CONFIDENCE_CAP_EXCEEDED,
        details={"provided": provided, "max": cap},
    )


def unauthorized_scope(role: str) -> AdmissionError:
    return AdmissionError(
        code=ECHO_E_UNAUTHORIZED_SCOPE,
        message="Only admins can submit simulated data",
        http_status=403,
        kind=KIND_UNAUTHORIZED_SCOPE,
        details={"role": role},
    )
