"""Externally adjustable configuration for the Echo gateway.

Nothing in the layer calculators hard-codes an alert threshold, a severity
or trend band, or a window; they all read an :class:`EchoConfig`. Scoring
point tables are part of each layer formula and stay in the layer modules.

Sources, lowest precedence first:
- dataclass defaults
- ECHO_CONFIG_FILE: JSON object keyed by field name
- individual environment variables (see ``_ENV_FIELDS``)

Values are clamped to sane bounds. The confidence cap can be lowered but
never raised above 0.95.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from .models import MAX_CONFIDENCE_WEIGHT, Layer, Role

logger = logging.getLogger("echo_gateway.config")

ENV_CONFIG_FILE = "ECHO_CONFIG_FILE"
ENV_ROLE_LIMITS_JSON = "ECHO_ROLE_LIMITS_JSON"
ENV_RESILIENCE_WEIGHTS_JSON = "ECHO_RESILIENCE_WEIGHTS_JSON"

DEFAULT_ROTATION_FRAMEWORKS: Tuple[str, ...] = (
    "Devil_Lens_Critique",
    "RSGD_360_Spiral",
    "Institutional_Decay_Detector",
    "Beneficiary_Tracing",
    "Question_Entropy_Analysis",
)


def _default_role_limits() -> Dict[Role, int]:
    return {Role.OBSERVER: 2, Role.ANALYST: 3, Role.ADMIN: 5}


def _default_resilience_weights() -> Dict[Layer, float]:
    return {layer: 0.2 for layer in Layer}


@dataclass(frozen=True)
class EchoConfig:
    # Cooldown & rate gate
    role_limits: Dict[Role, int] = field(default_factory=_default_role_limits)
    confidence_cap: float = MAX_CONFIDENCE_WEIGHT

    # Thresholds
    dominance_threshold: float = 0.70
    dominance_high_threshold: float = 0.85
    dominance_medium_threshold: float = 0.75
    entropy_gap_threshold: float = 0.50
    entropy_gap_high_threshold: float = 0.75
    entropy_trend_band: float = 0.10
    beneficiary_risk_threshold: float = 7.0
    beneficiary_risk_medium_threshold: float = 7.5
    beneficiary_risk_high_threshold: float = 8.5
    fatigue_high_threshold: int = 7
    fatigue_critical_threshold: int = 9
    drift_alert_threshold: float = 0.30
    drift_pause_threshold: float = 0.50
    drift_trend_drifting: float = 0.20
    drift_trend_critical: float = 0.40
    recommitment_alignment: float = 0.70

    # Dedup windows
    loa_dedup_days: int = 7

    # Windows
    rpl_window_decisions: int = 30
    rpl_window_days: int = 7
    qem_current_days: int = 90
    qem_historical_days: int = 180
    loa_window_days: int = 180
    loa_min_decisions: int = 3
    oli_window_days: int = 7
    pds_window_days: int = 30
    pds_min_events: int = 10

    # RPL rotation
    rotation_frameworks: Tuple[str, ...] = DEFAULT_ROTATION_FRAMEWORKS
    rotation_queue_max: Optional[int] = None

    # Resilience aggregation
    resilience_weights: Dict[Layer, float] = field(default_factory=_default_resilience_weights)
    resilience_history_max: int = 500

    # Ambient
    rate_limit: str = "100/15m"
    db_path: Optional[str] = None
    audit_log_path: Optional[str] = None

    def role_limit(self, role: Role) -> int:
        return int(self.role_limits.get(Role(role), 0))

    def normalised_weights(self) -> Dict[Layer, float]:
        total = sum(max(0.0, float(w)) for w in self.resilience_weights.values())
        if total <= 0:
            return _default_resilience_weights()
        return {layer: max(0.0, float(self.resilience_weights.get(layer, 0.0))) / total for layer in Layer}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional["EchoConfig"] = None) -> "EchoConfig":
        """Overlay known keys from ``data`` onto ``base`` (or defaults). Unknown keys are ignored."""
        base = base or cls()
        known = {f.name for f in fields(cls)}
        updates: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("Ignoring unknown config key %s", key)
                continue
            updates[key] = _coerce_field(key, value)
        return replace(base, **updates).clamped()

    @classmethod
    def from_env(cls) -> "EchoConfig":
        cfg = cls()

        cfg_file = (os.getenv(ENV_CONFIG_FILE) or "").strip()
        if cfg_file:
            with open(cfg_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"{ENV_CONFIG_FILE} must contain a JSON object")
            cfg = cls.from_mapping(data, base=cfg)

        overrides: Dict[str, Any] = {}
        for env_name, (field_name, caster) in _ENV_FIELDS.items():
            raw = os.getenv(env_name)
            if raw is None or not raw.strip():
                continue
            try:
                overrides[field_name] = caster(raw.strip())
            except ValueError:
                logger.warning("Invalid value for %s=%r (using %r)", env_name, raw, getattr(cfg, field_name))

        for env_name, field_name in ((ENV_ROLE_LIMITS_JSON, "role_limits"), (ENV_RESILIENCE_WEIGHTS_JSON, "resilience_weights")):
            raw = (os.getenv(env_name) or "").strip()
            if not raw:
                continue
            try:
                parsed = json.loads(raw)
                if not isinstance(parsed, dict):
                    raise ValueError(f"{env_name} must be a JSON object")
                overrides[field_name] = parsed
            except ValueError as e:
                logger.warning("Failed to parse %s: %s", env_name, e)

        return cls.from_mapping(overrides, base=cfg)

    def clamped(self) -> "EchoConfig":
        def _frac(v: float, default: float) -> float:
            v = float(v)
            return v if 0.0 <= v <= 1.0 else default

        role_limits = {Role(r): max(0, int(n)) for r, n in self.role_limits.items()}
        for role, n in _default_role_limits().items():
            role_limits.setdefault(role, n)

        return replace(
            self,
            role_limits=role_limits,
            confidence_cap=min(MAX_CONFIDENCE_WEIGHT, max(0.0, float(self.confidence_cap))),
            dominance_threshold=_frac(self.dominance_threshold, 0.70),
            dominance_high_threshold=_frac(self.dominance_high_threshold, 0.85),
            dominance_medium_threshold=_frac(self.dominance_medium_threshold, 0.75),
            entropy_gap_threshold=_frac(self.entropy_gap_threshold, 0.50),
            entropy_gap_high_threshold=_frac(self.entropy_gap_high_threshold, 0.75),
            entropy_trend_band=_frac(self.entropy_trend_band, 0.10),
            beneficiary_risk_threshold=min(10.0, max(0.0, float(self.beneficiary_risk_threshold))),
            beneficiary_risk_medium_threshold=min(10.0, max(0.0, float(self.beneficiary_risk_medium_threshold))),
            beneficiary_risk_high_threshold=min(10.0, max(0.0, float(self.beneficiary_risk_high_threshold))),
            fatigue_high_threshold=min(10, max(0, int(self.fatigue_high_threshold))),
            fatigue_critical_threshold=min(10, max(0, int(self.fatigue_critical_threshold))),
            drift_alert_threshold=_frac(self.drift_alert_threshold, 0.30),
            drift_pause_threshold=_frac(self.drift_pause_threshold, 0.50),
            drift_trend_drifting=_frac(self.drift_trend_drifting, 0.20),
            drift_trend_critical=_frac(self.drift_trend_critical, 0.40),
            recommitment_alignment=_frac(self.recommitment_alignment, 0.70),
            loa_dedup_days=max(0, int(self.loa_dedup_days)),
            rpl_window_decisions=max(1, int(self.rpl_window_decisions)),
            rpl_window_days=max(1, int(self.rpl_window_days)),
            qem_current_days=max(1, int(self.qem_current_days)),
            qem_historical_days=max(int(self.qem_current_days) + 1, int(self.qem_historical_days)),
            loa_window_days=max(1, int(self.loa_window_days)),
            loa_min_decisions=max(1, int(self.loa_min_decisions)),
            oli_window_days=max(1, int(self.oli_window_days)),
            pds_window_days=max(1, int(self.pds_window_days)),
            pds_min_events=max(1, int(self.pds_min_events)),
            rotation_frameworks=tuple(str(f) for f in self.rotation_frameworks),
            rotation_queue_max=None if self.rotation_queue_max is None else max(1, int(self.rotation_queue_max)),
            resilience_weights={Layer(k): float(v) for k, v in self.resilience_weights.items()},
            resilience_history_max=max(1, int(self.resilience_history_max)),
        )


def _coerce_field(name: str, value: Any) -> Any:
    if name == "role_limits":
        return {Role(str(k)): int(v) for k, v in dict(value).items()}
    if name == "resilience_weights":
        return {Layer(str(k)): float(v) for k, v in dict(value).items()}
    if name == "rotation_frameworks":
        if isinstance(value, str):
            return tuple(s.strip() for s in value.split(",") if s.strip())
        return tuple(value)
    return value


def _optional_int(raw: str) -> Optional[int]:
    if raw.lower() in ("none", "off", "0", "unbounded"):
        return None
    return int(raw)


_ENV_FIELDS = {
    "ECHO_CONFIDENCE_CAP": ("confidence_cap", float),
    "ECHO_DOMINANCE_THRESHOLD": ("dominance_threshold", float),
    "ECHO_DOMINANCE_HIGH_THRESHOLD": ("dominance_high_threshold", float),
    "ECHO_DOMINANCE_MEDIUM_THRESHOLD": ("dominance_medium_threshold", float),
    "ECHO_ENTROPY_GAP_THRESHOLD": ("entropy_gap_threshold", float),
    "ECHO_ENTROPY_GAP_HIGH_THRESHOLD": ("entropy_gap_high_threshold", float),
    "ECHO_ENTROPY_TREND_BAND": ("entropy_trend_band", float),
    "ECHO_BENEFICIARY_RISK_THRESHOLD": ("beneficiary_risk_threshold", float),
    "ECHO_BENEFICIARY_RISK_MEDIUM_THRESHOLD": ("beneficiary_risk_medium_threshold", float),
    "ECHO_BENEFICIARY_RISK_HIGH_THRESHOLD": ("beneficiary_risk_high_threshold", float),
    "ECHO_FATIGUE_HIGH_THRESHOLD": ("fatigue_high_threshold", int),
    "ECHO_FATIGUE_CRITICAL_THRESHOLD": ("fatigue_critical_threshold", int),
    "ECHO_DRIFT_ALERT_THRESHOLD": ("drift_alert_threshold", float),
    "ECHO_DRIFT_PAUSE_THRESHOLD": ("drift_pause_threshold", float),
    "ECHO_DRIFT_TREND_DRIFTING": ("drift_trend_drifting", float),
    "ECHO_DRIFT_TREND_CRITICAL": ("drift_trend_critical", float),
    "ECHO_RECOMMITMENT_ALIGNMENT": ("recommitment_alignment", float),
    "ECHO_LOA_DEDUP_DAYS": ("loa_dedup_days", int),
    "ECHO_RPL_WINDOW_DECISIONS": ("rpl_window_decisions", int),
    "ECHO_RPL_WINDOW_DAYS": ("rpl_window_days", int),
    "ECHO_QEM_CURRENT_DAYS": ("qem_current_days", int),
    "ECHO_QEM_HISTORICAL_DAYS": ("qem_historical_days", int),
    "ECHO_LOA_WINDOW_DAYS": ("loa_window_days", int),
    "ECHO_OLI_WINDOW_DAYS": ("oli_window_days", int),
    "ECHO_PDS_WINDOW_DAYS": ("pds_window_days", int),
    "ECHO_PDS_MIN_EVENTS": ("pds_min_events", int),
    "ECHO_ROTATION_FRAMEWORKS": ("rotation_frameworks", str),
    "ECHO_ROTATION_QUEUE_MAX": ("rotation_queue_max", _optional_int),
    "ECHO_RATE_LIMIT": ("rate_limit", str),
    "ECHO_DB_PATH": ("db_path", str),
    "ECHO_AUDIT_LOG_PATH": ("audit_log_path", str),
}
