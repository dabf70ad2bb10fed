import json

from echo_gateway.config import ENV_CONFIG_FILE, ENV_ROLE_LIMITS_JSON, EchoConfig
from echo_gateway.models import Layer, Role


def _clear(monkeypatch):
    for name in (ENV_CONFIG_FILE, ENV_ROLE_LIMITS_JSON, "ECHO_CONFIDENCE_CAP", "ECHO_DOMINANCE_THRESHOLD",
                 "ECHO_LOA_DEDUP_DAYS", "ECHO_ROTATION_FRAMEWORKS", "ECHO_RESILIENCE_WEIGHTS_JSON",
                 "ECHO_DOMINANCE_MEDIUM_THRESHOLD", "ECHO_DRIFT_TREND_CRITICAL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    _clear(monkeypatch)
    cfg = EchoConfig.from_env()
    assert cfg.role_limit(Role.OBSERVER) == 2
    assert cfg.role_limit(Role.ANALYST) == 3
    assert cfg.role_limit(Role.ADMIN) == 5
    assert cfg.confidence_cap == 0.95
    assert cfg.dominance_threshold == 0.70
    assert cfg.loa_dedup_days == 7
    assert cfg.rate_limit == "100/15m"


def test_confidence_cap_can_only_be_lowered(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("ECHO_CONFIDENCE_CAP", "0.99")
    assert EchoConfig.from_env().confidence_cap == 0.95

    monkeypatch.setenv("ECHO_CONFIDENCE_CAP", "0.8")
    assert EchoConfig.from_env().confidence_cap == 0.8


def test_invalid_values_keep_defaults(monkeypatch, caplog):
    _clear(monkeypatch)
    monkeypatch.setenv("ECHO_LOA_DEDUP_DAYS", "soon")
    monkeypatch.setenv("ECHO_DOMINANCE_THRESHOLD", "1.7")
    cfg = EchoConfig.from_env()
    assert cfg.loa_dedup_days == 7
    assert cfg.dominance_threshold == 0.70
    assert "ECHO_LOA_DEDUP_DAYS" in caplog.text


def test_role_limits_and_frameworks_from_env(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv(ENV_ROLE_LIMITS_JSON, json.dumps({"observer": 1}))
    monkeypatch.setenv("ECHO_ROTATION_FRAMEWORKS", "A, B ,C")
    cfg = EchoConfig.from_env()
    assert cfg.role_limit(Role.OBSERVER) == 1
    assert cfg.role_limit(Role.ADMIN) == 5
    assert cfg.rotation_frameworks == ("A", "B", "C")


def test_severity_and_trend_bands_from_env(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("ECHO_DOMINANCE_MEDIUM_THRESHOLD", "0.8")
    monkeypatch.setenv("ECHO_DRIFT_TREND_CRITICAL", "0.5")
    cfg = EchoConfig.from_env()
    assert cfg.dominance_medium_threshold == 0.8
    assert cfg.drift_trend_critical == 0.5
    assert cfg.drift_trend_drifting == 0.20


def test_config_file_is_overlaid_by_env(tmp_path, monkeypatch):
    _clear(monkeypatch)
    path = tmp_path / "echo.json"
    path.write_text(json.dumps({"loa_dedup_days": 14, "confidence_cap": 0.9, "unknown_key": 1}), encoding="utf-8")
    monkeypatch.setenv(ENV_CONFIG_FILE, str(path))
    monkeypatch.setenv("ECHO_CONFIDENCE_CAP", "0.85")

    cfg = EchoConfig.from_env()
    assert cfg.loa_dedup_days == 14
    assert cfg.confidence_cap == 0.85


def test_normalised_weights_fall_back_to_equal():
    cfg = EchoConfig(resilience_weights={layer: 0.0 for layer in Layer})
    assert set(cfg.normalised_weights().values()) == {0.2}
