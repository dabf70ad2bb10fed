import json

import pytest

from echo_gateway.auth import ENV_API_KEYS_FILE, ENV_API_KEYS_JSON, ApiKeyAuth
from echo_gateway.errors import ECHO_E_AUTH_REQUIRED, ECHO_E_FORBIDDEN, EchoError
from echo_gateway.models import ActorContext, Role

KEYS = {"k1": {"actor_id": "alice", "role": "analyst"}, "k2": {"actor_id": "root", "role": "admin"}}


def _configure(monkeypatch, mapping=None, raw=None):
    monkeypatch.delenv(ENV_API_KEYS_FILE, raising=False)
    if mapping is None and raw is None:
        monkeypatch.delenv(ENV_API_KEYS_JSON, raising=False)
    else:
        monkeypatch.setenv(ENV_API_KEYS_JSON, raw if raw is not None else json.dumps(mapping))
    return ApiKeyAuth.load_from_env()


def _auth_message(fn):
    with pytest.raises(EchoError) as exc:
        fn()
    assert exc.value.code == ECHO_E_AUTH_REQUIRED
    assert exc.value.http_status == 401
    return exc.value.message


def test_auth_disabled_trusts_claimed_identity(monkeypatch):
    auth = _configure(monkeypatch)
    assert auth.enabled() is False
    ctx = auth.resolve(None, "alice", "analyst")
    assert ctx == ActorContext("alice", Role.ANALYST)


def test_auth_disabled_still_needs_identity_headers(monkeypatch):
    auth = _configure(monkeypatch)
    assert "X-Actor-Id" in _auth_message(lambda: auth.resolve(None, None, "analyst"))


def test_configured_auth_requires_a_valid_key(monkeypatch):
    auth = _configure(monkeypatch, KEYS)
    assert auth.enabled() is True
    assert _auth_message(lambda: auth.resolve(None, "alice")) == "API_KEY_REQUIRED"
    assert _auth_message(lambda: auth.resolve("nope", "alice")) == "API_KEY_INVALID"


def test_key_determines_role_not_headers(monkeypatch):
    auth = _configure(monkeypatch, KEYS)
    ctx = auth.resolve("k1", None, "admin")
    assert ctx == ActorContext("alice", Role.ANALYST)
    assert _auth_message(lambda: auth.resolve("k1", "root")) == "ACTOR_ID_MISMATCH"


def test_malformed_config_fails_closed(monkeypatch):
    auth = _configure(monkeypatch, raw="not json")
    assert auth.enabled() is True
    assert _auth_message(lambda: auth.resolve("k1", "alice")) == "API_KEY_CONFIG_INVALID"

    auth = _configure(monkeypatch, {"k1": {"actor_id": "alice", "role": "superuser"}})
    assert _auth_message(lambda: auth.resolve("k1", "alice")) == "API_KEY_CONFIG_INVALID"


def test_keys_file(tmp_path, monkeypatch):
    path = tmp_path / "keys.json"
    path.write_text(json.dumps(KEYS), encoding="utf-8")
    monkeypatch.delenv(ENV_API_KEYS_JSON, raising=False)
    monkeypatch.setenv(ENV_API_KEYS_FILE, str(path))
    assert ApiKeyAuth.load_from_env().resolve("k2").role is Role.ADMIN


def test_require_role():
    ctx = ActorContext("bob", Role.OBSERVER)
    assert ApiKeyAuth.require_role(ctx, (Role.OBSERVER,)) is ctx
    with pytest.raises(EchoError) as exc:
        ApiKeyAuth.require_role(ctx, (Role.ANALYST, Role.ADMIN))
    assert exc.value.code == ECHO_E_FORBIDDEN
    assert exc.value.http_status == 403
