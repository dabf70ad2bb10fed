"""Caller authentication for the Echo gateway.

Resolves an :class:`ActorContext` (actor id plus role) for every request,
so identity and role are never client-controlled once keys are configured.

Env vars:
  - ECHO_API_KEYS_JSON: JSON object mapping api_key -> {"actor_id": ..., "role": ...}
  - ECHO_API_KEYS_FILE: path to a JSON file with the same mapping

With neither set the gateway runs in development mode: the X-Actor-Id and
X-Actor-Role headers are trusted as sent. Present but malformed
configuration fails closed: every request is rejected.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .errors import ECHO_E_AUTH_REQUIRED, ECHO_E_FORBIDDEN, EchoError
from .models import ActorContext, Role

logger = logging.getLogger("echo_gateway.auth")

ENV_API_KEYS_JSON = "ECHO_API_KEYS_JSON"
ENV_API_KEYS_FILE = "ECHO_API_KEYS_FILE"


def auth_error(message: str) -> EchoError:
    return EchoError(code=ECHO_E_AUTH_REQUIRED, message=message, http_status=401)


def forbidden(role: Role, allowed: Tuple[Role, ...]) -> EchoError:
    return EchoError(
        code=ECHO_E_FORBIDDEN,
        message=f"This endpoint requires one of: {', '.join(r.value for r in allowed)}",
        http_status=403,
        details={"role": role.value},
    )


def _parse_mapping(data: Any, source: str) -> Dict[str, ActorContext]:
    if not isinstance(data, dict):
        raise ValueError(f"{source} must be a JSON object")
    mapping: Dict[str, ActorContext] = {}
    for api_key, entry in data.items():
        if not isinstance(entry, dict):
            raise ValueError(f"{source}: entry for a key must be an object")
        mapping[str(api_key)] = ActorContext(actor_id=str(entry["actor_id"]), role=Role(str(entry["role"])))
    return mapping


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key authentication config."""

    api_keys: Dict[str, ActorContext] = field(default_factory=dict)
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        if not raw_json and not file_path:
            return cls()

        try:
            if raw_json:
                mapping = _parse_mapping(json.loads(raw_json), ENV_API_KEYS_JSON)
            else:
                with open(file_path, "r", encoding="utf-8") as f:
                    mapping = _parse_mapping(json.load(f), ENV_API_KEYS_FILE)
        except (OSError, ValueError, KeyError, EchoError) as e:
            logger.error("API key configuration invalid: %s", e)
            return cls(configured=True, config_error="API_KEY_CONFIG_INVALID")

        return cls(api_keys=mapping, configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve(
        self,
        api_key: Optional[str],
        claimed_actor_id: Optional[str] = None,
        claimed_role: Optional[str] = None,
    ) -> ActorContext:
        """Resolve the caller or raise a 401 :class:`EchoError`."""
        if self.config_error:
            raise auth_error(self.config_error)

        if not self.enabled():
            if not claimed_actor_id or not claimed_role:
                raise auth_error("X-Actor-Id and X-Actor-Role headers required")
            return ActorContext(actor_id=claimed_actor_id, role=claimed_role)

        if not api_key:
            raise auth_error("API_KEY_REQUIRED")
        ctx = self.api_keys.get(api_key)
        if ctx is None:
            raise auth_error("API_KEY_INVALID")
        if claimed_actor_id and claimed_actor_id != ctx.actor_id:
            raise auth_error("ACTOR_ID_MISMATCH")
        return ctx

    @staticmethod
    def require_role(ctx: ActorContext, allowed: Tuple[Role, ...]) -> ActorContext:
        if ctx.role not in allowed:
            raise forbidden(ctx.role, allowed)
        return ctx
