"""Echo Gateway package.

Rolling epistemic-health metrics over an append-only event registry:

- RPL: reasoning-framework dominance
- QEM: question entropy gap per domain
- LOA: lagged-outcome beneficiary risk
- OLI: observer fatigue, cooldowns and work redistribution
- PDS: purpose drift with forced pause and recommitment

plus a deduplicating alert engine, a per-actor admission gate and a
weighted resilience score.

Convenience imports
------------------
The package avoids heavy import-time side effects. These are loaded lazily:

    from echo_gateway import EchoGateway, EchoConfig, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any, Optional


def _read_version_from_pyproject() -> Optional[str]:
    """Best-effort version discovery for dev/test environments.

    The project version is a plain ``version = "..."`` line in
    ``pyproject.toml``, so a regex is enough.
    """
    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "2.0.0"

__all__ = [
    "__version__",
    "EchoGateway",
    "EchoConfig",
    "EventRegistry",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict = {
    "EchoGateway": ("echo_gateway.engine", "EchoGateway"),
    "EchoConfig": ("echo_gateway.config", "EchoConfig"),
    "EventRegistry": ("echo_gateway.registry", "EventRegistry"),
    "create_app": ("echo_gateway.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'echo_gateway' has no attribute {name!r}")


def __dir__() -> list:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
