"""Prometheus metrics for the Echo gateway.

Labels stay low-cardinality: layer, outcome and rejection kind only. No
actor ids, domains or purpose ids ever become label values.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "echo_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "echo_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
ADMISSIONS_TOTAL = Counter(
    "echo_admissions_total",
    "Cooldown & rate gate admission decisions",
    ["outcome"],
)
ADMISSION_REJECT_TOTAL = Counter(
    "echo_admission_reject_total",
    "Cooldown & rate gate rejections by kind",
    ["kind"],
)
ALERTS_TOTAL = Counter(
    "echo_alerts_total",
    "Threshold breaches by layer and dedup outcome",
    ["layer", "outcome"],
)
COOLDOWNS_INSTALLED_TOTAL = Counter(
    "echo_cooldowns_installed_total",
    "Cooldowns installed on actors",
    ["reason"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "echo_rate_limit_reject_total",
    "Total HTTP rate-limit rejections",
    ["endpoint"],
)
LAYER_RESILIENCE = Gauge(
    "echo_layer_resilience",
    "Most recent per-layer resilience score (0-100)",
    ["layer"],
)
OVERALL_RESILIENCE = Gauge(
    "echo_overall_resilience",
    "Most recent overall resilience score (0-100)",
)
LOCKDOWN_ACTIVE = Gauge(
    "echo_lockdown_active",
    "1 if the event registry is in storage lockdown",
)


def record_admission(outcome: str, kind: Optional[str] = None) -> None:
    ADMISSIONS_TOTAL.labels(outcome=str(outcome)).inc()
    if kind:
        ADMISSION_REJECT_TOTAL.labels(kind=str(kind)).inc()


def record_alert(layer: str, outcome: str) -> None:
    ALERTS_TOTAL.labels(layer=str(layer), outcome=str(outcome)).inc()


def record_cooldown(reason: str) -> None:
    COOLDOWNS_INSTALLED_TOTAL.labels(reason=str(reason)).inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def set_resilience(layer_scores: dict, overall: float) -> None:
    for layer, score in layer_scores.items():
        LAYER_RESILIENCE.labels(layer=str(layer)).set(float(score))
    OVERALL_RESILIENCE.set(float(overall))


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("ECHO_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
