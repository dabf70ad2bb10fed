"""HTTP surface for the Echo gateway.

All routes live under ``/api/v2``. Caller identity comes from
:class:`~echo_gateway.auth.ApiKeyAuth`; every domain failure is an
:class:`~echo_gateway.errors.EchoError` rendered through one exception
handler, so responses never carry stack traces.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import metrics
from .audit_log import AuditSigner, TamperEvidentAuditLog
from .auth import ApiKeyAuth
from .config import EchoConfig
from .engine import EchoGateway
from .errors import ECHO_E_BAD_REQUEST, ECHO_E_RATE_LIMITED, AdmissionError, EchoError, validation_error
from .lockdown import CircuitBreakerConfig, DbCircuitBreaker
from .models import ActorContext, FatigueRisk, Layer, Provenance, Role
from .ratelimit import FixedWindowLimiter
from .registry import EventRegistry, InMemoryEventStore, SqliteEventStore

logger = logging.getLogger("echo_gateway.server")

API_PREFIX = "/api/v2"

ANY_ROLE: Tuple[Role, ...] = (Role.OBSERVER, Role.ANALYST, Role.ADMIN)
WRITE_ROLES: Tuple[Role, ...] = (Role.ANALYST, Role.ADMIN)
ADMIN_ONLY: Tuple[Role, ...] = (Role.ADMIN,)


# ---------------------------
# Request models
# ---------------------------


class ProvenanceFields(BaseModel):
    # Optional at the schema level so a missing tag surfaces as ECHO_E_PROVENANCE.
    data_scope: Optional[str] = None
    evidence_type: Optional[str] = None
    origin: Optional[str] = None

    def provenance(self) -> Provenance:
        return Provenance.parse(self.data_scope, self.evidence_type, self.origin)


class TrackReasoningRequest(ProvenanceFields):
    framework: str
    confidence_weight: float
    decision_point: str
    context: Optional[str] = None
    alternatives_considered: List[str] = Field(default_factory=list)


class RegisterQuestionRequest(ProvenanceFields):
    domain: str
    question: str
    complexity: int = 1
    sensitivity: int = 1


class TrackOutcomeRequest(ProvenanceFields):
    decision_id: str
    decision_date: datetime
    beneficiary: str
    benefit_realized_date: datetime
    context: Optional[str] = None


class UpdateLoadRequest(ProvenanceFields):
    observer_id: Optional[str] = None
    audits_reviewed: int
    correction_rate: float
    contradiction_exposure: float


class BreakRequest(ProvenanceFields):
    observer_id: Optional[str] = None


class CompleteAuditRequest(BaseModel):
    actor_id: Optional[str] = None


class CooldownRequest(BaseModel):
    actor_id: str


class AssignTasksRequest(BaseModel):
    actor_id: str
    task_ids: List[str]


class DeclarePurposeRequest(ProvenanceFields):
    purpose_id: Optional[str] = None
    original_intent: str
    domain: str


class TrackUsageRequest(ProvenanceFields):
    purpose_id: str
    event_type: str
    description: str


class RecommitRequest(ProvenanceFields):
    purpose_id: str
    statement: str


# ---------------------------
# Wiring
# ---------------------------


def build_gateway_from_env(config: Optional[EchoConfig] = None) -> EchoGateway:
    """Assemble a gateway from ``ECHO_*`` environment configuration."""
    config = config or EchoConfig.from_env()
    if config.db_path:
        store = SqliteEventStore(config.db_path, DbCircuitBreaker(CircuitBreakerConfig.from_env()))
    else:
        logger.warning("ECHO_DB_PATH not set; events are kept in memory only")
        store = InMemoryEventStore()
    audit_log = None
    if config.audit_log_path:
        audit_log = TamperEvidentAuditLog(config.audit_log_path, AuditSigner.from_env())
    return EchoGateway(config=config, registry=EventRegistry(store), audit_log=audit_log)


def _parse_layer(value: Optional[str]) -> Optional[Layer]:
    if not value:
        return None
    try:
        return Layer(value.strip().upper())
    except ValueError:
        raise validation_error(
            f"layer must be one of: {', '.join(l.value for l in Layer)}", field="layer"
        ) from None


def _build_limiter(spec: str) -> Optional[FixedWindowLimiter]:
    spec = (spec or "").strip()
    if not spec or spec.lower() in ("0", "off", "disabled", "false"):
        return None
    try:
        max_keys = int(os.getenv("ECHO_RATE_LIMIT_MAX_KEYS", "20000") or "20000")
        return FixedWindowLimiter.from_spec(spec, max_keys=max_keys)
    except ValueError as e:
        logger.warning("Invalid rate limit %r: %s (disabled)", spec, e)
        return None


def _rl_key(req: Request) -> str:
    # Prefer the API key, then the claimed actor, then the client address.
    api_key = req.headers.get("X-Api-Key")
    if api_key:
        return f"k:{api_key}"
    actor = req.headers.get("X-Actor-Id")
    if actor:
        return f"a:{actor}"
    if req.client and req.client.host:
        return f"ip:{req.client.host}"
    return "_anon"


def create_app(gateway: Optional[EchoGateway] = None) -> FastAPI:
    """Create the FastAPI application around ``gateway`` (built from env when omitted)."""
    from . import __version__ as echo_version

    if gateway is None:
        gateway = build_gateway_from_env()

    app = FastAPI(
        title="Echo Gateway",
        description="Rolling epistemic-health metrics, alerts and admission control",
        version=echo_version,
    )
    app.state.gateway = gateway

    @app.exception_handler(EchoError)
    async def _echo_error_handler(request: Request, exc: EchoError):
        headers = None
        if isinstance(exc, AdmissionError) and exc.retry_after is not None:
            headers = {"Retry-After": str(int(exc.retry_after))}
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError):
        err = EchoError(
            code=ECHO_E_BAD_REQUEST,
            message="request body failed validation",
            details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
        )
        return JSONResponse(status_code=400, content=err.as_dict())

    api_auth = ApiKeyAuth.load_from_env()

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("ECHO_METRICS_TOKEN") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    metrics.instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Request size + rate limiting
    # ---------------------------
    try:
        max_request_bytes = int(os.getenv("ECHO_MAX_REQUEST_BYTES", "1048576") or "1048576")
    except ValueError:
        max_request_bytes = 1048576

    limiter = _build_limiter(gateway.config.rate_limit)

    @app.middleware("http")
    async def _guard_requests(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
            if too_large:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})

        if limiter is not None and req.url.path.startswith("/api"):
            allowed, retry_after = limiter.allow(_rl_key(req))
            if not allowed:
                metrics.record_rate_limited(req.url.path)
                err = EchoError(
                    code=ECHO_E_RATE_LIMITED,
                    message="Too many requests from this client, please try again later.",
                    retryable=True,
                    http_status=429,
                    details={"retry_after": retry_after},
                )
                return JSONResponse(
                    status_code=429, content=err.as_dict(), headers={"Retry-After": str(retry_after)}
                )
        return await call_next(req)

    # ---------------------------
    # Auth dependencies
    # ---------------------------

    def _caller(
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
        x_actor_role: Optional[str] = Header(None, alias="X-Actor-Role"),
    ) -> ActorContext:
        return api_auth.resolve(x_api_key, x_actor_id, x_actor_role)

    def _reader(ctx: ActorContext = Depends(_caller)) -> ActorContext:
        return ApiKeyAuth.require_role(ctx, ANY_ROLE)

    def _writer(ctx: ActorContext = Depends(_caller)) -> ActorContext:
        return ApiKeyAuth.require_role(ctx, WRITE_ROLES)

    def _admin(ctx: ActorContext = Depends(_caller)) -> ActorContext:
        return ApiKeyAuth.require_role(ctx, ADMIN_ONLY)

    router = APIRouter(prefix=API_PREFIX)

    @router.get("/health")
    def health():
        body = gateway.health()
        return JSONResponse(status_code=200 if body["status"] == "healthy" else 503, content=body)

    # ---------------------------
    # RPL
    # ---------------------------

    @router.post("/rpl/track")
    def rpl_track(body: TrackReasoningRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        result = gateway.track_reasoning(
            ctx,
            framework=body.framework,
            confidence_weight=body.confidence_weight,
            decision_point=body.decision_point,
            provenance=body.provenance(),
            context=body.context,
            alternatives_considered=body.alternatives_considered,
        )
        return result.as_dict()

    @router.get("/rpl/dominance")
    def rpl_dominance(ctx: ActorContext = Depends(_reader)) -> Dict[str, Any]:
        return gateway.dominance().as_dict()

    @router.get("/rpl/alerts")
    def rpl_alerts(ctx: ActorContext = Depends(_reader)) -> Dict[str, Any]:
        alerts = [a.as_dict() for a in gateway.list_alerts(layer=Layer.RPL, open_only=True)]
        return {"alerts": alerts, "count": len(alerts)}

    @router.get("/rpl/rotation")
    def rpl_rotation(ctx: ActorContext = Depends(_reader)) -> Dict[str, Any]:
        queue = gateway.rotation_queue()
        return {"queue": queue, "count": len(queue)}

    # ---------------------------
    # QEM
    # ---------------------------

    @router.post("/qem/register")
    def qem_register(body: RegisterQuestionRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        result = gateway.register_question(
            ctx,
            domain=body.domain,
            text=body.question,
            complexity=body.complexity,
            sensitivity=body.sensitivity,
            provenance=body.provenance(),
        )
        return result.as_dict()

    @router.get("/qem/entropy/{domain}")
    def qem_entropy(domain: str, ctx: ActorContext = Depends(_reader)) -> Dict[str, Any]:
        return gateway.entropy(domain).as_dict()

    @router.get("/qem/suggestions/{domain}")
    def qem_suggestions(domain: str, ctx: ActorContext = Depends(_reader)) -> Dict[str, Any]:
        return gateway.suggestions(domain)

    # ---------------------------
    # LOA
    # ---------------------------

    @router.post("/loa/track-outcome")
    def loa_track_outcome(body: TrackOutcomeRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        result = gateway.track_outcome(
            ctx,
            decision_id=body.decision_id,
            decision_date=body.decision_date,
            beneficiary=body.beneficiary,
            benefit_realized_date=body.benefit_realized_date,
            provenance=body.provenance(),
            context=body.context,
        )
        return result.as_dict()

    @router.get("/loa/patterns")
    def loa_patterns(ctx: ActorContext = Depends(_reader)) -> Dict[str, Any]:
        patterns = [p.as_dict() for p in gateway.loa_patterns()]
        return {
            "patterns": patterns,
            "count": len(patterns),
            "threshold": gateway.config.beneficiary_risk_threshold,
        }

    # ---------------------------
    # OLI
    # ---------------------------

    @router.post("/oli/update-load")
    def oli_update_load(body: UpdateLoadRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        return gateway.update_load(
            ctx,
            observer_id=body.observer_id or ctx.actor_id,
            audits_reviewed=body.audits_reviewed,
            correction_rate=body.correction_rate,
            contradiction_exposure=body.contradiction_exposure,
            provenance=body.provenance(),
        )

    @router.post("/oli/break")
    def oli_break(body: BreakRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        observer_id = body.observer_id or ctx.actor_id
        result = gateway.record_break(ctx, observer_id, body.provenance())
        d = result.as_dict()
        d["observer_id"] = observer_id
        return d

    @router.post("/oli/complete-audit")
    def oli_complete_audit(body: CompleteAuditRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        return gateway.complete_audit(ctx, body.actor_id)

    @router.post("/oli/cooldown")
    def oli_cooldown(body: CooldownRequest, ctx: ActorContext = Depends(_admin)) -> Dict[str, Any]:
        return gateway.install_cooldown(ctx, body.actor_id).as_dict()

    @router.post("/oli/tasks")
    def oli_tasks(body: AssignTasksRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        return gateway.assign_tasks(ctx, body.actor_id, body.task_ids)

    @router.post("/oli/redistribute")
    def oli_redistribute(ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        return gateway.redistribute(ctx)

    @router.get("/oli/fatigue-status")
    def oli_fatigue_status(ctx: ActorContext = Depends(_reader)) -> Dict[str, Any]:
        observers = gateway.fatigue_status()
        return {
            "observers": [m.as_dict() for m in observers],
            "count": len(observers),
            "critical_count": sum(1 for m in observers if m.fatigue_risk is FatigueRisk.CRITICAL),
        }

    # ---------------------------
    # PDS
    # ---------------------------

    @router.post("/pds/purposes")
    def pds_declare(body: DeclarePurposeRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        purpose = gateway.declare_purpose(
            ctx,
            original_intent=body.original_intent,
            domain=body.domain,
            provenance=body.provenance(),
            purpose_id=body.purpose_id,
        )
        return {
            "success": True,
            "purpose_id": purpose.purpose_id,
            "declared_at": purpose.declared_at.isoformat(),
        }

    @router.post("/pds/track-usage")
    def pds_track_usage(body: TrackUsageRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        result = gateway.track_usage(
            ctx,
            purpose_id=body.purpose_id,
            event_type=body.event_type,
            description=body.description,
            provenance=body.provenance(),
        )
        return result.as_dict()

    @router.get("/pds/drift-status/{purpose_id}")
    def pds_drift_status(purpose_id: str, ctx: ActorContext = Depends(_reader)) -> Dict[str, Any]:
        return gateway.drift_status(purpose_id).as_dict()

    @router.post("/pds/recommit")
    def pds_recommit(body: RecommitRequest, ctx: ActorContext = Depends(_writer)) -> Dict[str, Any]:
        return gateway.recommit(ctx, body.purpose_id, body.statement, body.provenance())

    # ---------------------------
    # Alerts & resilience
    # ---------------------------

    @router.get("/alerts")
    def list_alerts(
        layer: Optional[str] = None,
        open_only: bool = False,
        ctx: ActorContext = Depends(_reader),
    ) -> Dict[str, Any]:
        alerts = [a.as_dict() for a in gateway.list_alerts(layer=_parse_layer(layer), open_only=open_only)]
        return {"alerts": alerts, "count": len(alerts)}

    @router.post("/alerts/{alert_id}/resolve")
    def resolve_alert(alert_id: str, ctx: ActorContext = Depends(_admin)) -> Dict[str, Any]:
        return gateway.resolve_alert(ctx, alert_id).as_dict()

    @router.get("/resilience/score")
    def resilience_score(ctx: ActorContext = Depends(_reader)) -> Dict[str, Any]:
        return gateway.resilience().as_dict()

    app.include_router(router)
    return app


def main():
    """
    Entry point for the echo-gateway CLI.

    Usage:
        echo-gateway                    # Start on default port 8000
        echo-gateway --port 9000        # Start on custom port
        echo-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="Echo Gateway - epistemic health metrics service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    ECHO_DB_PATH            Path to SQLite event store (default: in-memory)
    ECHO_AUDIT_LOG_PATH     Path to the signed JSONL audit trail (default: off)
    ECHO_AUDIT_SIGNING_KEY  Hex Ed25519 seed for the audit trail
    ECHO_API_KEYS_JSON      API key -> {actor_id, role} mapping
    ECHO_RATE_LIMIT         Per-client limit for /api, e.g. 100/15m ("off" disables)
    ECHO_CONFIG_FILE        JSON file overlaying EchoConfig defaults
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--log-level",
        default=os.getenv("ECHO_LOG_LEVEL", "info"),
        choices=["critical", "error", "warning", "info", "debug"],
        help="Log level (default: info)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting Echo Gateway on %s:%s", args.host, args.port)

    uvicorn.run(
        "echo_gateway.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
