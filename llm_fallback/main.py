import json
import logging
import sys
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

logger = logging.getLogger("llm-fallback")
logger.setLevel(logging.INFO)
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(message)s"))
logger.addHandler(_handler)
logger.propagate = False

from llm_fallback.auto_fallback import SessionAuthSwitcher
from llm_fallback.availability import ModelAvailabilityService
from llm_fallback.config import AUTH_TYPE_SETTING_KEY
from llm_fallback.db.session import init_db
from llm_fallback.gate import FallbackChoiceHandler, GatePrompter, InteractiveDecisionGate, PendingFallbackRequest
from llm_fallback.intents import UnexpectedIntentError
from llm_fallback.messages import describe_auth
from llm_fallback.orchestrator import FallbackOrchestrator
from llm_fallback.schemas import (
    AvailabilityEntry,
    AvailabilityResponse,
    FallbackPolicy,
    PendingRequestResponse,
    PendingStatusResponse,
    ResolveRequest,
    ResolveResponse,
    SessionResponse,
)
from llm_fallback.session import SessionState
from llm_fallback.settings_store import SettingsStore
from llm_fallback.otel import setup_tracing

OPEN_PATHS = {"/health", "/metrics"}

REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
)


@dataclass
class FallbackRuntime:
    session: SessionState
    availability: ModelAvailabilityService
    gate: InteractiveDecisionGate
    orchestrator: FallbackOrchestrator
    choices: FallbackChoiceHandler
    auth_switcher: SessionAuthSwitcher
    settings_store: SettingsStore | None = None


def _announce(request: PendingFallbackRequest) -> None:
    logger.info(
        json.dumps(
            {
                "message": "fallback_prompt_pending",
                "failed_model": request.failed_model,
                "fallback_model": request.fallback_model,
                "failure_kind": request.failure_kind.value,
            }
        )
    )


def _notify(message: str) -> None:
    logger.info(json.dumps({"message": "fallback_notice", "text": message}))

def build_runtime(
    settings_store: SettingsStore | None = None,
    auth_switcher: SessionAuthSwitcher | None = None,
    policy_chain: list[dict] | list[FallbackPolicy] | None = None,
    environ: Mapping[str, str] | None = None,
    is_paid_tier: bool = False,
) -> FallbackRuntime:
    session = SessionState()
    availability = ModelAvailabilityService()
    gate = InteractiveDecisionGate(on_request=_announce)
    auth_switcher = auth_switcher if auth_switcher is not None else SessionAuthSwitcher()
    orchestrator = FallbackOrchestrator(
        session,
        availability=availability,
        prompter=GatePrompter(gate, is_paid_tier=is_paid_tier, environ=environ, on_notice=_notify),
        settings_store=settings_store,
        auth_switcher=auth_switcher,
        policy_chain=policy_chain,
        environ=environ,
    )
    choices = FallbackChoiceHandler(gate, settings_store, auth_switcher, environ=environ)
    return FallbackRuntime(
        session=session,
        availability=availability,
        gate=gate,
        orchestrator=orchestrator,
        choices=choices,
        auth_switcher=auth_switcher,
        settings_store=settings_store,
    )


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


def create_app(runtime: FallbackRuntime | None = None) -> FastAPI:
    if runtime is None:
        runtime = build_runtime(settings_store=SettingsStore())

    app = FastAPI(title="llm-fallback")
    app.state.runtime = runtime
    setup_tracing(app)

    @app.on_event("startup")
    def ensure_settings_table():
        if runtime.settings_store is not None:
            init_db()

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/v1/fallback/pending", response_model=PendingStatusResponse)
    async def pending_fallback():
        pending = runtime.gate.pending
        if pending is None:
            return PendingStatusResponse()
        return PendingStatusResponse(
            pending=PendingRequestResponse(
                failed_model=pending.failed_model,
                fallback_model=pending.fallback_model,
                failure_kind=pending.failure_kind,
                message=pending.message,
                choices=pending.choices,
            )
        )

    @app.post("/v1/fallback/resolve", response_model=ResolveResponse)
    async def resolve_fallback(payload: ResolveRequest):
        try:
            intent = await runtime.choices.handle_choice(payload.choice)
        except UnexpectedIntentError as exc:
            return _error(422, "invalid_choice", str(exc))
        if intent is None:
            return _error(409, "no_pending_request", "No fallback decision is pending")
        return ResolveResponse(resolved=True, intent=intent)

    @app.get("/v1/availability", response_model=AvailabilityResponse)
    async def availability():
        entries = [
            AvailabilityEntry(model=model, status=state.status, reset_at=state.reset_at, reason=state.reason)
            for model, state in sorted(runtime.availability.snapshot().items())
        ]
        return AvailabilityResponse(models=entries)

    @app.post("/v1/admin/availability/reset")
    async def reset_availability():
        runtime.availability.reset()
        return {"status": "ok"}

    @app.get("/v1/session", response_model=SessionResponse)
    async def session_state():
        settings_auth = None
        if runtime.settings_store is not None:
            settings_auth = runtime.settings_store.get_value(AUTH_TYPE_SETTING_KEY)
        auth = describe_auth(
            settings_auth,
            runtime.auth_switcher.current.value,
            runtime.orchestrator.auto_fallback_setting(),
        )
        return SessionResponse(**runtime.session.as_dict(), auth=auth)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            elapsed_seconds = time.perf_counter() - start
            if request.url.path not in OPEN_PATHS:
                payload = {
                    "message": "request",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": getattr(response, "status_code", None),
                    "duration_ms": round(elapsed_seconds * 1000, 2),
                }
                logger.info(json.dumps(payload, separators=(",", ":")))

        response.headers["X-Request-Id"] = request_id
        status_code = str(getattr(response, "status_code", 500))
        REQUESTS_TOTAL.labels(request.method, request.url.path, status_code).inc()
        REQUEST_LATENCY.labels(request.method, request.url.path).observe(elapsed_seconds)
        return response

    return app


app = create_app()
