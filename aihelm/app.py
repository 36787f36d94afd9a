"""FastAPI application for AI Helm.

Exposes the ``/ws`` WebSocket that runs analyze jobs, plus HTTP endpoints
for demo status, research classification, router configuration, model
aliases and discovery, provider status, key validation, and admin
settings.

Governance-first flow per message:
1. Sensitive data is redacted before any model sees it
2. Demo traffic is admitted against session, origin and budget limits
3. The security gate can halt a job before any generation call
"""

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from aihelm.auth import AuthenticationError, authenticate_token
from aihelm.config import HelmConfig, load_config
from aihelm.discovery import ModelDiscovery, run_periodically
from aihelm.models import (
    DemoLimitsUpdate,
    DemoStatus,
    ErrorDetail,
    ErrorResponse,
    KeyValidationRequest,
    ResearchClassificationRequest,
    ResearchClassificationResponse,
    RouterConfigUpdate,
    SecurityThresholdUpdate,
)
from aihelm.orchestrator import JobOrchestrator, Services
from aihelm.provider_status import ProviderStatusMonitor
from aihelm.quality import classify_research
from aihelm.router import RouterConfig, RoutingError
from aihelm.telemetry import setup_logging

CONFIG_PATH = os.getenv("AIHELM_CONFIG", "config/example.config.json")
CLEANUP_INTERVAL_SECONDS = 300.0

_logger = logging.getLogger("aihelm")

_config: Optional[HelmConfig] = None
_services: Optional[Services] = None
_discovery: Optional[ModelDiscovery] = None
_status_monitor: Optional[ProviderStatusMonitor] = None


def get_config() -> HelmConfig:
    """Return the loaded configuration (lazy-init)."""
    global _config
    if _config is None:
        _config = load_config(CONFIG_PATH)
    return _config


def get_services() -> Services:
    """Return the shared service graph (lazy-init from config)."""
    global _services
    if _services is None:
        _services = Services.from_config(get_config())
    return _services


def get_discovery() -> ModelDiscovery:
    """Return the model discovery service (lazy-init from config)."""
    global _discovery
    if _discovery is None:
        services = get_services()
        _discovery = ModelDiscovery(services.registry, services.config.providers)
    return _discovery


def get_status_monitor() -> ProviderStatusMonitor:
    """Return the provider status monitor (lazy-init)."""
    global _status_monitor
    if _status_monitor is None:
        _status_monitor = ProviderStatusMonitor()
    return _status_monitor


async def _cleanup_loop(services: Services) -> None:
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
        removed = services.budget.cleanup()
        if removed:
            _logger.debug("Dropped %d idle demo windows", removed)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize logging and services; run background maintenance tasks."""
    services = get_services()
    setup_logging(services.config.log_file)

    tasks: List["asyncio.Task[None]"] = [asyncio.create_task(_cleanup_loop(services))]
    discovery_cfg = services.config.discovery
    if discovery_cfg.enabled:
        tasks.append(
            asyncio.create_task(
                run_periodically(
                    get_discovery(),
                    services.config.demo_keys,
                    discovery_cfg.interval_hours * 3600,
                    discovery_cfg.startup_delay_seconds,
                )
            )
        )
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        services.budget.dispose()


app = FastAPI(title="AI Helm", version="0.1.0", lifespan=lifespan)


def _error_response(status: int, error_type: str, message: str) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(error=ErrorDetail(type=error_type, message=message))
    return JSONResponse(status_code=status, content=body.model_dump())


def _require_admin(api_key: Optional[str]) -> str:
    """Check the admin key when auth is enabled and return the caller's name."""
    auth = get_services().config.auth
    if not auth.enabled:
        return "admin"
    return authenticate_token(api_key, auth.admin_keys, kind="API key")


def _get_client_ip(websocket: WebSocket) -> str:
    """Extract client IP from WebSocket, handling proxies."""
    forwarded = websocket.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = websocket.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if websocket.client:
        return websocket.client.host
    return "unknown"


@app.exception_handler(AuthenticationError)
async def authentication_exception_handler(
    request: Request, exc: AuthenticationError
) -> JSONResponse:
    return _error_response(401, "authentication_error", exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's validation errors into our error envelope format."""
    return _error_response(
        422,
        "validation_error",
        "Request validation failed: {}".format(exc),
    )


# --- WebSocket ---


@app.websocket("/ws")
async def job_websocket(websocket: WebSocket, token: Optional[str] = None) -> None:
    """Run analyze jobs for one client connection.

    A ``token`` query parameter identifies a signed-in user; without one the
    connection is on the demo path. An invalid token closes the socket.
    """
    services = get_services()
    user_id: Optional[str] = None
    auth = services.config.auth
    if auth.enabled and token:
        try:
            user_id = authenticate_token(token, auth.user_tokens)
        except AuthenticationError as exc:
            await websocket.close(code=1008, reason=exc.detail)
            return

    await websocket.accept()
    session_id = str(uuid.uuid4())
    origin = _get_client_ip(websocket)
    orchestrator = JobOrchestrator(
        services, session_id, origin, websocket.send_json, user_id=user_id
    )
    _logger.info(
        "WebSocket connected: session=%s origin=%s user=%s", session_id, origin, user_id
    )

    try:
        while True:
            raw = await websocket.receive_text()
            await orchestrator.handle(raw)
    except WebSocketDisconnect:
        _logger.info("WebSocket disconnected: session=%s", session_id)
    finally:
        await orchestrator.close()


# --- Demo & research ---


@app.get("/api/demo-status", response_model=None)
async def demo_status(session_id: str = Query("", alias="sessionId")) -> JSONResponse:
    services = get_services()
    status = DemoStatus(**services.budget.status(session_id, services.config.demo.enabled))
    return JSONResponse(status_code=200, content=status.model_dump())


@app.post("/api/classify-research", response_model=None)
async def research_classification(request: ResearchClassificationRequest) -> JSONResponse:
    """Decide whether a message warrants deep research mode."""
    services = get_services()
    keys = request.apiKeys.present() or services.config.demo_keys()
    model = services.registry.cheapest(keys) if keys else None
    is_research = await classify_research(
        services.llm,
        request.message,
        model.provider if model else None,
        model.model_id if model else None,
        keys.get(model.provider) if model else None,
    )
    body = ResearchClassificationResponse(isResearch=is_research)
    return JSONResponse(status_code=200, content=body.model_dump())


# --- Router configuration ---


@app.get("/api/router/config", response_model=None)
async def get_router_config(user_id: Optional[str] = Query(None, alias="userId")) -> JSONResponse:
    active = get_services().router_store.active(user_id)
    return JSONResponse(status_code=200, content=active.to_dict())


@app.put("/api/router/config", response_model=None)
async def put_router_config(
    request: RouterConfigUpdate,
    x_api_key: Optional[str] = Header(None),
) -> JSONResponse:
    """Save a new router config version (org-wide, or a user override)."""
    changed_by = _require_admin(x_api_key)
    store = get_services().router_store
    try:
        config = RouterConfig.from_dict(request.model_dump())
        entry = store.save(
            config,
            change_description=request.changeDescription,
            changed_by=changed_by,
            user_id=request.userId,
        )
    except RoutingError as exc:
        return _error_response(400, "routing_error", exc.detail)
    except (KeyError, TypeError, ValueError) as exc:
        return _error_response(400, "validation_error", "Invalid router config: {}".format(exc))

    _logger.info("Router config saved as version %d by %s", entry.version, changed_by)
    return JSONResponse(status_code=200, content=entry.to_dict())


@app.get("/api/router/history", response_model=None)
async def router_history(user_id: Optional[str] = Query(None, alias="userId")) -> JSONResponse:
    versions = get_services().router_store.history(user_id)
    return JSONResponse(status_code=200, content={"versions": [v.to_dict() for v in versions]})


@app.post("/api/router/revert/{version}", response_model=None)
async def revert_router_config(
    version: int,
    user_id: Optional[str] = Query(None, alias="userId"),
    x_api_key: Optional[str] = Header(None),
) -> JSONResponse:
    changed_by = _require_admin(x_api_key)
    try:
        entry = get_services().router_store.revert(version, changed_by, user_id)
    except RoutingError as exc:
        return _error_response(404, "not_found", exc.detail)
    _logger.info("Router config reverted to version %d as version %d", version, entry.version)
    return JSONResponse(status_code=200, content=entry.to_dict())


@app.get("/api/router/diff", response_model=None)
async def router_diff(
    a: int,
    b: int,
    user_id: Optional[str] = Query(None, alias="userId"),
) -> JSONResponse:
    try:
        diff = get_services().router_store.diff(a, b, user_id)
    except RoutingError as exc:
        return _error_response(404, "not_found", exc.detail)
    return JSONResponse(status_code=200, content=diff)


# --- Models ---


@app.get("/api/models/aliases", response_model=None)
async def model_aliases() -> JSONResponse:
    registry = get_services().registry
    resolved = registry.snapshot()
    families: List[Dict[str, Any]] = []
    for family in registry.families():
        entry = family.to_dict()
        entry["resolvedModelId"] = resolved.get(family.alias, family.default_model_id)
        families.append(entry)
    return JSONResponse(status_code=200, content={"aliases": resolved, "families": families})


@app.post("/api/models/discover", response_model=None)
async def discover_models(x_api_key: Optional[str] = Header(None)) -> JSONResponse:
    """Run model discovery now with the server's provider keys."""
    _require_admin(x_api_key)
    report = await get_discovery().run(get_services().config.demo_keys())
    return JSONResponse(status_code=200, content=report.to_dict())


# --- Provider health ---


@app.get("/api/provider-status", response_model=None)
async def provider_status() -> JSONResponse:
    """Current status of every provider, from their public status pages."""
    statuses = await get_status_monitor().get_all_statuses()
    return JSONResponse(status_code=200, content=statuses.to_dict())


@app.post("/api/validate-key", response_model=None)
async def validate_key(request: KeyValidationRequest) -> JSONResponse:
    """Check a user-supplied provider key without running a completion."""
    result = await get_services().llm.validate_key(request.provider, request.apiKey)
    return JSONResponse(status_code=200, content=result.model_dump())


# --- Admin settings ---


@app.get("/api/admin/security-threshold", response_model=None)
async def get_security_threshold(x_api_key: Optional[str] = Header(None)) -> JSONResponse:
    _require_admin(x_api_key)
    return JSONResponse(
        status_code=200, content={"threshold": get_services().security.threshold}
    )


@app.put("/api/admin/security-threshold", response_model=None)
async def put_security_threshold(
    request: SecurityThresholdUpdate,
    x_api_key: Optional[str] = Header(None),
) -> JSONResponse:
    changed_by = _require_admin(x_api_key)
    gate = get_services().security
    gate.set_threshold(request.threshold)
    _logger.info("Security threshold set to %d by %s", request.threshold, changed_by)
    return JSONResponse(status_code=200, content={"threshold": gate.threshold})


def _limits_body(services: Services) -> Dict[str, Any]:
    limits = services.budget.limits()
    return {
        "enabled": services.config.demo.enabled,
        "maxPerSession": limits.max_per_session,
        "maxPerOrigin": limits.max_per_origin,
        "dailyBudgetUsd": limits.daily_budget_usd,
        "windowSeconds": limits.window_seconds,
        "spentTodayUsd": round(services.budget.spent_today(), 6),
    }


@app.get("/api/admin/demo-limits", response_model=None)
async def get_demo_limits(x_api_key: Optional[str] = Header(None)) -> JSONResponse:
    _require_admin(x_api_key)
    return JSONResponse(status_code=200, content=_limits_body(get_services()))


@app.put("/api/admin/demo-limits", response_model=None)
async def put_demo_limits(
    request: DemoLimitsUpdate,
    x_api_key: Optional[str] = Header(None),
) -> JSONResponse:
    changed_by = _require_admin(x_api_key)
    services = get_services()
    services.budget.set_limits(
        max_per_session=request.maxPerSession,
        max_per_origin=request.maxPerOrigin,
        daily_budget_usd=request.dailyBudgetUsd,
    )
    _logger.info("Demo limits updated by %s: %s", changed_by, request.model_dump(exclude_none=True))
    return JSONResponse(status_code=200, content=_limits_body(services))
