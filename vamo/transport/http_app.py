# vamo/transport/http_app.py
"""
HTTP surface of the dispatch engine.

Callers are the ride/delivery backends (service token), never end users:
1. Public: /health, /ready
2. Protected (DISPATCH_API_TOKEN): /notifications/*
3. Monitoring (METRICS_TOKEN): /metrics

Route handlers only translate JSON to notification requests and results
back to JSON; all dispatch behaviour lives in vamo.core.dispatch.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vamo.config import settings
from vamo.core.dispatch import messages
from vamo.core.dispatch.domain import DispatchResult
from vamo.core.dispatch.errors import DispatchError
from vamo.core.dispatch.orchestrator import DispatchOrchestrator
from vamo.core.dispatch.receipts import PendingTicketRegistry
from vamo.infra.db_async import close_pool, init_pool, is_pool_ready
from vamo.infra.http_client import close_all_sessions
from vamo.infra.logging_config import get_logger, setup_logging
from vamo.infra.metrics import get_metrics_collector
from vamo.infra.pg_recipient_repo_async import AsyncPostgresRecipientRepository
from vamo.infra.ttl_store import InMemoryTTLStore
from vamo.transport.expo_sender import ExpoPushGateway
from vamo.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from vamo.transport.schemas import (
    CheckReceiptsIn,
    DeliveryRequestIn,
    DeliveryStatusIn,
    DirectMessageIn,
    RideRequestIn,
    TripStatusIn,
)
from vamo.transport.security import (
    check_configured_tokens,
    require_metrics_auth,
    require_service_auth,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
)

logger = get_logger(__name__)

REGISTRY_SWEEP_INTERVAL_SECONDS = 600


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting dispatch service: env={settings.app_env}")

    if settings.is_production and settings.log_level.upper() == "DEBUG":
        logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
        raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    await init_pool()
    logger.info("Database pool initialized")

    repository = AsyncPostgresRecipientRepository()
    registry = PendingTicketRegistry(InMemoryTTLStore())
    fastapi_app.state.registry = registry
    fastapi_app.state.orchestrator = DispatchOrchestrator(
        candidates=repository,
        recipients=repository,
        gateway=ExpoPushGateway(),
        registry=registry,
    )

    sweeper = asyncio.create_task(_sweep_registry(registry))

    logger.info("Application started successfully")

    yield

    # SHUTDOWN
    logger.info("Shutting down dispatch service")
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    await close_all_sessions()
    await close_pool()
    logger.info("Shutdown complete")


async def _sweep_registry(registry: PendingTicketRegistry) -> None:
    """Drop expired pending tickets periodically; runs until cancelled."""
    while True:
        await asyncio.sleep(REGISTRY_SWEEP_INTERVAL_SECONDS)
        removed = registry.sweep()
        if removed:
            logger.info(f"Pending ticket registry sweep: removed={removed}")


def get_orchestrator(request: Request) -> DispatchOrchestrator:
    return request.app.state.orchestrator


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Vamo Dispatch",
    description="Push notification dispatch for rides and deliveries",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        f"{'.'.join(str(p) for p in err.get('loc', ())[1:])}: {err.get('msg')}"
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "error": "; ".join(errors)})


@app.exception_handler(DispatchError)
async def dispatch_exception_handler(request: Request, exc: DispatchError):
    """Config/recipient errors are the caller's fault; nothing was sent."""
    logger.warning(f"Dispatch rejected: {exc}")
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


def _dispatch_response(result: DispatchResult) -> dict:
    return {"success": True, **result.to_dict()}


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: the database pool is up."""
    if not is_pool_ready():
        return JSONResponse(status_code=503, content={"status": "not_ready"})
    return {"status": "ready"}


# ============================================================================
# NOTIFICATION ENDPOINTS (DISPATCH_API_TOKEN)
# ============================================================================

@app.post("/notifications/ride-request", dependencies=[Depends(require_service_auth)])
async def send_ride_request(
    body: RideRequestIn,
    request: Request,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """Offer a trip to the nearest available drivers."""
    notification = messages.ride_request(
        body.model_dump(by_alias=True),
        k=body.max_drivers or settings.dispatch_max_candidates,
    )
    result = await orchestrator.dispatch(notification, request_id=request.state.request_id)
    return _dispatch_response(result)


@app.post("/notifications/delivery-request", dependencies=[Depends(require_service_auth)])
async def send_delivery_request(
    body: DeliveryRequestIn,
    request: Request,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """Offer a delivery to the nearest available couriers."""
    notification = messages.delivery_request(
        body.model_dump(by_alias=True),
        k=body.max_delivery_persons or settings.dispatch_max_candidates,
    )
    result = await orchestrator.dispatch(notification, request_id=request.state.request_id)
    return _dispatch_response(result)


@app.post("/notifications/trip-status", dependencies=[Depends(require_service_auth)])
async def send_trip_status(
    body: TripStatusIn,
    request: Request,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    notification = messages.trip_status(body.client_id, body.trip_id, body.status, body.driver_info)
    result = await orchestrator.dispatch(notification, request_id=request.state.request_id)
    return _dispatch_response(result)


@app.post("/notifications/delivery-status", dependencies=[Depends(require_service_auth)])
async def send_delivery_status(
    body: DeliveryStatusIn,
    request: Request,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    notification = messages.delivery_status(
        body.client_id, body.delivery_id, body.status, body.delivery_person_info,
    )
    result = await orchestrator.dispatch(notification, request_id=request.state.request_id)
    return _dispatch_response(result)


@app.post("/notifications/send", dependencies=[Depends(require_service_auth)])
async def send_direct_message(
    body: DirectMessageIn,
    request: Request,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """Free-form message to one client, driver or courier."""
    notification = messages.direct_message(
        body.recipient_id, body.role, body.title, body.body, body.data,
    )
    result = await orchestrator.dispatch(notification, request_id=request.state.request_id)
    return _dispatch_response(result)


@app.post("/notifications/check-receipts", dependencies=[Depends(require_service_auth)])
async def check_receipts(
    body: CheckReceiptsIn,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """Poll delivery receipts. Ids still ``pending`` should be polled again later."""
    report = await orchestrator.reconcile(body.ticket_ids)
    return {"success": True, **report.to_dict()}


# ============================================================================
# MONITORING ENDPOINTS (METRICS_TOKEN)
# ============================================================================

@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    collector = get_metrics_collector()
    return collector.get_metrics()


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    """Generic 404 for undefined endpoints."""
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vamo.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # Request logging middleware covers prod
        server_header=False,
        date_header=False,
    )
