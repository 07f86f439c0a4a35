"""
FastAPI Application Entry Point

Local UI-facing API of the KOT Reconciliation Engine. The point-of-sale,
kitchen display, table board and billing screens read reconciled state
and submit mutations through these endpoints; the engine talks to the
restaurant backend on their behalf.

Endpoints:
    - GET  /health: Engine and backend health
    - GET  /api/snapshot: Cached orders, tables and bills
    - GET  /api/tables/status: Derived table board
    - GET  /api/kitchen: Kitchen queue and station counts
    - GET  /api/events: Reconciliation events after a sequence number
    - POST /api/orders: Send an order (queued when offline)
    - PUT  /api/orders/{id}/status: Status change
    - GET  /api/bills/{id}/totals: Bill breakdown
    - POST /api/bills/{id}/pay: Record a payment
    - GET/POST/DELETE /api/queue...: Offline queue management
    - /api/notifications...: Alert feed, sound opt-in, badges

Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kot_engine.billing import format_amount
from kot_engine.core.config import get_settings, setup_logging
from kot_engine.engine import OrderEngine, Submission, SubmissionStatus
from kot_engine.exceptions import (
    AuthorizationError,
    Conflict,
    EngineError,
    InvalidTransition,
    MutationNotFound,
    NetworkError,
    QueueLockTimeout,
    RoleNotPermitted,
    ValidationError,
)
from kot_engine.schemas import (
    AcknowledgeRequest,
    ErrorResponse,
    HealthResponse,
    MarkReadRequest,
    OrderCreateRequest,
    PaymentRequest,
    SoundRequest,
    StatusChangeRequest,
)

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    settings = get_settings()

    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    engine = OrderEngine.from_settings(settings)
    app.state.engine = engine
    logger.info(f"✅ Backend: {engine.backend.provider_name}")
    logger.info(f"✅ Alert sink: {engine.emitter.sink.provider_name}")
    logger.info(f"✅ Offline queue: {engine.queue.path} ({engine.queue.pending_count()} pending)")

    await engine.start()
    logger.info("✅ Application ready!")

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await engine.stop()
    await engine.backend.aclose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle and billing reconciliation for the restaurant POS. "
        "Polls the backend per view, guards duplicate submissions and queues "
        "mutations while offline."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(request: Request) -> OrderEngine:
    return request.app.state.engine


def submission_response(submission: Submission, created: bool = False) -> JSONResponse:
    """202 for queued mutations, 201/200 otherwise."""
    if submission.status is SubmissionStatus.QUEUED:
        status_code = 202
    elif created and submission.status is SubmissionStatus.CONFIRMED:
        status_code = 201
    else:
        status_code = 200
    return JSONResponse(status_code=status_code, content=submission.to_dict())


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🧾 {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Engine Health Check",
)
async def health_check(engine: OrderEngine = Depends(get_engine)) -> HealthResponse:
    """Report backend reachability, connectivity and queue depth."""
    reachable = await engine.backend.health_check()
    status = engine.status()

    if reachable and status["online"]:
        overall = "healthy"
    else:
        overall = "degraded"

    return HealthResponse(
        status=overall,
        version=settings.app_version,
        environment=engine.settings.env_mode.value,
        backend=status["backend"],
        backend_reachable=reachable,
        online=status["online"],
        queue_depth=status["queue_depth"],
        views=status["views"],
    )


# =============================================================================
# RECONCILED STATE
# =============================================================================

@app.get("/api/snapshot", tags=["State"])
async def snapshot(engine: OrderEngine = Depends(get_engine)) -> dict[str, Any]:
    """Current cached orders, tables and bills."""
    return engine.cache.snapshot()


@app.get("/api/tables/status", tags=["State"])
async def table_status(engine: OrderEngine = Depends(get_engine)) -> dict[str, Any]:
    """Derived table board."""
    statuses = engine.cache.table_statuses()
    return {
        "tables": [
            {
                "id": table.id,
                "number": table.number,
                "label": table.label,
                "seats": table.seats,
                "status": statuses[key].value,
            }
            for key, table in engine.cache.tables.items()
        ]
    }


@app.get("/api/kitchen", tags=["State"])
async def kitchen_queue(
    station: Optional[str] = Query(None, description="Filter by kitchen station"),
    engine: OrderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Pending and preparing tickets, oldest first."""
    tickets = engine.cache.kitchen_queue(station=station)
    return {
        "station": station,
        "tickets": [ticket.to_dict() for ticket in tickets],
        "overdue": sum(1 for ticket in tickets if ticket.overdue),
        "station_counts": engine.cache.station_counts(),
        "ready_count": engine.cache.ready_count(),
    }


@app.get("/api/events", tags=["State"])
async def events(
    after: int = Query(0, ge=0, description="Return events with a greater sequence"),
    engine: OrderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Reconciliation events for badge and alert rendering."""
    return {
        "events": [event.to_dict() for event in engine.cache.events_after(after)],
        "last_sequence": engine.cache.last_event_sequence,
    }


@app.post("/api/reconcile", tags=["State"])
async def reconcile(engine: OrderEngine = Depends(get_engine)) -> dict[str, Any]:
    """Force an immediate reconciliation pass."""
    applied = await engine.request_reconciliation()
    return {
        "applied": applied is not None,
        "events": [event.to_dict() for event in applied or []],
    }


# =============================================================================
# ORDERS & BILLS
# =============================================================================

@app.post(
    "/api/orders",
    tags=["Orders"],
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def create_order(
    body: OrderCreateRequest,
    engine: OrderEngine = Depends(get_engine),
) -> JSONResponse:
    """Send a new order to the kitchen."""
    submission = await engine.create_order(body.to_draft())
    return submission_response(submission, created=True)


@app.put(
    "/api/orders/{order_id}/status",
    tags=["Orders"],
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def change_status(
    order_id: str,
    body: StatusChangeRequest,
    engine: OrderEngine = Depends(get_engine),
) -> JSONResponse:
    """Move an order along the status machine."""
    submission = await engine.submit_status_change(
        order_id,
        body.status,
        role=body.role,
        reason=body.reason,
    )
    return submission_response(submission)


@app.get("/api/bills/{bill_id}/totals", tags=["Bills"])
async def bill_totals(
    bill_id: str,
    engine: OrderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Money engine breakdown, rounded for display."""
    totals = await engine.bill_totals(bill_id)
    data = totals.to_dict()
    data["bill_id"] = bill_id
    data["formatted_total"] = format_amount(totals.grand_total, engine.settings.currency_symbol)
    return data


@app.post(
    "/api/bills/{bill_id}/pay",
    tags=["Bills"],
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def pay_bill(
    bill_id: str,
    body: PaymentRequest,
    engine: OrderEngine = Depends(get_engine),
) -> JSONResponse:
    """Record a payment; the amount defaults to the bill's grand total."""
    submission = await engine.submit_payment(bill_id, body.payment_method, amount=body.amount)
    return submission_response(submission)


# =============================================================================
# OFFLINE QUEUE
# =============================================================================

@app.get("/api/queue", tags=["Queue"])
async def list_queue(engine: OrderEngine = Depends(get_engine)) -> dict[str, Any]:
    """Mutations waiting for the backend."""
    entries = engine.queue.entries()
    return {
        "count": len(entries),
        "entries": [entry.model_dump(mode="json") for entry in entries],
    }


@app.post("/api/queue/retry-all", tags=["Queue"])
async def retry_all(engine: OrderEngine = Depends(get_engine)) -> dict[str, Any]:
    """One best-effort pass over the whole queue."""
    report = await engine.retry_all()
    return report.to_dict()


@app.post(
    "/api/queue/{mutation_id}/retry",
    tags=["Queue"],
    responses={404: {"model": ErrorResponse}},
)
async def retry_mutation(
    mutation_id: str,
    engine: OrderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Retry one queued mutation once."""
    result = await engine.retry_queued_mutation(mutation_id)
    return result.to_dict()


@app.delete("/api/queue/{mutation_id}", tags=["Queue"])
async def discard_mutation(
    mutation_id: str,
    engine: OrderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Drop a queued mutation without sending it."""
    if not engine.queue.dequeue(mutation_id):
        raise HTTPException(status_code=404, detail=f"Queued mutation {mutation_id} not found")
    return {"success": True, "mutation_id": mutation_id}


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@app.get("/api/notifications", tags=["Notifications"])
async def notifications(engine: OrderEngine = Depends(get_engine)) -> dict[str, Any]:
    """Alert feed, badge counters and sound state."""
    return engine.emitter.to_dict()


@app.post("/api/notifications/sound", tags=["Notifications"])
async def set_sound(
    body: SoundRequest,
    engine: OrderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Opt in to (or out of) audible alerts."""
    enabled = await engine.emitter.enable_sound(body.enabled)
    return {"sound_enabled": enabled}


@app.post("/api/notifications/ack", tags=["Notifications"])
async def acknowledge(
    body: AcknowledgeRequest,
    engine: OrderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Reset badge counters."""
    try:
        badges = engine.emitter.acknowledge(body.badge)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"badges": badges}


@app.post("/api/notifications/read", tags=["Notifications"])
async def mark_read(
    body: MarkReadRequest,
    engine: OrderEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Mark one alert, or every alert, as read."""
    if body.alert_id is None:
        return {"marked": engine.emitter.mark_all_read()}
    if not engine.emitter.mark_read(body.alert_id):
        raise HTTPException(status_code=404, detail=f"Alert {body.alert_id} not found")
    return {"marked": 1}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

ERROR_STATUS_CODES: list[tuple[type, int]] = [
    (RoleNotPermitted, 403),
    (InvalidTransition, 409),
    (Conflict, 409),
    (ValidationError, 422),
    (AuthorizationError, 403),
    (MutationNotFound, 404),
    (QueueLockTimeout, 503),
    (NetworkError, 503),
]


@app.exception_handler(EngineError)
async def engine_exception_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Map engine errors to HTTP responses."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES if isinstance(exc, error_type)),
        500,
    )
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path}: {type(exc).__name__}: {exc.message}")

    content = {"success": False, **exc.to_dict()}
    content["reconcile"] = isinstance(exc, Conflict)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "kot_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
