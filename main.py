"""Replisync Hub — FastAPI Backend

Central hub for offline-first replicas: serves change batches, accepts
pushes, tracks clients for safe log purging and streams live changes
over server-sent events.
"""

import asyncio
import contextlib
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from replisync.api import subscriptions, sync, tombstones
from replisync.core.config import settings
from replisync.database.session import init_db
from replisync.observability import setup_structured_logging
from replisync.services.subscription_service import subscription_hub, sweep_periodically
from replisync.sync.errors import SyncError, SyncErrorKind

setup_structured_logging()
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    SyncErrorKind.INVALID_INPUT: 400,
    SyncErrorKind.UNKNOWN_STRATEGY: 400,
    SyncErrorKind.DEPENDENCY_VIOLATION: 409,
    SyncErrorKind.HASH_MISMATCH: 409,
    SyncErrorKind.DEFERRED_CHANGES_FAILED: 409,
    SyncErrorKind.FULL_RESYNC_REQUIRED: 410,
    SyncErrorKind.STORAGE_ERROR: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Replisync hub starting up")
    init_db()
    sweeper = asyncio.create_task(
        sweep_periodically(subscription_hub, settings.SUBSCRIPTION_SWEEP_INTERVAL_SECONDS)
    )
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    subscription_hub.close()
    logger.info("Replisync hub shutting down")


app = FastAPI(
    title="Replisync Hub API",
    description="Change-log replication hub — batched pull/push, "
                "client retention tracking, live change subscriptions.",
    version="0.1.0",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code >= 500:
        logger.error("Sync error (%s): %s", exc.kind.value, exc.message,
                     extra={"request_id": request_id})
    else:
        logger.warning("Sync error (%s): %s", exc.kind.value, exc.message,
                       extra={"request_id": request_id})
    return JSONResponse(
        status_code=status_code,
        content={**exc.to_payload(), "request_id": request_id},
    )


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error("Internal error", exc_info=exc, extra={"request_id": request_id})
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "request_id": request_id},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", "unknown")
    return JSONResponse(
        status_code=422,
        content={
            "detail": jsonable_encoder(exc.errors()),
            "request_id": request_id,
        },
    )


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(sync.router, prefix=settings.API_V1_PREFIX)
app.include_router(tombstones.router, prefix=settings.API_V1_PREFIX)
app.include_router(subscriptions.router, prefix=settings.API_V1_PREFIX)

# ---------------------------------------------------------------------------
# Prometheus
# ---------------------------------------------------------------------------

Instrumentator().instrument(app).expose(app, include_in_schema=False)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["system"])
def health():
    return {"status": "ok"}
