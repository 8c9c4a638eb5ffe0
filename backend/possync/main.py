"""FastAPI application for the POS offline sync service."""

import asyncio
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from possync.api.routes import api_router
from possync.core.config import settings
from possync.core.logging_config import configure_logging
from possync.core.rate_limit import DEVICE_HEADER, limiter
from possync.db.base import Base
from possync.db.session import SessionLocal, engine
from possync.services.offline.exceptions import OfflineSyncError

VERSION = "1.0.0"
UNLOGGED_PATHS = {"/health", "/health/ready", "/docs", "/openapi.json"}

configure_logging()
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id, log it with its device, and add security headers."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        path = request.url.path
        if path in UNLOGGED_PATHS:
            response = await call_next(request)
        else:
            response = await self._logged(request, call_next, request_id)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        return response

    async def _logged(self, request: Request, call_next, request_id: str):
        client_ip = request.client.host if request.client else "unknown"
        device_id = request.headers.get(DEVICE_HEADER)
        context = {"request_id": request_id, "device_id": device_id}
        line = f"{request.method} {request.url.path} client={client_ip} device={device_id or '-'}"
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            request_logger.error(f"{line} failed after {time.perf_counter() - started:.3f}s: {e}", extra=context)
            raise
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        request_logger.log(
            level,
            f"{line} -> {response.status_code} in {time.perf_counter() - started:.3f}s",
            extra=context,
        )
        return response


def _prepare_sqlite() -> None:
    """Create the database directory and tables for SQLite deployments.

    PostgreSQL deployments are migrated with Alembic instead.
    """
    prefix = "sqlite:///"
    if settings.database_url.startswith(prefix):
        directory = os.path.dirname(settings.database_url[len(prefix):])
        if directory and ":memory:" not in directory:
            os.makedirs(directory, exist_ok=True)
    Base.metadata.create_all(bind=engine)
    logger.info("SQLite schema ensured")


def _recover_interrupted_syncs() -> None:
    from possync.services.offline.sync_orchestrator import SyncOrchestrator

    db = SessionLocal()
    try:
        closed = SyncOrchestrator(db).recover_interrupted_sessions()
        if closed:
            logger.info(f"Startup recovery: closed {closed} interrupted sync session(s)")
    except SQLAlchemyError as e:
        logger.warning(f"Startup sync recovery skipped: {e}")
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    from possync.services.scheduler_service import configure_scheduler, scheduler

    logger.info("Starting POS offline sync service")
    if settings.database_url.startswith("sqlite"):
        _prepare_sqlite()
    _recover_interrupted_syncs()

    configure_scheduler(scheduler)
    scheduler_task = scheduler.launch()

    yield

    scheduler.stop()
    try:
        await scheduler_task
    except asyncio.CancelledError:
        pass
    logger.info("POS offline sync service stopped")


app = FastAPI(
    title="POS Offline Sync",
    description="Offline operation queue and synchronization backend for POS terminals",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(OfflineSyncError)
async def offline_sync_error_handler(request: Request, exc: OfflineSyncError):
    """Render queue and sync errors as ``{"detail", "error", "details"}``."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    content = {"detail": exc.message, "error": type(exc).__name__}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


app.add_middleware(RequestContextMiddleware)
# Added last so it runs first
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Request-ID", DEVICE_HEADER],
    expose_headers=["X-Request-ID"],
    max_age=600,
)

app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    return {"status": "healthy", "version": VERSION}


@app.get("/health/ready")
def readiness_check():
    """Database reachability plus the queue backlog a terminal fleet has left to sync."""
    from possync.services.offline.queue_store import QueueStore
    from possync.services.scheduler_service import scheduler

    database = "unhealthy"
    queue = None
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database = "healthy"
        stats = QueueStore(db).stats()
        queue = {key: stats[key] for key in ("due", "conflicts", "exhausted")}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
    finally:
        db.close()

    ready = database == "healthy"
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "checks": {"database": database},
            "queue": queue,
            "scheduler": scheduler.get_status(),
        },
    )
