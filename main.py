"""
main.py
FastAPI application entry point.
Registers routers, middleware, domain error mapping and startup/shutdown.

- Structured JSON logging with request ids
- Prometheus metrics at /metrics
- SQL (asyncpg / aiosqlite) or in-memory store, Redis or in-memory events
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal
from logging import LogRecord
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text

from config.database import AsyncSessionLocal, close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings
from services.booking.router import router as booking_router
from services.catalog.router import router as catalog_router
from services.settlement.router import router as settlement_router
from services.slots.router import router as slots_router
from shared.dependencies import Container, container_from_settings
from shared.exceptions import (
    CapacityExceededError,
    ConcurrentModificationError,
    EligibilityError,
    InvalidStateError,
    NotFoundError,
    SettlementLockedError,
    SevaError,
    ValidationError,
)
from shared.schemas.entities import (
    AdvanceBookingPolicy,
    ServiceCategory,
    ServiceDefinition,
    TimeWindow,
    WalkInPolicy,
)
from shared.schemas.schemas import ErrorResponse
from shared.utils.clock import business_now, parse_hhmm


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Error mapping ────────────────────────────────────────────

ERROR_STATUS = [
    (ValidationError, 422),
    (EligibilityError, 422),
    (CapacityExceededError, 409),
    (ConcurrentModificationError, 409),
    (InvalidStateError, 409),
    (SettlementLockedError, 423),
    (NotFoundError, 404),
]


def status_for(exc: SevaError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    owns_connections = getattr(app.state, "container", None) is None

    if owns_connections:
        if settings.STORE_BACKEND == "sql":
            await init_db()
            logger.info("Database connected")
        if settings.EVENT_BUS == "redis":
            await init_redis()
            logger.info("Redis connected")
        app.state.container = container_from_settings()

        # Seed a few sevas on first run (development only)
        if settings.APP_ENV == "development":
            await seed_initial_data(app.state.container)

    logger.info(f"{settings.APP_NAME} is ready")
    yield

    if owns_connections:
        if settings.EVENT_BUS == "redis":
            await close_redis()
        if settings.STORE_BACKEND == "sql":
            await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app(container: Optional[Container] = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Seva Counter Engine

Slot capacity and booking settlement for temple seva counters:
- **Services**: seva catalog with schedules, party size and walk-in rules
- **Slots**: materialized capacity per service, date and time window
- **Bookings**: walk-in and pre-booked receipts, payment, completion, no-show
- **Settlements**: per-counter, per-shift cash/digital reconciliation and lock

### Identity
Mutating endpoints require an `X-User-Id` header set by the gateway.
Booking creation also requires `X-Counter-Id` (and optionally `X-Counter-Name`).
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # ── Middleware (order matters, outermost first) ───────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(SevaError)
    async def seva_error_handler(request: Request, exc: SevaError):
        request_id = getattr(request.state, "request_id", None)
        status_code = status_for(exc)
        logger.warning(f"[{request_id}] {exc.code}: {exc.message} {exc.context}")
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(detail=exc.message, error=exc.code, request_id=request_id).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "error": "INTERNAL_ERROR", "request_id": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        checks = {"status": "ok", "version": settings.APP_VERSION, "store": settings.STORE_BACKEND}

        if settings.STORE_BACKEND == "sql":
            try:
                async with AsyncSessionLocal() as session:
                    await session.execute(text("SELECT 1"))
                checks["database"] = "ok"
            except Exception:
                checks["database"] = "error"
                checks["status"] = "degraded"

        if settings.EVENT_BUS == "redis":
            from config.redis_client import redis_client
            try:
                if redis_client:
                    await redis_client.ping()
                checks["redis"] = "ok"
            except Exception:
                checks["redis"] = "error"
                checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(catalog_router)
    app.include_router(slots_router)
    app.include_router(booking_router)
    app.include_router(settlement_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_initial_data(container: Container) -> None:
    """Seed a few sevas and a week of slots on first run (development only)."""
    if await container.catalog.list_active_services():
        return  # Already seeded

    def windows(*pairs):
        return [TimeWindow(start_time=parse_hhmm(a), end_time=parse_hhmm(b)) for a, b in pairs]

    seed_services = [
        ServiceDefinition(
            name="Archana", name_local="अर्चना", category=ServiceCategory.ARCHANA,
            price=Decimal("50"), duration_minutes=15, capacity=40,
            time_windows=windows(("06:00", "07:00"), ("07:00", "08:00"), ("17:00", "18:00")),
            max_devotees=4, walk_in=WalkInPolicy(allowed=True, reserved_percentage=30),
        ),
        ServiceDefinition(
            name="Rudra Abhishekam", name_local="रुद्राभिषेक", category=ServiceCategory.ABHISHEKAM,
            price=Decimal("1100"), duration_minutes=60, capacity=10, weekdays=[1],
            time_windows=windows(("07:00", "08:00")), max_devotees=5,
            requires_identity_attribute=True,
            advance_booking=AdvanceBookingPolicy(required=True, days_ahead=30),
            walk_in=WalkInPolicy(allowed=False),
        ),
        ServiceDefinition(
            name="Special Darshan", name_local="विशेष दर्शन", category=ServiceCategory.DARSHAN,
            price=Decimal("300"), duration_minutes=30, capacity=100, is_priority=True,
            time_windows=windows(("09:00", "10:00"), ("10:00", "11:00"), ("18:00", "19:00")),
            max_devotees=6, walk_in=WalkInPolicy(allowed=True, reserved_percentage=20),
        ),
    ]
    for service in seed_services:
        await container.catalog.create_service(service)
    created = await container.allocator.generate_horizon(business_now().date())
    logger.info(f"Seeded {len(seed_services)} sevas and {len(created)} slots")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
