from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import api_router
from app.core.logging import setup_logging
from app.database import init_db, check_db, async_session_factory
from app.jobs.scheduler import NotificationScheduler
from app.services.collection_service import (
    CollectionError, InsufficientStockError, NotFoundError, ConcurrentModificationError,
    BatchInUseError, BatchNotActiveError, InvalidQuantityError,
)
from app.services.settings_service import InvalidSettingError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Configure logging
    - Create missing tables
    - Build and start the notification scheduler
    """
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()

    scheduler = NotificationScheduler(
        async_session_factory,
        scan_interval_minutes=settings.EXPIRY_SCAN_INTERVAL_MINUTES,
        dispatch_timeout=settings.CHANNEL_DISPATCH_TIMEOUT_SECONDS,
        max_concurrent=settings.HOTEL_JOB_CONCURRENCY,
    )
    app.state.notification_scheduler = scheduler
    if settings.SCHEDULER_ENABLED:
        await scheduler.start()
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false); manual runs only")

    yield

    # Shutdown
    scheduler.stop()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Collections", "description": "FIFO stock collection, write-off history and statistics"},
    {"name": "Notifications", "description": "Expiry alerts, daily reports and scheduler control"},
    {"name": "Settings", "description": "Hierarchical settings (system > hotel > department > user)"},
    {"name": "Health", "description": "Service health"},
]

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Perishable stock tracking for hotels: FIFO write-offs and expiry notifications.",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


# ==================== Exception handlers ====================

def _error_response(request: Request, status_code: int, exc: Exception, **extra) -> JSONResponse:
    content = {
        "error": str(exc),
        "type": type(exc).__name__,
        "path": str(request.url.path),
        "method": request.method,
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(InsufficientStockError)
async def insufficient_stock_handler(request: Request, exc: InsufficientStockError):
    return _error_response(
        request, status.HTTP_409_CONFLICT, exc,
        code="INSUFFICIENT_STOCK", available=exc.available, requested=exc.requested,
    )


@app.exception_handler(CollectionError)
async def collection_error_handler(request: Request, exc: CollectionError):
    if isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (ConcurrentModificationError, BatchInUseError, BatchNotActiveError)):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, InvalidQuantityError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return _error_response(request, status_code, exc)


@app.exception_handler(InvalidSettingError)
async def invalid_setting_handler(request: Request, exc: InvalidSettingError):
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unexpected errors and return a generic 500."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, exc)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown",
            "scheduler": "unknown",
        }
    }

    # Check database connectivity
    try:
        await check_db()
        health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    scheduler = getattr(request.app.state, "notification_scheduler", None)
    health_status["checks"]["scheduler"] = "running" if scheduler and scheduler.running else "stopped"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
