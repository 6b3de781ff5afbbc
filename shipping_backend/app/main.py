"""
FastAPI Application Entry Point.

This is the main application file for the MM Shipments Backend.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from shipping_backend.app.core.config import settings
from shipping_backend.app.api.v1.router import router as api_v1_router
from shipping_backend.app.core.dependencies import tracking_cache, notification_dispatcher, sequence_allocator
from shipping_backend.app.core.observability import ObservabilityMiddleware, configure_logging
from shipping_backend.app.core.redis_client import ping_redis
from shipping_backend.app.db.session import engine, Base, AsyncSessionLocal
from shipping_backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from shipping_backend.app.services.tracking_cache import run_cache_sweeper

# Import models to ensure they are registered with Base
from shipping_backend.app.models.user import User
from shipping_backend.app.models.shipment import Shipment, ShipmentItem
from shipping_backend.app.models.parcel_sequence import ParcelSequence
from shipping_backend.app.models.audit_log import AuditLog
from shipping_backend.app.models.dlq import DeadLetterQueue

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables and the parcel counter row.
    2. Starts the notification worker and the tracking cache sweeper.
    3. Stops both on shutdown, sending whatever notifications are still queued.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as db:
        await sequence_allocator.ensure_counter(db)

    await notification_dispatcher.start()
    sweeper = asyncio.create_task(
        run_cache_sweeper(tracking_cache, settings.cache_sweep_interval_seconds),
        name="tracking-cache-sweeper",
    )
    logger.info("%s started (cache backend: %s)", settings.app_name, settings.cache_backend)
    yield
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    await notification_dispatcher.stop()
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Shipment lifecycle and parcel identification for UK to Ghana parcels",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status and application information
    """
    health = {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "cache_backend": settings.cache_backend,
        "pending_notifications": notification_dispatcher.pending,
    }
    if settings.cache_backend == "redis":
        redis_ok = await ping_redis()
        health["redis"] = "ok" if redis_ok else "unavailable"
        if not redis_ok:
            health["status"] = "degraded"
    return health


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to MM Shipments Backend API",
        "docs": "/docs",
        "health": "/health",
    }
