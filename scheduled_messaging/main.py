"""
Main FastAPI application for the scheduled messaging service.
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from contextlib import asynccontextmanager
import time

from scheduled_messaging.core.config import settings
from scheduled_messaging.core.observability import (
    init_observability, CorrelationIdMiddleware, health_monitor,
    MetricsCollector, get_logger
)
from scheduled_messaging.db.session import init_database, close_database, db_manager
from scheduled_messaging.db.redis import init_redis, close_redis, redis_manager
from scheduled_messaging.providers.gateway import ProviderFactory
from scheduled_messaging.services.scheduler_store import SchedulerStore
from scheduled_messaging.services.scheduling_service import SchedulingService
from scheduled_messaging.workers.dispatch_worker import DispatchWorker
from scheduled_messaging.api.v1 import scheduled, health
from scheduled_messaging.api.v1.models import ErrorResponse


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting scheduled messaging service...")

    init_observability()
    await init_database()
    await init_redis()

    gateway = ProviderFactory.create_gateway()
    store = SchedulerStore(db_manager)
    worker = DispatchWorker(store, gateway, notifier=redis_manager)
    service = SchedulingService(store, gateway, worker=worker, cache=redis_manager)

    app.state.gateway = gateway
    app.state.worker = worker
    app.state.scheduling_service = service

    health_monitor.register_check("database", db_manager.health_check)
    health_monitor.register_check("redis", redis_manager.health_check)

    await worker.start()

    logger.info(
        "Scheduled messaging service started successfully",
        scheduler_enabled=worker.enabled
    )

    yield

    logger.info("Shutting down scheduled messaging service...")

    await worker.stop(timeout=settings.provider_timeout * 2)
    await gateway.close()
    await close_redis()
    await close_database()

    logger.info("Scheduled messaging service shut down successfully")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Scheduled bulk text, voice and audio messaging",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

app.add_middleware(CorrelationIdMiddleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log and track all HTTP requests."""
    start_time = time.time()

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else None
    )

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        MetricsCollector.track_api_request(
            method=request.method,
            endpoint=request.url.path,
            status_code=response.status_code,
            duration=duration
        )

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration=duration
        )

        return response

    except Exception as e:
        duration = time.time() - start_time

        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            duration=duration
        )

        MetricsCollector.track_api_request(
            method=request.method,
            endpoint=request.url.path,
            status_code=500,
            duration=duration
        )

        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                message="An unexpected error occurred"
            ).model_dump()
        )


app.include_router(
    scheduled.router,
    prefix=f"{settings.api_prefix}/scheduled",
    tags=["scheduled"]
)

app.include_router(
    health.router,
    prefix="",
    tags=["health"]
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "operational",
        "documentation": "/docs" if settings.debug else None
    }


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    if not settings.metrics_enabled:
        raise HTTPException(
            status_code=404,
            detail="Metrics not enabled"
        )

    return MetricsCollector.get_metrics()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="Internal server error",
            message="An unexpected error occurred"
        ).model_dump()
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "scheduled_messaging.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=settings.workers if not settings.debug else 1,
        log_level=settings.log_level.lower()
    )
