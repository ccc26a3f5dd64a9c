"""
API endpoints for health checks and readiness checks.
"""

from fastapi import APIRouter, Request, Response

from scheduled_messaging.api.v1.models import HealthResponse
from scheduled_messaging.db.session import db_manager
from scheduled_messaging.db.redis import redis_manager
from scheduled_messaging.core.observability import health_monitor, get_logger
from datetime import datetime


logger = get_logger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns the overall health status of the application.
    """
    try:
        health_status = await health_monitor.check_health()
        return HealthResponse(**health_status)

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return HealthResponse(
            status="unhealthy",
            timestamp=datetime.utcnow(),
            checks={
                "error": {
                    "status": "unhealthy",
                    "error": str(e)
                }
            }
        )


@router.get("/ready")
async def readiness_check(request: Request, response: Response):
    """
    Readiness check endpoint.

    Verifies database and Redis connectivity and reports provider health.
    Provider outages do not fail readiness: scheduling still works and the
    worker retries delivery later.
    """
    checks = {}
    is_ready = True

    try:
        db_healthy = await db_manager.health_check()
    except Exception as e:
        logger.error(f"Database readiness check failed: {e}")
        db_healthy = False
    checks["database"] = {"status": "healthy" if db_healthy else "unhealthy"}
    is_ready = is_ready and db_healthy

    try:
        redis_healthy = await redis_manager.health_check()
    except Exception as e:
        logger.error(f"Redis readiness check failed: {e}")
        redis_healthy = False
    checks["redis"] = {"status": "healthy" if redis_healthy else "unhealthy"}
    is_ready = is_ready and redis_healthy

    gateway = getattr(request.app.state, "gateway", None)
    if gateway is not None:
        checks["providers"] = await gateway.health_check()
    else:
        checks["providers"] = {"status": "not initialized"}
        is_ready = False

    if not is_ready:
        response.status_code = 503

    return {
        "ready": is_ready,
        "timestamp": datetime.utcnow().isoformat(),
        "checks": checks
    }


@router.get("/live")
async def liveness_check():
    """
    Simple liveness check endpoint.

    Does not check external dependencies.
    """
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}
