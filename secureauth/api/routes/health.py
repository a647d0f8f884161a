"""
Health Check Endpoints.

Provides health status for the API and its dependencies.
"""
import os
import time
import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..models import HealthStatus
from ..deps import get_redis_client
from ...database.auth_db import get_auth_db

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

# Version from environment or default
VERSION = os.getenv("APP_VERSION", "0.1.0")


def _uses_sql() -> bool:
    return os.getenv("AUTH_STORE_BACKEND", "sql").strip().lower() != "memory"


@router.get("", response_model=HealthStatus)
def health_check():
    """
    Basic health check endpoint.

    Returns overall system status.
    """
    services = {}
    overall_healthy = True

    # Check the account database
    if _uses_sql():
        start = time.time()
        if get_auth_db().ping():
            latency = (time.time() - start) * 1000
            services["database"] = f"healthy ({latency:.1f}ms)"
        else:
            services["database"] = "unhealthy"
            overall_healthy = False
    else:
        services["database"] = "in-memory"

    # Check Redis
    redis_client = get_redis_client()
    if redis_client:
        try:
            start = time.time()
            redis_client.ping()
            latency = (time.time() - start) * 1000
            services["redis"] = f"healthy ({latency:.1f}ms)"
        except Exception as e:
            services["redis"] = f"unhealthy: {str(e)}"
            # Single-use records fall back to SQL, so Redis is not critical
    else:
        services["redis"] = "fallback_mode (sql)"

    return HealthStatus(
        status="healthy" if overall_healthy else "unhealthy",
        version=VERSION,
        services=services,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.

    Returns 200 if the service is running.
    """
    return {"status": "alive"}


@router.get("/ready")
def readiness():
    """
    Kubernetes readiness probe.

    Returns 200 if the service is ready to accept traffic.
    """
    if _uses_sql() and not get_auth_db().ping():
        logger.error("Readiness check failed: database unreachable")
        return JSONResponse(status_code=503, content={"status": "not ready", "error": "database unreachable"})
    return {"status": "ready"}
