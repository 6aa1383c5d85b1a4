"""
Health check endpoints for monitoring.

Endpoints:
- /health: Basic health check (API + database)
- /health/ready: Deep readiness check (database, Celery broker)
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

import redis
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.database import get_db
from ..schemas.common import HealthResponse


logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Returns the health status of the API and its database.",
)
def health_check(db: Session = Depends(get_db)) -> HealthResponse:
    """
    Health check endpoint for monitoring systems.

    Returns:
        HealthResponse with status and database health
    """
    db_status = "connected"
    try:
        start = time.perf_counter()
        db.execute(text("SELECT 1"))
        db_response_time_ms = int((time.perf_counter() - start) * 1000)
        if db_response_time_ms > 100:
            logger.warning(f"Slow database response: {db_response_time_ms}ms")
    except Exception as e:
        db_status = "disconnected"
        logger.error(f"Database health check failed: {type(e).__name__}")

    return HealthResponse(
        status="healthy" if db_status == "connected" else "unhealthy",
        version=settings.app_version,
        timestamp=datetime.now(timezone.utc),
        database=db_status,
        environment=settings.environment,
    )


@router.get(
    "/health/ready",
    summary="Readiness Check",
    description="Deep readiness check for the database and the Celery broker.",
)
def readiness_check(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Readiness check for container orchestration.

    The database is required. The broker only carries the credential
    sweeps, so an unreachable broker is reported but does not fail
    readiness.
    """
    components: Dict[str, Any] = {}
    overall_healthy = True

    try:
        db.execute(text("SELECT 1"))
        components["database"] = {"status": "healthy", "connected": True}
    except Exception as e:
        components["database"] = {"status": "unhealthy", "connected": False, "error": str(e)[:100]}
        overall_healthy = False

    try:
        client = redis.Redis.from_url(settings.celery_broker_url, socket_connect_timeout=2, socket_timeout=2)
        client.ping()
        components["broker"] = {"status": "healthy", "connected": True}
    except (redis.RedisError, ValueError) as e:
        components["broker"] = {"status": "unhealthy", "connected": False, "error": str(e)[:100]}

    return {
        "status": "ready" if overall_healthy else "not_ready",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
        "components": components,
    }
