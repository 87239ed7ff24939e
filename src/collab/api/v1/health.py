"""Health check endpoints.

Liveness (/health) checks nothing external; readiness (/health/ready)
verifies the database and Redis are reachable. Failure details go to the
log, never into the response body.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.collab.config import get_settings
from src.collab.core.database import get_engine
from src.collab.core.redis import get_redis_pool

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database and Redis connectivity. Returns check results dict."""
    checks: dict = {"database": "ok", "redis": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("health.database_unreachable", exc_info=True)
        checks["database"] = "error"

    try:
        redis = get_redis_pool()
        if not await redis.ping():
            logger.warning("health.redis_no_pong")
            checks["redis"] = "error"
    except Exception:
        logger.warning("health.redis_unreachable", exc_info=True)
        checks["redis"] = "error"

    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 when the database and Redis answer, 503 otherwise."""
    checks = await _check_dependencies()
    all_healthy = checks["database"] == "ok" and checks["redis"] == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
