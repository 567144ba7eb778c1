"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.oracle import get_oracle_client

router = APIRouter()


def _oracle_configured() -> bool:
    return get_oracle_client(settings.ORACLE_API_KEY) is not None


@router.get("/health")
async def health_check():
    """
    Overall status of the database, Redis and the recommendation oracle.
    Redis only backs rate limiting, so a Redis outage degrades but never fails.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "oracle": "configured" if _oracle_configured() else "fallback",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not _oracle_configured():
        missing.append("ORACLE_API_KEY")
    if not settings.REVENUECAT_WEBHOOK_SECRET:
        missing.append("REVENUECAT_WEBHOOK_SECRET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
