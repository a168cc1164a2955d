"""
Health check endpoints.
"""

import shutil

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


def _missing_settings() -> list:
    missing = []
    if not settings.VERTEX_AI_PROJECT_ID and not settings.SERVICE_ACCOUNT_JSON.strip():
        missing.append("VERTEX_AI_PROJECT_ID")
    if not settings.GCS_BUCKET_NAME:
        missing.append("GCS_BUCKET_NAME")
    return missing


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database, ledger backend and video pipeline readiness.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "ledger_backend": settings.LEDGER_BACKEND,
        "video_provider": "configured" if not _missing_settings() else "missing",
        "watermark": "available" if shutil.which("ffmpeg") else "unavailable",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    if settings.LEDGER_BACKEND == "redis":
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
    missing = _missing_settings()
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
