"""
Health check endpoints.
"""

from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


def _missing_transcription_settings() -> List[str]:
    missing = []
    if not (settings.OPENAI_API_KEY or "").strip():
        missing.append("OPENAI_API_KEY")
    if not (settings.AWS_S3_BUCKET_NAME or "").strip():
        missing.append("AWS_S3_BUCKET_NAME")
    return missing


@router.get("/health")
async def health_check():
    """
    Overall service health: database and Redis connectivity plus
    whether the speech-to-text and storage credentials are configured.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "queue_backend": settings.TRANSCRIPTION_QUEUE_BACKEND,
        "openai_api_key": "configured" if settings.OPENAI_API_KEY else "missing",
        "s3_bucket": "configured" if settings.AWS_S3_BUCKET_NAME else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=2, socket_timeout=2)
        try:
            await r.ping()
        finally:
            await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        # The in-memory queue backend does not need Redis.
        if settings.TRANSCRIPTION_QUEUE_BACKEND == "redis":
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Readiness probe: transcription cannot run without these settings."""
    missing = _missing_transcription_settings()
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Liveness probe."""
    return {"alive": True}
