"""
Certification LMS - Video Transcription API
Main application entry point with health check and API routing.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_worker_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    videos,
    workers,
)
from services.transcription_records import recover_stuck_transcriptions


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Certification LMS transcription API...")
    validate_worker_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stuck_transcriptions(settings.TRANSCRIPTION_STALE_MINUTES)
        if recovered:
            print(f"♻️ Reset {recovered} stuck transcriptions to pending after startup.")
    except Exception as exc:
        print(f"⚠️ Stuck transcription recovery skipped: {exc}")
    print(
        f"🎙️ Transcription queue '{settings.TRANSCRIPTION_QUEUE_NAME}' "
        f"({settings.TRANSCRIPTION_QUEUE_BACKEND}, strategy={settings.TRANSCRIPTION_STRATEGY})."
    )
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Certification LMS Transcription API",
    description="Queue, run and inspect video transcription jobs",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(videos.router, prefix="/videos", tags=["Videos"])
app.include_router(workers.router, prefix="/api/workers", tags=["Workers"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Certification LMS Transcription API",
        "version": "0.1.0",
        "status": "running"
    }
