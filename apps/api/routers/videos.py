"""Course video router: registration of uploaded videos and their transcription lifecycle."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.video import Video
from routers.rate_limit import rate_limit
from services.captions import is_webvtt, vtt_to_text
from services.storage import S3ObjectStore, caption_key
from services.transcription import CAPTIONS_CACHE_CONTROL, CAPTIONS_CONTENT_TYPE
from services.transcription_queue import (
    QueueUnavailableError,
    TranscriptionQueue,
    add_transcription_job,
    build_transcription_queue,
    job_key_for,
)
from services.transcription_records import apply_manual_transcript, reset_for_retry

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateVideoRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    s3_key: str = Field(min_length=1, max_length=1024)
    description: Optional[str] = Field(default=None, max_length=5000)
    enable_transcription: bool = True
    generate_ai_description: bool = False


class ManualTranscriptRequest(BaseModel):
    vtt_content: str = Field(min_length=1, max_length=2_000_000)


class VideoResponse(BaseModel):
    id: str
    title: str
    s3_key: str
    description: Optional[str] = None
    transcription_status: str
    transcription_error: Optional[str] = None
    is_processed: bool
    captions_vtt_url: Optional[str] = None
    queued: Optional[bool] = None


class TranscriptionStatusResponse(BaseModel):
    status: str
    error: Optional[str] = None
    has_transcript: bool
    has_captions: bool
    job: Optional[dict] = None


async def get_transcription_queue() -> AsyncIterator[TranscriptionQueue]:
    queue = build_transcription_queue()
    try:
        yield queue
    finally:
        await queue.close()


def get_object_store() -> S3ObjectStore:
    try:
        return S3ObjectStore.from_settings()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


async def _get_video_or_404(db: AsyncSession, video_id: str) -> Video:
    result = await db.execute(select(Video).where(Video.id == video_id))
    video = result.scalar_one_or_none()
    if not video:
        raise HTTPException(status_code=404, detail="Video not found")
    return video


def _serialize_video(video: Video, queued: Optional[bool] = None) -> VideoResponse:
    return VideoResponse(
        id=video.id,
        title=video.title,
        s3_key=video.s3_key,
        description=video.description,
        transcription_status=video.transcription_status,
        transcription_error=video.transcription_error,
        is_processed=bool(video.is_processed),
        captions_vtt_url=video.captions_vtt_url,
        queued=queued,
    )


async def _enqueue(queue: TranscriptionQueue, video: Video, generate_description: bool) -> bool:
    """Queue failures leave the video `pending`; a later retry re-enqueues it."""
    try:
        await add_transcription_job(
            queue,
            video_id=video.id,
            s3_key=video.s3_key,
            file_name=video.title,
            generate_description=generate_description,
        )
        return True
    except QueueUnavailableError as exc:
        logger.warning("Could not queue transcription for video %s: %s", video.id, exc)
        return False


@router.post("", response_model=VideoResponse, status_code=201)
async def create_video(
    request: CreateVideoRequest,
    _rate_limit: None = Depends(rate_limit("video_create", limit=120, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
    queue: TranscriptionQueue = Depends(get_transcription_queue),
):
    """Register an uploaded video and queue its transcription when enabled."""
    video = Video(
        title=request.title.strip(),
        s3_key=request.s3_key.strip(),
        description=request.description,
        transcription_status="pending" if request.enable_transcription else "skipped",
        is_processed=not request.enable_transcription,
        ai_description_generated=False,
    )
    db.add(video)
    await db.commit()
    await db.refresh(video)

    queued = None
    if request.enable_transcription:
        queued = await _enqueue(queue, video, request.generate_ai_description)
    return _serialize_video(video, queued=queued)


@router.get("/{video_id}/transcription", response_model=TranscriptionStatusResponse)
async def get_transcription_status(
    video_id: str,
    db: AsyncSession = Depends(get_db),
    queue: TranscriptionQueue = Depends(get_transcription_queue),
):
    video = await _get_video_or_404(db, video_id)
    job = None
    try:
        status = await queue.get_job_status(job_key_for(video.id))
        job = status.to_dict() if status else None
    except QueueUnavailableError as exc:
        logger.warning("Transcription job status unavailable for video %s: %s", video.id, exc)
    return TranscriptionStatusResponse(
        status=video.transcription_status,
        error=video.transcription_error,
        has_transcript=bool(video.transcript),
        has_captions=bool(video.captions_vtt_url),
        job=job,
    )


@router.post("/{video_id}/transcription/retry", response_model=VideoResponse)
async def retry_transcription(
    video_id: str,
    _rate_limit: None = Depends(rate_limit("transcription_retry", limit=30, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
    queue: TranscriptionQueue = Depends(get_transcription_queue),
):
    """Reset a video to `pending` and queue it again (no description generation)."""
    video = await _get_video_or_404(db, video_id)
    if video.transcription_status == "processing":
        raise HTTPException(status_code=409, detail="Transcription is already in progress")
    video = await reset_for_retry(video, db)
    queued = await _enqueue(queue, video, generate_description=False)
    return _serialize_video(video, queued=queued)


@router.post("/{video_id}/transcription/manual", response_model=VideoResponse)
async def upload_manual_transcript(
    video_id: str,
    request: ManualTranscriptRequest,
    db: AsyncSession = Depends(get_db),
    store: S3ObjectStore = Depends(get_object_store),
):
    """Replace the transcription with an instructor-provided WebVTT caption track."""
    video = await _get_video_or_404(db, video_id)
    if not is_webvtt(request.vtt_content):
        raise HTTPException(status_code=422, detail="Invalid VTT format. File must start with 'WEBVTT'")

    key = caption_key(video.id)
    try:
        stored = await asyncio.to_thread(
            store.upload,
            request.vtt_content.encode("utf-8"),
            key,
            CAPTIONS_CONTENT_TYPE,
            CAPTIONS_CACHE_CONTROL,
        )
    except Exception as exc:
        logger.exception("Manual caption upload failed for video %s", video.id)
        raise HTTPException(status_code=502, detail=f"Failed to upload transcript: {exc}")

    video = await apply_manual_transcript(
        video,
        db,
        transcript=vtt_to_text(request.vtt_content),
        captions_key=stored.key,
        captions_url=stored.public_url,
    )
    return _serialize_video(video)
