"""Video record transitions for the transcription lifecycle, plus stuck-record recovery."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.video import Video
from services.transcription import TranscriptionSuccess

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000
TIMEOUT_ERROR_MESSAGE = "Worker timeout - video processing took too long. Please retry or upload a shorter video."


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def mark_processing(video_id: str) -> Optional[Video]:
    """Claim the record for a running job and clear any previous error."""
    async with async_session_maker() as db:
        result = await db.execute(select(Video).where(Video.id == video_id))
        video = result.scalar_one_or_none()
        if not video:
            return None
        video.transcription_status = "processing"
        video.transcription_error = None
        video.updated_at = _now()
        await db.commit()
        return video


async def save_success(video_id: str, result: TranscriptionSuccess) -> bool:
    """Write every pipeline output in one commit; description only when one was produced."""
    async with async_session_maker() as db:
        db_result = await db.execute(select(Video).where(Video.id == video_id))
        video = db_result.scalar_one_or_none()
        if not video:
            logger.warning("Video %s disappeared before transcription results were saved", video_id)
            return False
        video.transcript = result.transcript
        video.captions_vtt_url = result.captions_url
        video.captions_vtt_s3_key = result.captions_key
        video.transcription_status = "completed"
        video.transcription_error = None
        video.is_processed = True
        if result.description:
            video.description = result.description
            video.ai_description_generated = True
        video.updated_at = _now()
        await db.commit()
        return True


async def save_failure(video_id: str, message: str) -> bool:
    """Mark the record handled-but-failed so the scheduler stops retrying it silently."""
    async with async_session_maker() as db:
        result = await db.execute(select(Video).where(Video.id == video_id))
        video = result.scalar_one_or_none()
        if not video:
            return False
        video.transcription_status = "failed"
        video.transcription_error = (message or "Transcription failed")[:MAX_ERROR_LENGTH]
        video.is_processed = True
        video.updated_at = _now()
        await db.commit()
        return True


async def reset_for_retry(video: Video, db: AsyncSession) -> Video:
    video.transcription_status = "pending"
    video.transcription_error = None
    video.is_processed = False
    video.updated_at = _now()
    await db.commit()
    await db.refresh(video)
    return video


async def apply_manual_transcript(
    video: Video,
    db: AsyncSession,
    transcript: str,
    captions_key: str,
    captions_url: str,
) -> Video:
    """Store an instructor-provided caption track as a completed transcription."""
    video.transcript = transcript
    video.captions_vtt_url = captions_url
    video.captions_vtt_s3_key = captions_key
    video.transcription_status = "completed"
    video.transcription_error = None
    video.is_processed = True
    video.updated_at = _now()
    await db.commit()
    await db.refresh(video)
    return video


async def recover_stuck_transcriptions(max_age_minutes: int = 5) -> int:
    """
    Reset `processing` records untouched for longer than max_age_minutes back to `pending`.

    This compensates for runners that died without reporting back. The threshold must
    stay above the longest legitimate job, since a live job is only protected by it.
    """
    cutoff = _now() - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(Video).where(
                Video.transcription_status == "processing",
                Video.updated_at < cutoff,
            )
        )
        videos = result.scalars().all()
        for video in videos:
            video.transcription_status = "pending"
            video.transcription_error = None
            video.is_processed = False
            video.updated_at = _now()
        if videos:
            await db.commit()
            logger.warning("Reset %d stuck transcription(s) to pending", len(videos))
        return len(videos)


async def fail_stuck_transcriptions(max_age_minutes: int = 10) -> int:
    """Operator fallback: mark long-stuck `processing` records as failed with a timeout message."""
    cutoff = _now() - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(Video).where(
                Video.transcription_status == "processing",
                Video.updated_at < cutoff,
            )
        )
        videos = result.scalars().all()
        for video in videos:
            video.transcription_status = "failed"
            video.transcription_error = TIMEOUT_ERROR_MESSAGE
            video.is_processed = True
            video.updated_at = _now()
        if videos:
            await db.commit()
        return len(videos)
