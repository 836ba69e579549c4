from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from models.video import Video
from services.captions import parse_vtt
from services.transcription import DirectTranscriptionStrategy, TranscriptionPipeline
from services.transcription_queue import InMemoryTranscriptionQueue, add_transcription_job, job_key_for
from services.transcription_worker import TranscriptionRunner

VTT = "WEBVTT\n\n00:00:00.000 --> 00:00:04.000\nThis lesson covers the OSI model.\n"


def _fake_transcribe(media_path, api_key, response_format="text", model="whisper-1"):
    return "This lesson covers the OSI model." if response_format == "text" else VTT


async def _setup(session_maker, object_store, tmp_path, clock, size_bytes):
    key = "dev/videos/v1.mp4"
    object_store.objects[key] = b"fake-video"
    object_store.reported_sizes[key] = size_bytes
    async with session_maker() as db:
        db.add(Video(id="v1", title="OSI Model", s3_key=key, updated_at=datetime.now(timezone.utc)))
        await db.commit()

    queue = InMemoryTranscriptionQueue(clock=clock)
    await add_transcription_job(queue, "v1", key, "OSI Model", False)
    pipeline = TranscriptionPipeline(
        store=object_store,
        strategy=DirectTranscriptionStrategy("sk-live", max_source_bytes=25 * 1024 * 1024),
        api_key="sk-live",
        work_dir=tmp_path / "work",
        captions_folder="dev",
    )
    return queue, TranscriptionRunner(queue, pipeline)


async def _load(session_maker) -> Video:
    async with session_maker() as db:
        result = await db.execute(select(Video).where(Video.id == "v1"))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_queued_video_is_transcribed_and_captions_are_retrievable(session_maker, object_store, tmp_path, clock):
    queue, runner = await _setup(session_maker, object_store, tmp_path, clock, size_bytes=10 * 1024 * 1024)

    with patch("services.transcription.transcribe_media", side_effect=_fake_transcribe):
        summary = await runner.run(max_duration=30, grace_window=5)

    assert summary.processed_count == 1
    video = await _load(session_maker)
    assert video.transcription_status == "completed"
    assert video.is_processed is True
    assert video.transcript == "This lesson covers the OSI model."
    assert video.captions_vtt_url == object_store.public_url("dev/captions/v1.vtt")

    captions = object_store.read_text(video.captions_vtt_s3_key)
    assert captions.startswith("WEBVTT")
    assert parse_vtt(captions)[0].text == "This lesson covers the OSI model."
    assert (await queue.get_job_status(job_key_for("v1"))).state == "completed"


@pytest.mark.asyncio
async def test_oversized_video_fails_fast_with_size_message(session_maker, object_store, tmp_path, clock):
    queue, runner = await _setup(session_maker, object_store, tmp_path, clock, size_bytes=60 * 1024 * 1024)

    with patch("services.transcription.transcribe_media") as mock_transcribe:
        summary = await runner.run(max_duration=30, grace_window=5)

    mock_transcribe.assert_not_called()
    assert summary.failed_count == 1
    video = await _load(session_maker)
    assert video.transcription_status == "failed"
    assert video.is_processed is True
    assert "too large" in video.transcription_error
    assert "25.0MB" in video.transcription_error
    status = await queue.get_job_status(job_key_for("v1"))
    assert status.state == "delayed"
    assert status.attempts_made == 1
    assert "too large" in status.failure_reason
