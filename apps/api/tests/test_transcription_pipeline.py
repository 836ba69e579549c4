import time
from pathlib import Path
from unittest.mock import patch

import pytest

from services.captions import parse_vtt
from services.transcription import (
    ChunkedAudioTranscriptionStrategy,
    DirectTranscriptionStrategy,
    TranscriptionFailure,
    TranscriptionPipeline,
    TranscriptionSuccess,
)
from services.transcription_queue import TranscriptionJobData

SOURCE_KEY = "dev/videos/v1.mp4"
VTT = "WEBVTT\n\n00:00:00.000 --> 00:00:02.000\nHello and welcome.\n"


def _fake_transcribe(media_path, api_key, response_format="text", model="whisper-1"):
    assert Path(media_path).exists()
    return "Hello and welcome." if response_format == "text" else VTT


def _payload(generate_description=False, s3_key=SOURCE_KEY):
    return TranscriptionJobData(
        video_id="v1",
        s3_key=s3_key,
        file_name="Intro to Networking",
        generate_description=generate_description,
    )


def _pipeline(store, work_dir, strategy=None, job_timeout_seconds=30.0):
    return TranscriptionPipeline(
        store=store,
        strategy=strategy or DirectTranscriptionStrategy("sk-live", max_source_bytes=25 * 1024 * 1024),
        api_key="sk-live",
        work_dir=work_dir,
        job_timeout_seconds=job_timeout_seconds,
        captions_folder="dev",
    )


@pytest.mark.asyncio
async def test_direct_strategy_transcribes_and_uploads_captions(object_store, tmp_path):
    object_store.objects[SOURCE_KEY] = b"fake-video"
    object_store.reported_sizes[SOURCE_KEY] = 10 * 1024 * 1024
    work_dir = tmp_path / "work"

    with patch("services.transcription.transcribe_media", side_effect=_fake_transcribe) as mock_transcribe:
        result = await _pipeline(object_store, work_dir).run(_payload())

    assert isinstance(result, TranscriptionSuccess)
    assert result.transcript == "Hello and welcome."
    assert result.captions_key == "dev/captions/v1.vtt"
    assert result.captions_url == "https://test-bucket.s3.us-east-1.amazonaws.com/dev/captions/v1.vtt"
    assert result.description is None
    formats = [call.args[2] for call in mock_transcribe.call_args_list]
    assert formats == ["text", "vtt"]

    uploaded = object_store.read_text(result.captions_key)
    assert uploaded.startswith("WEBVTT")
    assert parse_vtt(uploaded)
    assert object_store.uploads[0]["content_type"] == "text/vtt"
    assert list(work_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_oversized_source_fails_before_calling_speech_api(object_store, tmp_path):
    object_store.objects[SOURCE_KEY] = b"fake-video"
    object_store.reported_sizes[SOURCE_KEY] = 40 * 1024 * 1024

    with patch("services.transcription.transcribe_media") as mock_transcribe:
        result = await _pipeline(object_store, tmp_path / "work").run(_payload())

    assert isinstance(result, TranscriptionFailure)
    assert result.kind == "input"
    assert "too large" in result.message
    assert "25.0MB" in result.message
    mock_transcribe.assert_not_called()


@pytest.mark.asyncio
async def test_missing_source_is_an_input_failure(object_store, tmp_path):
    with patch("services.transcription.transcribe_media") as mock_transcribe:
        result = await _pipeline(object_store, tmp_path / "work").run(_payload())

    assert isinstance(result, TranscriptionFailure)
    assert result.kind == "input"
    assert "not found" in result.message
    mock_transcribe.assert_not_called()


@pytest.mark.asyncio
async def test_unsupported_extension_is_rejected_by_direct_strategy(object_store, tmp_path):
    object_store.objects["dev/videos/v1.mkv"] = b"fake-video"

    with patch("services.transcription.transcribe_media") as mock_transcribe:
        result = await _pipeline(object_store, tmp_path / "work").run(
            TranscriptionJobData(video_id="v1", s3_key="dev/videos/v1.mkv", file_name="lecture.mkv")
        )

    assert isinstance(result, TranscriptionFailure)
    assert result.kind == "input"
    mock_transcribe.assert_not_called()


@pytest.mark.asyncio
async def test_speech_api_error_is_transient_and_cleans_up(object_store, tmp_path):
    object_store.objects[SOURCE_KEY] = b"fake-video"
    work_dir = tmp_path / "work"

    with patch("services.transcription.transcribe_media", side_effect=RuntimeError("upstream 503")):
        result = await _pipeline(object_store, work_dir).run(_payload())

    assert isinstance(result, TranscriptionFailure)
    assert result.kind == "transient"
    assert "upstream 503" in result.message
    assert object_store.uploads == []
    assert list(work_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_description_failure_does_not_fail_the_job(object_store, tmp_path):
    object_store.objects[SOURCE_KEY] = b"fake-video"

    with patch("services.transcription.transcribe_media", side_effect=_fake_transcribe), \
         patch("services.transcription.generate_video_description", side_effect=RuntimeError("rate limited")):
        result = await _pipeline(object_store, tmp_path / "work").run(_payload(generate_description=True))

    assert isinstance(result, TranscriptionSuccess)
    assert result.transcript == "Hello and welcome."
    assert result.description is None


@pytest.mark.asyncio
async def test_description_uses_title_when_requested(object_store, tmp_path):
    object_store.objects[SOURCE_KEY] = b"fake-video"

    with patch("services.transcription.transcribe_media", side_effect=_fake_transcribe), \
         patch("services.transcription.generate_video_description", return_value="Covers network basics.") as mock_describe:
        result = await _pipeline(object_store, tmp_path / "work").run(
            _payload(generate_description=True), title="Networking 101"
        )

    assert result.description == "Covers network basics."
    assert mock_describe.call_args.args[1] == "Networking 101"


@pytest.mark.asyncio
async def test_pipeline_timeout_is_reported_as_timeout_failure(object_store, tmp_path):
    object_store.objects[SOURCE_KEY] = b"fake-video"
    work_dir = tmp_path / "work"

    def _slow_transcribe(*args, **kwargs):
        time.sleep(0.3)
        return "late"

    with patch("services.transcription.transcribe_media", side_effect=_slow_transcribe):
        result = await _pipeline(object_store, work_dir, job_timeout_seconds=0.05).run(_payload())

    assert isinstance(result, TranscriptionFailure)
    assert result.kind == "timeout"
    assert "timed out" in result.message
    assert not any(work_dir.iterdir())


@pytest.mark.asyncio
async def test_chunked_strategy_merges_chunk_captions_by_offset(object_store, tmp_path):
    object_store.objects[SOURCE_KEY] = b"fake-video"
    work_dir = tmp_path / "work"

    def _fake_extract(video_path, output_path):
        Path(output_path).write_bytes(b"a" * 30)
        return output_path

    def _fake_split(audio_path, output_dir, windows):
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        chunks = []
        for idx, (start, _length) in enumerate(windows):
            chunk = Path(output_dir) / f"chunk_{idx:03d}.mp3"
            chunk.write_bytes(b"a")
            chunks.append((str(chunk), start))
        return chunks

    def _fake_chunk_transcribe(media_path, api_key, response_format="text", model="whisper-1"):
        assert response_format == "vtt"
        name = Path(media_path).stem
        return f"WEBVTT\n\n00:00:01.000 --> 00:00:02.000\n{name}\n"

    strategy = ChunkedAudioTranscriptionStrategy("sk-live", max_chunk_bytes=10)
    with patch("services.transcription.extract_audio", side_effect=_fake_extract), \
         patch("services.transcription.get_media_duration_seconds", return_value=100.0), \
         patch("services.transcription.split_audio", side_effect=_fake_split), \
         patch("services.transcription.transcribe_media", side_effect=_fake_chunk_transcribe):
        result = await _pipeline(object_store, work_dir, strategy=strategy).run(_payload())

    assert isinstance(result, TranscriptionSuccess)
    cues = parse_vtt(result.captions_vtt)
    assert [cue.text for cue in cues] == ["chunk_000", "chunk_001", "chunk_002", "chunk_003"]
    assert [cue.start for cue in cues] == pytest.approx([1.0, 26.0, 51.0, 76.0])
    assert result.transcript == "chunk_000 chunk_001 chunk_002 chunk_003"
    assert list(work_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_cleanup_failure_of_one_file_does_not_fail_job(object_store, tmp_path):
    object_store.objects[SOURCE_KEY] = b"fake-video"
    original_unlink = Path.unlink

    def _flaky_unlink(self, missing_ok=False):
        if self.name.startswith("source"):
            raise PermissionError("locked")
        return original_unlink(self, missing_ok=missing_ok)

    with patch("services.transcription.transcribe_media", side_effect=_fake_transcribe), \
         patch.object(Path, "unlink", _flaky_unlink):
        result = await _pipeline(object_store, tmp_path / "work").run(_payload())

    assert isinstance(result, TranscriptionSuccess)


def test_result_types_are_tagged():
    assert TranscriptionFailure(kind="timeout", message="x").ok is False
    assert TranscriptionSuccess(transcript="t", captions_vtt=VTT, captions_key="k", captions_url="u").ok is True
