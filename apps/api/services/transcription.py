"""
Per-video transcription pipeline.

Stages run strictly in order under one job deadline:
fetch source media -> transcribe (strategy) -> optional description -> persist captions.
The database write-back is left to the caller so it happens in a single update.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Union

import ffmpeg
import openai

from config import settings
from multimodal.audio import (
    extract_audio,
    get_media_duration_seconds,
    plan_chunks,
    split_audio,
    transcribe_media,
)
from multimodal.llm import generate_video_description
from services.captions import has_cues, is_webvtt, merge_vtt_tracks, vtt_to_text
from services.deadlines import Deadline, DeadlineExceeded
from services.storage import ObjectNotFoundError, S3ObjectStore, StoredObject, caption_key
from services.transcription_queue import TranscriptionJobData

logger = logging.getLogger(__name__)

FAILURE_INPUT = "input"
FAILURE_TRANSIENT = "transient"
FAILURE_TIMEOUT = "timeout"

CAPTIONS_CONTENT_TYPE = "text/vtt"
CAPTIONS_CACHE_CONTROL = "public, max-age=31536000"

# Formats the speech-to-text endpoint accepts as-is.
DIRECT_MEDIA_SUFFIXES = {".flac", ".m4a", ".mp3", ".mp4", ".mpeg", ".mpga", ".oga", ".ogg", ".wav", ".webm"}

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class TranscriptionError(Exception):
    kind = FAILURE_TRANSIENT

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        if kind:
            self.kind = kind


class MediaNotFoundError(TranscriptionError):
    kind = FAILURE_INPUT


class MediaTooLargeError(TranscriptionError):
    kind = FAILURE_INPUT


class UnsupportedMediaError(TranscriptionError):
    kind = FAILURE_INPUT


class TranscriptionTimeout(TranscriptionError):
    kind = FAILURE_TIMEOUT


@dataclass(frozen=True)
class TranscriptionSuccess:
    transcript: str
    captions_vtt: str
    captions_key: str
    captions_url: str
    description: Optional[str] = None

    ok = True


@dataclass(frozen=True)
class TranscriptionFailure:
    kind: str
    message: str

    ok = False


TranscriptionResult = Union[TranscriptionSuccess, TranscriptionFailure]


@dataclass(frozen=True)
class Transcript:
    text: str
    captions_vtt: str


class TranscriptionStrategy(Protocol):
    name: str
    max_source_bytes: Optional[int]

    async def transcribe(self, media_path: Path, work_dir: Path, deadline: Deadline) -> Transcript: ...


def _format_megabytes(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.1f}MB"


def _speech_to_text_error(exc: Exception) -> TranscriptionError:
    if isinstance(exc, openai.BadRequestError):
        return UnsupportedMediaError(f"Speech-to-text rejected the media file: {exc}")
    return TranscriptionError(f"Speech-to-text request failed: {exc}")


class DirectTranscriptionStrategy:
    """Send the whole source file to the speech API, once for text and once for captions."""

    name = "direct"

    def __init__(self, api_key: str, model: str = "whisper-1", max_source_bytes: int = 25 * 1024 * 1024):
        self.api_key = api_key
        self.model = model
        self.max_source_bytes = max_source_bytes

    async def transcribe(self, media_path: Path, work_dir: Path, deadline: Deadline) -> Transcript:
        suffix = media_path.suffix.lower()
        if suffix not in DIRECT_MEDIA_SUFFIXES:
            raise UnsupportedMediaError(f"Unsupported media format for transcription: {suffix or 'unknown'}")
        try:
            text = await deadline.run_in_thread(
                "transcribe text", transcribe_media, str(media_path), self.api_key, "text", self.model
            )
            captions = await deadline.run_in_thread(
                "transcribe captions", transcribe_media, str(media_path), self.api_key, "vtt", self.model
            )
        except (DeadlineExceeded, TranscriptionError):
            raise
        except openai.OpenAIError as exc:
            raise _speech_to_text_error(exc) from exc
        return Transcript(text=text, captions_vtt=captions)


class ChunkedAudioTranscriptionStrategy:
    """
    Extract a low-bitrate audio track with ffmpeg, cut it into chunks under the API
    size limit and transcribe each chunk to captions. Chunk cues are shifted by the
    chunk offset and merged; the plain transcript is derived from the merged track.
    """

    name = "audio_chunked"
    max_source_bytes = None

    def __init__(self, api_key: str, model: str = "whisper-1", max_chunk_bytes: int = 25 * 1024 * 1024):
        self.api_key = api_key
        self.model = model
        self.max_chunk_bytes = max_chunk_bytes

    async def transcribe(self, media_path: Path, work_dir: Path, deadline: Deadline) -> Transcript:
        audio_path = work_dir / "audio.mp3"
        try:
            await deadline.run_in_thread("extract audio", extract_audio, str(media_path), str(audio_path))
        except ffmpeg.Error as exc:
            raise UnsupportedMediaError("Could not extract an audio track from the media file") from exc

        audio_bytes = audio_path.stat().st_size
        duration = await deadline.run_in_thread("probe audio", get_media_duration_seconds, str(audio_path))
        windows = plan_chunks(duration, audio_bytes, self.max_chunk_bytes)
        if len(windows) == 1:
            chunks = [(str(audio_path), 0.0)]
        else:
            if duration <= 0:
                raise UnsupportedMediaError("Audio track duration is unknown; cannot split it for transcription")
            logger.info("Splitting %s of audio into %d chunks", _format_megabytes(audio_bytes), len(windows))
            chunks = await deadline.run_in_thread(
                "split audio", split_audio, str(audio_path), str(work_dir / "chunks"), windows
            )

        tracks: List[tuple[str, float]] = []
        for chunk_path, offset in chunks:
            deadline.check("transcribe chunk")
            try:
                vtt = await deadline.run_in_thread(
                    "transcribe chunk", transcribe_media, chunk_path, self.api_key, "vtt", self.model
                )
            except (DeadlineExceeded, TranscriptionError):
                raise
            except openai.OpenAIError as exc:
                raise _speech_to_text_error(exc) from exc
            tracks.append((vtt, offset))

        merged = merge_vtt_tracks(tracks)
        return Transcript(text=vtt_to_text(merged), captions_vtt=merged)


def build_strategy(name: Optional[str] = None) -> TranscriptionStrategy:
    name = (name or settings.TRANSCRIPTION_STRATEGY or "direct").strip().lower()
    api_key = settings.OPENAI_API_KEY
    model = settings.OPENAI_TRANSCRIPTION_MODEL
    max_bytes = int(settings.TRANSCRIPTION_MAX_FILE_BYTES)
    if name == DirectTranscriptionStrategy.name:
        return DirectTranscriptionStrategy(api_key, model, max_bytes)
    if name == ChunkedAudioTranscriptionStrategy.name:
        return ChunkedAudioTranscriptionStrategy(api_key, model, max_bytes)
    raise ValueError(f"Unknown TRANSCRIPTION_STRATEGY: {name}")


def _safe_filename(value: str) -> str:
    cleaned = _UNSAFE_NAME_RE.sub("_", value).strip("._")
    return cleaned or "source"


def _remove_tree(root: Path) -> None:
    """Delete every file under root independently; a failed delete is logged and skipped."""
    if not root.exists():
        return
    for path in sorted(root.rglob("*"), key=lambda p: len(p.parts), reverse=True):
        try:
            if path.is_dir():
                path.rmdir()
            else:
                path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not cleanup temporary transcription artifact %s", path)
    try:
        root.rmdir()
    except OSError:
        logger.warning("Could not cleanup temporary transcription directory %s", root)


class TranscriptionPipeline:
    def __init__(
        self,
        store: S3ObjectStore,
        strategy: TranscriptionStrategy,
        api_key: str = "",
        description_model: str = "gpt-3.5-turbo",
        description_words: int = 100,
        work_dir: Union[str, Path] = "/tmp/lms_transcription",
        job_timeout_seconds: float = 210.0,
        captions_folder: Optional[str] = None,
    ):
        self.store = store
        self.strategy = strategy
        self.api_key = api_key
        self.description_model = description_model
        self.description_words = description_words
        self.work_dir = Path(work_dir)
        self.job_timeout_seconds = job_timeout_seconds
        self.captions_folder = captions_folder

    @classmethod
    def from_settings(cls, store: Optional[S3ObjectStore] = None) -> "TranscriptionPipeline":
        return cls(
            store=store or S3ObjectStore.from_settings(),
            strategy=build_strategy(),
            api_key=settings.OPENAI_API_KEY,
            description_model=settings.OPENAI_DESCRIPTION_MODEL,
            description_words=settings.TRANSCRIPTION_DESCRIPTION_WORDS,
            work_dir=settings.TRANSCRIPTION_WORK_DIR,
            job_timeout_seconds=settings.TRANSCRIPTION_JOB_TIMEOUT_SECONDS,
            captions_folder=settings.AWS_S3_FOLDER,
        )

    async def run(
        self,
        payload: TranscriptionJobData,
        deadline: Optional[Deadline] = None,
        title: Optional[str] = None,
    ) -> TranscriptionResult:
        """Run every stage for one video. Never raises for stage failures; returns a tagged result."""
        job_deadline = deadline.child(self.job_timeout_seconds) if deadline else Deadline.after(self.job_timeout_seconds)
        job_dir = self.work_dir / f"{_safe_filename(payload.video_id)}-{uuid.uuid4().hex[:8]}"
        try:
            job_dir.mkdir(parents=True, exist_ok=True)
            media_path = await self._fetch(payload, job_dir, job_deadline)
            transcript = await self.strategy.transcribe(media_path, job_dir, job_deadline)
            if not is_webvtt(transcript.captions_vtt):
                raise TranscriptionError("Speech-to-text returned an invalid caption track")
            if not has_cues(transcript.captions_vtt):
                logger.warning("Caption track for video %s has no cues", payload.video_id)

            description = None
            if payload.generate_description and transcript.text.strip():
                description = await self._describe(transcript.text, title or payload.file_name, job_deadline)

            stored = await self._persist_captions(payload.video_id, transcript.captions_vtt, job_deadline)
            logger.info(
                "Transcribed video %s with %s strategy (%d chars)",
                payload.video_id,
                self.strategy.name,
                len(transcript.text),
            )
            return TranscriptionSuccess(
                transcript=transcript.text,
                captions_vtt=transcript.captions_vtt,
                captions_key=stored.key,
                captions_url=stored.public_url,
                description=description,
            )
        except DeadlineExceeded as exc:
            timeout = TranscriptionTimeout(f"Transcription timed out during {exc.stage}")
            logger.warning("Video %s: %s", payload.video_id, timeout)
            return TranscriptionFailure(kind=timeout.kind, message=str(timeout))
        except TranscriptionError as exc:
            logger.warning("Video %s transcription failed (%s): %s", payload.video_id, exc.kind, exc)
            return TranscriptionFailure(kind=exc.kind, message=str(exc))
        except Exception as exc:
            logger.exception("Video %s transcription failed unexpectedly", payload.video_id)
            return TranscriptionFailure(kind=FAILURE_TRANSIENT, message=str(exc) or exc.__class__.__name__)
        finally:
            _remove_tree(job_dir)

    async def _fetch(self, payload: TranscriptionJobData, job_dir: Path, deadline: Deadline) -> Path:
        try:
            size = await deadline.run_in_thread("fetch media", self.store.object_size, payload.s3_key)
        except ObjectNotFoundError as exc:
            raise MediaNotFoundError(f"Source video not found in storage: {payload.s3_key}") from exc
        if size <= 0:
            raise UnsupportedMediaError("Source video is empty")
        self._check_size(size)

        suffix = Path(payload.file_name or payload.s3_key).suffix.lower() or Path(payload.s3_key).suffix.lower()
        destination = job_dir / f"source{suffix or '.mp4'}"
        try:
            await deadline.run_in_thread("fetch media", self.store.download, payload.s3_key, destination)
        except ObjectNotFoundError as exc:
            raise MediaNotFoundError(f"Source video not found in storage: {payload.s3_key}") from exc
        if not destination.exists():
            raise MediaNotFoundError("Downloaded media file missing after download completed")
        self._check_size(destination.stat().st_size)
        return destination

    def _check_size(self, size: int) -> None:
        limit = self.strategy.max_source_bytes
        if limit and size > limit:
            raise MediaTooLargeError(
                f"Video file is too large for transcription ({_format_megabytes(size)}). "
                f"Maximum size is {_format_megabytes(limit)}."
            )

    async def _describe(self, transcript: str, title: str, deadline: Deadline) -> Optional[str]:
        try:
            return await deadline.run_in_thread(
                "generate description",
                generate_video_description,
                transcript,
                title,
                self.api_key,
                self.description_words,
                self.description_model,
            )
        except DeadlineExceeded:
            raise
        except Exception as exc:
            logger.warning("Description generation failed; continuing without it: %s", exc)
            return None

    async def _persist_captions(self, video_id: str, captions_vtt: str, deadline: Deadline) -> StoredObject:
        key = caption_key(video_id, self.captions_folder)
        return await deadline.run_in_thread(
            "upload captions",
            self.store.upload,
            captions_vtt.encode("utf-8"),
            key,
            CAPTIONS_CONTENT_TYPE,
            CAPTIONS_CACHE_CONTROL,
        )
