import os
import math
import logging
import ffmpeg
from openai import OpenAI
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

# Response formats accepted by the transcription endpoint that come back as plain strings.
TEXT_RESPONSE_FORMATS = ("text", "vtt", "srt")


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key)


def extract_audio(video_path: str, output_path: str) -> str:
    """
    Extract audio from video file to MP3 format.
    Returns path to audio file.
    """
    try:
        # ffmpeg -i video.mp4 -vn -ac 1 -b:a 32k output.mp3
        (
            ffmpeg
            .input(video_path)
            .output(output_path, format='mp3', audio_bitrate='32k', ac=1, vn=None)  # Low bitrate for API size limit
            .overwrite_output()
            .run(quiet=True)
        )
        return output_path
    except ffmpeg.Error as e:
        logger.error(f"Error extracting audio: {e.stderr.decode() if e.stderr else str(e)}")
        raise


def get_media_duration_seconds(media_path: str) -> float:
    """
    Probe media metadata and return duration in seconds (0.0 when unknown).
    """
    try:
        probe = ffmpeg.probe(media_path)
        fmt = probe.get("format", {})
        duration = float(fmt.get("duration", 0.0) or 0.0)
        if duration <= 0:
            for stream in probe.get("streams", []):
                if stream.get("codec_type") == "audio":
                    duration = float(stream.get("duration", 0.0) or 0.0)
                    if duration > 0:
                        break
        return max(0.0, duration)
    except Exception as e:
        logger.warning(f"Could not probe media duration for {media_path}: {e}")
        return 0.0


def plan_chunks(duration_seconds: float, file_size_bytes: int, max_chunk_bytes: int) -> List[Tuple[float, float]]:
    """
    Split a duration into (start, length) windows so each window stays under max_chunk_bytes.
    Assumes a roughly constant bitrate, with a 10% safety margin.
    """
    if duration_seconds <= 0 or file_size_bytes <= max_chunk_bytes:
        return [(0.0, duration_seconds)]
    count = max(2, math.ceil(file_size_bytes * 1.1 / max_chunk_bytes))
    window = duration_seconds / count
    return [(idx * window, min(window, duration_seconds - idx * window)) for idx in range(count)]


def split_audio(audio_path: str, output_dir: str, windows: List[Tuple[float, float]]) -> List[Tuple[str, float]]:
    """
    Cut audio into chunk files, one per (start, length) window.
    Returns list of (chunk_path, offset_seconds) in playback order.
    """
    os.makedirs(output_dir, exist_ok=True)
    chunks: List[Tuple[str, float]] = []
    for idx, (start, length) in enumerate(windows):
        chunk_path = os.path.join(output_dir, f"chunk_{idx:03d}.mp3")
        try:
            # ffmpeg -ss start -t length -i audio.mp3 -c:a copy chunk_000.mp3
            (
                ffmpeg
                .input(audio_path, ss=start, t=length)
                .output(chunk_path, acodec='copy')
                .overwrite_output()
                .run(quiet=True)
            )
        except ffmpeg.Error as e:
            logger.error(f"Error splitting audio chunk {idx}: {e.stderr.decode() if e.stderr else str(e)}")
            raise
        chunks.append((chunk_path, start))
    return chunks


def transcribe_media(
    media_path: str,
    api_key: str,
    response_format: str = "text",
    model: str = "whisper-1",
) -> str:
    """
    Transcribe an audio or video file using OpenAI Whisper API.
    Returns plain text ("text") or a caption document ("vtt"/"srt").
    """
    if response_format not in TEXT_RESPONSE_FORMATS:
        raise ValueError(f"Unsupported transcription response format: {response_format}")

    client = get_openai_client(api_key)
    if client is None:
        raise RuntimeError("OPENAI_API_KEY environment variable is not set")

    try:
        with open(media_path, "rb") as media_file:
            transcript = client.audio.transcriptions.create(
                model=model,
                file=media_file,
                response_format=response_format,
            )
    except Exception as e:
        logger.error(f"Error transcribing media: {e}")
        raise

    text = transcript if isinstance(transcript, str) else str(getattr(transcript, "text", "") or "")
    return text.strip() if response_format == "text" else text
