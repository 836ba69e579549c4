"""WebVTT caption track helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List

WEBVTT_HEADER = "WEBVTT"

_TIMING_RE = re.compile(
    r"^\s*(?P<start>(?:\d+:)?\d{1,2}:\d{2}[.,]\d{3})\s*-->\s*(?P<end>(?:\d+:)?\d{1,2}:\d{2}[.,]\d{3})(?P<settings>.*)$"
)
_CUE_ID_RE = re.compile(r"^\d+\s*$")
_TAG_RE = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class Cue:
    start: float
    end: float
    text: str
    settings: str = ""


def format_timestamp(seconds: float) -> str:
    if seconds < 0:
        seconds = 0.0
    millis = int(round(seconds * 1000.0))
    hours, millis = divmod(millis, 3_600_000)
    minutes, millis = divmod(millis, 60_000)
    secs, millis = divmod(millis, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def parse_timestamp(value: str) -> float:
    """Parse `HH:MM:SS.mmm` or `MM:SS.mmm` (comma decimal accepted) into seconds."""
    parts = value.strip().replace(",", ".").split(":")
    if len(parts) == 2:
        parts.insert(0, "0")
    if len(parts) != 3:
        raise ValueError(f"Invalid cue timestamp: {value!r}")
    hours, minutes, seconds = parts
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def is_webvtt(content: str) -> bool:
    return (content or "").lstrip("\ufeff").startswith(WEBVTT_HEADER)


def parse_vtt(content: str) -> List[Cue]:
    """Parse cues out of a WebVTT document. Header, NOTE/STYLE blocks and cue ids are skipped."""
    cues: List[Cue] = []
    blocks = re.split(r"\r?\n\s*\r?\n", (content or "").lstrip("\ufeff").strip())
    for block in blocks:
        lines = [line for line in block.splitlines() if line.strip()]
        timing_idx = next((idx for idx, line in enumerate(lines) if "-->" in line), None)
        if timing_idx is None:
            continue
        match = _TIMING_RE.match(lines[timing_idx])
        if not match:
            continue
        text = "\n".join(line.strip() for line in lines[timing_idx + 1:]).strip()
        if not text:
            continue
        cues.append(
            Cue(
                start=parse_timestamp(match.group("start")),
                end=parse_timestamp(match.group("end")),
                text=text,
                settings=match.group("settings").strip(),
            )
        )
    return cues


def render_vtt(cues: Iterable[Cue]) -> str:
    lines: List[str] = [WEBVTT_HEADER, ""]
    for cue in cues:
        timing = f"{format_timestamp(cue.start)} --> {format_timestamp(cue.end)}"
        if cue.settings:
            timing = f"{timing} {cue.settings}"
        lines.extend([timing, cue.text, ""])
    return "\n".join(lines).strip() + "\n"


def shift_cues(cues: Iterable[Cue], offset_seconds: float) -> List[Cue]:
    return [
        Cue(start=cue.start + offset_seconds, end=cue.end + offset_seconds, text=cue.text, settings=cue.settings)
        for cue in cues
    ]


def merge_vtt_tracks(tracks: Iterable[tuple[str, float]]) -> str:
    """
    Merge per-chunk caption documents into one track.

    Each entry is (vtt_content, chunk_offset_seconds); cue timestamps in a chunk are
    relative to the chunk start, so they are realigned by the chunk offset.
    """
    merged: List[Cue] = []
    for content, offset in tracks:
        merged.extend(shift_cues(parse_vtt(content), offset))
    merged.sort(key=lambda cue: (cue.start, cue.end))
    return render_vtt(merged)


def vtt_to_text(content: str) -> str:
    """Plain transcript text from a caption document (timings, ids and markup removed)."""
    words: List[str] = []
    for cue in parse_vtt(content):
        cleaned = _TAG_RE.sub("", cue.text)
        for line in cleaned.splitlines():
            stripped = line.strip()
            if stripped and not _CUE_ID_RE.match(stripped):
                words.append(stripped)
    return " ".join(words)


def has_cues(content: str) -> bool:
    return is_webvtt(content) and bool(parse_vtt(content))
