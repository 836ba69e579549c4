import pytest

from services.captions import (
    format_timestamp,
    has_cues,
    is_webvtt,
    merge_vtt_tracks,
    parse_timestamp,
    parse_vtt,
    vtt_to_text,
)

SAMPLE_VTT = """WEBVTT

1
00:00:00.000 --> 00:00:02.500
Welcome to the course.

2
00:00:02.500 --> 00:00:05.000 align:start
Today we cover <b>networking</b> basics.
"""


def test_timestamps_format_and_parse():
    assert format_timestamp(3725.5) == "01:02:05.500"
    assert format_timestamp(-1) == "00:00:00.000"
    assert parse_timestamp("01:02:05.500") == pytest.approx(3725.5)
    assert parse_timestamp("02:05,250") == pytest.approx(125.25)
    with pytest.raises(ValueError):
        parse_timestamp("5.0")


def test_parse_vtt_skips_header_and_cue_ids():
    cues = parse_vtt(SAMPLE_VTT)

    assert len(cues) == 2
    assert cues[0].text == "Welcome to the course."
    assert cues[1].start == pytest.approx(2.5)
    assert cues[1].settings == "align:start"


def test_vtt_to_text_strips_timings_and_markup():
    assert vtt_to_text(SAMPLE_VTT) == "Welcome to the course. Today we cover networking basics."


def test_is_webvtt_accepts_bom_and_rejects_srt():
    assert is_webvtt("\ufeffWEBVTT\n\n")
    assert not is_webvtt("1\n00:00:00,000 --> 00:00:01,000\nhello\n")
    assert not has_cues("WEBVTT\n\n")


def test_merge_realigns_chunk_cues_by_offset():
    chunk = "WEBVTT\n\n00:00:01.000 --> 00:00:03.000\n{text}\n"

    merged = merge_vtt_tracks(
        [
            (chunk.format(text="second chunk"), 600.0),
            (chunk.format(text="first chunk"), 0.0),
        ]
    )

    assert merged.startswith("WEBVTT")
    cues = parse_vtt(merged)
    assert [cue.text for cue in cues] == ["first chunk", "second chunk"]
    assert cues[1].start == pytest.approx(601.0)
    assert "00:10:01.000 --> 00:10:03.000" in merged
