"""Unit tests for SRT timeline parsing and configuration parsing."""

from __future__ import annotations

import pytest

from domain.lyric_video import (
    EMPTY_LYRICS_CODE,
    INVALID_COLOR_CODE,
    INVALID_CONFIG_CODE,
    INVALID_RESOLUTION_CODE,
    BackgroundKind,
    FrameFormat,
    LyricEntry,
    RenderConfig,
    RenderStyle,
    RenderValidationError,
    normalize_font_size,
    normalize_fps,
    normalize_lyric_y,
    parse_background_kind,
    parse_hex_color_to_rgba,
    parse_resolution,
    parse_srt,
    require_lyrics,
    timeline_duration_seconds,
)

SAMPLE_SRT = """1
00:00:01,000 --> 00:00:02,500
First line

2
00:00:03,000 --> 00:00:04,000
Second <i>line</i>
with a break

3
00:00:05,000 --> 00:00:06,000
Third
"""


def build_style(**overrides: object) -> RenderStyle:
    """Build a small valid style."""
    values: dict[str, object] = {
        "width": 64,
        "height": 48,
        "fps": 30,
        "background": BackgroundKind.GRADIENT,
        "background_speed": 0.3,
        "font_family": "sans-serif",
        "font_size": 56,
        "fill_rgba": (255, 255, 255, 255),
        "stroke_rgba": (0, 0, 0, 255),
        "lyric_y_percent": 50.0,
    }
    values.update(overrides)
    return RenderStyle(**values)  # type: ignore[arg-type]


def test_parse_srt_reads_blocks() -> None:
    """Parse indexed blocks into timed entries."""
    timeline = parse_srt(SAMPLE_SRT)

    assert timeline == (
        LyricEntry(start=1.0, end=2.5, text="First line"),
        LyricEntry(start=3.0, end=4.0, text="Second line\nwith a break"),
        LyricEntry(start=5.0, end=6.0, text="Third"),
    )


def test_parse_srt_is_idempotent() -> None:
    """Parsing the same transcript twice yields the same timeline."""
    assert parse_srt(SAMPLE_SRT) == parse_srt(SAMPLE_SRT)


def test_parse_srt_converts_timecodes() -> None:
    """Convert hours, minutes, seconds and millis into seconds."""
    timeline = parse_srt("01:02:03,456 --> 01:02:04,000\nlate cue\n")

    assert timeline[0].start == pytest.approx(3723.456)
    assert timeline[0].end == pytest.approx(3724.0)


def test_parse_srt_without_index_lines() -> None:
    """Accept blocks whose first line is the time range."""
    timeline = parse_srt(
        "00:00:00,000 --> 00:00:01,000\nalpha\n\n00:00:01,000 --> 00:00:02,000\nbeta\n"
    )

    assert [entry.text for entry in timeline] == ["alpha", "beta"]


def test_parse_srt_orders_by_start() -> None:
    """Emit entries in non-decreasing start order."""
    timeline = parse_srt(
        "2\n00:00:05,000 --> 00:00:06,000\nlater\n\n"
        "1\n00:00:01,000 --> 00:00:02,000\nearlier\n"
    )

    assert [entry.text for entry in timeline] == ["earlier", "later"]
    for previous, current in zip(timeline, timeline[1:]):
        assert previous.start <= current.start


def test_parse_srt_strips_tags_and_expands_breaks() -> None:
    """Strip markup tags and turn \\N into a real line break."""
    timeline = parse_srt("1\n00:00:00,000 --> 00:00:01,000\n<b>Hello</b>\\Nworld\n")

    assert timeline[0].text == "Hello\nworld"
    assert timeline[0].lines == ("Hello", "world")


def test_parse_srt_skips_malformed_blocks() -> None:
    """Drop blocks with bad timecodes without failing the parse."""
    timeline = parse_srt(
        "1\n0:00:01,000 --> 00:00:02,000\nbad hours\n\n"
        "2\n00:00:03.000 --> 00:00:04,000\nbad separator\n\n"
        "3\nnot a time range\ntext\n\n"
        "4\n00:00:05,000 --> 00:00:06,000\ngood\n\n"
        "lonely line\n"
    )

    assert timeline == (LyricEntry(start=5.0, end=6.0, text="good"),)


def test_parse_srt_drops_empty_text() -> None:
    """Discard entries whose cleaned text is empty."""
    timeline = parse_srt(
        "1\n00:00:00,000 --> 00:00:01,000\n<i></i>\n\n"
        "2\n00:00:01,000 --> 00:00:02,000\n   \n\n"
        "3\n00:00:02,000 --> 00:00:03,000\nkept\n"
    )

    assert [entry.text for entry in timeline] == ["kept"]


def test_parse_srt_drops_inverted_ranges() -> None:
    """Discard entries whose end does not follow the start."""
    timeline = parse_srt("1\n00:00:02,000 --> 00:00:01,000\nbackwards\n")

    assert timeline == ()


def test_parse_srt_normalizes_line_endings_and_bom() -> None:
    """Handle CRLF, bare CR and a UTF-8 byte order mark."""
    timeline = parse_srt(
        "\ufeff1\r\n00:00:00,000 --> 00:00:01,000\r\nalpha\r\n\r\n"
        "2\r00:00:01,000 --> 00:00:02,000\rbeta\r"
    )

    assert [entry.text for entry in timeline] == ["alpha", "beta"]


def test_parse_srt_merges_repeats_within_gap() -> None:
    """Collapse identical adjacent cues separated by less than 150ms."""
    timeline = parse_srt(
        "1\n00:00:00,000 --> 00:00:01,000\nsame\n\n"
        "2\n00:00:01,100 --> 00:00:02,000\nsame\n"
    )

    assert timeline == (LyricEntry(start=0.0, end=2.0, text="same"),)


def test_parse_srt_keeps_repeats_at_gap_threshold() -> None:
    """Keep identical cues apart when the gap reaches 150ms."""
    timeline = parse_srt(
        "1\n00:00:00,000 --> 00:00:01,000\nsame\n\n"
        "2\n00:00:01,150 --> 00:00:02,000\nsame\n"
    )

    assert len(timeline) == 2


def test_parse_srt_keeps_distinct_text() -> None:
    """Never merge cues with different text."""
    timeline = parse_srt(
        "1\n00:00:00,000 --> 00:00:01,000\none\n\n"
        "2\n00:00:01,000 --> 00:00:02,000\ntwo\n"
    )

    assert len(timeline) == 2


def test_parse_srt_merge_gap_is_configurable() -> None:
    """Honor a caller-provided merge gap."""
    text = (
        "1\n00:00:00,000 --> 00:00:01,000\nsame\n\n"
        "2\n00:00:01,400 --> 00:00:02,000\nsame\n"
    )

    assert len(parse_srt(text)) == 2
    assert len(parse_srt(text, merge_gap_seconds=0.5)) == 1


def test_require_lyrics_rejects_empty_timeline() -> None:
    """Fail when no lyric entries survive parsing."""
    with pytest.raises(RenderValidationError) as excinfo:
        require_lyrics(parse_srt("nothing useful here"))

    assert excinfo.value.code == EMPTY_LYRICS_CODE


def test_timeline_duration_uses_last_end() -> None:
    """Derive the fallback duration from the final entry."""
    assert timeline_duration_seconds(parse_srt(SAMPLE_SRT)) == pytest.approx(6.0)
    assert timeline_duration_seconds(()) == 0.0


def test_parse_resolution() -> None:
    """Parse WxH strings and reject malformed ones."""
    assert parse_resolution("1920x1080") == (1920, 1080)
    assert parse_resolution(" 640X360 ") == (640, 360)
    for bad_value in ("1920", "axb", "0x100", "1920x-1"):
        with pytest.raises(RenderValidationError) as excinfo:
            parse_resolution(bad_value)
        assert excinfo.value.code == INVALID_RESOLUTION_CODE


def test_parse_hex_colors() -> None:
    """Accept 3 and 6 digit hex colors."""
    assert parse_hex_color_to_rgba("#fff") == (255, 255, 255, 255)
    assert parse_hex_color_to_rgba("#0ea5e9") == (14, 165, 233, 255)
    assert parse_hex_color_to_rgba("a0b") == (170, 0, 187, 255)
    with pytest.raises(RenderValidationError) as excinfo:
        parse_hex_color_to_rgba("#12345")
    assert excinfo.value.code == INVALID_COLOR_CODE


def test_normalizers_clamp_values() -> None:
    """Clamp fps, font size and vertical position into their ranges."""
    assert normalize_fps(5) == 15
    assert normalize_fps(120) == 60
    assert normalize_fps(float("nan")) == 30
    assert normalize_font_size(4) == 12
    assert normalize_font_size(1000) == 400
    assert normalize_lyric_y(-5) == 0.0
    assert normalize_lyric_y(150) == 100.0
    assert normalize_lyric_y(None) == 50.0


def test_parse_background_kind() -> None:
    """Parse background names case-insensitively."""
    assert parse_background_kind("Shapes") == BackgroundKind.SHAPES
    with pytest.raises(RenderValidationError):
        parse_background_kind("plasma")


def test_render_style_rejects_odd_dimensions() -> None:
    """Require even dimensions for yuv420p output."""
    with pytest.raises(RenderValidationError) as excinfo:
        build_style(width=63)

    assert excinfo.value.code == INVALID_RESOLUTION_CODE


def test_render_config_requires_extension() -> None:
    """Require an output extension so ffmpeg can pick a container."""
    with pytest.raises(RenderValidationError) as excinfo:
        RenderConfig(
            audio_path="song.mp3",
            srt_path="song.srt",
            output_path="video",
            style=build_style(),
        )

    assert excinfo.value.code == INVALID_CONFIG_CODE


def test_render_config_defaults() -> None:
    """Default to raw frames and an unseeded particle field."""
    config = RenderConfig(
        audio_path="song.mp3",
        srt_path="song.srt",
        output_path="video.mp4",
        style=build_style(),
    )

    assert config.frame_format == FrameFormat.RAW
    assert config.seed is None
    assert config.queue_frames >= 1


def test_render_style_expects_normalized_values() -> None:
    """Reject raw out-of-range values and accept their normalized form."""
    with pytest.raises(RenderValidationError) as excinfo:
        build_style(font_size=500)
    assert excinfo.value.code == INVALID_CONFIG_CODE
    with pytest.raises(RenderValidationError):
        build_style(lyric_y_percent=120.0)

    style = build_style(
        font_size=normalize_font_size(500), lyric_y_percent=normalize_lyric_y(120.0)
    )

    assert style.font_size == 400
    assert style.lyric_y_percent == 100.0
