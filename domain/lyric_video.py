"""Domain types and parsing for render_lyric_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import math
import os
import re
from typing import Sequence, Tuple

INVALID_COLOR_CODE = "render_lyric_video.input.invalid_color"
INVALID_CONFIG_CODE = "render_lyric_video.input.invalid_config"
INVALID_RESOLUTION_CODE = "render_lyric_video.input.invalid_resolution"
INVALID_BACKGROUND_CODE = "render_lyric_video.input.invalid_background"
INVALID_FRAME_FORMAT_CODE = "render_lyric_video.input.invalid_frame_format"
INVALID_DURATION_CODE = "render_lyric_video.input.invalid_duration"
EMPTY_LYRICS_CODE = "render_lyric_video.input.empty_lyrics"
INPUT_FILE_CODE = "render_lyric_video.input.file_error"
AUDIO_FILE_CODE = "render_lyric_video.input.audio_track"
FONT_LOAD_CODE = "render_lyric_video.input.font_unloadable"

SRT_TIME_RANGE_PATTERN = re.compile(
    r"^(\d{2}):(\d{2}):(\d{2}),(\d{3})\s+-->\s+(\d{2}):(\d{2}):(\d{2}),(\d{3})"
)
SRT_BLOCK_SEPARATOR = re.compile(r"\n\n+")
SRT_INDEX_PATTERN = re.compile(r"^\d+$")
HTML_TAG_PATTERN = re.compile(r"<[^>]+>")
RESOLUTION_PATTERN = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*$")
HEX_COLOR_PATTERN = re.compile(r"#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})")

MERGE_GAP_SECONDS = 0.15
GAP_PRECISION = 6

FPS_MIN = 15
FPS_MAX = 60
DEFAULT_FPS = 30
FONT_SIZE_MIN = 12
FONT_SIZE_MAX = 400
DEFAULT_FONT_SIZE = 56
LYRIC_Y_MIN = 0.0
LYRIC_Y_MAX = 100.0
DEFAULT_LYRIC_Y = 50.0
DEFAULT_BACKGROUND_SPEED = 0.3
DEFAULT_RESOLUTION = "1920x1080"
DEFAULT_FONT_FAMILY = "DejaVuSans, sans-serif"
DEFAULT_FILL_COLOR = "#ffffff"
DEFAULT_STROKE_COLOR = "#000000"
DEFAULT_QUEUE_FRAMES = 8

LOGGER = logging.getLogger(__name__)


class RenderValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class BackgroundKind(str, Enum):
    """Supported animated backgrounds."""

    GRADIENT = "gradient"
    SHAPES = "shapes"


class FrameFormat(str, Enum):
    """Wire representation of frames sent to the encoder."""

    RAW = "raw"
    PNG = "png"


@dataclass(frozen=True)
class LyricEntry:
    """One timed lyric cue; text may hold several newline-separated lines."""

    start: float
    end: float
    text: str

    @property
    def lines(self) -> Tuple[str, ...]:
        return tuple(self.text.split("\n"))


Timeline = Tuple[LyricEntry, ...]


@dataclass(frozen=True)
class RenderStyle:
    """Visual settings fixed for the lifetime of one render.

    Values are validated, not clamped. Callers clamp user input with
    ``normalize_font_size`` and ``normalize_lyric_y`` first, as the CLI does;
    out-of-range values raise RenderValidationError.
    """

    width: int
    height: int
    fps: int
    background: BackgroundKind
    background_speed: float
    font_family: str
    font_size: int
    fill_rgba: Tuple[int, int, int, int]
    stroke_rgba: Tuple[int, int, int, int]
    lyric_y_percent: float
    font_file: str | None = None

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise RenderValidationError(
                INVALID_RESOLUTION_CODE, "width and height must be positive"
            )
        if self.width % 2 or self.height % 2:
            raise RenderValidationError(
                INVALID_RESOLUTION_CODE, "width and height must be even"
            )
        if self.fps <= 0:
            raise RenderValidationError(INVALID_CONFIG_CODE, "fps must be positive")
        if not isinstance(self.background, BackgroundKind):
            raise RenderValidationError(
                INVALID_BACKGROUND_CODE, "background is invalid"
            )
        if not FONT_SIZE_MIN <= self.font_size <= FONT_SIZE_MAX:
            raise RenderValidationError(
                INVALID_CONFIG_CODE,
                f"font_size must be within [{FONT_SIZE_MIN}, {FONT_SIZE_MAX}]",
            )
        if not LYRIC_Y_MIN <= self.lyric_y_percent <= LYRIC_Y_MAX:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "lyric_y_percent must be within [0, 100]"
            )
        for color in (self.fill_rgba, self.stroke_rgba):
            if len(color) != 4 or any(channel < 0 or channel > 255 for channel in color):
                raise RenderValidationError(INVALID_COLOR_CODE, "color is invalid")

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)


@dataclass(frozen=True)
class RenderConfig:
    """Validated configuration for one render session."""

    audio_path: str
    srt_path: str
    output_path: str
    style: RenderStyle
    frame_format: FrameFormat = FrameFormat.RAW
    seed: int | None = None
    queue_frames: int = DEFAULT_QUEUE_FRAMES

    def __post_init__(self) -> None:
        if not self.audio_path.strip():
            raise RenderValidationError(AUDIO_FILE_CODE, "audio path must be non-empty")
        if not self.srt_path.strip():
            raise RenderValidationError(INPUT_FILE_CODE, "srt path must be non-empty")
        if not self.output_path.strip():
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "output path must be non-empty"
            )
        if not os.path.splitext(self.output_path)[1]:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "output path needs a container extension such as .mp4"
            )
        if not isinstance(self.frame_format, FrameFormat):
            raise RenderValidationError(
                INVALID_FRAME_FORMAT_CODE, "frame_format is invalid"
            )
        if self.queue_frames < 1:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "queue_frames must be at least 1"
            )


def clamp_int(value: int, min_value: int, max_value: int) -> int:
    """Clamp an integer between min and max."""
    return max(min_value, min(max_value, value))


def clamp_float(value: float, min_value: float, max_value: float) -> float:
    """Clamp a float between min and max."""
    return max(min_value, min(max_value, value))


def parse_resolution(value: str) -> Tuple[int, int]:
    """Parse a WxH resolution string."""
    match = RESOLUTION_PATTERN.fullmatch(value)
    if not match:
        raise RenderValidationError(
            INVALID_RESOLUTION_CODE,
            f"bad resolution {value!r}, expected WxH like 1920x1080",
        )
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise RenderValidationError(
            INVALID_RESOLUTION_CODE, f"resolution must be positive: {value!r}"
        )
    return width, height


def parse_hex_color_to_rgba(color_value: str) -> Tuple[int, int, int, int]:
    """Parse a #rgb or #rrggbb color into an RGBA tuple."""
    match_value = HEX_COLOR_PATTERN.fullmatch(color_value.strip())
    if not match_value:
        raise RenderValidationError(
            INVALID_COLOR_CODE,
            f"invalid color value: {color_value!r}",
        )
    rgb_hex = match_value.group(1)
    if len(rgb_hex) == 3:
        rgb_hex = "".join(digit * 2 for digit in rgb_hex)
    red_value = int(rgb_hex[0:2], 16)
    green_value = int(rgb_hex[2:4], 16)
    blue_value = int(rgb_hex[4:6], 16)
    return (red_value, green_value, blue_value, 255)


def parse_background_kind(value: str) -> BackgroundKind:
    """Parse a background name into a BackgroundKind."""
    normalized = value.strip().lower()
    try:
        return BackgroundKind(normalized)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_BACKGROUND_CODE, f"invalid background: {value!r}"
        ) from exc


def parse_frame_format(value: str) -> FrameFormat:
    """Parse a frame format name into a FrameFormat."""
    normalized = value.strip().lower()
    try:
        return FrameFormat(normalized)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_FRAME_FORMAT_CODE, f"invalid frame format: {value!r}"
        ) from exc


def normalize_fps(value: float | int | None) -> int:
    """Clamp a requested frame rate into the supported range."""
    if value is None or not math.isfinite(value):
        return DEFAULT_FPS
    return clamp_int(int(value), FPS_MIN, FPS_MAX)


def normalize_font_size(value: float | int | None) -> int:
    """Clamp a requested font size into the supported range."""
    if value is None or not math.isfinite(value):
        return DEFAULT_FONT_SIZE
    return clamp_int(int(value), FONT_SIZE_MIN, FONT_SIZE_MAX)


def normalize_lyric_y(value: float | None) -> float:
    """Clamp a vertical position percentage into [0, 100]."""
    if value is None or not math.isfinite(value):
        return DEFAULT_LYRIC_Y
    return clamp_float(float(value), LYRIC_Y_MIN, LYRIC_Y_MAX)


def timecode_to_seconds(hours: str, minutes: str, seconds: str, millis: str) -> float:
    """Convert SRT timecode groups into seconds."""
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds) + int(millis) / 1000.0


def clean_lyric_text(lines: Sequence[str]) -> str:
    """Join body lines, strip markup and expand \\N line breaks."""
    joined = "\n".join(lines)
    without_tags = HTML_TAG_PATTERN.sub("", joined)
    return without_tags.replace("\\N", "\n").strip()


def parse_srt_block(block: str) -> LyricEntry | None:
    """Parse one SRT block, returning None when it is malformed."""
    lines = block.strip().split("\n")
    if len(lines) < 2:
        return None
    time_line_index = 1 if SRT_INDEX_PATTERN.match(lines[0].strip()) else 0
    match = SRT_TIME_RANGE_PATTERN.match(lines[time_line_index].strip())
    if not match:
        return None
    groups = match.groups()
    start = timecode_to_seconds(*groups[:4])
    end = timecode_to_seconds(*groups[4:])
    if end <= start:
        return None
    text = clean_lyric_text(lines[time_line_index + 1 :])
    if not text:
        return None
    return LyricEntry(start=start, end=end, text=text)


def merge_repeated_entries(
    entries: Sequence[LyricEntry], merge_gap_seconds: float = MERGE_GAP_SECONDS
) -> Timeline:
    """Collapse adjacent cues repeating the same text across a short gap."""
    merged: list[LyricEntry] = []
    for entry in entries:
        if merged:
            previous = merged[-1]
            gap_seconds = round(abs(entry.start - previous.end), GAP_PRECISION)
            if previous.text == entry.text and gap_seconds < merge_gap_seconds:
                merged[-1] = LyricEntry(
                    start=previous.start,
                    end=max(previous.end, entry.end),
                    text=previous.text,
                )
                continue
        merged.append(entry)
    return tuple(merged)


def parse_srt(
    text_value: str, merge_gap_seconds: float = MERGE_GAP_SECONDS
) -> Timeline:
    """Parse SRT content into a Timeline; malformed blocks are skipped."""
    normalized = (
        text_value.replace("\ufeff", "").replace("\r\n", "\n").replace("\r", "\n")
    )
    entries: list[LyricEntry] = []
    skipped = 0
    for block in SRT_BLOCK_SEPARATOR.split(normalized):
        if not block.strip():
            continue
        entry = parse_srt_block(block)
        if entry is None:
            skipped += 1
            continue
        entries.append(entry)
    if skipped:
        LOGGER.debug("skipped %d malformed subtitle blocks", skipped)
    entries.sort(key=lambda entry: entry.start)
    return merge_repeated_entries(entries, merge_gap_seconds)


def timeline_duration_seconds(timeline: Timeline) -> float:
    """Return the end of the last cue, or 0.0 for an empty timeline."""
    if not timeline:
        return 0.0
    return timeline[-1].end


def require_lyrics(timeline: Timeline) -> Timeline:
    """Fail when a parsed timeline holds no cues."""
    if not timeline:
        raise RenderValidationError(EMPTY_LYRICS_CODE, "no lyrics parsed from SRT")
    return timeline
