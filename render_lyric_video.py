#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
#   "numpy>=1.26"
# ]
# ///
"""Render an SRT lyric transcript over an animated background into an MP4."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import Sequence

from domain.lyric_video import (
    AUDIO_FILE_CODE,
    DEFAULT_BACKGROUND_SPEED,
    DEFAULT_FILL_COLOR,
    DEFAULT_FONT_FAMILY,
    DEFAULT_FONT_SIZE,
    DEFAULT_FPS,
    DEFAULT_LYRIC_Y,
    DEFAULT_QUEUE_FRAMES,
    DEFAULT_RESOLUTION,
    DEFAULT_STROKE_COLOR,
    INPUT_FILE_CODE,
    RenderConfig,
    RenderStyle,
    RenderValidationError,
    Timeline,
    normalize_font_size,
    normalize_fps,
    normalize_lyric_y,
    parse_background_kind,
    parse_frame_format,
    parse_hex_color_to_rgba,
    parse_resolution,
    parse_srt,
    require_lyrics,
)
from service.background import normalize_speed
from service.encode_sink import (
    RenderCancelledError,
    RenderPipelineError,
    ensure_ffmpeg_available,
    probe_audio_duration_seconds,
)
from service.frame_clock import resolve_duration_seconds, run_render_session

LOGGER = logging.getLogger("render_lyric_video")
CANCELLED_EXIT_CODE = 130


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE, f"SRT not found: {file_path}"
        ) from exc
    except OSError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE, f"SRT could not be read: {file_path} ({exc.strerror})"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE,
            f"SRT is not valid UTF-8 at byte offset {exc.start}",
        ) from exc


def ensure_audio_file_exists(file_path: str) -> None:
    """Fail early when the audio track is missing."""
    if not os.path.isfile(file_path):
        raise RenderValidationError(AUDIO_FILE_CODE, f"audio not found: {file_path}")


def load_timeline(srt_path: str) -> Timeline:
    """Read and parse the transcript, failing when no cues survive."""
    timeline = require_lyrics(parse_srt(read_utf8_text_strict(srt_path)))
    LOGGER.info("Parsed %d lyric lines", len(timeline))
    return timeline


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="render_lyric_video.py",
        description="Render a lyric video headlessly from an SRT and an audio track",
    )
    parser.add_argument("-a", "--audio", required=True, help="audio file path")
    parser.add_argument("-s", "--srt", required=True, help="SRT subtitle file path")
    parser.add_argument("-o", "--out", default="lyric-video.mp4")
    parser.add_argument("-r", "--fps", type=float, default=DEFAULT_FPS)
    parser.add_argument("-R", "--resolution", default=DEFAULT_RESOLUTION, help="WxH")
    parser.add_argument("--bg", default="gradient", help="gradient or shapes")
    parser.add_argument("--bg-speed", type=float, default=DEFAULT_BACKGROUND_SPEED)
    parser.add_argument("--font-family", default=DEFAULT_FONT_FAMILY)
    parser.add_argument("--font-file", default=None, help=".ttf/.otf font file")
    parser.add_argument("--font-size", type=float, default=DEFAULT_FONT_SIZE)
    parser.add_argument("--font-color", default=DEFAULT_FILL_COLOR)
    parser.add_argument("--stroke-color", default=DEFAULT_STROKE_COLOR)
    parser.add_argument(
        "--lyric-y", type=float, default=DEFAULT_LYRIC_Y, help="vertical position 0-100"
    )
    parser.add_argument("--frame-format", default="raw", help="raw or png")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--queue-frames", type=int, default=DEFAULT_QUEUE_FRAMES)
    return parser


def parse_args(argv: Sequence[str]) -> RenderConfig:
    """Parse CLI arguments into a RenderConfig."""
    parsed = build_arg_parser().parse_args(argv)
    width, height = parse_resolution(parsed.resolution)
    style = RenderStyle(
        width=width,
        height=height,
        fps=normalize_fps(parsed.fps),
        background=parse_background_kind(parsed.bg),
        background_speed=normalize_speed(parsed.bg_speed),
        font_family=parsed.font_family,
        font_size=normalize_font_size(parsed.font_size),
        fill_rgba=parse_hex_color_to_rgba(parsed.font_color),
        stroke_rgba=parse_hex_color_to_rgba(parsed.stroke_color),
        lyric_y_percent=normalize_lyric_y(parsed.lyric_y),
        font_file=parsed.font_file,
    )
    return RenderConfig(
        audio_path=os.path.abspath(parsed.audio),
        srt_path=os.path.abspath(parsed.srt),
        output_path=os.path.abspath(parsed.out),
        style=style,
        frame_format=parse_frame_format(parsed.frame_format),
        seed=parsed.seed,
        queue_frames=parsed.queue_frames,
    )


def install_termination_handler(cancel_event: threading.Event) -> None:
    """Turn SIGTERM into a cooperative cancel checked once per frame."""

    def handle_termination(signum: int, frame: object) -> None:
        LOGGER.info("termination requested, stopping render")
        cancel_event.set()

    signal.signal(signal.SIGTERM, handle_termination)


def main() -> int:
    """CLI entrypoint."""
    configure_logging()
    cancel_event = threading.Event()

    try:
        config = parse_args(sys.argv[1:])
        ensure_audio_file_exists(config.audio_path)
        timeline = load_timeline(config.srt_path)
        ensure_ffmpeg_available()
        duration_seconds = resolve_duration_seconds(
            probe_audio_duration_seconds(config.audio_path), timeline
        )
        install_termination_handler(cancel_event)
        run_render_session(
            config, timeline, duration_seconds, cancel_event=cancel_event
        )
        LOGGER.info("Done -> %s", config.output_path)
        return 0
    except RenderValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except RenderCancelledError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return CANCELLED_EXIT_CODE
    except RenderPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except KeyboardInterrupt:
        LOGGER.error("render_lyric_video.render.cancelled: interrupted")
        return CANCELLED_EXIT_CODE
    except Exception as exc:
        LOGGER.error("render_lyric_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
