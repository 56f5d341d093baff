"""Fixed-rate frame clock and the render session loop."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import random
import threading
from typing import Iterator

from PIL import Image

from domain.lyric_video import (
    INVALID_DURATION_CODE,
    RenderConfig,
    RenderStyle,
    RenderValidationError,
    Timeline,
    timeline_duration_seconds,
)
from service.background import AnimationState, render_background
from service.encode_sink import (
    EncoderSettings,
    FfmpegEncodeSink,
    RenderCancelledError,
    serialize_frame,
)
from service.lyric_overlay import LyricFrameState, LyricOverlay

FRAME_COUNT_PRECISION = 6

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameTick:
    """Time values for one frame index."""

    index: int
    time_seconds: float
    delta_seconds: float


@dataclass(frozen=True)
class RenderedFrame:
    """A composed frame plus the lyric state drawn on it."""

    tick: FrameTick
    image: Image.Image
    lyric: LyricFrameState | None


def compute_total_frames(duration_seconds: float, fps: int) -> int:
    """Compute ceil(duration * fps), ignoring float noise in the product."""
    if not math.isfinite(duration_seconds) or duration_seconds <= 0:
        raise RenderValidationError(
            INVALID_DURATION_CODE, "duration must be a positive number of seconds"
        )
    total_frames = int(math.ceil(round(duration_seconds * fps, FRAME_COUNT_PRECISION)))
    if total_frames <= 0:
        raise RenderValidationError(
            INVALID_DURATION_CODE, "duration and fps produce zero frames"
        )
    return total_frames


def resolve_duration_seconds(
    audio_duration_seconds: float | None, timeline: Timeline
) -> float:
    """Prefer the probed audio duration, else the end of the last cue."""
    if (
        audio_duration_seconds is not None
        and math.isfinite(audio_duration_seconds)
        and audio_duration_seconds > 0
    ):
        return audio_duration_seconds
    fallback = timeline_duration_seconds(timeline)
    if math.isfinite(fallback) and fallback > 0:
        LOGGER.warning(
            "audio duration unavailable, using lyric timing (%.2fs)", fallback
        )
        return fallback
    raise RenderValidationError(
        INVALID_DURATION_CODE, "unable to determine duration from audio or SRT"
    )


def iter_frame_ticks(total_frames: int, fps: int) -> Iterator[FrameTick]:
    """Yield t = i / fps with the delta from the previous frame."""
    previous_time = 0.0
    for frame_index in range(total_frames):
        time_seconds = frame_index / fps
        delta_seconds = 0.0 if frame_index == 0 else time_seconds - previous_time
        previous_time = time_seconds
        yield FrameTick(
            index=frame_index, time_seconds=time_seconds, delta_seconds=delta_seconds
        )


def render_frames(
    style: RenderStyle,
    overlay: LyricOverlay,
    total_frames: int,
    state: AnimationState | None = None,
    cancel_event: threading.Event | None = None,
) -> Iterator[RenderedFrame]:
    """Compose background then lyrics for every frame in order."""
    animation_state = state if state is not None else AnimationState()
    for tick in iter_frame_ticks(total_frames, style.fps):
        if cancel_event is not None and cancel_event.is_set():
            raise RenderCancelledError(
                f"render cancelled at frame {tick.index}/{total_frames}"
            )
        frame_image = render_background(
            style.background,
            style.size,
            tick.time_seconds,
            tick.delta_seconds,
            style.background_speed,
            animation_state,
        )
        lyric_state = overlay.draw(frame_image, tick.time_seconds)
        yield RenderedFrame(tick=tick, image=frame_image, lyric=lyric_state)


def build_encode_sink(config: RenderConfig) -> FfmpegEncodeSink:
    """Create the ffmpeg sink for a render configuration."""
    style = config.style
    return FfmpegEncodeSink(
        EncoderSettings(
            width=style.width,
            height=style.height,
            fps=style.fps,
            frame_format=config.frame_format,
            audio_path=config.audio_path,
            output_path=config.output_path,
        ),
        queue_frames=config.queue_frames,
    )


def run_render_session(
    config: RenderConfig,
    timeline: Timeline,
    duration_seconds: float,
    sink: FfmpegEncodeSink | None = None,
    overlay: LyricOverlay | None = None,
    cancel_event: threading.Event | None = None,
) -> int:
    """Render every frame into the encoder and publish the output file.

    The encoder is spawned before any frame work. Any failure, cancellation
    or interrupt aborts the encoder and removes its partial output.
    """
    style = config.style
    total_frames = compute_total_frames(duration_seconds, style.fps)
    lyric_overlay = overlay or LyricOverlay(timeline, style)
    state = AnimationState(rng=random.Random(config.seed))
    encode_sink = sink or build_encode_sink(config)

    LOGGER.info(
        "Rendering %d frames @ %d FPS (%.2fs) ...",
        total_frames,
        style.fps,
        duration_seconds,
    )
    encode_sink.start()
    try:
        for frame in render_frames(
            style, lyric_overlay, total_frames, state, cancel_event
        ):
            encode_sink.submit(
                serialize_frame(frame.image, config.frame_format), cancel_event
            )
            if frame.tick.index % style.fps == 0:
                LOGGER.info("Frames: %d/%d", frame.tick.index + 1, total_frames)
        encode_sink.finish(cancel_event)
    except BaseException:
        encode_sink.abort()
        raise
    LOGGER.info("Frames: %d/%d", total_frames, total_frames)
    return total_frames
