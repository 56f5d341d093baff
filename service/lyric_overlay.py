"""Lyric cue lookup, animation envelope and overlay drawing."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
import os
from typing import Sequence, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from domain.lyric_video import (
    FONT_LOAD_CODE,
    LyricEntry,
    RenderStyle,
    RenderValidationError,
    Timeline,
)

LOOKUP_PAD_SECONDS = 0.05
FADE_SECONDS = 0.18
POP_SECONDS = 0.35
POP_SCALE_FROM = 0.9
BACK_OVERSHOOT = 1.25
GLOW_START_RATIO = 0.7
GLOW_END_RATIO = 0.2
LINE_HEIGHT_RATIO = 1.25
STROKE_RATIO = 0.08
STROKE_MIN = 2
SPRITE_CACHE_LIMIT = 64

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LyricAnimation:
    """Animation values for the active cue at one instant."""

    alpha: float
    scale: float
    glow_radius: float
    pop_progress: float


@dataclass(frozen=True)
class LyricFrameState:
    """Which cue is drawn on a frame and how."""

    entry: LyricEntry
    animation: LyricAnimation


@dataclass(frozen=True)
class LyricSprite:
    """Unscaled RGBA rendering of a cue with its anchor point."""

    image: Image.Image
    anchor: Tuple[float, float]


def clamp_unit(value: float) -> float:
    """Clamp a value to [0, 1]."""
    return max(0.0, min(1.0, value))


def find_active_entry(
    timeline: Timeline, time_seconds: float, pad_seconds: float = LOOKUP_PAD_SECONDS
) -> LyricEntry | None:
    """Return the cue active at a time, honoring the boundary pad.

    Entries are scanned in start order and the scan stops once a start lies
    beyond the time. When two padded windows overlap the time, the cue whose
    own [start, end) interval holds it wins over the neighbour's pad.
    """
    padded_match: LyricEntry | None = None
    for entry in timeline:
        if entry.start - pad_seconds <= time_seconds <= entry.end + pad_seconds:
            if entry.start <= time_seconds < entry.end:
                return entry
            if padded_match is None:
                padded_match = entry
        if time_seconds < entry.start:
            break
    return padded_match


def compute_opacity(entry: LyricEntry, time_seconds: float) -> float:
    """Linear fade in after start and fade out before end."""
    fade_in = clamp_unit((time_seconds - entry.start) / FADE_SECONDS)
    fade_out = clamp_unit((entry.end - time_seconds) / FADE_SECONDS)
    return min(fade_in, fade_out)


def back_out(progress: float, overshoot: float = BACK_OVERSHOOT) -> float:
    """Cubic ease-out that overshoots 1.0 before settling."""
    inverse = progress - 1.0
    return inverse * inverse * ((overshoot + 1.0) * inverse + overshoot) + 1.0


def compute_animation(
    entry: LyricEntry, time_seconds: float, font_size: int
) -> LyricAnimation:
    """Compute opacity, pop-in scale and glow for a cue."""
    pop_progress = clamp_unit((time_seconds - entry.start) / POP_SECONDS)
    glow_ratio = GLOW_START_RATIO - (GLOW_START_RATIO - GLOW_END_RATIO) * pop_progress
    return LyricAnimation(
        alpha=compute_opacity(entry, time_seconds),
        scale=POP_SCALE_FROM + (1.0 - POP_SCALE_FROM) * back_out(pop_progress),
        glow_radius=max(0.0, font_size * glow_ratio),
        pop_progress=pop_progress,
    )


def compute_line_offsets(line_count: int, font_size: int) -> Tuple[float, ...]:
    """Vertical center offsets for each line so the block centers on zero."""
    line_height = font_size * LINE_HEIGHT_RATIO
    first_offset = -line_height * line_count / 2.0 + line_height / 2.0
    return tuple(first_offset + index * line_height for index in range(line_count))


def compute_stroke_width(font_size: int) -> int:
    """Stroke width for lyric outlines."""
    return max(STROKE_MIN, int(round(font_size * STROKE_RATIO)))


def compute_anchor_y(style: RenderStyle) -> float:
    """Canvas y coordinate the lyric block is centered on."""
    return style.lyric_y_percent / 100.0 * style.height


def split_font_families(font_family: str) -> Tuple[str, ...]:
    """Split a CSS-like family list into candidate names."""
    return tuple(
        family.strip().strip("'\"")
        for family in font_family.split(",")
        if family.strip().strip("'\"")
    )


def load_lyric_font(
    font_size: int, font_family: str, font_file: str | None = None
) -> ImageFont.FreeTypeFont:
    """Load the lyric font from a file, a family name, or the built-in default."""
    if font_file:
        if not os.path.isfile(font_file):
            raise RenderValidationError(
                FONT_LOAD_CODE, f"font file not found: {font_file}"
            )
        try:
            return ImageFont.truetype(font_file, size=font_size)
        except OSError as exc:
            raise RenderValidationError(
                FONT_LOAD_CODE, f"failed to load font {font_file} at size {font_size}"
            ) from exc

    for family in split_font_families(font_family):
        try:
            return ImageFont.truetype(family, size=font_size)
        except OSError:
            LOGGER.debug("font family %s not found", family)
            continue

    LOGGER.warning(
        "%s: no font matched %r, using the built-in font",
        FONT_LOAD_CODE,
        font_family,
    )
    return ImageFont.load_default(size=font_size)


def measure_block_bbox(
    lines: Sequence[str],
    offsets: Sequence[float],
    font: ImageFont.FreeTypeFont,
    stroke_width: int,
) -> Tuple[float, float, float, float]:
    """Bounding box of all lines drawn around the origin."""
    layout_draw = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    boxes = [
        layout_draw.textbbox(
            (0, offset), line, font=font, stroke_width=stroke_width, anchor="mm"
        )
        for line, offset in zip(lines, offsets)
        if line
    ]
    if not boxes:
        return (0.0, 0.0, 0.0, 0.0)
    return (
        min(box[0] for box in boxes),
        min(box[1] for box in boxes),
        max(box[2] for box in boxes),
        max(box[3] for box in boxes),
    )


def render_lyric_sprite(
    lines: Sequence[str],
    font: ImageFont.FreeTypeFont,
    style: RenderStyle,
    glow_radius: float,
) -> LyricSprite:
    """Draw stroke then fill for each line over a glow in the fill color."""
    stroke_width = compute_stroke_width(style.font_size)
    offsets = compute_line_offsets(len(lines), style.font_size)
    left, top, right, bottom = measure_block_bbox(lines, offsets, font, stroke_width)
    margin = int(math.ceil(glow_radius * 2.0)) + stroke_width + 2
    sprite_width = max(1, int(math.ceil(right - left)) + margin * 2)
    sprite_height = max(1, int(math.ceil(bottom - top)) + margin * 2)
    anchor = (margin - left, margin - top)

    text_layer = Image.new("RGBA", (sprite_width, sprite_height), (0, 0, 0, 0))
    text_draw = ImageDraw.Draw(text_layer)
    for line, offset in zip(lines, offsets):
        if not line:
            continue
        text_draw.text(
            (anchor[0], anchor[1] + offset),
            line,
            font=font,
            fill=style.fill_rgba,
            stroke_width=stroke_width,
            stroke_fill=style.stroke_rgba,
            anchor="mm",
        )

    if glow_radius <= 0:
        return LyricSprite(image=text_layer, anchor=anchor)

    glow_mask = text_layer.getchannel("A").filter(
        ImageFilter.GaussianBlur(radius=glow_radius / 2.0)
    )
    glow_layer = Image.new("RGBA", text_layer.size, style.fill_rgba)
    glow_layer.putalpha(glow_mask)
    return LyricSprite(
        image=Image.alpha_composite(glow_layer, text_layer), anchor=anchor
    )


def apply_opacity(image: Image.Image, alpha: float) -> Image.Image:
    """Scale an RGBA image's alpha channel."""
    if alpha >= 1.0:
        return image
    faded = image.copy()
    faded.putalpha(image.getchannel("A").point(lambda value: int(value * alpha)))
    return faded


class LyricOverlay:
    """Per-session lyric renderer holding the style, font and sprite cache."""

    def __init__(
        self,
        timeline: Timeline,
        style: RenderStyle,
        font: ImageFont.FreeTypeFont | None = None,
        pad_seconds: float = LOOKUP_PAD_SECONDS,
    ) -> None:
        self.timeline = timeline
        self.style = style
        self.font = font or load_lyric_font(
            style.font_size, style.font_family, style.font_file
        )
        self.pad_seconds = pad_seconds
        self._sprites: dict[Tuple[str, float], LyricSprite] = {}

    def state_at(self, time_seconds: float) -> LyricFrameState | None:
        """Resolve the active cue and its animation values."""
        entry = find_active_entry(self.timeline, time_seconds, self.pad_seconds)
        if entry is None:
            return None
        return LyricFrameState(
            entry=entry,
            animation=compute_animation(entry, time_seconds, self.style.font_size),
        )

    def sprite_for(self, entry: LyricEntry, glow_radius: float) -> LyricSprite:
        cache_key = (entry.text, round(glow_radius, 1))
        sprite = self._sprites.get(cache_key)
        if sprite is None:
            if len(self._sprites) >= SPRITE_CACHE_LIMIT:
                self._sprites.clear()
            sprite = render_lyric_sprite(
                entry.lines, self.font, self.style, cache_key[1]
            )
            self._sprites[cache_key] = sprite
        return sprite

    def draw(self, frame: Image.Image, time_seconds: float) -> LyricFrameState | None:
        """Composite the active cue onto the frame in place."""
        state = self.state_at(time_seconds)
        if state is None:
            return None
        animation = state.animation
        if animation.alpha <= 0.0:
            return state

        sprite = self.sprite_for(state.entry, animation.glow_radius)
        image = sprite.image
        anchor_x, anchor_y = sprite.anchor
        if abs(animation.scale - 1.0) > 1e-6:
            scaled_size = (
                max(1, int(round(image.width * animation.scale))),
                max(1, int(round(image.height * animation.scale))),
            )
            image = image.resize(scaled_size, Image.Resampling.BICUBIC)
            anchor_x *= animation.scale
            anchor_y *= animation.scale
        image = apply_opacity(image, animation.alpha)

        position = (
            int(round(self.style.width / 2.0 - anchor_x)),
            int(round(compute_anchor_y(self.style) - anchor_y)),
        )
        frame.paste(image, position, image)
        return state
