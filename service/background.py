"""Animated backgrounds for render_lyric_video."""

from __future__ import annotations

import colorsys
from dataclasses import dataclass, field
from functools import lru_cache
import math
import random
from typing import Tuple

import numpy as np
from PIL import Image

from domain.lyric_video import DEFAULT_BACKGROUND_SPEED, BackgroundKind

GRADIENT_STOPS = (0.0, 0.5, 1.0)
GRADIENT_COLORS = (
    (14, 165, 233),
    (99, 102, 241),
    (11, 15, 26),
)
GRADIENT_ORBIT_RATIO = 0.25
OVERLAY_ORBIT_RATIO = 0.45
OVERLAY_RADIUS_RATIO = 0.2
OVERLAY_ALPHA = 0.04
OVERLAY_BLOB_COUNT = 4

SHAPES_BACKGROUND_RGB = (11, 15, 26)
SHAPE_COUNT = 18
SHAPE_WRAP_MIN = -0.1
SHAPE_WRAP_MAX = 1.1
SHAPE_RADIUS_MIN = 0.02
SHAPE_RADIUS_SPREAD = 0.06
SHAPE_VELOCITY_MIN = -0.02
SHAPE_VELOCITY_SPREAD = 0.04
SHAPE_INNER_RATIO = 0.2
SHAPE_INNER_ALPHA = 1.0
SHAPE_SATURATION = 0.9
SHAPE_LIGHTNESS = 0.6


@dataclass
class Particle:
    """One drifting blob in normalized canvas coordinates."""

    x: float
    y: float
    radius: float
    velocity_x: float
    velocity_y: float
    hue: int


@dataclass
class AnimationState:
    """Per-session particle field, created lazily on first shapes frame."""

    rng: random.Random = field(default_factory=random.Random)
    particles: list[Particle] = field(default_factory=list)


def normalize_speed(speed: float | None) -> float:
    """Substitute the default speed for missing or non-finite input."""
    if speed is None:
        return DEFAULT_BACKGROUND_SPEED
    try:
        speed_value = float(speed)
    except (TypeError, ValueError):
        return DEFAULT_BACKGROUND_SPEED
    if not math.isfinite(speed_value):
        return DEFAULT_BACKGROUND_SPEED
    return speed_value


@lru_cache(maxsize=4)
def pixel_grid(width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
    """Return read-only pixel-center coordinate grids for a canvas size."""
    yy, xx = np.mgrid[0:height, 0:width].astype(np.float32)
    xx += 0.5
    yy += 0.5
    xx.setflags(write=False)
    yy.setflags(write=False)
    return xx, yy


def orbit_angle(time_seconds: float, speed: float) -> float:
    """Map (time * speed) mod 1 onto [0, 2*pi)."""
    phase = (time_seconds * speed) % 1.0
    return phase * math.pi * 2.0


def radial_gradient_positions(
    xx: np.ndarray,
    yy: np.ndarray,
    focus: Tuple[float, float],
    center: Tuple[float, float],
    radius: float,
) -> np.ndarray:
    """Gradient position for a two-circle radial gradient (r0=0 at focus)."""
    px = xx - focus[0]
    py = yy - focus[1]
    dx = center[0] - focus[0]
    dy = center[1] - focus[1]
    a = dx * dx + dy * dy - radius * radius
    b = px * dx + py * dy
    c = px * px + py * py
    if abs(a) < 1e-9:
        positions = np.divide(c, 2.0 * b, out=np.ones_like(c), where=b > 0)
    else:
        discriminant = np.maximum(b * b - a * c, 0.0)
        positions = (b - np.sqrt(discriminant)) / a
    return np.clip(positions, 0.0, 1.0)


def render_gradient_background(
    width: int, height: int, time_seconds: float, speed: float | None
) -> Image.Image:
    """Draw the orbiting radial gradient; depends only on time, speed and size."""
    speed_value = normalize_speed(speed)
    angle = orbit_angle(time_seconds, speed_value)
    center = (width / 2.0, height / 2.0)
    focus = (
        center[0] + math.cos(angle) * width * GRADIENT_ORBIT_RATIO,
        center[1] + math.sin(angle) * height * GRADIENT_ORBIT_RATIO,
    )
    xx, yy = pixel_grid(width, height)
    positions = radial_gradient_positions(
        xx, yy, focus, center, math.hypot(width, height) / 2.0
    )

    frame = np.empty((height, width, 3), dtype=np.float32)
    for channel in range(3):
        frame[:, :, channel] = np.interp(
            positions,
            GRADIENT_STOPS,
            [color[channel] for color in GRADIENT_COLORS],
        )

    blob_radius = min(width, height) * OVERLAY_RADIUS_RATIO
    for blob_index in range(OVERLAY_BLOB_COUNT):
        blob_angle = angle + blob_index * math.pi / 2.0
        blob_x = center[0] + math.cos(blob_angle) * width * OVERLAY_ORBIT_RATIO
        blob_y = center[1] + math.sin(blob_angle) * height * OVERLAY_ORBIT_RATIO
        inside = (xx - blob_x) ** 2 + (yy - blob_y) ** 2 <= blob_radius * blob_radius
        frame[inside] += (255.0 - frame[inside]) * OVERLAY_ALPHA

    np.clip(frame, 0, 255, out=frame)
    return Image.fromarray(frame.astype(np.uint8))


def ensure_particles(state: AnimationState) -> list[Particle]:
    """Populate the particle field on first use."""
    if state.particles:
        return state.particles
    rng = state.rng
    for _ in range(SHAPE_COUNT):
        state.particles.append(
            Particle(
                x=rng.random(),
                y=rng.random(),
                radius=SHAPE_RADIUS_MIN + rng.random() * SHAPE_RADIUS_SPREAD,
                velocity_x=SHAPE_VELOCITY_MIN + rng.random() * SHAPE_VELOCITY_SPREAD,
                velocity_y=SHAPE_VELOCITY_MIN + rng.random() * SHAPE_VELOCITY_SPREAD,
                hue=rng.randrange(360),
            )
        )
    return state.particles


def wrap_coordinate(value: float) -> float:
    """Wrap a normalized coordinate at the [-0.1, 1.1] bounds."""
    if value < SHAPE_WRAP_MIN:
        return SHAPE_WRAP_MAX
    if value > SHAPE_WRAP_MAX:
        return SHAPE_WRAP_MIN
    return value


def advance_particles(
    state: AnimationState, delta_seconds: float, speed: float | None
) -> list[Particle]:
    """Integrate particle positions in place by delta * speed."""
    speed_value = normalize_speed(speed)
    particles = ensure_particles(state)
    for particle in particles:
        particle.x = wrap_coordinate(
            particle.x + particle.velocity_x * delta_seconds * speed_value
        )
        particle.y = wrap_coordinate(
            particle.y + particle.velocity_y * delta_seconds * speed_value
        )
    return particles


def hue_to_rgb(hue: int) -> Tuple[float, float, float]:
    """Convert a hue in degrees to an RGB tint in [0, 255]."""
    red, green, blue = colorsys.hls_to_rgb(
        (hue % 360) / 360.0, SHAPE_LIGHTNESS, SHAPE_SATURATION
    )
    return (red * 255.0, green * 255.0, blue * 255.0)


def add_particle_glow(frame: np.ndarray, particle: Particle) -> None:
    """Additively composite one particle's radial blob into the frame."""
    height, width = frame.shape[:2]
    center_x = particle.x * width
    center_y = particle.y * height
    outer_radius = particle.radius * min(width, height)
    if outer_radius <= 0:
        return
    inner_radius = outer_radius * SHAPE_INNER_RATIO

    left = max(0, int(math.floor(center_x - outer_radius)))
    right = min(width, int(math.ceil(center_x + outer_radius)) + 1)
    top = max(0, int(math.floor(center_y - outer_radius)))
    bottom = min(height, int(math.ceil(center_y + outer_radius)) + 1)
    if left >= right or top >= bottom:
        return

    xx, yy = pixel_grid(width, height)
    distance = np.hypot(
        xx[top:bottom, left:right] - center_x, yy[top:bottom, left:right] - center_y
    )
    ramp = np.clip(
        (distance - inner_radius) / (outer_radius - inner_radius), 0.0, 1.0
    )
    intensity = (1.0 - ramp) * SHAPE_INNER_ALPHA
    intensity[distance > outer_radius] = 0.0
    tint = np.asarray(hue_to_rgb(particle.hue), dtype=np.float32)
    frame[top:bottom, left:right] += intensity[:, :, np.newaxis] * tint


def render_shapes_background(
    width: int,
    height: int,
    delta_seconds: float,
    speed: float | None,
    state: AnimationState,
) -> Image.Image:
    """Advance the particle field and draw it over the dark base fill."""
    particles = advance_particles(state, delta_seconds, speed)
    frame = np.empty((height, width, 3), dtype=np.float32)
    frame[:, :] = SHAPES_BACKGROUND_RGB
    for particle in particles:
        add_particle_glow(frame, particle)
    np.clip(frame, 0, 255, out=frame)
    return Image.fromarray(frame.astype(np.uint8))


def render_background(
    kind: BackgroundKind,
    size: Tuple[int, int],
    time_seconds: float,
    delta_seconds: float,
    speed: float | None,
    state: AnimationState,
) -> Image.Image:
    """Draw the selected background for one frame."""
    width, height = size
    if kind == BackgroundKind.SHAPES:
        return render_shapes_background(width, height, delta_seconds, speed, state)
    return render_gradient_background(width, height, time_seconds, speed)
