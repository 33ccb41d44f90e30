"""Stroke and fill primitives shared by the live editor and timelapse playback.

Each primitive renders exactly one event onto a ``DrawContext`` and must
reproduce the pixels the live editor produced for it.  Layer visibility is
the only layer setting consulted here; opacity and blend mode are applied
later by the compositor so that playback reflects the current layer
settings rather than those at recording time.

Malformed events (unknown tool, empty path, unparsable colour) are skipped
without raising: one bad record must not abort the replay of a recording.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from typing import Any

import numpy as np
import structlog

from gallery.services.timelapse.color import clamp, finite_or, hex_to_rgb
from gallery.services.timelapse.events import (
    EventKind,
    FillEvent,
    LayerState,
    MetaEvent,
    PathPoint,
    StrokeEvent,
    Tool,
    parse_event,
)
from gallery.services.timelapse.surface import (
    DESTINATION_OUT,
    SOURCE_OVER,
    DrawContext,
    context_state,
)

log = structlog.get_logger()

# Watercolor tuning
WATER_PRESSURE_BASE = 0.6
WATER_PRESSURE_SCALE = 0.4
CONNECTOR_WIDTH_MULT = 2.2
CONNECTOR_ALPHA_MULT = 0.7
CONNECTOR_ALPHA_MIN = 0.06
CONNECTOR_ALPHA_MAX = 0.95
SINGLE_POINT_MIN_OPACITY = 0.025
DEFAULT_WATERCOLOR_SIZE = 40.0
DEFAULT_WATERCOLOR_HARDNESS = 50.0
DEFAULT_WATERCOLOR_OPACITY = 0.3

# Pen / eraser tuning
PEN_PRESSURE_BASE = 0.3
PEN_PRESSURE_SCALE = 0.7
DEFAULT_PEN_SIZE = 5.0

MIN_DENSITY_SCALE = 0.05

LayerStates = Mapping[int, LayerState]
Mask = tuple[np.ndarray, tuple[int, int]]


# ---------------------------------------------------------------------------
# Coverage masks
# ---------------------------------------------------------------------------

def _pixel_grid(
    ctx: DrawContext, left: float, top: float, right: float, bottom: float
) -> tuple[np.ndarray, np.ndarray, tuple[int, int]] | None:
    """Pixel-centre coordinates for a bounding box clipped to the surface."""
    x0 = max(int(math.floor(left)), 0)
    y0 = max(int(math.floor(top)), 0)
    x1 = min(int(math.ceil(right)) + 1, ctx.width)
    y1 = min(int(math.ceil(bottom)) + 1, ctx.height)
    if x0 >= x1 or y0 >= y1:
        return None
    xs, ys = np.meshgrid(
        np.arange(x0, x1, dtype=np.float32) + 0.5,
        np.arange(y0, y1, dtype=np.float32) + 0.5,
    )
    return xs, ys, (x0, y0)


def disc_mask(ctx: DrawContext, cx: float, cy: float, radius: float) -> Mask | None:
    """Anti-aliased coverage of a filled circle."""
    grid = _pixel_grid(ctx, cx - radius - 1, cy - radius - 1, cx + radius + 1, cy + radius + 1)
    if grid is None:
        return None
    xs, ys, origin = grid
    dist = np.hypot(xs - cx, ys - cy)
    return np.clip(radius - dist + 0.5, 0.0, 1.0), origin


def segment_mask(ctx: DrawContext, p0: PathPoint, p1: PathPoint, width: float) -> Mask | None:
    """Anti-aliased coverage of a round-capped line segment."""
    half = width / 2
    grid = _pixel_grid(
        ctx,
        min(p0.x, p1.x) - half - 1,
        min(p0.y, p1.y) - half - 1,
        max(p0.x, p1.x) + half + 1,
        max(p0.y, p1.y) + half + 1,
    )
    if grid is None:
        return None
    xs, ys, origin = grid
    dx, dy = p1.x - p0.x, p1.y - p0.y
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        t = np.zeros_like(xs)
    else:
        t = np.clip(((xs - p0.x) * dx + (ys - p0.y) * dy) / length_sq, 0.0, 1.0)
    dist = np.hypot(xs - (p0.x + t * dx), ys - (p0.y + t * dy))
    return np.clip(half - dist + 0.5, 0.0, 1.0), origin


def radial_gradient_mask(
    ctx: DrawContext,
    cx: float,
    cy: float,
    radius: float,
    stops: list[tuple[float, float]],
) -> Mask | None:
    """Per-pixel alpha of a radial gradient clipped to its circle.

    *stops* are ``(offset, alpha)`` pairs with strictly increasing offsets.
    """
    grid = _pixel_grid(ctx, cx - radius, cy - radius, cx + radius, cy + radius)
    if grid is None:
        return None
    xs, ys, origin = grid
    rel = np.hypot(xs - cx, ys - cy) / radius
    offsets = np.array([s[0] for s in stops], dtype=np.float32)
    alphas = np.array([s[1] for s in stops], dtype=np.float32)
    mask = np.interp(rel, offsets, alphas).astype(np.float32)
    mask[rel > 1.0] = 0.0
    return mask, origin


# ---------------------------------------------------------------------------
# Stroke helpers
# ---------------------------------------------------------------------------

def _pressure(point: PathPoint) -> float:
    return 1.0 if point.pressure is None else point.pressure


def _is_hidden(layer: int | None, layer_states: LayerStates | None) -> bool:
    if layer is None or not layer_states:
        return False
    state = layer_states.get(int(layer))
    return state is not None and state.visible is False


def per_sample_scale(path: list[PathPoint], size: float) -> float:
    """Per-dab alpha factor for a densely sampled path.

    Samples packed tighter than the brush diameter overlap, so each one gets
    proportionally less alpha: ``clamp(avg_spacing / diameter, 0.05, 1)``.
    """
    if len(path) <= 1:
        return 1.0
    total = sum(
        math.hypot(b.x - a.x, b.y - a.y) for a, b in zip(path, path[1:])
    )
    avg_spacing = total / (len(path) - 1)
    diameter = max(1.0, size)
    return clamp(avg_spacing / diameter, MIN_DENSITY_SCALE, 1.0)


def pen_width(size: float, pressure: float) -> float:
    """Line width of a pen/eraser segment at the given average pressure."""
    return max(1.0, size * (PEN_PRESSURE_BASE + PEN_PRESSURE_SCALE * pressure))


def watercolor_radius(size: float, pressure: float) -> float:
    return (size / 2) * (WATER_PRESSURE_BASE + WATER_PRESSURE_SCALE * pressure)


def watercolor_stops(hardness: float, opacity: float) -> list[tuple[float, float]]:
    """Gradient stops of one watercolor dab: solid core, soft falloff."""
    solid = hardness * 0.8
    stops = [(0.0, opacity)]
    if solid > 0:
        stops.append((solid, opacity))
    stops.append((solid + (1 - solid) * 0.5, opacity * 0.3))
    stops.append((1.0, 0.0))
    return stops


# ---------------------------------------------------------------------------
# Tool renderers
# ---------------------------------------------------------------------------

def _draw_watercolor(ctx: DrawContext, event: StrokeEvent, rgb: tuple[int, int, int]) -> None:
    size = event.size or DEFAULT_WATERCOLOR_SIZE
    hardness = clamp(
        finite_or(event.watercolor_hardness, DEFAULT_WATERCOLOR_HARDNESS) / 100, 0.0, 1.0
    )
    base_opacity = clamp(
        finite_or(event.watercolor_opacity, DEFAULT_WATERCOLOR_OPACITY), 0.0, 1.0
    )
    multiplier = clamp(finite_or(event.opacity, 1.0), 0.0, 1.0)
    effective = base_opacity * multiplier
    used = max(effective, SINGLE_POINT_MIN_OPACITY) if event.is_dab else effective

    # No per_sample_scale here: live drawing stamps each watercolor sample
    # on its own, so playback must not thin the dabs either.
    scale = 1.0
    sample_opacity = used * scale

    ctx.composite_op = SOURCE_OVER
    for point in event.path:
        radius = watercolor_radius(size, _pressure(point))
        if radius <= 0:
            continue
        mask = radial_gradient_mask(
            ctx, point.x, point.y, radius, watercolor_stops(hardness, sample_opacity)
        )
        if mask is not None:
            ctx.fill_mask(*mask, rgb)

    if event.is_dab:
        return

    connector_alpha = clamp(
        effective * CONNECTOR_ALPHA_MULT * scale, CONNECTOR_ALPHA_MIN, CONNECTOR_ALPHA_MAX
    )
    with context_state(ctx, alpha=connector_alpha, composite_op=SOURCE_OVER):
        for p0, p1 in zip(event.path, event.path[1:]):
            avg_radius = (
                watercolor_radius(size, _pressure(p0)) + watercolor_radius(size, _pressure(p1))
            ) / 2
            mask = segment_mask(ctx, p0, p1, max(1.0, avg_radius * CONNECTOR_WIDTH_MULT))
            if mask is not None:
                ctx.fill_mask(*mask, rgb)


def _draw_pen(ctx: DrawContext, event: StrokeEvent, rgb: tuple[int, int, int]) -> None:
    size = event.size or DEFAULT_PEN_SIZE
    ctx.global_alpha = 1.0 if event.opacity is None else event.opacity
    ctx.composite_op = DESTINATION_OUT if event.tool is Tool.ERASER else SOURCE_OVER

    if event.is_dab:
        point = event.path[0]
        radius = (size / 2) * (PEN_PRESSURE_BASE + PEN_PRESSURE_SCALE * _pressure(point))
        mask = disc_mask(ctx, point.x, point.y, max(1.0, radius))
        if mask is not None:
            ctx.fill_mask(*mask, rgb)
        return

    # Segments are stroked independently so width follows pressure.
    for p0, p1 in zip(event.path, event.path[1:]):
        avg_pressure = (_pressure(p0) + _pressure(p1)) / 2
        mask = segment_mask(ctx, p0, p1, pen_width(size, avg_pressure))
        if mask is not None:
            ctx.fill_mask(*mask, rgb)


_TOOL_RENDERERS: dict[Tool, Callable[[DrawContext, StrokeEvent, tuple[int, int, int]], None]] = {
    Tool.PEN: _draw_pen,
    Tool.ERASER: _draw_pen,
    Tool.WATERCOLOR: _draw_watercolor,
}


# ---------------------------------------------------------------------------
# Public primitives
# ---------------------------------------------------------------------------

def draw_stroke(
    ctx: DrawContext,
    event: StrokeEvent,
    layer_states: LayerStates | None = None,
) -> None:
    """Render one stroke event; drawing state is restored afterwards."""
    if not event.path:
        return
    if _is_hidden(event.layer, layer_states):
        return

    renderer = _TOOL_RENDERERS.get(event.tool)
    rgb = hex_to_rgb(event.color)
    if renderer is None or rgb is None:
        log.debug("timelapse_stroke_skipped", tool=str(event.tool), color=event.color)
        return

    with context_state(ctx):
        renderer(ctx, event, rgb)


def _flood_region(matches: np.ndarray, sx: int, sy: int) -> np.ndarray:
    """4-connected region of ``matches`` containing the seed.

    Explicit work-stack of span seeds; ``filled`` doubles as the visited
    set, so no pixel is processed twice.
    """
    height, width = matches.shape
    filled = np.zeros_like(matches, dtype=bool)
    stack = [(sx, sy)]

    while stack:
        x, y = stack.pop()
        if filled[y, x] or not matches[y, x]:
            continue

        open_row = matches[y] & ~filled[y]
        blocked = np.flatnonzero(~open_row[:x])
        left = int(blocked[-1]) + 1 if blocked.size else 0
        blocked = np.flatnonzero(~open_row[x + 1:])
        right = x + int(blocked[0]) if blocked.size else width - 1
        filled[y, left:right + 1] = True

        for ny in (y - 1, y + 1):
            if not 0 <= ny < height:
                continue
            candidates = matches[ny, left:right + 1] & ~filled[ny, left:right + 1]
            run_starts = candidates & ~np.concatenate(([False], candidates[:-1]))
            stack.extend((left + int(i), ny) for i in np.flatnonzero(run_starts))

    return filled


def draw_fill(
    ctx: DrawContext,
    event: FillEvent,
    canvas_width: int,
    canvas_height: int,
    layer_states: LayerStates | None = None,
    options: Mapping[str, Any] | None = None,
) -> None:
    """Bucket-fill the region around ``(event.x, event.y)``.

    Pixels whose RGB matches the seed within ``tolerance`` become the fill
    colour at full opacity.  Out-of-bounds seeds are a no-op.
    """
    if _is_hidden(event.layer, layer_states):
        return

    width = min(canvas_width, ctx.width)
    height = min(canvas_height, ctx.height)
    sx, sy = int(math.floor(event.x)), int(math.floor(event.y))
    if sx < 0 or sx >= width or sy < 0 or sy >= height:
        return

    fill_rgb = np.array(hex_to_rgb(event.color) or (0, 0, 0), dtype=np.int16)
    if options and options.get("tolerance") is not None:
        tolerance = int(finite_or(options["tolerance"], 0))
    else:
        tolerance = event.tolerance or 0

    data = ctx.get_image_data()
    seed = data[sy, sx].astype(np.int16)
    if seed[3] == 255 and np.all(np.abs(seed[:3] - fill_rgb) <= tolerance):
        return

    view = data[:height, :width]
    matches = np.all(np.abs(view[..., :3].astype(np.int16) - seed[:3]) <= tolerance, axis=-1)
    region = _flood_region(matches, sx, sy)
    view[region, :3] = fill_rgb.astype(np.uint8)
    view[region, 3] = 255
    ctx.put_image_data(data)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def _apply_stroke(ctx, event, layer_states, options) -> None:
    draw_stroke(ctx, event, layer_states)


def _apply_fill(ctx, event, layer_states, options) -> None:
    draw_fill(ctx, event, ctx.width, ctx.height, layer_states, options)


def _apply_meta(ctx, event, layer_states, options) -> None:
    """Meta records only seed the canvas size."""


# Static dispatch table keyed by event kind.
DISPATCH: dict[EventKind, Callable[..., None]] = {
    EventKind.STROKE: _apply_stroke,
    EventKind.FILL: _apply_fill,
    EventKind.META: _apply_meta,
}


def draw_event(
    ctx: DrawContext,
    event: StrokeEvent | FillEvent | MetaEvent | dict[str, Any],
    layer_states: LayerStates | None = None,
    options: Mapping[str, Any] | None = None,
) -> bool:
    """Render any drawing event; returns ``False`` when it was skipped."""
    parsed = parse_event(event)
    if parsed is None:
        return False
    try:
        DISPATCH[EventKind(parsed.type)](ctx, parsed, layer_states, options)
    except (ValueError, OverflowError) as exc:
        # Non-finite coordinates cannot be mapped to pixels.
        log.warning("timelapse_event_render_failed", kind=parsed.type, error=str(exc))
        return False
    return True
