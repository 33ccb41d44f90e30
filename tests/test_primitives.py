"""Tests for the stroke / fill primitive renderer."""

from __future__ import annotations

import numpy as np
import pytest

from gallery.services.timelapse.events import FillEvent, LayerState, StrokeEvent
from gallery.services.timelapse.primitives import (
    SINGLE_POINT_MIN_OPACITY,
    draw_event,
    draw_fill,
    draw_stroke,
    pen_width,
    per_sample_scale,
    watercolor_stops,
)
from gallery.services.timelapse.surface import SOURCE_OVER, WHITE, DrawContext, Surface

RED = (255, 0, 0, 255)
GREEN = (0, 255, 0, 255)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ctx(width: int = 20, height: int = 20, fill=WHITE) -> DrawContext:
    return DrawContext(Surface(width, height, fill=fill))


def _stroke(points, **fields) -> StrokeEvent:
    path = [
        {"x": p[0], "y": p[1], **({"pressure": p[2]} if len(p) > 2 else {})}
        for p in points
    ]
    return StrokeEvent.model_validate({"type": "stroke", "path": path, **fields})


def _painted(ctx: DrawContext) -> int:
    return int(np.count_nonzero(ctx.surface.pixels[..., 3]))


# ---------------------------------------------------------------------------
# Pen and eraser
# ---------------------------------------------------------------------------

class TestPen:
    def test_horizontal_red_line(self):
        ctx = _ctx()
        draw_stroke(ctx, _stroke([(0, 0), (5, 0), (10, 0)], color="#ff0000", size=10, layer=0))
        assert ctx.surface.get_pixel(5, 0) == RED
        assert ctx.surface.get_pixel(5, 2) == RED
        assert ctx.surface.get_pixel(10, 3) == RED
        assert ctx.surface.get_pixel(5, 8) == WHITE
        assert ctx.surface.get_pixel(18, 0) == WHITE

    def test_single_point_draws_disc(self):
        ctx = _ctx(fill=None)
        draw_stroke(ctx, _stroke([(10, 10)], color="#0000ff", size=8))
        assert ctx.surface.get_pixel(10, 10) == (0, 0, 255, 255)
        assert ctx.surface.get_pixel(10, 16)[3] == 0

    def test_single_point_has_minimum_radius(self):
        ctx = _ctx(fill=None)
        draw_stroke(ctx, _stroke([(10.5, 10.5, 0.0)], color="#000000", size=0.5))
        assert ctx.surface.get_pixel(10, 10)[3] == 255

    def test_opacity_is_applied(self):
        ctx = _ctx(fill=None)
        draw_stroke(ctx, _stroke([(10, 10)], color="#000000", size=8, opacity=0.5))
        assert ctx.surface.get_pixel(10, 10)[3] in (127, 128)

    def test_pressure_monotonicity(self):
        assert pen_width(10, 1.0) >= pen_width(10, 0.0)
        heavy, light = _ctx(40, 40, None), _ctx(40, 40, None)
        draw_stroke(heavy, _stroke([(5, 20, 1.0), (35, 20, 1.0)], size=10))
        draw_stroke(light, _stroke([(5, 20, 0.0), (35, 20, 0.0)], size=10))
        assert _painted(heavy) >= _painted(light) > 0

    def test_eraser_clears_alpha(self):
        ctx = _ctx()
        draw_fill(ctx, FillEvent(x=1, y=1, color="#ff0000"), 20, 20)
        assert ctx.surface.get_pixel(10, 10) == RED

        draw_stroke(ctx, _stroke([(2, 10), (18, 10)], tool="eraser", size=6))
        assert ctx.surface.get_pixel(10, 10)[3] == 0
        assert ctx.surface.get_pixel(10, 2) == RED

    def test_state_restored_after_stroke(self):
        ctx = _ctx()
        draw_stroke(ctx, _stroke([(2, 10), (18, 10)], tool="eraser", size=6, opacity=0.4))
        assert ctx.composite_op == SOURCE_OVER
        assert ctx.global_alpha == 1.0


# ---------------------------------------------------------------------------
# Watercolor
# ---------------------------------------------------------------------------

class TestWatercolor:
    def test_single_tap_falls_off_to_edge(self):
        ctx = _ctx(100, 100, None)
        draw_stroke(
            ctx,
            _stroke([(50, 50)], tool="watercolor", size=40, watercolorOpacity=0.3),
        )
        center = ctx.surface.get_pixel(50, 50)[3]
        edge = ctx.surface.get_pixel(70, 50)[3]
        assert center >= int(SINGLE_POINT_MIN_OPACITY * 255)
        assert center > edge

    def test_single_tap_opacity_floor(self):
        ctx = _ctx(100, 100, None)
        draw_stroke(
            ctx,
            _stroke([(50, 50)], tool="watercolor", size=40, watercolorOpacity=0.0),
        )
        assert ctx.surface.get_pixel(50, 50)[3] >= int(SINGLE_POINT_MIN_OPACITY * 255)

    def test_drag_adds_connectors(self):
        ctx = _ctx(100, 40, None)
        draw_stroke(
            ctx,
            _stroke([(10, 20), (90, 20)], tool="watercolor", size=10, watercolorOpacity=0.5),
        )
        # Midway between the two dabs only the connector paints.
        assert ctx.surface.get_pixel(50, 20)[3] > 0
        assert ctx.surface.get_pixel(50, 35)[3] == 0

    def test_dense_drag_is_not_thinned(self):
        tap = _ctx(100, 100, None)
        draw_stroke(tap, _stroke([(50, 50)], tool="watercolor", size=40, watercolorOpacity=0.3))

        drag = _ctx(100, 100, None)
        draw_stroke(
            drag,
            _stroke([(50, 50), (51, 50)], tool="watercolor", size=40, watercolorOpacity=0.3),
        )
        assert drag.surface.get_pixel(50, 50)[3] >= tap.surface.get_pixel(50, 50)[3]

    def test_zero_opacity_drag_keeps_connector_floor(self):
        ctx = _ctx(100, 40, None)
        draw_stroke(
            ctx,
            _stroke([(10, 20), (90, 20)], tool="watercolor", size=10, watercolorOpacity=0.0),
        )
        assert 0 < ctx.surface.get_pixel(50, 20)[3] <= round(0.06 * 255)

    def test_gradient_stops(self):
        stops = watercolor_stops(0.5, 0.3)
        assert stops[0] == (0.0, 0.3)
        assert stops[1] == (pytest.approx(0.4), 0.3)
        assert stops[-1] == (1.0, 0.0)
        offsets = [s[0] for s in stops]
        assert offsets == sorted(offsets)

    def test_zero_hardness_skips_solid_stop(self):
        stops = watercolor_stops(0.0, 0.3)
        assert [s[0] for s in stops] == [0.0, 0.5, 1.0]


class TestPerSampleScale:
    def test_single_point(self):
        assert per_sample_scale([_stroke([(0, 0)]).path[0]], 10) == 1.0

    def test_dense_path_scales_down(self):
        path = _stroke([(x, 0) for x in range(11)]).path
        assert per_sample_scale(path, 10) == pytest.approx(0.1)

    def test_sparse_path_capped(self):
        path = _stroke([(0, 0), (100, 0)]).path
        assert per_sample_scale(path, 10) == 1.0

    def test_stacked_points_floor(self):
        path = _stroke([(5, 5), (5, 5), (5, 5)]).path
        assert per_sample_scale(path, 10) == pytest.approx(0.05)


# ---------------------------------------------------------------------------
# Flood fill
# ---------------------------------------------------------------------------

class TestFill:
    def test_fill_white_canvas(self):
        ctx = _ctx()
        draw_fill(ctx, FillEvent(x=10, y=10, color="#00ff00", tolerance=0), 20, 20)
        assert np.all(ctx.surface.pixels == np.array(GREEN, dtype=np.uint8))

    def test_fill_stops_at_boundary(self):
        ctx = _ctx()
        ctx.surface.pixels[:, 10] = (0, 0, 0, 255)
        draw_fill(ctx, FillEvent(x=2, y=2, color="#ff0000"), 20, 20)
        assert ctx.surface.get_pixel(9, 19) == RED
        assert ctx.surface.get_pixel(10, 5) == (0, 0, 0, 255)
        assert ctx.surface.get_pixel(11, 5) == WHITE

    def test_fill_is_four_connected(self):
        ctx = _ctx(5, 5)
        for i in range(5):
            ctx.surface.pixels[i, i] = (0, 0, 0, 255)
        draw_fill(ctx, FillEvent(x=4, y=0, color="#ff0000"), 5, 5)
        assert ctx.surface.get_pixel(4, 0) == RED
        assert ctx.surface.get_pixel(0, 4) == WHITE

    def test_tolerance(self):
        ctx = _ctx(4, 1)
        ctx.surface.pixels[0, :] = [(100, 100, 100, 255), (105, 100, 100, 255),
                                    (120, 100, 100, 255), (100, 100, 100, 255)]
        draw_fill(ctx, FillEvent(x=0, y=0, color="#ff0000"), 4, 1, options={"tolerance": 5})
        assert ctx.surface.get_pixel(1, 0) == RED
        assert ctx.surface.get_pixel(2, 0) == (120, 100, 100, 255)
        assert ctx.surface.get_pixel(3, 0) == (100, 100, 100, 255)

    def test_matches_rgb_only(self):
        ctx = _ctx(3, 1, None)
        ctx.surface.pixels[0, 2] = (0, 0, 0, 255)
        draw_fill(ctx, FillEvent(x=0, y=0, color="#0000ff"), 3, 1)
        assert ctx.surface.get_pixel(2, 0) == (0, 0, 255, 255)

    def test_same_colour_seed_is_noop(self):
        ctx = _ctx()
        before = ctx.surface.pixels.copy()
        draw_fill(ctx, FillEvent(x=3, y=3, color="#ffffff"), 20, 20)
        assert np.array_equal(ctx.surface.pixels, before)

    @pytest.mark.parametrize("x, y", [(-1, 5), (5, -1), (20, 5), (5, 20)])
    def test_out_of_bounds_seed_is_noop(self, x, y):
        ctx = _ctx()
        before = ctx.surface.pixels.copy()
        draw_fill(ctx, FillEvent(x=x, y=y, color="#ff0000"), 20, 20)
        assert np.array_equal(ctx.surface.pixels, before)


# ---------------------------------------------------------------------------
# Visibility and dispatch
# ---------------------------------------------------------------------------

class TestVisibilityGating:
    @pytest.mark.parametrize(
        "event",
        [
            {"type": "stroke", "tool": "pen", "layer": 1, "size": 6, "opacity": 1,
             "path": [{"x": 2, "y": 2}, {"x": 15, "y": 15}]},
            {"type": "stroke", "tool": "watercolor", "layer": 1,
             "path": [{"x": 10, "y": 10}]},
            {"type": "stroke", "tool": "eraser", "layer": 1,
             "path": [{"x": 10, "y": 10}]},
            {"type": "fill", "x": 5, "y": 5, "color": "#ff0000", "layer": 1},
        ],
    )
    def test_hidden_layer_draws_nothing(self, event):
        ctx = _ctx()
        before = ctx.surface.pixels.copy()
        states = {1: LayerState(index=1, visible=False)}
        assert draw_event(ctx, event, states) is True
        assert np.array_equal(ctx.surface.pixels, before)

    def test_visible_layer_draws(self):
        ctx = _ctx()
        states = {1: LayerState(index=1, visible=True, opacity=0.1)}
        draw_event(ctx, {"type": "fill", "x": 5, "y": 5, "color": "#ff0000", "layer": 1}, states)
        assert ctx.surface.get_pixel(5, 5) == RED


class TestDrawEvent:
    def test_meta_is_not_rendered(self):
        ctx = _ctx()
        before = ctx.surface.pixels.copy()
        assert draw_event(ctx, {"type": "meta", "canvas_width": 20, "canvas_height": 20})
        assert np.array_equal(ctx.surface.pixels, before)

    @pytest.mark.parametrize(
        "event",
        [
            {"type": "stroke", "tool": "spray", "path": [{"x": 1, "y": 1}]},
            {"type": "stroke", "tool": "pen", "path": []},
            {"type": "fill", "color": "#ff0000"},
            {"type": "smudge"},
            "not-an-event",
        ],
    )
    def test_malformed_events_are_skipped(self, event):
        ctx = _ctx()
        before = ctx.surface.pixels.copy()
        assert draw_event(ctx, event) is False
        assert np.array_equal(ctx.surface.pixels, before)

    def test_bad_colour_is_skipped(self):
        ctx = _ctx()
        before = ctx.surface.pixels.copy()
        draw_stroke(ctx, _stroke([(1, 1), (10, 10)], color="red"))
        assert np.array_equal(ctx.surface.pixels, before)

    @pytest.mark.parametrize(
        "event",
        [
            {"type": "stroke", "tool": "pen", "path": [{"x": float("nan"), "y": 1}]},
            {
                "type": "stroke",
                "tool": "watercolor",
                "path": [{"x": float("inf"), "y": 5}, {"x": 1, "y": 1}],
            },
            {"type": "fill", "x": float("nan"), "y": 1, "color": "#ff0000"},
        ],
    )
    def test_non_finite_coordinates_are_skipped(self, event):
        ctx = _ctx()
        before = ctx.surface.pixels.copy()
        assert draw_event(ctx, event) is False
        assert np.array_equal(ctx.surface.pixels, before)
        assert ctx.global_alpha == 1.0
        assert ctx.composite_op == SOURCE_OVER
