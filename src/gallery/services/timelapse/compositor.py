"""Layer compositing for the multi-layer timelapse player.

Visible layers are merged in index order onto an opaque white output, each
with its own opacity and blend mode.  Blend modes follow the W3C
Compositing and Blending formulas; ``lighter`` is rendered as ``screen``,
matching what the gallery's CSS previews show for it.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence

import numpy as np
import structlog

from gallery.services.timelapse.color import canvas_blend_to_css
from gallery.services.timelapse.events import BlendMode, LayerState
from gallery.services.timelapse.surface import WHITE, Surface

log = structlog.get_logger()

BlendFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


# ---------------------------------------------------------------------------
# Separable blend functions: B(cb, cs) on float RGB in [0, 1]
# ---------------------------------------------------------------------------

def _normal(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return cs


def _multiply(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return cb * cs


def _screen(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return cb + cs - cb * cs


def _hard_light(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return np.where(cs <= 0.5, _multiply(cb, 2 * cs), _screen(cb, 2 * cs - 1))


def _overlay(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return _hard_light(cs, cb)


def _darken(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return np.minimum(cb, cs)


def _lighten(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return np.maximum(cb, cs)


def _color_dodge(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        dodged = np.minimum(1.0, cb / np.where(cs < 1, 1 - cs, 1.0))
    return np.where(cb == 0, 0.0, np.where(cs >= 1, 1.0, dodged))


def _color_burn(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        burned = 1 - np.minimum(1.0, (1 - cb) / np.where(cs > 0, cs, 1.0))
    return np.where(cb >= 1, 1.0, np.where(cs <= 0, 0.0, burned))


def _soft_light(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    d = np.where(cb <= 0.25, ((16 * cb - 12) * cb + 4) * cb, np.sqrt(cb))
    return np.where(
        cs <= 0.5,
        cb - (1 - 2 * cs) * cb * (1 - cb),
        cb + (2 * cs - 1) * (d - cb),
    )


def _difference(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return np.abs(cb - cs)


def _exclusion(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return cb + cs - 2 * cb * cs


# ---------------------------------------------------------------------------
# Non-separable blend functions
# ---------------------------------------------------------------------------

_LUMA = np.array([0.3, 0.59, 0.11], dtype=np.float32)


def _lum(c: np.ndarray) -> np.ndarray:
    return (c * _LUMA).sum(axis=-1, keepdims=True)


def _clip_color(c: np.ndarray) -> np.ndarray:
    lum = _lum(c)
    lo = c.min(axis=-1, keepdims=True)
    hi = c.max(axis=-1, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        c = np.where(lo < 0, lum + (c - lum) * lum / np.where(lum - lo == 0, 1, lum - lo), c)
        c = np.where(hi > 1, lum + (c - lum) * (1 - lum) / np.where(hi - lum == 0, 1, hi - lum), c)
    return c


def _set_lum(c: np.ndarray, lum: np.ndarray) -> np.ndarray:
    return _clip_color(c + (lum - _lum(c)))


def _sat(c: np.ndarray) -> np.ndarray:
    return c.max(axis=-1, keepdims=True) - c.min(axis=-1, keepdims=True)


def _set_sat(c: np.ndarray, sat: np.ndarray) -> np.ndarray:
    lo = c.min(axis=-1, keepdims=True)
    spread = _sat(c)
    with np.errstate(divide="ignore", invalid="ignore"):
        scaled = (c - lo) * sat / np.where(spread == 0, 1, spread)
    return np.where(spread > 0, scaled, 0.0)


def _hue(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return _set_lum(_set_sat(cs, _sat(cb)), _lum(cb))


def _saturation(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return _set_lum(_set_sat(cb, _sat(cs)), _lum(cb))


def _color(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return _set_lum(cs, _lum(cb))


def _luminosity(cb: np.ndarray, cs: np.ndarray) -> np.ndarray:
    return _set_lum(cb, _lum(cs))


# Keyed by the CSS blend mode a canvas composite name maps to.
BLEND_FUNCTIONS: dict[str, BlendFn] = {
    "normal": _normal,
    "multiply": _multiply,
    "screen": _screen,
    "overlay": _overlay,
    "darken": _darken,
    "lighten": _lighten,
    "color-dodge": _color_dodge,
    "color-burn": _color_burn,
    "hard-light": _hard_light,
    "soft-light": _soft_light,
    "difference": _difference,
    "exclusion": _exclusion,
    "hue": _hue,
    "saturation": _saturation,
    "color": _color,
    "luminosity": _luminosity,
}


def blend_function(mode: BlendMode | str | None) -> BlendFn:
    name = mode.value if isinstance(mode, BlendMode) else mode
    return BLEND_FUNCTIONS[canvas_blend_to_css(name)]


def blend_onto(
    backdrop: Surface, source: Surface, opacity: float = 1.0, mode: BlendMode | str | None = None
) -> None:
    """Composite *source* over *backdrop* in place with a blend mode."""
    if (source.width, source.height) != (backdrop.width, backdrop.height):
        raise ValueError("Layer surfaces must match the output size")

    src = source.pixels.astype(np.float32) / 255.0
    dst = backdrop.pixels.astype(np.float32) / 255.0
    cs, as_ = src[..., :3], src[..., 3:] * float(opacity)
    cb, ab = dst[..., :3], dst[..., 3:]

    mixed = (1 - ab) * cs + ab * np.clip(blend_function(mode)(cb, cs), 0.0, 1.0)
    out_a = as_ + ab * (1 - as_)
    premul = as_ * mixed + ab * cb * (1 - as_)
    out_rgb = premul / np.where(out_a > 0, out_a, 1.0)

    out = np.concatenate([np.where(out_a > 0, out_rgb, 0.0), out_a], axis=-1)
    backdrop.pixels = np.clip(np.rint(out * 255.0), 0, 255).astype(np.uint8)


class LayerCompositor:
    """Merges per-layer surfaces into one displayed frame."""

    def __init__(
        self,
        layer_count: int,
        layer_states: Mapping[int, LayerState] | Sequence[LayerState] | None = None,
    ) -> None:
        self.layer_count = layer_count
        self.layer_states: dict[int, LayerState] = {}
        if isinstance(layer_states, Mapping):
            self.layer_states.update(layer_states)
        else:
            for state in layer_states or []:
                self.layer_states[state.index] = state

    def state_for(self, index: int) -> LayerState:
        return self.layer_states.get(index) or LayerState(index=index)

    def composite(
        self,
        layers: Sequence[Surface],
        background: tuple[int, int, int, int] = WHITE,
    ) -> Surface:
        if not layers:
            raise ValueError("At least one layer is required")
        if len(layers) != self.layer_count:
            log.warning(
                "layer_count_mismatch", expected=self.layer_count, received=len(layers)
            )

        out = Surface(layers[0].width, layers[0].height, fill=background)
        for index, layer in enumerate(layers):
            state = self.state_for(index)
            if not state.visible or state.opacity <= 0:
                continue
            blend_onto(out, layer, state.opacity, state.blend_mode)
        return out
