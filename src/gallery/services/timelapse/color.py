"""Colour parsing and blend-mode helpers shared by live drawing and playback."""

from __future__ import annotations

import math
import re

_HEX6 = re.compile(r"^#([0-9a-fA-F]{2})([0-9a-fA-F]{2})([0-9a-fA-F]{2})$")
_HEX3 = re.compile(r"^#([0-9a-fA-F])([0-9a-fA-F])([0-9a-fA-F])$")

# Canvas composite-operation name -> closest CSS mix-blend-mode.
CANVAS_TO_CSS_BLEND: dict[str, str] = {
    "source-over": "normal",
    "multiply": "multiply",
    "screen": "screen",
    "overlay": "overlay",
    "lighter": "screen",  # additive has no CSS equivalent
    "lighten": "lighten",
    "darken": "darken",
    "color-dodge": "color-dodge",
    "color-burn": "color-burn",
    "hard-light": "hard-light",
    "soft-light": "soft-light",
    "difference": "difference",
    "exclusion": "exclusion",
    "hue": "hue",
    "saturation": "saturation",
    "color": "color",
    "luminosity": "luminosity",
}


def hex_to_rgb(value: object) -> tuple[int, int, int] | None:
    """Parse ``#RRGGBB`` (or the ``#RGB`` shorthand) into an RGB tuple.

    Returns ``None`` for anything else; callers skip the event instead of
    failing.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    match = _HEX6.match(text)
    if match:
        return tuple(int(part, 16) for part in match.groups())  # type: ignore[return-value]
    match = _HEX3.match(text)
    if match:
        return tuple(int(part * 2, 16) for part in match.groups())  # type: ignore[return-value]
    return None


def rgb_to_hex(rgb: tuple[int, int, int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb)


def canvas_blend_to_css(name: str | None) -> str:
    """Map a canvas composite-operation name to a CSS blend mode."""
    if not name:
        return "normal"
    return CANVAS_TO_CSS_BLEND.get(name, "normal")


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def finite_or(value: object, default: float) -> float:
    """Coerce *value* to a finite float, falling back to *default*."""
    if value is None:
        return default
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return number
