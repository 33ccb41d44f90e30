"""Raster surfaces and the scoped drawing context used by the primitives.

A ``Surface`` is a straight-alpha RGBA ``uint8`` buffer (``H x W x 4``).
Primitives never touch the pixels directly; they rasterise a coverage mask
and hand it to a ``DrawContext``, which composites it with the current
global alpha and composite operation.

Provides gzip-compressed PNG serialisation for snapshots, as well as PNG
export, data-URI helpers and thumbnail generation.
"""

from __future__ import annotations

import base64
import gzip
import io
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import numpy as np
from PIL import Image

WHITE = (255, 255, 255, 255)
TRANSPARENT = (0, 0, 0, 0)

SOURCE_OVER = "source-over"
DESTINATION_OUT = "destination-out"
COMPOSITE_OPS = frozenset({SOURCE_OVER, DESTINATION_OUT})

_PNG_DATA_URI_PREFIX = "data:image/png;base64,"


class Surface:
    """Manages one RGBA raster buffer with checkpoint/restore."""

    def __init__(
        self,
        width: int,
        height: int,
        fill: tuple[int, int, int, int] | None = None,
    ) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"Surface size must be positive, got {width}x{height}")
        self.width = width
        self.height = height
        self.pixels: np.ndarray = np.zeros((height, width, 4), dtype=np.uint8)
        if fill is not None:
            self.pixels[...] = fill

    # ------------------------------------------------------------------
    # Buffer management
    # ------------------------------------------------------------------

    def clear(self, fill: tuple[int, int, int, int] | None = None) -> None:
        """Reset every pixel to *fill* (transparent when omitted)."""
        self.pixels[...] = fill if fill is not None else TRANSPARENT

    def copy(self) -> Surface:
        clone = Surface(self.width, self.height)
        clone.pixels = self.pixels.copy()
        return clone

    def get_pixel(self, x: int, y: int) -> tuple[int, int, int, int]:
        r, g, b, a = self.pixels[y, x]
        return int(r), int(g), int(b), int(a)

    def flatten(self, background: tuple[int, int, int, int] = WHITE) -> Surface:
        """Return an opaque copy of this surface drawn over *background*."""
        out = Surface(self.width, self.height, fill=background)
        ctx = DrawContext(out)
        ctx.draw_surface(self)
        return out

    # ------------------------------------------------------------------
    # Pillow interop
    # ------------------------------------------------------------------

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    @classmethod
    def from_image(cls, image: Image.Image) -> Surface:
        rgba = image.convert("RGBA")
        surface = cls(rgba.width, rgba.height)
        surface.pixels = np.array(rgba, dtype=np.uint8)
        return surface

    def to_png_bytes(self) -> bytes:
        buf = io.BytesIO()
        self.to_image().save(buf, format="PNG")
        return buf.getvalue()

    def create_thumbnail(self, max_size: tuple[int, int] = (320, 320)) -> bytes:
        """Create a PNG thumbnail of the surface flattened onto white."""
        thumb = self.flatten().to_image().convert("RGB")
        thumb.thumbnail(max_size, Image.Resampling.LANCZOS)
        buf = io.BytesIO()
        thumb.save(buf, format="PNG")
        return buf.getvalue()

    def checkpoint(self) -> bytes:
        """Serialize the surface to gzip-compressed PNG bytes."""
        return gzip.compress(self.to_png_bytes())

    def restore(self, data: bytes) -> None:
        """Restore pixels from gzip-compressed PNG bytes of the same size."""
        raw = gzip.decompress(data)
        image = Image.open(io.BytesIO(raw)).convert("RGBA")
        if image.size != (self.width, self.height):
            raise ValueError(
                f"Checkpoint size {image.size} does not match surface "
                f"{self.width}x{self.height}"
            )
        self.pixels = np.array(image, dtype=np.uint8)

    def to_data_uri(self) -> str:
        return _PNG_DATA_URI_PREFIX + base64.b64encode(self.to_png_bytes()).decode("ascii")

    @classmethod
    def from_data_uri(cls, uri: str) -> Surface:
        """Decode a ``data:image/...;base64,`` URI into a surface."""
        header, sep, payload = uri.partition(",")
        if not sep or not header.startswith("data:image/") or ";base64" not in header:
            raise ValueError("Not an image data URI")
        raw = base64.b64decode(payload, validate=True)
        return cls.from_image(Image.open(io.BytesIO(raw)))

    # ------------------------------------------------------------------
    # Compositing
    # ------------------------------------------------------------------

    def composite(
        self,
        mask: np.ndarray,
        origin: tuple[int, int],
        color: tuple[int, int, int],
        alpha: float = 1.0,
        op: str = SOURCE_OVER,
    ) -> None:
        """Composite a coverage *mask* placed at *origin* onto the buffer.

        ``mask`` holds per-pixel source alpha in ``[0, 1]``; it is scaled by
        *alpha*.  ``source-over`` paints *color*; ``destination-out`` cuts
        the destination alpha and ignores *color*.
        """
        clipped = self._clip(mask, origin)
        if clipped is None:
            return
        src, (x0, y0, x1, y1) = clipped
        sa = src.astype(np.float32) * float(alpha)
        region = self.pixels[y0:y1, x0:x1].astype(np.float32)
        da = region[..., 3] / 255.0

        if op == DESTINATION_OUT:
            out_a = da * (1.0 - sa)
            out_rgb = region[..., :3]
        elif op == SOURCE_OVER:
            out_a = sa + da * (1.0 - sa)
            src_rgb = np.asarray(color, dtype=np.float32)
            weighted = (
                src_rgb * sa[..., None]
                + region[..., :3] * (da * (1.0 - sa))[..., None]
            )
            safe = np.where(out_a > 0, out_a, 1.0)
            out_rgb = weighted / safe[..., None]
        else:
            raise ValueError(f"Unsupported composite operation: {op!r}")

        out_alpha = np.rint(out_a * 255.0)
        out_rgb = np.where(out_alpha[..., None] > 0, out_rgb, 0.0)
        region[..., :3] = np.rint(out_rgb)
        region[..., 3] = out_alpha
        self.pixels[y0:y1, x0:x1] = np.clip(region, 0, 255).astype(np.uint8)

    def _clip(
        self, mask: np.ndarray, origin: tuple[int, int]
    ) -> tuple[np.ndarray, tuple[int, int, int, int]] | None:
        ox, oy = origin
        mh, mw = mask.shape
        x0, y0 = max(ox, 0), max(oy, 0)
        x1, y1 = min(ox + mw, self.width), min(oy + mh, self.height)
        if x0 >= x1 or y0 >= y1:
            return None
        return mask[y0 - oy:y1 - oy, x0 - ox:x1 - ox], (x0, y0, x1, y1)


# ---------------------------------------------------------------------------
# Drawing context with scoped state
# ---------------------------------------------------------------------------

@dataclass
class _ContextState:
    global_alpha: float = 1.0
    composite_op: str = SOURCE_OVER


class DrawContext:
    """Drawing state bound to one surface.

    ``global_alpha`` and ``composite_op`` behave like their canvas
    counterparts; ``save()`` / ``restore()`` push and pop them.  Prefer the
    ``context_state`` helper, which restores on every exit path.
    """

    def __init__(self, surface: Surface) -> None:
        self.surface = surface
        self._state = _ContextState()
        self._stack: list[_ContextState] = []

    @property
    def width(self) -> int:
        return self.surface.width

    @property
    def height(self) -> int:
        return self.surface.height

    @property
    def global_alpha(self) -> float:
        return self._state.global_alpha

    @global_alpha.setter
    def global_alpha(self, value: float) -> None:
        self._state.global_alpha = min(max(float(value), 0.0), 1.0)

    @property
    def composite_op(self) -> str:
        return self._state.composite_op

    @composite_op.setter
    def composite_op(self, value: str) -> None:
        if value not in COMPOSITE_OPS:
            raise ValueError(f"Unsupported composite operation: {value!r}")
        self._state.composite_op = value

    def save(self) -> None:
        self._stack.append(
            _ContextState(self._state.global_alpha, self._state.composite_op)
        )

    def restore(self) -> None:
        if self._stack:
            self._state = self._stack.pop()

    # ------------------------------------------------------------------
    # Drawing operations
    # ------------------------------------------------------------------

    def fill_mask(
        self,
        mask: np.ndarray,
        origin: tuple[int, int],
        color: tuple[int, int, int],
    ) -> None:
        """Paint a coverage mask using the current alpha and composite op."""
        self.surface.composite(
            mask, origin, color, alpha=self.global_alpha, op=self.composite_op
        )

    def draw_surface(self, other: Surface) -> None:
        """Composite another surface of the same size (``drawImage``)."""
        if (other.width, other.height) != (self.width, self.height):
            raise ValueError("draw_surface requires surfaces of equal size")
        src = other.pixels.astype(np.float32)
        sa = (src[..., 3] / 255.0) * self.global_alpha
        dst = self.surface.pixels.astype(np.float32)
        da = dst[..., 3] / 255.0
        if self.composite_op == DESTINATION_OUT:
            out_a = da * (1.0 - sa)
            out_rgb = dst[..., :3]
        else:
            out_a = sa + da * (1.0 - sa)
            weighted = src[..., :3] * sa[..., None] + dst[..., :3] * (da * (1.0 - sa))[..., None]
            out_rgb = weighted / np.where(out_a > 0, out_a, 1.0)[..., None]
        out = np.empty_like(dst)
        out[..., :3] = out_rgb
        out[..., 3] = out_a * 255.0
        self.surface.pixels = np.clip(np.rint(out), 0, 255).astype(np.uint8)

    def get_image_data(self) -> np.ndarray:
        """Return a copy of the full pixel buffer."""
        return self.surface.pixels.copy()

    def put_image_data(self, data: np.ndarray) -> None:
        if data.shape != self.surface.pixels.shape:
            raise ValueError("Image data shape does not match the surface")
        self.surface.pixels = data.astype(np.uint8, copy=True)


@contextmanager
def context_state(
    ctx: DrawContext,
    alpha: float | None = None,
    composite_op: str | None = None,
) -> Iterator[DrawContext]:
    """Apply drawing state for the duration of a block, then restore it."""
    ctx.save()
    try:
        if alpha is not None:
            ctx.global_alpha = alpha
        if composite_op is not None:
            ctx.composite_op = composite_op
        yield ctx
    finally:
        ctx.restore()
