"""Timelapse playback.

``TimelapsePlayer`` replays recorded events onto a single white surface,
one event per frame.  Playback is event-count based: at 1x speed one frame
is due every ``TIMELAPSE_BASE_INTERVAL_MS`` regardless of the recorded
timestamps, unless ``timestamp_mode`` is enabled.

Frames advance incrementally while playing (only the new event is drawn);
``seek`` always rebuilds from a cleared surface, starting at the nearest
snapshot when one is available.

``LayeredTimelapsePlayer`` keeps one transparent surface per layer and
composites them after every applied event.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Any

import structlog
from PIL import Image

from gallery.config import settings
from gallery.services.timelapse.compositor import LayerCompositor
from gallery.services.timelapse.events import (
    EventKind,
    FillEvent,
    LayerState,
    MetaEvent,
    Snapshot,
    StrokeEvent,
    parse_event,
)
from gallery.services.timelapse.primitives import draw_event
from gallery.services.timelapse.surface import TRANSPARENT, WHITE, DrawContext, Surface

log = structlog.get_logger()

# Upper bound for one frame's delay in timestamp mode.
MAX_TIMESTAMP_GAP_MS = 1000.0


class PlayerState(str, Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


def _field(frame: Any, name: str) -> Any:
    if isinstance(frame, Mapping):
        return frame.get(name)
    value = getattr(frame, name, None)
    if value is None and getattr(frame, "model_extra", None):
        value = frame.model_extra.get(name)
    return value


def _is_meta(frame: Any) -> bool:
    return isinstance(frame, MetaEvent) or _field(frame, "type") == EventKind.META.value


def format_time(seconds: int) -> str:
    mins, secs = divmod(max(0, int(seconds)), 60)
    return f"{mins:02d}:{secs:02d}"


class TimelapsePlayer:
    """Single-surface player with play / pause / seek / speed controls."""

    def __init__(
        self,
        frames: Sequence[StrokeEvent | FillEvent | MetaEvent | dict[str, Any]],
        canvas_width: int | None = None,
        canvas_height: int | None = None,
        speed: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        snapshots: Sequence[Snapshot | dict[str, Any]] | None = None,
        timestamp_mode: bool = False,
        layer_states: Mapping[int, LayerState] | None = None,
        base_interval_ms: float | None = None,
    ) -> None:
        frames = list(frames)
        meta = next((f for f in frames[:1] if _is_meta(f)), None)
        first = frames[0] if frames else None

        self.canvas_width = int(
            canvas_width
            or _field(meta, "canvas_width")
            or _field(first, "width")
            or settings.TIMELAPSE_DEFAULT_WIDTH
        )
        self.canvas_height = int(
            canvas_height
            or _field(meta, "canvas_height")
            or _field(first, "height")
            or settings.TIMELAPSE_DEFAULT_HEIGHT
        )

        # Unparsable frames stay in place as ``None`` so indices are stable.
        self.frames: list[StrokeEvent | FillEvent | None] = [
            parse_event(f) for f in frames if not _is_meta(f)
        ]
        self.layer_states = dict(layer_states or {})
        self.base_interval_ms = float(base_interval_ms or settings.TIMELAPSE_BASE_INTERVAL_MS)
        self.timestamp_mode = timestamp_mode
        self.clock = clock
        self.speed = 1.0
        self.set_speed(speed)

        self.state = PlayerState.STOPPED
        self.current_frame = -1
        self._last_advance = 0.0
        self._task: asyncio.Task | None = None

        self.surface = Surface(self.canvas_width, self.canvas_height, fill=WHITE)
        self.ctx = DrawContext(self.surface)
        self._snapshots = self._load_snapshots(snapshots or [])

    @classmethod
    def from_decoded(cls, decoded: Any, **kwargs: Any) -> TimelapsePlayer:
        """Build a player from a ``DecodedTimelapse``."""
        kwargs.setdefault("canvas_width", decoded.canvas_width)
        kwargs.setdefault("canvas_height", decoded.canvas_height)
        kwargs.setdefault("snapshots", decoded.snapshots)
        return cls(decoded.events, **kwargs)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def total_frames(self) -> int:
        return len(self.frames)

    @property
    def is_playing(self) -> bool:
        return self.state is PlayerState.PLAYING

    @property
    def task(self) -> asyncio.Task | None:
        """The render-loop task started by ``play()`` inside an event loop."""
        return self._task

    @property
    def at_end(self) -> bool:
        return self.current_frame >= self.total_frames - 1

    @property
    def progress(self) -> float:
        if not self.total_frames:
            return 0.0
        return (self.current_frame + 1) / self.total_frames

    @property
    def time_text(self) -> str:
        step = self.base_interval_ms / 1000
        current = math.floor((self.current_frame + 1) * step)
        total = math.floor(self.total_frames * step)
        return f"{format_time(current)} / {format_time(total)}"

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def play(self) -> None:
        if self.is_playing:
            return
        if self.at_end:
            self.reset()
        self.state = PlayerState.PLAYING
        self._last_advance = self.clock()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._task = loop.create_task(self.run())

    def pause(self) -> None:
        if self.is_playing:
            self.state = PlayerState.PAUSED
        self._cancel_task()

    def toggle(self) -> None:
        if self.is_playing:
            self.pause()
        else:
            self.play()

    def set_speed(self, multiplier: float) -> None:
        """Change playback speed; applies from the next due frame."""
        value = float(multiplier)
        if not math.isfinite(value) or value <= 0:
            raise ValueError(f"Speed must be a positive number, got {multiplier!r}")
        self.speed = value

    def reset(self) -> None:
        """Back to the blank canvas with nothing rendered."""
        self._clear()
        self._present()
        self.current_frame = -1

    def seek(self, frame_index: int) -> None:
        """Render frames ``0..frame_index`` from scratch."""
        if not self.total_frames:
            self.reset()
            return
        target = min(max(int(frame_index), 0), self.total_frames - 1)
        start = self._seed(target)
        for index in range(start, target + 1):
            self._apply(index)
        self._present()
        self.current_frame = target

    def tick(self, now: float | None = None) -> bool:
        """Advance one frame if it is due; returns whether a frame was drawn."""
        if not self.is_playing:
            return False
        now = self.clock() if now is None else now
        elapsed = (now - self._last_advance) * 1000
        interval = self._due_interval()
        if elapsed < interval:
            return False

        self._advance()
        if interval > 0:
            self._last_advance = now - (elapsed % interval) / 1000
        else:
            self._last_advance = now
        return True

    async def run(self) -> None:
        """Cooperative render loop; exits when paused or at the end."""
        while self.is_playing:
            wait_ms = self._due_interval() - (self.clock() - self._last_advance) * 1000
            await asyncio.sleep(max(wait_ms, 0) / 1000)
            self.tick()

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def frame_image(self) -> Image.Image:
        return self.surface.flatten().to_image()

    def frame_png(self) -> bytes:
        return self.surface.flatten().to_png_bytes()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _advance(self) -> None:
        next_frame = self.current_frame + 1
        if next_frame >= self.total_frames:
            self.state = PlayerState.STOPPED
            return
        self._apply(next_frame)
        self._present()
        self.current_frame = next_frame
        if self.at_end:
            self.state = PlayerState.STOPPED
            log.debug("timelapse_playback_finished", frames=self.total_frames)

    def _due_interval(self) -> float:
        if not self.timestamp_mode:
            return self.base_interval_ms / self.speed
        nxt = self.current_frame + 1
        if self.current_frame < 0 or nxt >= self.total_frames:
            return self.base_interval_ms / self.speed
        prev_t = _field(self.frames[self.current_frame], "t")
        next_t = _field(self.frames[nxt], "t")
        if prev_t is None or next_t is None:
            return self.base_interval_ms / self.speed
        gap = min(max(next_t - prev_t, 0.0), MAX_TIMESTAMP_GAP_MS)
        return gap / self.speed

    def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _load_snapshots(self, snapshots: Sequence[Snapshot | dict[str, Any]]) -> dict[int, Surface]:
        loaded: dict[int, Surface] = {}
        for raw in snapshots:
            try:
                snap = raw if isinstance(raw, Snapshot) else Snapshot.model_validate(raw)
                image = Surface.from_data_uri(snap.image).flatten()
            except (ValueError, OSError) as exc:
                log.warning("timelapse_snapshot_unusable", error=str(exc))
                continue
            if (image.width, image.height) != (self.canvas_width, self.canvas_height):
                log.warning(
                    "timelapse_snapshot_size_mismatch",
                    frame=snap.frame,
                    size=f"{image.width}x{image.height}",
                )
                continue
            loaded[snap.frame] = image
        return loaded

    def _seed(self, target: int) -> int:
        """Prepare a replay origin for ``target``; returns the first index to apply.

        A snapshot at ``k`` holds the canvas after ``k`` events, so the best
        origin is the largest ``k <= target + 1``.
        """
        usable = [k for k in self._snapshots if k <= target + 1]
        if not usable:
            self._clear()
            return 0
        best = max(usable)
        self.surface.pixels = self._snapshots[best].pixels.copy()
        return best

    def _clear(self) -> None:
        self.surface.clear(WHITE)

    def _apply(self, index: int) -> None:
        event = self.frames[index]
        if event is None:
            return
        draw_event(self.ctx, event, self.layer_states)

    def _present(self) -> None:
        """Hook run after frames are applied."""


class LayeredTimelapsePlayer(TimelapsePlayer):
    """Multi-layer variant: per-layer surfaces merged by a compositor.

    Events whose layer is missing or out of range are skipped with a
    warning instead of being drawn onto layer 0.  Every event is drawn onto
    its layer regardless of visibility; visibility, opacity and blend mode
    are applied at composite time, so ``set_layer_state`` takes effect
    immediately.  Snapshots are composite captures and cannot be split
    back into layers, so seeks always replay from the first frame.
    """

    def __init__(
        self,
        frames: Sequence[StrokeEvent | FillEvent | MetaEvent | dict[str, Any]],
        layer_count: int | None = None,
        layer_states: Mapping[int, LayerState] | Sequence[LayerState] | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs.pop("snapshots", None)
        states = (
            dict(layer_states)
            if isinstance(layer_states, Mapping)
            else {s.index: s for s in layer_states or []}
        )
        super().__init__(frames, layer_states=states, **kwargs)

        if layer_count is None:
            used = [e.layer for e in self.frames if e is not None and e.layer is not None]
            layer_count = max([*used, *states.keys(), 0]) + 1
        self.layer_count = layer_count
        self.layers = [
            Surface(self.canvas_width, self.canvas_height) for _ in range(layer_count)
        ]
        self._layer_ctx = [DrawContext(surface) for surface in self.layers]
        self.compositor = LayerCompositor(layer_count, states)

    def set_layer_state(self, state: LayerState) -> None:
        """Update a layer's display settings and recomposite."""
        self.layer_states[state.index] = state
        self.compositor.layer_states[state.index] = state
        self._present()

    def _seed(self, target: int) -> int:
        self._clear()
        return 0

    def _clear(self) -> None:
        for surface in getattr(self, "layers", []):
            surface.clear(TRANSPARENT)
        self.surface.clear(WHITE)

    def _apply(self, index: int) -> None:
        event = self.frames[index]
        if event is None:
            return
        layer = event.layer
        if layer is None or not 0 <= layer < self.layer_count:
            log.warning(
                "layer_out_of_range", frame=index, layer=layer, layer_count=self.layer_count
            )
            return
        # Hidden layers are still drawn; the compositor decides what is shown,
        # so toggling visibility later needs no replay.
        draw_event(self._layer_ctx[layer], event)

    def _present(self) -> None:
        if not getattr(self, "layers", None):
            return
        composed = self.compositor.composite(self.layers)
        self.surface.pixels = composed.pixels
