"""Timelapse event model: drawing events, the append-only log, and sessions.

Records use the field names of the recorded wire format
(``watercolorHardness``, ``canvasWidth``, ``_seq`` ...) through Pydantic
aliases, and keep unknown keys so that a decoded package re-encodes to the
same JSON.

Live pointer input arrives as ``start`` / ``move`` / ``end`` sub-events;
``EventLog`` groups each run into one ``stroke`` event.  The same grouping
(``reconstruct_strokes``) re-aggregates the flat rows of the legacy CSV
transport.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Any, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from gallery.config import settings
from gallery.services.timelapse.surface import Surface

log = structlog.get_logger()

PACKAGE_VERSION = "1.0"


class Tool(str, Enum):
    """Brush tools that produce ``stroke`` events."""

    PEN = "pen"
    ERASER = "eraser"
    WATERCOLOR = "watercolor"


class EventKind(str, Enum):
    STROKE = "stroke"
    FILL = "fill"
    META = "meta"


class PointerPhase(str, Enum):
    START = "start"
    MOVE = "move"
    END = "end"


# ---------------------------------------------------------------------------
# Event records
# ---------------------------------------------------------------------------

class _Record(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump with wire-format keys, omitting unset optional fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PathPoint(_Record):
    x: float
    y: float
    pressure: float | None = Field(default=None, ge=0, le=1)


class MetaEvent(_Record):
    """Canvas description at recording start; never rendered."""

    type: Literal["meta"] = "meta"
    canvas_width: int | None = Field(default=None, gt=0)
    canvas_height: int | None = Field(default=None, gt=0)
    t: float | None = None


class StrokeEvent(_Record):
    type: Literal["stroke"] = "stroke"
    tool: Tool = Tool.PEN
    color: str = "#000000"
    size: float | None = Field(default=None, gt=0)
    opacity: float | None = Field(default=None, ge=0, le=1)
    layer: int | None = None
    path: list[PathPoint] = Field(min_length=1)
    watercolor_hardness: float | None = Field(
        default=None, ge=0, le=100, alias="watercolorHardness"
    )
    watercolor_opacity: float | None = Field(
        default=None, ge=0, le=1, alias="watercolorOpacity"
    )
    t: float | None = None
    seq: int | None = Field(default=None, alias="_seq")

    @property
    def is_dab(self) -> bool:
        """A single-point path is a tap, not a drag."""
        return len(self.path) == 1


class FillEvent(_Record):
    type: Literal["fill"] = "fill"
    x: float
    y: float
    color: str = "#000000"
    layer: int | None = None
    tolerance: int | None = Field(default=None, ge=0, le=255)
    t: float | None = None
    seq: int | None = Field(default=None, alias="_seq")


DrawEvent = Annotated[
    Union[StrokeEvent, FillEvent, MetaEvent],
    Field(discriminator="type"),
]

_draw_event_adapter: TypeAdapter[StrokeEvent | FillEvent | MetaEvent] = TypeAdapter(DrawEvent)


class PointerEvent(_Record):
    """One flat live-input / legacy CSV row (``start`` / ``move`` / ``end``)."""

    type: PointerPhase
    x: float | None = None
    y: float | None = None
    pressure: float | None = Field(default=None, ge=0, le=1)
    color: str | None = None
    size: float | None = None
    tool: str | None = None
    layer: int | None = None
    opacity: float | None = None
    t: float | None = None


class BlendMode(str, Enum):
    """Canvas composite-operation names a layer may use."""

    SOURCE_OVER = "source-over"
    MULTIPLY = "multiply"
    SCREEN = "screen"
    OVERLAY = "overlay"
    LIGHTER = "lighter"
    LIGHTEN = "lighten"
    DARKEN = "darken"
    COLOR_DODGE = "color-dodge"
    COLOR_BURN = "color-burn"
    HARD_LIGHT = "hard-light"
    SOFT_LIGHT = "soft-light"
    DIFFERENCE = "difference"
    EXCLUSION = "exclusion"
    HUE = "hue"
    SATURATION = "saturation"
    COLOR = "color"
    LUMINOSITY = "luminosity"


class LayerState(_Record):
    index: int = Field(ge=0)
    visible: bool = True
    opacity: float = Field(default=1.0, ge=0, le=1)
    blend_mode: BlendMode = Field(default=BlendMode.SOURCE_OVER, alias="blendMode")


class Snapshot(_Record):
    """Composited raster capture taken after ``frame`` events were applied."""

    frame: int = Field(ge=0)
    image: str = Field(description="PNG data URI")


class TimelapsePackage(_Record):
    version: str = PACKAGE_VERSION
    canvas_width: int = Field(gt=0, alias="canvasWidth")
    canvas_height: int = Field(gt=0, alias="canvasHeight")
    events: list[DrawEvent] = Field(default_factory=list)
    snapshots: list[Snapshot] | None = None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_event(raw: Any) -> StrokeEvent | FillEvent | MetaEvent | None:
    """Validate one raw record; malformed records yield ``None``."""
    if isinstance(raw, (StrokeEvent, FillEvent, MetaEvent)):
        return raw
    try:
        return _draw_event_adapter.validate_python(raw)
    except ValidationError as exc:
        kind = raw.get("type") if isinstance(raw, dict) else type(raw).__name__
        log.warning("timelapse_event_dropped", kind=kind, errors=exc.error_count())
        return None


def parse_events(rows: list[Any]) -> list[StrokeEvent | FillEvent | MetaEvent]:
    """Validate a list of raw records, dropping the malformed ones."""
    parsed = (parse_event(row) for row in rows)
    return [event for event in parsed if event is not None]


def _point_from_row(row: dict[str, Any]) -> dict[str, Any] | None:
    if row.get("x") is None or row.get("y") is None:
        return None
    point = {"x": row["x"], "y": row["y"]}
    if row.get("pressure") is not None:
        point["pressure"] = row["pressure"]
    return point


def _open_stroke(row: dict[str, Any]) -> dict[str, Any]:
    stroke: dict[str, Any] = {
        "type": EventKind.STROKE.value,
        "color": row.get("color") or "#000000",
        "size": row.get("size") or 5,
        "tool": row.get("tool") or Tool.PEN.value,
        "layer": row.get("layer") or 0,
        "path": [],
    }
    if row.get("opacity") is not None:
        stroke["opacity"] = row["opacity"]
    if row.get("t") is not None:
        stroke["t"] = row["t"]
    point = _point_from_row(row)
    if point is not None:
        stroke["path"].append(point)
    return stroke


def reconstruct_strokes(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Re-group flat ``start`` / ``move`` / ``end`` rows into stroke records.

    ``start`` opens a stroke carrying color/size/tool/layer, ``move`` appends
    a point, ``end`` appends its point (if any) and closes the stroke.
    ``move``/``end`` with no open stroke are dropped; a new ``start`` while a
    stroke is open discards the open one.  Every other row passes through
    unchanged and in order.
    """
    out: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None

    for row in rows:
        kind = row.get("type")
        if kind == PointerPhase.START.value:
            current = _open_stroke(row)
        elif kind == PointerPhase.MOVE.value:
            if current is None:
                continue
            point = _point_from_row(row)
            if point is not None:
                current["path"].append(point)
        elif kind == PointerPhase.END.value:
            if current is None:
                continue
            point = _point_from_row(row)
            if point is not None:
                current["path"].append(point)
            out.append(current)
            current = None
        else:
            out.append(row)

    if current is not None and current["path"]:
        out.append(current)
    return out


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------

class EventLog:
    """Ordered, append-only list of drawing events for one session.

    Order is the only sequencing guarantee.  ``_seq`` is assigned on append
    for debugging last-event lookups and is not authoritative.
    """

    def __init__(self, events: list[StrokeEvent | FillEvent] | None = None) -> None:
        self._events: list[StrokeEvent | FillEvent] = []
        self._next_seq = 0
        self._open: dict[str, Any] | None = None
        for event in events or []:
            self.append(event)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(self._events)

    @property
    def events(self) -> list[StrokeEvent | FillEvent]:
        return list(self._events)

    @property
    def last_seq(self) -> int | None:
        return self._events[-1].seq if self._events else None

    @property
    def has_open_stroke(self) -> bool:
        return self._open is not None

    def append(self, event: StrokeEvent | FillEvent | dict[str, Any]) -> StrokeEvent | FillEvent | None:
        """Append one completed event; ``meta`` and malformed records are ignored."""
        parsed = parse_event(event)
        if parsed is None or isinstance(parsed, MetaEvent):
            return None
        if parsed.t is None:
            parsed.t = time.time() * 1000
        parsed.seq = self._next_seq
        self._next_seq += 1
        self._events.append(parsed)
        return parsed

    # ------------------------------------------------------------------
    # Live pointer input
    # ------------------------------------------------------------------

    def record_pointer(self, row: PointerEvent | dict[str, Any]) -> StrokeEvent | None:
        """Feed one pointer sub-event; returns the stroke closed by ``end``."""
        pointer = row if isinstance(row, PointerEvent) else PointerEvent.model_validate(row)
        data = pointer.model_dump(mode="json", exclude_none=True)

        if pointer.type is PointerPhase.START:
            self._open = _open_stroke(data)
            self._open.setdefault("t", time.time() * 1000)
            return None

        if self._open is None:
            return None

        point = _point_from_row(data)
        if point is not None:
            self._open["path"].append(point)
        if pointer.type is PointerPhase.MOVE:
            return None

        stroke, self._open = self._open, None
        if not stroke["path"]:
            return None
        appended = self.append(stroke)
        return appended if isinstance(appended, StrokeEvent) else None

    def start(self, x: float, y: float, **attrs: Any) -> None:
        self.record_pointer({"type": "start", "x": x, "y": y, **attrs})

    def move(self, x: float, y: float, pressure: float | None = None) -> None:
        self.record_pointer({"type": "move", "x": x, "y": y, "pressure": pressure})

    def end(
        self, x: float | None = None, y: float | None = None, pressure: float | None = None
    ) -> StrokeEvent | None:
        return self.record_pointer({"type": "end", "x": x, "y": y, "pressure": pressure})

    def clear(self) -> None:
        self._events.clear()
        self._open = None


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class TimelapseSession:
    """Event log and snapshots owned by one single-user editing session."""

    def __init__(self, canvas_width: int, canvas_height: int) -> None:
        self.canvas_width = canvas_width
        self.canvas_height = canvas_height
        self.log = EventLog()
        self.snapshots: list[Snapshot] = []

    def new_canvas(self, canvas_width: int | None = None, canvas_height: int | None = None) -> None:
        """Start over on a blank canvas; the recording is discarded."""
        if canvas_width is not None:
            self.canvas_width = canvas_width
        if canvas_height is not None:
            self.canvas_height = canvas_height
        self._reset("new_canvas")

    def import_data(self) -> None:
        """Imported working data starts a fresh recording."""
        self._reset("import")

    def mark_saved(self) -> None:
        """The saved image becomes the new base; pending events are merged."""
        count = len(self.log)
        self.log.clear()
        self.snapshots = []
        log.info("timelapse_merged_on_save", events=count)

    def snapshot_due(self, interval: int | None = None) -> bool:
        """True when the log has grown by *interval* events since the last snapshot."""
        interval = interval or settings.TIMELAPSE_SNAPSHOT_INTERVAL
        last = self.snapshots[-1].frame if self.snapshots else 0
        return len(self.log) - last >= interval

    def capture_snapshot(self, composited: Surface) -> Snapshot:
        """Record a composited raster taken after the current last event."""
        snapshot = Snapshot(frame=len(self.log), image=composited.to_data_uri())
        self.snapshots.append(snapshot)
        return snapshot

    def to_package(self) -> TimelapsePackage:
        return TimelapsePackage(
            canvasWidth=self.canvas_width,
            canvasHeight=self.canvas_height,
            events=self.log.events,
            snapshots=list(self.snapshots) or None,
        )

    def meta_event(self) -> MetaEvent:
        first = next(iter(self.log), None)
        return MetaEvent(
            canvas_width=self.canvas_width,
            canvas_height=self.canvas_height,
            t=first.t if first is not None else time.time() * 1000,
        )

    def _reset(self, reason: str) -> None:
        self.log.clear()
        self.snapshots = []
        log.info("timelapse_reset", reason=reason)
