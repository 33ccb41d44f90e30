"""Timelapse blob codec.

Two on-disk formats share one transport, a gzip stream wrapped in a
``data:application/octet-stream;base64,`` URI:

* **package**: the JSON ``TimelapsePackage`` (events plus optional
  snapshots).  Always written once snapshots exist.
* **csv**: the legacy flat table.  The first row is a ``meta`` event
  carrying the canvas size; nested values (``path``) are JSON cells.

Decoding auto-detects the format and never raises: any failure, including
a package with the wrong shape or an out-of-range canvas size, is logged
and reported as ``None`` ("no timelapse available").
"""

from __future__ import annotations

import base64
import binascii
import csv
import gzip
import io
import json
import math
import re
import time
import zlib
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as WorkerTimeout
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError

from gallery.config import settings
from gallery.services.timelapse.events import (
    PACKAGE_VERSION,
    FillEvent,
    MetaEvent,
    Snapshot,
    StrokeEvent,
    TimelapsePackage,
    TimelapseSession,
    parse_events,
    reconstruct_strokes,
)

log = structlog.get_logger()

DATA_URI_PREFIX = "data:application/octet-stream;base64,"
_DATA_URI = re.compile(r"^data:[^;,]+;base64,(.+)$", re.DOTALL)
_GZIP_MAGIC = b"\x1f\x8b"

FORMAT_PACKAGE = "package"
FORMAT_CSV = "csv"

# Columns coerced to numbers when reading the legacy table.
_FLOAT_COLUMNS = frozenset({"t", "x", "y", "size"})
_INT_COLUMNS = frozenset({"layer"})

# Largest canvas side accepted on save and on decode.
MAX_CANVAS_DIMENSION = 8192


class TimelapseError(Exception):
    """Base error for the timelapse codec."""


class TimelapseDecodeError(TimelapseError):
    """The blob could not be unwrapped, decompressed or parsed."""


@dataclass
class DecodedTimelapse:
    format: str
    events: list[StrokeEvent | FillEvent]
    canvas_width: int | None = None
    canvas_height: int | None = None
    snapshots: list[Snapshot] = field(default_factory=list)
    version: str | None = None

    def to_package(self) -> TimelapsePackage:
        return TimelapsePackage(
            version=self.version or PACKAGE_VERSION,
            canvasWidth=self.canvas_width or settings.TIMELAPSE_DEFAULT_WIDTH,
            canvasHeight=self.canvas_height or settings.TIMELAPSE_DEFAULT_HEIGHT,
            events=list(self.events),
            snapshots=list(self.snapshots) or None,
        )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def _wrap(text: str) -> str:
    payload = gzip.compress(text.encode("utf-8"))
    return DATA_URI_PREFIX + base64.b64encode(payload).decode("ascii")


def _unwrap(blob: str | bytes) -> bytes:
    """Return the gzip bytes held by a data URI or a raw gzip file body."""
    if isinstance(blob, (bytes, bytearray)):
        if bytes(blob[:2]) == _GZIP_MAGIC:
            return bytes(blob)
        try:
            blob = bytes(blob).decode("ascii")
        except UnicodeDecodeError as exc:
            raise TimelapseDecodeError("Blob is neither gzip nor a data URI") from exc

    match = _DATA_URI.match(blob.strip())
    if not match:
        raise TimelapseDecodeError("Invalid data URL format")
    try:
        return base64.b64decode(match.group(1), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise TimelapseDecodeError(f"Invalid base64 payload: {exc}") from exc


def _gunzip(raw: bytes) -> str:
    limit = settings.TIMELAPSE_MAX_BLOB_BYTES
    try:
        with gzip.GzipFile(fileobj=io.BytesIO(raw)) as fh:
            data = fh.read(limit + 1)
    except (OSError, EOFError, zlib.error) as exc:
        raise TimelapseDecodeError(f"Decompression failed: {exc}") from exc
    if len(data) > limit:
        raise TimelapseDecodeError(f"Decompressed timelapse exceeds {limit} bytes")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise TimelapseDecodeError("Timelapse text is not UTF-8") from exc


# ---------------------------------------------------------------------------
# CSV table
# ---------------------------------------------------------------------------

def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"))
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def events_to_csv(rows: list[dict[str, Any]]) -> str:
    """Flatten records into a CSV table.

    The header is the union of all keys in first-seen order.  Cells holding
    a comma, quote or newline are quoted with inner quotes doubled.
    """
    headers: list[str] = []
    for row in rows:
        for key in row:
            if key not in headers:
                headers.append(key)

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_cell(row.get(h)) for h in headers])
    return buf.getvalue().rstrip("\n")


def parse_csv_line(line: str) -> list[str]:
    """Split one CSV line; ``""`` inside a quoted cell is a literal quote."""
    try:
        row = next(csv.reader([line]), [])
    except csv.Error as exc:
        raise TimelapseDecodeError(f"Malformed CSV line: {exc}") from exc
    return row or [""]


def _coerce(column: str, value: str) -> Any:
    if column in _FLOAT_COLUMNS:
        try:
            return float(value)
        except ValueError:
            pass
    elif column in _INT_COLUMNS:
        try:
            return int(float(value))
        except (ValueError, OverflowError):
            pass
    try:
        return json.loads(value)
    except ValueError:
        return value


def parse_csv(text: str) -> list[dict[str, Any]]:
    """Parse a legacy table into row dicts; empty cells are omitted.

    Quoted cells may span lines, matching what ``events_to_csv`` writes.
    """
    try:
        table = [
            row for row in csv.reader(io.StringIO(text, newline=""))
            if any(cell.strip() for cell in row)
        ]
    except csv.Error as exc:
        raise TimelapseDecodeError(f"Malformed CSV: {exc}") from exc
    if len(table) < 2:
        raise TimelapseDecodeError("Empty timelapse data")

    headers = [h.strip() for h in table[0]]
    rows: list[dict[str, Any]] = []
    for values in table[1:]:
        row = {
            column: _coerce(column, value)
            for column, value in zip(headers, values)
            if value != ""
        }
        rows.append(row)
    return rows


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def encode_package(package: TimelapsePackage) -> str:
    return _wrap(json.dumps(package.to_wire(), separators=(",", ":")))


def _rows_with_meta(
    events: list[StrokeEvent | FillEvent], canvas_width: int, canvas_height: int
) -> list[dict[str, Any]]:
    first_t = events[0].t if events and events[0].t is not None else time.time() * 1000
    meta = MetaEvent(canvas_width=canvas_width, canvas_height=canvas_height, t=first_t)
    return [meta.to_wire()] + [event.to_wire() for event in events]


def encode_csv(
    events: list[StrokeEvent | FillEvent], canvas_width: int, canvas_height: int
) -> str:
    return _wrap(events_to_csv(_rows_with_meta(events, canvas_width, canvas_height)))


def _compress_rows(message: dict[str, Any]) -> dict[str, Any]:
    """Worker body: ``{events}`` -> ``{success, payload}`` or ``{success, error}``."""
    try:
        return {"success": True, "payload": _wrap(events_to_csv(message["events"]))}
    except (KeyError, TypeError, ValueError) as exc:
        return {"success": False, "error": str(exc)}


class CompressionWorker:
    """Single background thread for CSV compression, reused across saves.

    The executor is created on first use and lives until ``shutdown()``,
    which is only called at process exit.
    """

    def __init__(self) -> None:
        self._executor: ThreadPoolExecutor | None = None

    @property
    def started(self) -> bool:
        return self._executor is not None

    def submit(self, message: dict[str, Any]) -> Future:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="timelapse-compress"
            )
        return self._executor.submit(_compress_rows, message)

    def request(self, message: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        return self.submit(message).result(timeout=timeout)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


def compress_timelapse(
    session: TimelapseSession, worker: CompressionWorker | None = None
) -> str | None:
    """Serialise a session's recording for storage.

    Returns ``None`` for an empty log or on any failure; an uncompressed
    blob is never returned.
    """
    if len(session.log) == 0:
        return None

    try:
        if session.snapshots:
            return encode_package(session.to_package())

        rows = _rows_with_meta(session.log.events, session.canvas_width, session.canvas_height)
        if worker is not None:
            try:
                response = worker.request({"events": rows})
            except (RuntimeError, OSError, WorkerTimeout, CancelledError) as exc:
                response = {"success": False, "error": str(exc)}
            if response.get("success"):
                return response["payload"]
            log.warning("timelapse_worker_failed", error=response.get("error"))
        return _wrap(events_to_csv(rows))
    except (TypeError, ValueError, OSError, RuntimeError) as exc:
        log.error("timelapse_compress_failed", error=str(exc))
        return None


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _canvas_dimension(value: Any, name: str) -> int | None:
    """A stored canvas size, bounded like the save endpoint; missing is ``None``."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TimelapseDecodeError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value) or value != int(value):
        raise TimelapseDecodeError(f"{name} must be a whole number, got {value!r}")
    if not 0 < value <= MAX_CANVAS_DIMENSION:
        raise TimelapseDecodeError(f"{name} out of range: {value!r}")
    return int(value)


def _decode_package(obj: dict[str, Any]) -> DecodedTimelapse:
    raw_events = obj.get("events")
    raw_snapshots = obj.get("snapshots")
    if not isinstance(raw_events, list):
        raise TimelapseDecodeError("Package events must be a list")
    if raw_snapshots is not None and not isinstance(raw_snapshots, list):
        raise TimelapseDecodeError("Package snapshots must be a list")

    width = _canvas_dimension(obj.get("canvasWidth"), "canvasWidth")
    height = _canvas_dimension(obj.get("canvasHeight"), "canvasHeight")

    events = [e for e in parse_events(raw_events) if not isinstance(e, MetaEvent)]
    snapshots: list[Snapshot] = []
    for raw in raw_snapshots or []:
        try:
            snapshots.append(Snapshot.model_validate(raw))
        except ValidationError:
            log.warning("timelapse_snapshot_dropped")
    return DecodedTimelapse(
        format=FORMAT_PACKAGE,
        events=events,
        canvas_width=width,
        canvas_height=height,
        snapshots=snapshots,
        version=str(obj["version"]),
    )


def _decode_csv(text: str) -> DecodedTimelapse:
    rows = reconstruct_strokes(parse_csv(text))
    width = height = None
    events: list[StrokeEvent | FillEvent] = []
    for event in parse_events(rows):
        if isinstance(event, MetaEvent):
            if width is None:
                width = _canvas_dimension(event.canvas_width, "canvas_width")
                height = _canvas_dimension(event.canvas_height, "canvas_height")
            continue
        events.append(event)
    return DecodedTimelapse(
        format=FORMAT_CSV, events=events, canvas_width=width, canvas_height=height
    )


def _decode_text(text: str) -> DecodedTimelapse:
    try:
        obj = json.loads(text)
    except ValueError:
        obj = None
    if isinstance(obj, dict) and obj.get("version") and "events" in obj:
        return _decode_package(obj)
    return _decode_csv(text)


def decode_timelapse(blob: str | bytes | None) -> DecodedTimelapse | None:
    """Decode a stored blob; ``None`` means no timelapse is available."""
    if not blob:
        return None
    try:
        return _decode_text(_gunzip(_unwrap(blob)))
    except (TimelapseError, TypeError, ValueError) as exc:
        log.warning("timelapse_decode_failed", reason=str(exc))
        return None

