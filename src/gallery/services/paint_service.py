"""Painting records: save/load with the timelapse blob, plus listing."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from fastapi import HTTPException, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from gallery.config import settings
from gallery.services.timelapse.codec import (
    MAX_CANVAS_DIMENSION,
    CompressionWorker,
    DecodedTimelapse,
    compress_timelapse,
    decode_timelapse,
)
from gallery.services.timelapse.events import LayerState, Snapshot, TimelapseSession
from gallery.services.timelapse.player import LayeredTimelapsePlayer, TimelapsePlayer

log = structlog.get_logger()

NSFW_FILTERS = ("all", "safe", "nsfw")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class SavePaintRequest(BaseModel, extra="forbid"):
    """Save a new painting, or overwrite ``id`` when given."""

    id: Optional[int] = None
    title: str = Field(min_length=1, max_length=200)
    canvas_width: int = Field(gt=0, le=MAX_CANVAS_DIMENSION)
    canvas_height: int = Field(gt=0, le=MAX_CANVAS_DIMENSION)
    background_color: str = Field(default="#FFFFFF", pattern=r"^#[0-9a-fA-F]{6}$")
    image_data: Optional[str] = None
    timelapse_data: Optional[str] = None
    events: Optional[list[dict[str, Any]]] = None
    snapshots: Optional[list[Snapshot]] = None
    nsfw: bool = False
    is_visible: bool = True

    @model_validator(mode="after")
    def _check_timelapse_source(self) -> SavePaintRequest:
        if self.timelapse_data is not None and self.events is not None:
            raise ValueError("Send either timelapse_data or events, not both")
        if self.snapshots and self.events is None:
            raise ValueError("snapshots require events")
        return self


class PaintResponse(BaseModel):
    id: int
    title: str
    canvas_width: int
    canvas_height: int
    background_color: str
    image_data: Optional[str] = None
    timelapse_available: bool
    timelapse_size: int
    nsfw: bool
    is_visible: bool
    created_at: str  # ISO-8601 datetime string
    updated_at: str  # ISO-8601 datetime string


class PaintSummary(BaseModel):
    id: int
    title: str
    canvas_width: int
    canvas_height: int
    nsfw: bool
    has_timelapse: bool
    created_at: str


class PaintListResponse(BaseModel):
    items: list[PaintSummary]
    limit: int
    offset: int


class TimelapseResponse(BaseModel):
    success: bool
    format: Optional[str] = None
    canvasWidth: Optional[int] = None
    canvasHeight: Optional[int] = None
    events: list[dict[str, Any]] = Field(default_factory=list)
    snapshotCount: int = 0


# ---------------------------------------------------------------------------
# Data access
# ---------------------------------------------------------------------------

_PAINT_COLUMNS = (
    "id, title, canvas_width, canvas_height, background_color, image_data, "
    "timelapse_data, timelapse_size, nsfw, is_visible, created_at, updated_at"
)


def _now() -> str:
    # Stored in the same layout SQLAlchemy uses for SQLite DATETIME columns.
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(sep=" ")


def _iso(value: Any) -> str:
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


class PaintRepository:
    """Raw SQL access to the ``paint`` table."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def insert(self, values: dict[str, Any]) -> int:
        now = _now()
        result = await self.db.execute(
            text(
                "INSERT INTO paint (title, canvas_width, canvas_height, background_color, "
                "  image_data, timelapse_data, timelapse_size, nsfw, is_visible, "
                "  created_at, updated_at) "
                "VALUES (:title, :canvas_width, :canvas_height, :background_color, "
                "  :image_data, :timelapse_data, :timelapse_size, :nsfw, :is_visible, "
                "  :now, :now) "
                "RETURNING id"
            ),
            {**values, "now": now},
        )
        paint_id = result.scalar_one()
        await self.db.commit()
        return paint_id

    async def update(self, paint_id: int, values: dict[str, Any]) -> bool:
        result = await self.db.execute(
            text(
                "UPDATE paint SET title = :title, canvas_width = :canvas_width, "
                "  canvas_height = :canvas_height, background_color = :background_color, "
                "  image_data = :image_data, timelapse_data = :timelapse_data, "
                "  timelapse_size = :timelapse_size, nsfw = :nsfw, "
                "  is_visible = :is_visible, updated_at = :now "
                "WHERE id = :id"
            ),
            {**values, "id": paint_id, "now": _now()},
        )
        await self.db.commit()
        return result.rowcount > 0

    async def get(self, paint_id: int):
        result = await self.db.execute(
            text(f"SELECT {_PAINT_COLUMNS} FROM paint WHERE id = :id"),
            {"id": paint_id},
        )
        return result.mappings().fetchone()

    async def get_timelapse(self, paint_id: int):
        result = await self.db.execute(
            text("SELECT id, timelapse_data FROM paint WHERE id = :id"),
            {"id": paint_id},
        )
        return result.fetchone()

    async def list_visible(self, nsfw_filter: str, limit: int, offset: int) -> list:
        params: dict[str, Any] = {"limit": limit, "offset": offset, "visible": True}
        clause = ""
        if nsfw_filter != "all":
            clause = "AND nsfw = :nsfw "
            params["nsfw"] = nsfw_filter == "nsfw"
        result = await self.db.execute(
            text(
                "SELECT id, title, canvas_width, canvas_height, nsfw, "
                "       timelapse_size, created_at "
                "FROM paint "
                f"WHERE is_visible = :visible {clause}"
                "ORDER BY created_at DESC, id DESC "
                "LIMIT :limit OFFSET :offset"
            ),
            params,
        )
        return result.fetchall()

    async def missing_sizes(self) -> list:
        result = await self.db.execute(
            text(
                "SELECT id, timelapse_data FROM paint "
                "WHERE timelapse_data IS NOT NULL AND timelapse_data != '' "
                "  AND (timelapse_size IS NULL OR timelapse_size = 0) "
                "ORDER BY id"
            )
        )
        return result.fetchall()

    async def set_size(self, paint_id: int, size: int) -> None:
        await self.db.execute(
            text("UPDATE paint SET timelapse_size = :size WHERE id = :id"),
            {"size": size, "id": paint_id},
        )


# ---------------------------------------------------------------------------
# Timelapse helpers
# ---------------------------------------------------------------------------

_worker = CompressionWorker()


def get_compression_worker() -> CompressionWorker:
    return _worker


def build_timelapse_blob(
    request: SavePaintRequest, worker: CompressionWorker | None = None
) -> str | None:
    """Blob to store for *request*: the client's blob, or the compressed events."""
    if request.timelapse_data is not None:
        if len(request.timelapse_data) > settings.TIMELAPSE_MAX_BLOB_BYTES:
            raise HTTPException(
                status_code=413,
                detail="timelapse_data is too large",
            )
        return request.timelapse_data or None

    if not request.events:
        return None

    session = TimelapseSession(request.canvas_width, request.canvas_height)
    for event in request.events:
        session.log.append(event)
    session.snapshots = list(request.snapshots or [])
    return compress_timelapse(session, worker)


def render_frame_png(
    decoded: DecodedTimelapse,
    index: int,
    layered: bool = False,
    layer_states: list[LayerState] | None = None,
) -> bytes:
    """Server-side preview of the frame at *index*."""
    if layered:
        player: TimelapsePlayer = LayeredTimelapsePlayer(
            decoded.events,
            layer_states=layer_states,
            canvas_width=decoded.canvas_width,
            canvas_height=decoded.canvas_height,
        )
    else:
        player = TimelapsePlayer.from_decoded(decoded)
    player.seek(index)
    return player.frame_png()


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------

def _to_response(row) -> PaintResponse:
    blob = row["timelapse_data"]
    return PaintResponse(
        id=row["id"],
        title=row["title"],
        canvas_width=row["canvas_width"],
        canvas_height=row["canvas_height"],
        background_color=row["background_color"],
        image_data=row["image_data"],
        timelapse_available=decode_timelapse(blob) is not None,
        timelapse_size=row["timelapse_size"] or 0,
        nsfw=bool(row["nsfw"]),
        is_visible=bool(row["is_visible"]),
        created_at=_iso(row["created_at"]),
        updated_at=_iso(row["updated_at"]),
    )


async def save_paint(
    db: AsyncSession,
    request: SavePaintRequest,
    worker: CompressionWorker | None = None,
) -> PaintResponse:
    # Compression waits on the worker thread; keep it off the event loop.
    blob = await run_in_threadpool(build_timelapse_blob, request, worker)
    values = {
        "title": request.title,
        "canvas_width": request.canvas_width,
        "canvas_height": request.canvas_height,
        "background_color": request.background_color,
        "image_data": request.image_data,
        "timelapse_data": blob,
        "timelapse_size": len(blob) if blob else 0,
        "nsfw": request.nsfw,
        "is_visible": request.is_visible,
    }

    repo = PaintRepository(db)
    if request.id is not None:
        if not await repo.update(request.id, values):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Painting not found",
            )
        paint_id = request.id
    else:
        paint_id = await repo.insert(values)

    log.info("paint_saved", paint_id=paint_id, timelapse_bytes=values["timelapse_size"])
    return await load_paint(db, paint_id)


async def load_paint(db: AsyncSession, paint_id: int) -> PaintResponse:
    row = await PaintRepository(db).get(paint_id)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Painting not found",
        )
    return _to_response(row)


async def load_timelapse(db: AsyncSession, paint_id: int) -> DecodedTimelapse | None:
    """Decoded timelapse of a painting, or ``None`` when unavailable."""
    row = await PaintRepository(db).get_timelapse(paint_id)
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Painting not found",
        )
    return decode_timelapse(row[1])


async def refresh_timelapse_sizes(db: AsyncSession) -> dict[str, Any]:
    """Backfill ``timelapse_size`` for records stored without one.

    Records whose blob no longer decodes are still sized but reported as
    ``unreadable`` so they can be inspected.
    """
    repo = PaintRepository(db)
    rows = await repo.missing_sizes()
    updated: list[dict[str, Any]] = []
    unreadable: list[int] = []
    for paint_id, blob in rows:
        size = len(blob)
        await repo.set_size(paint_id, size)
        updated.append({"id": paint_id, "size": size})
        if decode_timelapse(blob) is None:
            unreadable.append(paint_id)
    await db.commit()

    log.info("timelapse_sizes_refreshed", updated=len(updated), unreadable=len(unreadable))
    return {"updated": updated, "unreadable": unreadable}


async def list_paintings(
    db: AsyncSession, nsfw_filter: str = "all", limit: int = 20, offset: int = 0
) -> PaintListResponse:
    if nsfw_filter not in NSFW_FILTERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"nsfw_filter must be one of {', '.join(NSFW_FILTERS)}",
        )
    rows = await PaintRepository(db).list_visible(nsfw_filter, limit, offset)
    return PaintListResponse(
        items=[
            PaintSummary(
                id=row[0],
                title=row[1],
                canvas_width=row[2],
                canvas_height=row[3],
                nsfw=bool(row[4]),
                has_timelapse=bool(row[5]),
                created_at=_iso(row[6]),
            )
            for row in rows
        ],
        limit=limit,
        offset=offset,
    )
