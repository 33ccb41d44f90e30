"""Painting API -- save, load, list, and timelapse playback data."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.ext.asyncio import AsyncSession

from gallery.database import get_db
from gallery.services.paint_service import (
    PaintListResponse,
    PaintResponse,
    SavePaintRequest,
    TimelapseResponse,
    get_compression_worker,
    list_paintings,
    load_paint,
    load_timelapse,
    render_frame_png,
    save_paint,
)
from gallery.services.timelapse.codec import CompressionWorker

router = APIRouter(prefix="/api/v1/paint", tags=["paint"])


@router.post("", response_model=PaintResponse, status_code=status.HTTP_201_CREATED)
async def save(
    body: SavePaintRequest,
    db: AsyncSession = Depends(get_db),
    worker: CompressionWorker = Depends(get_compression_worker),
):
    """Save a painting; raw events are compressed server-side."""
    return await save_paint(db, body, worker)


@router.get("", response_model=PaintListResponse)
async def list_all(
    nsfw_filter: str = Query(default="all"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await list_paintings(db, nsfw_filter, limit, offset)


@router.get("/{paint_id}", response_model=PaintResponse)
async def get_paint(paint_id: int, db: AsyncSession = Depends(get_db)):
    """Painting metadata; a broken timelapse only clears ``timelapse_available``."""
    return await load_paint(db, paint_id)


@router.get("/{paint_id}/timelapse", response_model=TimelapseResponse)
async def get_timelapse(paint_id: int, db: AsyncSession = Depends(get_db)):
    decoded = await load_timelapse(db, paint_id)
    if decoded is None:
        return TimelapseResponse(success=False)
    return TimelapseResponse(
        success=True,
        format=decoded.format,
        canvasWidth=decoded.canvas_width,
        canvasHeight=decoded.canvas_height,
        events=[event.to_wire() for event in decoded.events],
        snapshotCount=len(decoded.snapshots),
    )


@router.get(
    "/{paint_id}/timelapse/frame",
    response_class=Response,
    responses={200: {"content": {"image/png": {}}}},
)
async def get_timelapse_frame(
    paint_id: int,
    index: int = Query(ge=0),
    layered: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
):
    """PNG of the canvas after replaying frames ``0..index``."""
    decoded = await load_timelapse(db, paint_id)
    if decoded is None or not decoded.events:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No timelapse available",
        )
    png = await run_in_threadpool(render_frame_png, decoded, index, layered)
    return Response(content=png, media_type="image/png")
