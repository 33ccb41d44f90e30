"""Saved paintings and their recorded timelapse blob."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from gallery.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Paint(Base):
    __tablename__ = "paint"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    canvas_width: Mapped[int] = mapped_column(Integer, nullable=False)
    canvas_height: Mapped[int] = mapped_column(Integer, nullable=False)
    background_color: Mapped[str] = mapped_column(
        String(9), default="#FFFFFF", nullable=False
    )
    # Composite PNG as a data URI
    image_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Opaque codec output (gzip + base64 data URI)
    timelapse_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timelapse_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    nsfw: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("canvas_width > 0", name="ck_paint_canvas_width_positive"),
        CheckConstraint("canvas_height > 0", name="ck_paint_canvas_height_positive"),
    )
