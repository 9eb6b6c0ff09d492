"""Scan watermark: newest feed message id already processed."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class ScanWatermark(Base):
    """Single-row cursor per named feed.

    ``value`` is stored as a decimal string: message ids can exceed the
    64-bit range, so ordering is done on Python ints, never in SQL.
    """

    __tablename__ = "scan_watermarks"

    name: Mapped[str] = mapped_column(
        String(50),
        primary_key=True,
    )
    value: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<ScanWatermark(name={self.name!r}, value={self.value!r})>"
