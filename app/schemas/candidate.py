"""Schemas for raw feed messages and scanner cycle results."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class CandidateMessage(BaseModel):
    """One message returned by the feed, before any filtering."""

    external_id: str = Field(..., description="Message id (decimal string)")
    author_ref: str = Field(..., description="Author id or handle as the feed gives it")
    text: str = ""
    is_retweet: bool = False
    is_quote: bool = False
    observed_at: Optional[datetime] = Field(
        None,
        description="Post time as naive UTC; ingestion time is used when absent",
    )


class ScanResult(BaseModel):
    """Counters for one intake cycle."""

    status: str = Field(
        ...,
        description="completed | skipped (feed unavailable or rate limited)",
    )
    seen: int = 0
    skipped: int = 0
    parsed: int = 0
    admitted: int = 0
    replays: int = 0
    duplicates: int = 0
    errors: int = 0
    watermark_before: Optional[str] = None
    watermark_after: Optional[str] = None
    message: Optional[str] = None


class WatermarkResponse(BaseModel):
    name: str
    value: Optional[str] = None
