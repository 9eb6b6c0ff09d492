"""Pydantic schemas for payment records and manual ingestion."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ManualPaymentRequest(BaseModel):
    """Body for the fallback ingestion path that bypasses the feed."""

    external_id: str = Field(..., min_length=1, max_length=64)
    sender_handle: str = Field(..., min_length=1, max_length=64)
    recipient_handle: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., description="USDC amount, up to 6 decimals")


class PaymentResponse(BaseModel):
    """Schema returned when reading a payment record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    sender_handle: str
    recipient_handle: str
    amount: Decimal
    status: str = Field(
        ...,
        description="pending | claim_in_progress | completed | failed",
    )
    source: str
    claimed_by: Optional[str] = None
    settlement_ref: Optional[str] = None
    last_attempt_ref: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    finalized_at: Optional[datetime] = None
