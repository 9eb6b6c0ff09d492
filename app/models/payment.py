"""Payment record model: one row per detected payment intent."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

# -- Lifecycle states --
PENDING = "pending"
CLAIM_IN_PROGRESS = "claim_in_progress"
COMPLETED = "completed"
FAILED = "failed"

# States a claim may start from
CLAIMABLE_STATUSES = (PENDING, FAILED)
TERMINAL_STATUSES = (COMPLETED, FAILED)

SOURCE_FEED = "feed"
SOURCE_MANUAL = "manual"


class PaymentRecord(Base):
    """A payment command seen in the feed (or recorded manually).

    The recipient claims it later; settlement moves the tokens from the
    sender's account through the vault's delegated allowance.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    external_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
        comment="Originating message id; the idempotency key",
    )
    sender_handle: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )
    recipient_handle: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 6),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PENDING,
        comment="pending | claim_in_progress | completed | failed",
    )
    source: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=SOURCE_FEED,
        comment="feed | manual",
    )
    claimed_by: Mapped[Optional[str]] = mapped_column(
        String(64),
    )
    settlement_ref: Mapped[Optional[str]] = mapped_column(
        String(128),
    )
    last_attempt_ref: Mapped[Optional[str]] = mapped_column(
        String(128),
    )
    last_attempt_destination: Mapped[Optional[str]] = mapped_column(
        String(64),
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="When the last transfer was submitted",
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        onupdate=func.now(),
    )
    finalized_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
    )

    __table_args__ = (
        Index(
            "ix_payments_duplicate_lookup",
            "sender_handle",
            "recipient_handle",
            "amount",
            "created_at",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord(external_id={self.external_id!r}, "
            f"{self.sender_handle}->{self.recipient_handle} "
            f"amount={self.amount}, status={self.status!r})>"
        )
