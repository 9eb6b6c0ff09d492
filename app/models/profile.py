"""Profile model: maps a social handle to its linked wallet."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Profile(Base):
    """A registered user. Written by the account-linking flow; read here."""

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    handle: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        comment="Lowercase handle without @",
    )
    wallet: Mapped[Optional[str]] = mapped_column(
        String(64),
        comment="Owner address of the settlement token account",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Profile(handle={self.handle!r}, wallet={self.wallet!r})>"
