"""Abstract storage contract shared by every backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from app.models.payment import PaymentRecord

DEFAULT_WATERMARK = "mentions"


class RecordExists(Exception):
    """Insert lost to an existing row with the same external_id."""

    def __init__(self, external_id: str) -> None:
        super().__init__(f"Payment {external_id!r} already recorded")
        self.external_id = external_id


class PaymentStore(ABC):
    """Everything the intake and claim services need from persistence.

    Each backend must provide:
    1. Point lookup by ``external_id`` (the unique key)
    2. A range query on (sender, recipient, amount) within a time window
    3. A compare-and-set status transition, atomic in the backend
    4. A single-key upsert for the watermark
    """

    # -- Payment records ---------------------------------------------

    @abstractmethod
    def get(self, external_id: str) -> Optional[PaymentRecord]:
        pass

    @abstractmethod
    def find_duplicate(
        self,
        sender_handle: str,
        recipient_handle: str,
        amount: Decimal,
        window_start: datetime,
        window_end: datetime,
    ) -> Optional[PaymentRecord]:
        """Return any record for the same triple created inside the window."""
        pass

    @abstractmethod
    def create(self, record: PaymentRecord) -> PaymentRecord:
        """Insert a new record.

        Raises:
            RecordExists: If ``record.external_id`` is already stored.
        """
        pass

    @abstractmethod
    def transition(
        self,
        external_id: str,
        expected: tuple[str, ...],
        new_status: str,
        **fields: Any,
    ) -> bool:
        """Set ``status`` (and ``fields``) only if the current status is in ``expected``.

        Returns True if this caller won the write. Two callers racing the
        same transition must never both see True.
        """
        pass

    @abstractmethod
    def list_payments(
        self,
        sender_handle: Optional[str] = None,
        recipient_handle: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        """Newest first."""
        pass

    # -- Watermark -----------------------------------------------------

    @abstractmethod
    def get_watermark(self, name: str = DEFAULT_WATERMARK) -> Optional[str]:
        pass

    @abstractmethod
    def advance_watermark(self, value: str, name: str = DEFAULT_WATERMARK) -> bool:
        """Store ``value`` only if it is newer than the current watermark.

        Ids compare as integers. The check and the write are one atomic
        step, so two scan cycles finishing out of order can never move
        the watermark backwards. Returns True if ``value`` was written.
        """
        pass

    # -- Profiles ------------------------------------------------------

    @abstractmethod
    def get_wallet(self, handle: str) -> Optional[str]:
        """Linked wallet for a handle, or None if unknown/unlinked."""
        pass

    @abstractmethod
    def set_wallet(self, handle: str, wallet: Optional[str]) -> None:
        pass
