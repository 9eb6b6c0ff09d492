"""Embedded in-process store.

Useful for local runs and tests. A single lock guards all state, which
makes ``transition`` a true compare-and-set across threads. Records are
copied in and out so callers can't mutate stored state behind the lock.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from app.models.payment import PaymentRecord
from app.services.ingestion.normalizer import message_id_key, utcnow
from app.services.store.base import DEFAULT_WATERMARK, PaymentStore, RecordExists

_COLUMNS = [column.key for column in PaymentRecord.__table__.columns]


def _copy(record: PaymentRecord) -> PaymentRecord:
    return PaymentRecord(**{key: getattr(record, key) for key in _COLUMNS})


class InMemoryPaymentStore(PaymentStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._payments: dict[str, PaymentRecord] = {}
        self._watermarks: dict[str, str] = {}
        self._wallets: dict[str, Optional[str]] = {}

    def get(self, external_id: str) -> Optional[PaymentRecord]:
        with self._lock:
            record = self._payments.get(external_id)
            return _copy(record) if record is not None else None

    def find_duplicate(
        self,
        sender_handle: str,
        recipient_handle: str,
        amount: Decimal,
        window_start: datetime,
        window_end: datetime,
    ) -> Optional[PaymentRecord]:
        with self._lock:
            for record in self._payments.values():
                if (
                    record.sender_handle == sender_handle
                    and record.recipient_handle == recipient_handle
                    and record.amount == amount
                    and window_start <= record.created_at <= window_end
                ):
                    return _copy(record)
        return None

    def create(self, record: PaymentRecord) -> PaymentRecord:
        with self._lock:
            if record.external_id in self._payments:
                raise RecordExists(record.external_id)
            stored = _copy(record)
            # Column defaults only fire on INSERT, so apply them here
            if stored.id is None:
                stored.id = uuid.uuid4()
            if stored.attempts is None:
                stored.attempts = 0
            self._payments[record.external_id] = stored
            return _copy(stored)

    def transition(
        self,
        external_id: str,
        expected: tuple[str, ...],
        new_status: str,
        **fields: Any,
    ) -> bool:
        with self._lock:
            record = self._payments.get(external_id)
            if record is None or record.status not in expected:
                return False
            record.status = new_status
            for key, value in fields.items():
                setattr(record, key, value)
            record.updated_at = utcnow()
            return True

    def list_payments(
        self,
        sender_handle: Optional[str] = None,
        recipient_handle: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        with self._lock:
            rows = [
                r
                for r in self._payments.values()
                if (sender_handle is None or r.sender_handle == sender_handle)
                and (recipient_handle is None or r.recipient_handle == recipient_handle)
                and (status is None or r.status == status)
            ]
            rows.sort(key=lambda r: r.created_at, reverse=True)
            return [_copy(r) for r in rows[offset : offset + limit]]

    def get_watermark(self, name: str = DEFAULT_WATERMARK) -> Optional[str]:
        with self._lock:
            return self._watermarks.get(name)

    def advance_watermark(self, value: str, name: str = DEFAULT_WATERMARK) -> bool:
        key = message_id_key(value)
        with self._lock:
            current = self._watermarks.get(name)
            if current is not None and message_id_key(current) >= key:
                return False
            self._watermarks[name] = str(key)
            return True

    def get_wallet(self, handle: str) -> Optional[str]:
        with self._lock:
            return self._wallets.get(handle)

    def set_wallet(self, handle: str, wallet: Optional[str]) -> None:
        with self._lock:
            self._wallets[handle] = wallet
