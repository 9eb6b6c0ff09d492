"""SQLAlchemy-backed store (PostgreSQL in production, SQLite in tests)."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.logging import get_logger
from app.models.payment import PaymentRecord
from app.models.profile import Profile
from app.models.watermark import ScanWatermark
from app.services.ingestion.normalizer import message_id_key
from app.services.store.base import DEFAULT_WATERMARK, PaymentStore, RecordExists

logger = get_logger(__name__)


class SqlPaymentStore(PaymentStore):
    """Store over a single SQLAlchemy session.

    Every write commits immediately: the database is the lock authority
    for concurrent claim handlers, so nothing may sit in an open
    transaction between steps.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, external_id: str) -> Optional[PaymentRecord]:
        return self.db.execute(
            select(PaymentRecord).where(PaymentRecord.external_id == external_id)
        ).scalar_one_or_none()

    def find_duplicate(
        self,
        sender_handle: str,
        recipient_handle: str,
        amount: Decimal,
        window_start: datetime,
        window_end: datetime,
    ) -> Optional[PaymentRecord]:
        query = (
            select(PaymentRecord)
            .where(PaymentRecord.sender_handle == sender_handle)
            .where(PaymentRecord.recipient_handle == recipient_handle)
            .where(PaymentRecord.amount == amount)
            .where(PaymentRecord.created_at >= window_start)
            .where(PaymentRecord.created_at <= window_end)
            .limit(1)
        )
        return self.db.execute(query).scalars().first()

    def create(self, record: PaymentRecord) -> PaymentRecord:
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise RecordExists(record.external_id)
        self.db.refresh(record)
        return record

    def transition(
        self,
        external_id: str,
        expected: tuple[str, ...],
        new_status: str,
        **fields: Any,
    ) -> bool:
        # Single UPDATE ... WHERE status IN (...): the row lock makes it a CAS
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.external_id == external_id)
            .where(PaymentRecord.status.in_(expected))
            .values(status=new_status, **fields)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()
        # Drop stale identity-map copies so the next read sees the new row
        self.db.expire_all()
        won = result.rowcount == 1
        logger.debug(
            "transition %s %s -> %s: %s",
            external_id,
            "|".join(expected),
            new_status,
            "applied" if won else "lost",
        )
        return won

    def list_payments(
        self,
        sender_handle: Optional[str] = None,
        recipient_handle: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[PaymentRecord]:
        query = select(PaymentRecord)
        if sender_handle is not None:
            query = query.where(PaymentRecord.sender_handle == sender_handle)
        if recipient_handle is not None:
            query = query.where(PaymentRecord.recipient_handle == recipient_handle)
        if status is not None:
            query = query.where(PaymentRecord.status == status)
        query = (
            query.order_by(PaymentRecord.created_at.desc()).offset(offset).limit(limit)
        )
        return list(self.db.execute(query).scalars().all())

    def get_watermark(self, name: str = DEFAULT_WATERMARK) -> Optional[str]:
        return self.db.execute(
            select(ScanWatermark.value).where(ScanWatermark.name == name)
        ).scalar_one_or_none()

    def advance_watermark(self, value: str, name: str = DEFAULT_WATERMARK) -> bool:
        value = str(message_id_key(value))
        current = ScanWatermark.value
        # Canonical decimal strings: longer is larger, equal lengths order
        # lexically
        is_older = or_(
            func.length(current) < len(value),
            and_(func.length(current) == len(value), current < value),
        )
        result = self.db.execute(
            update(ScanWatermark)
            .where(ScanWatermark.name == name)
            .where(is_older)
            .values(value=value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self.db.commit()
            return True

        exists = self.db.execute(
            select(ScanWatermark.name).where(ScanWatermark.name == name)
        ).first()
        if exists is not None:
            self.db.commit()
            logger.info("Watermark %s not moved to %s: already newer", name, value)
            return False

        self.db.add(ScanWatermark(name=name, value=value))
        try:
            self.db.commit()
        except IntegrityError:
            # Another writer created the row first; compare against theirs
            self.db.rollback()
            return self.advance_watermark(value, name)
        return True

    def get_wallet(self, handle: str) -> Optional[str]:
        return self.db.execute(
            select(Profile.wallet).where(Profile.handle == handle)
        ).scalar_one_or_none()

    def set_wallet(self, handle: str, wallet: Optional[str]) -> None:
        profile = self.db.execute(
            select(Profile).where(Profile.handle == handle)
        ).scalar_one_or_none()
        if profile is None:
            self.db.add(Profile(handle=handle, wallet=wallet))
        else:
            profile.wallet = wallet
        self.db.commit()
