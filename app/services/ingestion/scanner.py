"""Intake scanner: turns feed messages into pending payment records.

One cycle:
  1. Read the watermark and poll the feed for anything newer.
  2. Resolve author ids to handles.
  3. For each message, in delivery order: drop reposts, parse the
     command, run the replay/duplicate filter, create a pending record.
  4. Persist the highest message id seen as the new watermark, once,
     after the whole batch. The store only ever moves it forward, so a
     slower cycle finishing late cannot undo a faster one.

A crash between 3 and 4 means the batch is read again next cycle,
which is harmless: creation is idempotent on the message id.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from app.core.errors import DuplicateRejected, UpstreamUnavailable, ValidationError
from app.core.logging import get_logger
from app.models.payment import PENDING, SOURCE_FEED, SOURCE_MANUAL, PaymentRecord
from app.schemas.candidate import CandidateMessage, ScanResult
from app.services.ingestion.command_parser import parse_payment_command
from app.services.ingestion.duplicate_filter import (
    DEFAULT_WINDOW,
    Admission,
    ReplayFilter,
)
from app.services.ingestion.feed_client import FeedClient
from app.services.ingestion.normalizer import (
    is_manual_repost,
    max_message_id,
    message_id_key,
    normalize_handle,
    quantize_amount,
    utcnow,
)
from app.services.store.base import PaymentStore, RecordExists

logger = get_logger(__name__)


class IntakeScanner:
    """The only component that creates payment records."""

    def __init__(
        self,
        store: PaymentStore,
        feed: Optional[FeedClient] = None,
        bot_handle: Optional[str] = None,
        duplicate_window: timedelta = DEFAULT_WINDOW,
    ) -> None:
        self.store = store
        self.feed = feed
        self.bot_handle = normalize_handle(bot_handle) if bot_handle else None
        self.filter = ReplayFilter(store, duplicate_window)

    # ── Public API ───────────────────────────────────────────────────

    def run_cycle(self) -> ScanResult:
        """Poll the feed once and ingest whatever is new.

        Feed outages and rate limits skip the cycle with the watermark
        untouched. They are reported in the result, not raised.
        """
        if self.feed is None:
            raise RuntimeError("IntakeScanner.run_cycle needs a feed client")

        watermark = self.store.get_watermark()
        try:
            candidates = self.feed.poll(watermark)
            authors = self.feed.resolve_authors({c.author_ref for c in candidates})
        except UpstreamUnavailable as exc:
            logger.warning("Scan cycle skipped (%s): %s", exc.code, exc.detail)
            return ScanResult(
                status="skipped",
                watermark_before=watermark,
                watermark_after=watermark,
                message=exc.detail,
            )

        result = ScanResult(status="completed", watermark_before=watermark)
        new_watermark = self.ingest_batch(candidates, watermark, authors, result)

        if new_watermark is not None and new_watermark != watermark:
            if not self.store.advance_watermark(new_watermark):
                # A concurrent cycle already stored a newer one
                new_watermark = self.store.get_watermark()
        result.watermark_after = new_watermark

        logger.info(
            "Scan cycle done: seen=%d skipped=%d parsed=%d admitted=%d "
            "replays=%d duplicates=%d errors=%d watermark=%s",
            result.seen,
            result.skipped,
            result.parsed,
            result.admitted,
            result.replays,
            result.duplicates,
            result.errors,
            new_watermark,
        )
        return result

    def ingest_batch(
        self,
        candidates: Iterable[CandidateMessage],
        watermark: Optional[str],
        authors: Optional[dict[str, str]] = None,
        result: Optional[ScanResult] = None,
    ) -> Optional[str]:
        """Ingest one page of candidates and return the new watermark.

        The watermark is computed, not stored; ``run_cycle`` persists it.
        Every message with a valid id moves it, whether or not it held a
        payment. A failing candidate is logged and skipped.
        """
        authors = authors or {}
        result = result if result is not None else ScanResult(status="completed")
        new_watermark = watermark

        for candidate in candidates:
            result.seen += 1
            try:
                message_id_key(candidate.external_id)
            except ValueError:
                logger.warning("Skipping post with malformed id %r", candidate.external_id)
                result.errors += 1
                continue
            new_watermark = max_message_id(new_watermark, candidate.external_id)

            try:
                self._ingest_one(candidate, authors, result)
            except Exception:
                result.errors += 1
                logger.exception("Failed to ingest post %s", candidate.external_id)

        return new_watermark

    def record_manual(
        self,
        sender: str,
        recipient: str,
        amount: Decimal,
        external_id: str,
    ) -> PaymentRecord:
        """Fallback ingestion path that bypasses the feed.

        Raises:
            ValidationError: Bad handle, non-positive amount, or self-payment.
            DuplicateRejected: Exact replay or logical duplicate.
            UpstreamUnavailable: The store could not be queried.
        """
        external_id = external_id.strip()
        if not external_id:
            raise ValidationError("external_id must not be empty")
        try:
            sender_handle = normalize_handle(sender)
            recipient_handle = normalize_handle(recipient)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if not amount.is_finite():
            raise ValidationError("amount must be a finite number")
        amount = quantize_amount(amount)
        if amount <= 0:
            raise ValidationError("amount must be greater than zero")
        if sender_handle == recipient_handle:
            raise ValidationError("sender and recipient must differ")

        observed_at = utcnow()
        admission = self.filter.classify(
            external_id, sender_handle, recipient_handle, amount, observed_at
        )
        if admission is Admission.ERROR:
            raise UpstreamUnavailable("Payment store is unavailable")
        if admission is not Admission.NEW:
            raise DuplicateRejected(
                f"Payment {external_id} rejected as {admission.value}",
                reason=admission.value,
            )

        try:
            record = self._create(
                external_id,
                sender_handle,
                recipient_handle,
                amount,
                observed_at,
                SOURCE_MANUAL,
            )
        except RecordExists as exc:
            raise DuplicateRejected(str(exc), reason=Admission.REPLAY.value) from exc
        return record

    # ── Private helpers ──────────────────────────────────────────────

    def _ingest_one(
        self,
        candidate: CandidateMessage,
        authors: dict[str, str],
        result: ScanResult,
    ) -> None:
        if candidate.is_retweet or candidate.is_quote or is_manual_repost(candidate.text):
            result.skipped += 1
            return

        intent = parse_payment_command(candidate.text)
        if intent is None:
            result.skipped += 1
            return
        result.parsed += 1

        sender = normalize_handle(authors.get(candidate.author_ref, candidate.author_ref))
        if sender == self.bot_handle or sender == intent.recipient:
            logger.debug("Ignoring self-addressed post %s", candidate.external_id)
            result.skipped += 1
            return

        observed_at = candidate.observed_at or utcnow()
        admission = self.filter.classify(
            candidate.external_id, sender, intent.recipient, intent.amount, observed_at
        )
        if admission is Admission.REPLAY:
            result.replays += 1
            return
        if admission is Admission.DUPLICATE:
            result.duplicates += 1
            return
        if admission is Admission.ERROR:
            result.errors += 1
            return

        try:
            self._create(
                candidate.external_id,
                sender,
                intent.recipient,
                intent.amount,
                observed_at,
                SOURCE_FEED,
            )
        except RecordExists:
            # Lost a race with another writer for the same message
            result.replays += 1
            return
        result.admitted += 1

    def _create(
        self,
        external_id: str,
        sender: str,
        recipient: str,
        amount: Decimal,
        observed_at: datetime,
        source: str,
    ) -> PaymentRecord:
        record = self.store.create(
            PaymentRecord(
                external_id=external_id,
                sender_handle=sender,
                recipient_handle=recipient,
                amount=amount,
                status=PENDING,
                source=source,
                attempts=0,
                created_at=observed_at,
            )
        )
        logger.info(
            "Recorded pending payment %s: %s -> %s %s USDC (%s)",
            external_id,
            sender,
            recipient,
            amount,
            source,
        )
        return record
