"""Replay and logical-duplicate suppression for incoming payment events.

Two checks, cheapest first:

1. **Exact replay**: the same message id was already recorded. A point
   lookup on the unique key.
2. **Logical duplicate**: a different message repeats a recorded
   payment's (sender, recipient, amount) within the window. A range scan,
   only run when the point lookup misses.

Anything else is new and admitted for creation.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta
from decimal import Decimal

from app.core.logging import get_logger
from app.services.store.base import PaymentStore

logger = get_logger(__name__)

DEFAULT_WINDOW = timedelta(minutes=120)


class Admission(str, enum.Enum):
    NEW = "new"
    REPLAY = "replay"
    DUPLICATE = "duplicate"
    ERROR = "error"


class ReplayFilter:
    """Classifies a candidate payment against what the store already holds."""

    def __init__(self, store: PaymentStore, window: timedelta = DEFAULT_WINDOW) -> None:
        self.store = store
        self.window = window

    def classify(
        self,
        external_id: str,
        sender: str,
        recipient: str,
        amount: Decimal,
        observed_at: datetime,
    ) -> Admission:
        """Decide whether a candidate is new, a replay, or a duplicate.

        Never raises. A store failure is logged and reported as
        ``Admission.ERROR`` so the caller skips this one candidate and
        carries on with the batch.
        """
        try:
            if self.store.get(external_id) is not None:
                logger.debug("Replay of %s discarded", external_id)
                return Admission.REPLAY

            existing = self.store.find_duplicate(
                sender,
                recipient,
                amount,
                observed_at - self.window,
                observed_at + self.window,
            )
        except Exception:
            logger.exception("Store lookup failed for candidate %s", external_id)
            return Admission.ERROR

        if existing is not None:
            logger.info(
                "Logical duplicate %s of %s (%s->%s %s) discarded",
                external_id,
                existing.external_id,
                sender,
                recipient,
                amount,
            )
            return Admission.DUPLICATE

        return Admission.NEW
