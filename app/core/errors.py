"""Typed errors raised by the intake and claim services.

Each error knows the HTTP status it maps to, so routes can let them
propagate and the handler registered in ``app.main`` renders them.
Callers that are not HTTP (the scanner, scripts) just catch the class
they care about.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional


class PaymentError(Exception):
    """Base class for every domain error in the service."""

    status_code: int = 500
    code: str = "payment_error"

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "detail": self.detail}
        for key, value in self.extra.items():
            body[key] = str(value) if isinstance(value, Decimal) else value
        return body


class ValidationError(PaymentError):
    """Bad input shape or values. Never retried."""

    status_code = 422
    code = "validation_error"


class NotFound(PaymentError):
    status_code = 404
    code = "not_found"


class Forbidden(PaymentError):
    """The requester is not the payment's recipient."""

    status_code = 403
    code = "forbidden"


class AlreadyClaimed(PaymentError):
    status_code = 409
    code = "already_claimed"


class ClaimInProgress(PaymentError):
    """Another claim holds the record right now."""

    status_code = 409
    code = "claim_in_progress"


class DuplicateRejected(PaymentError):
    """Manual ingestion hit an exact replay or a logical duplicate."""

    status_code = 409
    code = "duplicate_rejected"


class PaymentRequired(PaymentError):
    """Sender's balance or vault allowance can't cover the payment.

    Carries ``balance``, ``allowance`` and ``required`` so the recipient
    can tell the sender what is missing.
    """

    status_code = 402
    code = "payment_required"

    def __init__(
        self,
        detail: str,
        balance: Decimal,
        allowance: Decimal,
        required: Decimal,
        **extra: Any,
    ) -> None:
        super().__init__(
            detail, balance=balance, allowance=allowance, required=required, **extra
        )
        self.balance = balance
        self.allowance = allowance
        self.required = required


class UpstreamUnavailable(PaymentError):
    """Feed or chain client failed in a way that may succeed later."""

    status_code = 503
    code = "upstream_unavailable"


class FeedRateLimited(UpstreamUnavailable):
    code = "rate_limited"

    def __init__(self, detail: str, retry_after: Optional[int] = None) -> None:
        super().__init__(detail, retry_after=retry_after)
        self.retry_after = retry_after


class SettlementFailed(PaymentError):
    """The transfer was rejected or failed on chain."""

    status_code = 502
    code = "settlement_failed"


class ConfirmationTimeout(PaymentError):
    """Transfer submitted but not confirmed in time.

    ``attempt_ref`` is kept on the record for manual reconciliation,
    since the transfer may still land.
    """

    status_code = 504
    code = "confirmation_timeout"

    def __init__(self, detail: str, attempt_ref: str) -> None:
        super().__init__(detail, attempt_ref=attempt_ref)
        self.attempt_ref = attempt_ref
