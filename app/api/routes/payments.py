"""Payment record endpoints.

Manual ingestion (the fallback path when the feed missed a post) and
read access to stored payment records.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_scanner, get_store
from app.core.errors import NotFound, ValidationError
from app.core.logging import get_logger
from app.models.payment import PaymentRecord
from app.schemas.payment import ManualPaymentRequest, PaymentResponse
from app.services.ingestion.normalizer import normalize_handle
from app.services.ingestion.scanner import IntakeScanner
from app.services.store.base import PaymentStore

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/manual",
    response_model=PaymentResponse,
    status_code=201,
)
def record_manual_payment(
    body: ManualPaymentRequest,
    scanner: IntakeScanner = Depends(get_scanner),
) -> PaymentRecord:
    """Record a payment that did not come through the feed.

    Goes through the same replay and duplicate checks as feed intake;
    a rejected payment returns 409.
    """
    logger.info(
        "Manual payment requested: id=%s %s -> %s %s",
        body.external_id,
        body.sender_handle,
        body.recipient_handle,
        body.amount,
    )
    return scanner.record_manual(
        sender=body.sender_handle,
        recipient=body.recipient_handle,
        amount=body.amount,
        external_id=body.external_id,
    )


@router.get("", response_model=List[PaymentResponse])
def list_payments(
    sender: Optional[str] = Query(None, description="Filter by sender handle"),
    recipient: Optional[str] = Query(None, description="Filter by recipient handle"),
    status: Optional[str] = Query(None, description="Filter by status"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(50, ge=1, le=500, description="Items per page"),
    store: PaymentStore = Depends(get_store),
) -> List[PaymentRecord]:
    """List payment records with optional filters and pagination."""
    return store.list_payments(
        sender_handle=_handle_filter(sender),
        recipient_handle=_handle_filter(recipient),
        status=status,
        offset=(page - 1) * limit,
        limit=limit,
    )


@router.get("/{external_id}", response_model=PaymentResponse)
def get_payment(
    external_id: str,
    store: PaymentStore = Depends(get_store),
) -> PaymentRecord:
    """Retrieve a single payment record by its message id."""
    record = store.get(external_id)
    if record is None:
        raise NotFound(f"Payment {external_id} not found")
    return record


def _handle_filter(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return normalize_handle(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
