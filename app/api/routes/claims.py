"""Claim endpoints: what a recipient can claim, and claiming it."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from app.api.deps import get_claim_service
from app.core.logging import get_logger
from app.schemas.claim import ClaimablePayment, ClaimRequest, ClaimResult
from app.services.settlement.claims import ClaimService

logger = get_logger(__name__)

router = APIRouter()


@router.get("/{handle}", response_model=List[ClaimablePayment])
def list_claims(
    handle: str,
    service: ClaimService = Depends(get_claim_service),
) -> list[ClaimablePayment]:
    """Payments addressed to ``handle``, with each sender's current standing.

    Pending and failed records carry a fresh authorization snapshot so the
    recipient can see whether a claim would go through.
    """
    return service.list_claims(handle)


@router.post("/{external_id}", response_model=ClaimResult)
def claim_payment(
    external_id: str,
    body: ClaimRequest,
    service: ClaimService = Depends(get_claim_service),
) -> ClaimResult:
    """Settle one payment to the recipient's wallet.

    Errors carry a machine-readable ``error`` code. A 402 includes the
    sender's balance, approved allowance and the required amount.
    """
    logger.info(
        "Claim requested: id=%s by=%s dest=%s",
        external_id,
        body.requesting_handle,
        body.destination_account,
    )
    return service.claim(
        external_id,
        body.destination_account,
        body.requesting_handle,
    )
