"""Schemas for claim requests, claim results and authorization snapshots."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.payment import PaymentResponse


class AuthorizationSnapshot(BaseModel):
    """Sender's on-chain standing against the vault, fetched on demand.

    Amounts are in whole tokens (already scaled down from minor units).
    """

    token_balance: Decimal = Decimal(0)
    delegated_allowance: Decimal = Decimal(0)
    is_authorized: bool = False

    def covers(self, amount: Decimal) -> bool:
        """True when the vault can move ``amount`` right now."""
        return (
            self.is_authorized
            and self.delegated_allowance >= amount
            and self.token_balance >= amount
        )


class ClaimRequest(BaseModel):
    destination_account: str = Field(
        ...,
        min_length=32,
        max_length=64,
        description="Recipient's wallet address",
    )
    requesting_handle: str = Field(..., min_length=1, max_length=64)


class ClaimResult(BaseModel):
    """Returned after a successful settlement."""

    external_id: str
    status: str
    amount: Decimal
    settlement_ref: str
    claimed_by: str


class ClaimablePayment(PaymentResponse):
    """A payment addressed to the caller, with the sender's live standing.

    ``authorization`` is only filled for records that can still be
    claimed (pending or failed).
    """

    authorization: Optional[AuthorizationSnapshot] = None
    claimable: bool = False
