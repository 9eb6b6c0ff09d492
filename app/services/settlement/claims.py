"""Claim settlement: the state machine that pays out a pending record.

    pending ──claim──> claim_in_progress ──confirmed──> completed
    failed  ──claim──┘                   └──otherwise──> failed

The pending/failed -> claim_in_progress step is a compare-and-set in the
store and the only concurrency guard in the system: of any number of
concurrent claimers exactly one wins and submits a transfer. After that,
every exit path leaves the record in a terminal state.

A record that failed with a transfer already submitted keeps that
transfer's reference. The next claim asks the chain about it first and
only submits again once it is known not to have landed.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from app.core.errors import (
    AlreadyClaimed,
    ClaimInProgress,
    ConfirmationTimeout,
    Forbidden,
    NotFound,
    PaymentError,
    PaymentRequired,
    SettlementFailed,
    ValidationError,
)
from app.core.logging import get_logger
from app.models.payment import (
    CLAIM_IN_PROGRESS,
    CLAIMABLE_STATUSES,
    COMPLETED,
    FAILED,
    PaymentRecord,
)
from app.schemas.claim import AuthorizationSnapshot, ClaimablePayment, ClaimResult
from app.services.ingestion.normalizer import normalize_handle, to_minor_units, utcnow
from app.services.settlement.authorization import AuthorizationVerifier
from app.services.settlement.chain_client import ChainClient, ConfirmationStatus
from app.services.store.base import PaymentStore

logger = get_logger(__name__)

# A Solana transaction whose blockhash has expired can no longer land
DEFAULT_ATTEMPT_EXPIRY = timedelta(seconds=120)


class ClaimService:
    """Owns every status change after a record is created."""

    def __init__(
        self,
        store: PaymentStore,
        chain: ChainClient,
        verifier: AuthorizationVerifier,
        confirmation_timeout: float = 30.0,
        attempt_expiry: timedelta = DEFAULT_ATTEMPT_EXPIRY,
    ) -> None:
        self.store = store
        self.chain = chain
        self.verifier = verifier
        self.confirmation_timeout = confirmation_timeout
        self.attempt_expiry = attempt_expiry

    # ── Public API ───────────────────────────────────────────────────

    def claim(
        self,
        external_id: str,
        destination_account: str,
        requesting_handle: str,
    ) -> ClaimResult:
        """Settle one payment to ``destination_account``.

        Raises:
            NotFound, ValidationError, Forbidden, AlreadyClaimed,
                ClaimInProgress: Before any state change.
            PaymentRequired: Sender can't cover it; record left ``failed``.
            UpstreamUnavailable, SettlementFailed: Record left ``failed``.
            ConfirmationTimeout: Record left ``failed`` with the attempt
                reference kept for reconciliation.
            ClaimInProgress: Also raised when an earlier transfer for the
                record may still land; record left ``failed``.
        """
        record = self.store.get(external_id)
        if record is None:
            raise NotFound(f"Payment {external_id} not found")

        try:
            requester = normalize_handle(requesting_handle)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if requester != record.recipient_handle:
            raise Forbidden(f"Payment {external_id} is not addressed to @{requester}")
        if not self.chain.is_valid_account(destination_account):
            raise ValidationError(f"Invalid destination account: {destination_account!r}")

        self._check_claimable(record)

        won = self.store.transition(
            external_id,
            CLAIMABLE_STATUSES,
            CLAIM_IN_PROGRESS,
            attempts=(record.attempts or 0) + 1,
            failure_reason=None,
        )
        if not won:
            # Someone else moved it between our read and the CAS
            current = self.store.get(external_id)
            self._check_claimable(current)
            raise ClaimInProgress(f"Payment {external_id} is being claimed")

        logger.info(
            "Claim started for %s by @%s -> %s",
            external_id,
            requester,
            destination_account,
        )

        try:
            # Re-read: a claim that ran between our read and the CAS may
            # have left a newer attempt on the record
            record = self.store.get(external_id)
            if record.last_attempt_ref:
                resolved = self._resolve_previous_attempt(record)
                if resolved is not None:
                    return resolved
            return self._settle(record, destination_account)
        except Exception as exc:
            # No-op when the failure path above already finalized it
            reason = exc.detail if isinstance(exc, PaymentError) else f"Unexpected error: {exc}"
            self._fail(external_id, reason)
            raise

    def list_claims(self, recipient_handle: str) -> list[ClaimablePayment]:
        """Everything addressed to a handle, with each sender's live standing.

        Authorization is looked up once per sender per call, only for
        records that can still be claimed.
        """
        try:
            handle = normalize_handle(recipient_handle)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        records = self.store.list_payments(recipient_handle=handle, limit=500)
        snapshots: dict[str, Optional[AuthorizationSnapshot]] = {}
        claims: list[ClaimablePayment] = []

        for record in records:
            item = ClaimablePayment.model_validate(record)
            if record.status in CLAIMABLE_STATUSES:
                sender = record.sender_handle
                if sender not in snapshots:
                    snapshots[sender] = self._snapshot_or_none(sender)
                snapshot = snapshots[sender]
                item.authorization = snapshot
                item.claimable = snapshot is not None and snapshot.covers(record.amount)
            claims.append(item)

        return claims

    # ── Private helpers ──────────────────────────────────────────────

    def _settle(self, record: PaymentRecord, destination_account: str) -> ClaimResult:
        external_id = record.external_id
        amount = record.amount

        sender_wallet = self._sender_wallet(record.sender_handle)
        try:
            snapshot = self.verifier.check(sender_wallet)
        except PaymentError as exc:
            self._fail(external_id, f"Authorization check failed: {exc.detail}")
            raise

        if not snapshot.covers(amount):
            reason = _shortfall_reason(record, sender_wallet, snapshot)
            self._fail(external_id, reason)
            raise PaymentRequired(
                reason,
                balance=snapshot.token_balance,
                allowance=snapshot.delegated_allowance,
                required=amount,
            )

        amount_minor = to_minor_units(amount, self.verifier.decimals)
        try:
            settlement_ref = self.chain.submit_transfer(
                sender_wallet, destination_account, amount_minor
            )
        except PaymentError as exc:
            self._fail(external_id, f"Transfer submission failed: {exc.detail}")
            raise

        self.store.transition(
            external_id,
            (CLAIM_IN_PROGRESS,),
            CLAIM_IN_PROGRESS,
            last_attempt_ref=settlement_ref,
            last_attempt_destination=destination_account,
            last_attempt_at=utcnow(),
        )

        try:
            confirmation = self.chain.confirm(settlement_ref, self.confirmation_timeout)
        except PaymentError as exc:
            self._fail(
                external_id,
                f"Could not confirm transfer {settlement_ref}: {exc.detail}; "
                "reconcile before retrying",
                attempt_ref=settlement_ref,
            )
            raise

        if confirmation.status is ConfirmationStatus.SUCCESS:
            return self._complete(record, settlement_ref, destination_account)

        if confirmation.status is ConfirmationStatus.FAILURE:
            reason = f"Transfer {settlement_ref} failed on chain: {confirmation.error}"
            self._fail(external_id, reason, attempt_ref=settlement_ref)
            raise SettlementFailed(reason, attempt_ref=settlement_ref)

        reason = (
            f"Transfer {settlement_ref} not confirmed within "
            f"{self.confirmation_timeout:g}s; reconcile manually"
        )
        self._fail(external_id, reason, attempt_ref=settlement_ref)
        raise ConfirmationTimeout(reason, attempt_ref=settlement_ref)

    def _resolve_previous_attempt(self, record: PaymentRecord) -> Optional[ClaimResult]:
        """Settle the fate of the transfer an earlier attempt submitted.

        Returns a result if that transfer landed after all. Returns None
        when it is known not to have landed, so a new one may be sent.
        """
        external_id = record.external_id
        attempt_ref = record.last_attempt_ref
        confirmation = self.chain.confirm(attempt_ref, 0)

        if confirmation.status is ConfirmationStatus.SUCCESS:
            logger.info(
                "Earlier transfer %s for %s landed; completing without resubmitting",
                attempt_ref,
                external_id,
            )
            return self._complete(record, attempt_ref, record.last_attempt_destination)

        if confirmation.status is ConfirmationStatus.FAILURE:
            return None

        submitted_at = record.last_attempt_at
        if submitted_at is not None and utcnow() - submitted_at >= self.attempt_expiry:
            logger.info("Earlier transfer %s for %s expired unseen", attempt_ref, external_id)
            return None

        reason = f"Earlier transfer {attempt_ref} is still unconfirmed; retry later"
        self._fail(external_id, reason)
        raise ClaimInProgress(reason, attempt_ref=attempt_ref)

    def _complete(
        self,
        record: PaymentRecord,
        settlement_ref: str,
        destination_account: Optional[str],
    ) -> ClaimResult:
        external_id = record.external_id
        self.store.transition(
            external_id,
            (CLAIM_IN_PROGRESS,),
            COMPLETED,
            settlement_ref=settlement_ref,
            last_attempt_ref=settlement_ref,
            claimed_by=destination_account,
            failure_reason=None,
            finalized_at=utcnow(),
        )
        logger.info(
            "Payment %s completed: %s USDC to %s (ref=%s)",
            external_id,
            record.amount,
            destination_account,
            settlement_ref,
        )
        return ClaimResult(
            external_id=external_id,
            status=COMPLETED,
            amount=record.amount,
            settlement_ref=settlement_ref,
            claimed_by=destination_account,
        )

    def _check_claimable(self, record: Optional[PaymentRecord]) -> None:
        if record is None:
            raise NotFound("Payment not found")
        if record.status == COMPLETED:
            raise AlreadyClaimed(
                f"Payment {record.external_id} was already claimed",
                settlement_ref=record.settlement_ref,
            )
        if record.status == CLAIM_IN_PROGRESS:
            raise ClaimInProgress(f"Payment {record.external_id} is being claimed")

    def _fail(
        self,
        external_id: str,
        reason: str,
        attempt_ref: Optional[str] = None,
    ) -> None:
        fields = {"failure_reason": reason, "finalized_at": utcnow()}
        if attempt_ref is not None:
            fields["last_attempt_ref"] = attempt_ref
        if self.store.transition(external_id, (CLAIM_IN_PROGRESS,), FAILED, **fields):
            logger.warning("Payment %s failed: %s", external_id, reason)

    def _sender_wallet(self, sender: str) -> Optional[str]:
        wallet = self.store.get_wallet(sender)
        if wallet and not self.chain.is_valid_account(wallet):
            logger.warning("Ignoring malformed wallet %r linked to @%s", wallet, sender)
            return None
        return wallet

    def _snapshot_or_none(self, sender: str) -> Optional[AuthorizationSnapshot]:
        try:
            return self.verifier.check(self._sender_wallet(sender))
        except PaymentError as exc:
            logger.warning("Could not check authorization for @%s: %s", sender, exc.detail)
            return None


def _shortfall_reason(
    record: PaymentRecord,
    wallet: Optional[str],
    snapshot: AuthorizationSnapshot,
) -> str:
    sender = record.sender_handle
    if not wallet:
        return f"@{sender} has no usable linked wallet"
    if not snapshot.is_authorized:
        return f"@{sender} has not approved the vault to send USDC"
    if snapshot.delegated_allowance < record.amount:
        return (
            f"@{sender} approved {snapshot.delegated_allowance} USDC, "
            f"{record.amount} required"
        )
    return f"@{sender} holds {snapshot.token_balance} USDC, {record.amount} required"
