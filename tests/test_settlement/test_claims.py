"""Tests for the claim settlement state machine.

Most cases run on the in-memory store; the race is repeated on SQL.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.core.errors import (
    AlreadyClaimed,
    ClaimInProgress,
    ConfirmationTimeout,
    Forbidden,
    NotFound,
    PaymentRequired,
    SettlementFailed,
    UpstreamUnavailable,
    ValidationError,
)
from app.models.payment import (
    CLAIM_IN_PROGRESS,
    COMPLETED,
    FAILED,
    PENDING,
    PaymentRecord,
)
from app.services.settlement.chain_client import Confirmation, ConfirmationStatus
from app.services.store.sql_store import SqlPaymentStore
from fakes import ALICE_WALLET, BOB_WALLET, make_claim_service


def _pending(store, external_id="100", amount="3", sender="bob", recipient="alice"):
    store.create(
        PaymentRecord(
            external_id=external_id,
            sender_handle=sender,
            recipient_handle=recipient,
            amount=Decimal(amount),
            status=PENDING,
            source="feed",
            attempts=0,
            created_at=datetime(2025, 3, 1, 12, 0),
        )
    )


@pytest.fixture
def funded(memory_store, chain):
    """Bob linked a wallet holding 10 USDC and approved the vault for 10."""
    memory_store.set_wallet("bob", BOB_WALLET)
    chain.approve(BOB_WALLET, balance=10_000_000, allowance=10_000_000)
    _pending(memory_store)
    return memory_store


# ── Happy path ───────────────────────────────────────────────────────


class TestClaimSuccess:
    def test_completes_and_returns_reference(self, funded, chain, claim_service):
        result = claim_service.claim("100", ALICE_WALLET, "@Alice")

        assert result.status == COMPLETED
        assert result.settlement_ref == "sig-1"
        assert result.amount == Decimal("3")

        record = funded.get("100")
        assert record.status == COMPLETED
        assert record.settlement_ref == "sig-1"
        assert record.claimed_by == ALICE_WALLET
        assert record.finalized_at is not None
        assert record.attempts == 1
        assert chain.transfers == [(BOB_WALLET, ALICE_WALLET, 3_000_000)]

    def test_amount_truncated_to_minor_units(self, memory_store, chain, claim_service):
        memory_store.set_wallet("bob", BOB_WALLET)
        chain.approve(BOB_WALLET, balance=10_000_000, allowance=10_000_000)
        _pending(memory_store, amount="5.999999")

        claim_service.claim("100", ALICE_WALLET, "alice")

        assert chain.transfers[0][2] == 5_999_999


# ── Rejections before any state change ───────────────────────────────


class TestClaimRejected:
    def test_not_found(self, claim_service):
        with pytest.raises(NotFound):
            claim_service.claim("nope", ALICE_WALLET, "alice")

    def test_wrong_claimant(self, funded, chain, claim_service):
        with pytest.raises(Forbidden):
            claim_service.claim("100", ALICE_WALLET, "mallory")
        assert funded.get("100").status == PENDING
        assert chain.transfers == []

    def test_already_claimed(self, funded, chain, claim_service):
        claim_service.claim("100", ALICE_WALLET, "alice")

        with pytest.raises(AlreadyClaimed):
            claim_service.claim("100", ALICE_WALLET, "alice")
        assert len(chain.transfers) == 1

    def test_claim_in_progress(self, funded, claim_service):
        funded.transition("100", (PENDING,), CLAIM_IN_PROGRESS)
        with pytest.raises(ClaimInProgress):
            claim_service.claim("100", ALICE_WALLET, "alice")


    def test_malformed_destination(self, funded, chain, claim_service):
        with pytest.raises(ValidationError):
            claim_service.claim("100", "0OIl" * 10, "alice")

        record = funded.get("100")
        assert record.status == PENDING
        assert record.attempts == 0
        assert chain.transfers == []


# ── Authorization failures ───────────────────────────────────────────


class TestPaymentRequired:
    def test_allowance_below_amount(self, memory_store, chain, claim_service):
        memory_store.set_wallet("bob", BOB_WALLET)
        chain.approve(BOB_WALLET, balance=10_000_000, allowance=2_000_000)
        _pending(memory_store)

        with pytest.raises(PaymentRequired) as exc_info:
            claim_service.claim("100", ALICE_WALLET, "alice")

        err = exc_info.value
        assert err.allowance == Decimal("2")
        assert err.balance == Decimal("10")
        assert err.required == Decimal("3")
        body = err.to_dict()
        assert body["error"] == "payment_required"
        assert body["allowance"] == "2.000000"
        record = memory_store.get("100")
        assert record.status == FAILED
        assert "approved 2.000000 USDC" in record.failure_reason
        assert chain.transfers == []

    def test_balance_below_amount(self, memory_store, chain, claim_service):
        memory_store.set_wallet("bob", BOB_WALLET)
        chain.approve(BOB_WALLET, balance=1_000_000, allowance=10_000_000)
        _pending(memory_store)

        with pytest.raises(PaymentRequired):
            claim_service.claim("100", ALICE_WALLET, "alice")
        assert "holds" in memory_store.get("100").failure_reason

    def test_vault_not_delegate(self, memory_store, chain, claim_service):
        memory_store.set_wallet("bob", BOB_WALLET)
        chain.approve(BOB_WALLET, balance=10_000_000, allowance=10_000_000, delegate="Other")
        _pending(memory_store)

        with pytest.raises(PaymentRequired):
            claim_service.claim("100", ALICE_WALLET, "alice")
        assert "not approved the vault" in memory_store.get("100").failure_reason

    def test_sender_without_wallet(self, memory_store, chain, claim_service):
        _pending(memory_store)

        with pytest.raises(PaymentRequired):
            claim_service.claim("100", ALICE_WALLET, "alice")
        assert "no usable linked wallet" in memory_store.get("100").failure_reason

    def test_failed_record_can_be_claimed_again(self, memory_store, chain, claim_service):
        memory_store.set_wallet("bob", BOB_WALLET)
        _pending(memory_store)
        with pytest.raises(PaymentRequired):
            claim_service.claim("100", ALICE_WALLET, "alice")

        chain.approve(BOB_WALLET, balance=10_000_000, allowance=10_000_000)
        result = claim_service.claim("100", ALICE_WALLET, "alice")

        assert result.status == COMPLETED
        record = memory_store.get("100")
        assert record.attempts == 2
        assert record.failure_reason is None


    def test_malformed_linked_wallet(self, memory_store, chain, claim_service):
        memory_store.set_wallet("bob", "not-a-wallet")
        _pending(memory_store)

        with pytest.raises(PaymentRequired):
            claim_service.claim("100", ALICE_WALLET, "alice")
        assert "no usable linked wallet" in memory_store.get("100").failure_reason
        assert chain.transfers == []


# ── Chain failures ───────────────────────────────────────────────────


class TestChainFailures:
    def test_confirmed_failure(self, funded, chain, claim_service):
        chain.confirmation = Confirmation(ConfirmationStatus.FAILURE, error="InsufficientFunds")

        with pytest.raises(SettlementFailed):
            claim_service.claim("100", ALICE_WALLET, "alice")

        record = funded.get("100")
        assert record.status == FAILED
        assert record.last_attempt_ref == "sig-1"
        assert record.settlement_ref is None

    def test_confirmation_timeout_keeps_attempt_ref(self, funded, chain, claim_service):
        chain.confirmation = Confirmation(ConfirmationStatus.TIMEOUT)

        with pytest.raises(ConfirmationTimeout) as exc_info:
            claim_service.claim("100", ALICE_WALLET, "alice")

        assert exc_info.value.attempt_ref == "sig-1"
        record = funded.get("100")
        assert record.status == FAILED
        assert record.last_attempt_ref == "sig-1"
        assert "reconcile" in record.failure_reason

    def test_submit_rejected(self, funded, chain, claim_service):
        chain.submit_error = SettlementFailed("blockhash not found")

        with pytest.raises(SettlementFailed):
            claim_service.claim("100", ALICE_WALLET, "alice")
        assert funded.get("100").status == FAILED

    def test_rpc_down_during_authorization(self, funded, chain, claim_service):
        chain.status_error = UpstreamUnavailable("rpc down")

        with pytest.raises(UpstreamUnavailable):
            claim_service.claim("100", ALICE_WALLET, "alice")
        assert funded.get("100").status == FAILED

    def test_unexpected_error_does_not_strand_record(self, funded, chain, claim_service):
        chain.submit_error = KeyError("boom")

        with pytest.raises(KeyError):
            claim_service.claim("100", ALICE_WALLET, "alice")
        assert funded.get("100").status == FAILED


    def test_confirmation_lookup_error_does_not_strand_record(
        self, funded, chain, claim_service
    ):
        chain.confirm_error = UpstreamUnavailable("rpc down")

        with pytest.raises(UpstreamUnavailable):
            claim_service.claim("100", ALICE_WALLET, "alice")

        record = funded.get("100")
        assert record.status == FAILED
        assert record.last_attempt_ref == "sig-1"


# ── Retrying after an unconfirmed transfer ───────────────────────────


@pytest.fixture
def timed_out(funded, chain, claim_service):
    """First claim submitted sig-1 but never saw it confirm."""
    chain.confirmation = Confirmation(ConfirmationStatus.TIMEOUT)
    with pytest.raises(ConfirmationTimeout):
        claim_service.claim("100", ALICE_WALLET, "alice")
    chain.confirmation = Confirmation(ConfirmationStatus.SUCCESS)
    return funded


class TestRetryAfterTimeout:
    def test_landed_transfer_is_not_sent_again(self, timed_out, chain, claim_service):
        chain.statuses["sig-1"] = Confirmation(ConfirmationStatus.SUCCESS)

        result = claim_service.claim("100", ALICE_WALLET, "alice")

        assert result.settlement_ref == "sig-1"
        assert len(chain.transfers) == 1
        record = timed_out.get("100")
        assert record.status == COMPLETED
        assert record.settlement_ref == "sig-1"
        assert record.claimed_by == ALICE_WALLET
        assert record.failure_reason is None

    def test_failed_transfer_is_replaced(self, timed_out, chain, claim_service):
        chain.statuses["sig-1"] = Confirmation(ConfirmationStatus.FAILURE, error="dropped")

        result = claim_service.claim("100", ALICE_WALLET, "alice")

        assert result.settlement_ref == "sig-2"
        assert len(chain.transfers) == 2
        assert timed_out.get("100").status == COMPLETED

    def test_unknown_transfer_blocks_retry(self, timed_out, chain, claim_service):
        chain.statuses["sig-1"] = Confirmation(ConfirmationStatus.TIMEOUT)

        with pytest.raises(ClaimInProgress) as exc_info:
            claim_service.claim("100", ALICE_WALLET, "alice")

        assert exc_info.value.extra["attempt_ref"] == "sig-1"
        record = timed_out.get("100")
        assert record.status == FAILED
        assert record.last_attempt_ref == "sig-1"
        assert len(chain.transfers) == 1

    def test_expired_transfer_is_replaced(self, timed_out, chain):
        chain.statuses["sig-1"] = Confirmation(ConfirmationStatus.TIMEOUT)
        service = make_claim_service(timed_out, chain, attempt_expiry=timedelta(0))

        result = service.claim("100", ALICE_WALLET, "alice")

        assert result.settlement_ref == "sig-2"
        assert len(chain.transfers) == 2


# ── Concurrency ──────────────────────────────────────────────────────


class TestConcurrentClaims:
    def test_exactly_one_settlement(self, funded, chain):
        chain.submit_delay = 0.05
        service = make_claim_service(funded, chain)
        outcomes: list = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            try:
                outcomes.append(service.claim("100", ALICE_WALLET, "alice"))
            except (AlreadyClaimed, ClaimInProgress) as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        wins = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(wins) == 1
        assert len(outcomes) == 8
        assert len(chain.transfers) == 1
        assert funded.get("100").status == COMPLETED


class TestConcurrentClaimsSql:
    """Same race, through the SQL store with one session per claimer."""

    def test_exactly_one_settlement(self, db_session, session_factory, chain):
        seed = SqlPaymentStore(db_session)
        seed.set_wallet("bob", BOB_WALLET)
        _pending(seed)
        chain.approve(BOB_WALLET, balance=10_000_000, allowance=10_000_000)
        chain.submit_delay = 0.05
        outcomes: list = []
        barrier = threading.Barrier(6)

        def attempt():
            session = session_factory()
            try:
                service = make_claim_service(SqlPaymentStore(session), chain)
                barrier.wait()
                try:
                    outcomes.append(service.claim("100", ALICE_WALLET, "alice"))
                except (AlreadyClaimed, ClaimInProgress) as exc:
                    outcomes.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=attempt) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        wins = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(outcomes) == 6
        assert len(wins) == 1
        assert len(chain.transfers) == 1
        db_session.expire_all()
        record = seed.get("100")
        assert record.status == COMPLETED
        assert record.attempts == 1


# ── list_claims ──────────────────────────────────────────────────────


class TestListClaims:
    def test_enriches_claimable_records(self, funded, chain, claim_service):
        _pending(funded, external_id="101", amount="50", sender="bob")
        _pending(funded, external_id="102", amount="1", sender="carol")
        _pending(funded, external_id="103", amount="1", recipient="zed")

        claims = {c.external_id: c for c in claim_service.list_claims("@ALICE")}

        assert set(claims) == {"100", "101", "102"}
        assert claims["100"].claimable is True
        assert claims["100"].authorization.delegated_allowance == Decimal("10")
        assert claims["101"].claimable is False
        assert claims["102"].claimable is False
        assert claims["102"].authorization.is_authorized is False

    def test_completed_records_have_no_snapshot(self, funded, claim_service):
        claim_service.claim("100", ALICE_WALLET, "alice")

        (item,) = claim_service.list_claims("alice")

        assert item.status == COMPLETED
        assert item.authorization is None
        assert item.claimable is False

    def test_rpc_failure_leaves_snapshot_empty(self, funded, chain, claim_service):
        chain.status_error = UpstreamUnavailable("rpc down")

        (item,) = claim_service.list_claims("alice")

        assert item.authorization is None
        assert item.claimable is False

    def test_malformed_linked_wallet_is_not_claimable(self, memory_store, claim_service):
        memory_store.set_wallet("bob", "not-a-wallet")
        _pending(memory_store)

        (item,) = claim_service.list_claims("alice")

        assert item.claimable is False
        assert item.authorization.is_authorized is False
