"""Solana SPL-token implementation of the chain client.

The vault never holds user funds. Each sender approves the vault as
delegate on their USDC token account; a claim then moves tokens straight
from the sender's associated token account to the recipient's, with the
vault keypair signing as delegate authority and paying the fee.
"""

from __future__ import annotations

import time
from typing import Any, Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    get_associated_token_address,
    transfer_checked,
)

from app.core.errors import SettlementFailed, UpstreamUnavailable, ValidationError
from app.core.logging import get_logger
from app.services.settlement.chain_client import (
    AccountStatus,
    ChainClient,
    Confirmation,
    ConfirmationStatus,
)

logger = get_logger(__name__)

_RPC_ERRORS = (SolanaRpcException, httpx.HTTPError)
_LANDED = (
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)


class SolanaChainClient(ChainClient):
    def __init__(
        self,
        client: Client,
        vault: Keypair,
        mint: str,
        decimals: int = 6,
        poll_interval: float = 1.0,
    ) -> None:
        self.client = client
        self.vault = vault
        self.mint = Pubkey.from_string(mint)
        self.decimals = decimals
        self.poll_interval = poll_interval

    @classmethod
    def from_settings(cls, config) -> "SolanaChainClient":
        if not config.vault_secret_key:
            raise RuntimeError("VAULT_SECRET_KEY is not configured")
        vault = Keypair.from_base58_string(config.vault_secret_key)
        if config.vault_public_key and str(vault.pubkey()) != config.vault_public_key:
            raise RuntimeError("VAULT_SECRET_KEY does not match VAULT_PUBLIC_KEY")
        return cls(
            Client(config.solana_rpc_url, commitment=Confirmed),
            vault,
            config.usdc_mint,
            decimals=config.token_decimals,
            poll_interval=config.confirmation_poll_seconds,
        )

    # ── Public API ───────────────────────────────────────────────────

    def is_valid_account(self, address: str) -> bool:
        try:
            Pubkey.from_string(address)
        except ValueError:
            return False
        return True

    def get_account_status(self, owner: str, mint: str, delegate: str) -> AccountStatus:
        token_account = get_associated_token_address(_pubkey(owner), _pubkey(mint))
        try:
            response = self.client.get_account_info_json_parsed(token_account)
        except _RPC_ERRORS as exc:
            raise UpstreamUnavailable(f"Account lookup failed: {exc}") from exc

        if response.value is None:
            return AccountStatus()

        info = _parsed_info(response.value.data)
        if info is None:
            logger.warning("Token account %s has unexpected layout", token_account)
            return AccountStatus()

        holder = info.get("delegate")
        allowance = int((info.get("delegatedAmount") or {}).get("amount", 0))
        return AccountStatus(
            balance=int(info["tokenAmount"]["amount"]),
            delegated_allowance=allowance if holder == delegate else 0,
            delegate=holder,
            exists=True,
        )

    def submit_transfer(
        self,
        source_owner: str,
        destination_owner: str,
        amount: int,
    ) -> str:
        source = get_associated_token_address(_pubkey(source_owner), self.mint)
        dest = get_associated_token_address(_pubkey(destination_owner), self.mint)
        instruction = transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=source,
                mint=self.mint,
                dest=dest,
                owner=self.vault.pubkey(),
                amount=amount,
                decimals=self.decimals,
            )
        )

        try:
            blockhash = self.client.get_latest_blockhash().value.blockhash
            message = Message.new_with_blockhash(
                [instruction], self.vault.pubkey(), blockhash
            )
            transaction = Transaction([self.vault], message, blockhash)
            response = self.client.send_transaction(
                transaction, opts=TxOpts(preflight_commitment=Confirmed)
            )
        except RPCException as exc:
            # Preflight simulation rejected it: nothing was broadcast
            raise SettlementFailed(f"Transfer rejected: {exc}") from exc
        except _RPC_ERRORS as exc:
            raise UpstreamUnavailable(f"Transfer submission failed: {exc}") from exc

        signature = str(response.value)
        logger.info(
            "Submitted transfer %s: %d minor units %s -> %s",
            signature,
            amount,
            source,
            dest,
        )
        return signature

    def confirm(self, settlement_ref: str, timeout: float) -> Confirmation:
        signature = Signature.from_string(settlement_ref)
        deadline = time.monotonic() + timeout

        while True:
            try:
                statuses = self.client.get_signature_statuses([signature]).value
            except _RPC_ERRORS as exc:
                # Transient; keep polling until the deadline
                logger.warning("Status poll for %s failed: %s", settlement_ref, exc)
                statuses = [None]

            status = statuses[0] if statuses else None
            if status is not None:
                if status.err is not None:
                    return Confirmation(ConfirmationStatus.FAILURE, error=str(status.err))
                if status.confirmation_status in _LANDED:
                    return Confirmation(ConfirmationStatus.SUCCESS)

            if time.monotonic() >= deadline:
                return Confirmation(ConfirmationStatus.TIMEOUT)
            time.sleep(self.poll_interval)


def _pubkey(address: str) -> Pubkey:
    try:
        return Pubkey.from_string(address)
    except ValueError as exc:
        raise ValidationError(f"Invalid account address: {address!r}") from exc


def _parsed_info(data: Any) -> Optional[dict]:
    parsed = getattr(data, "parsed", None)
    if not isinstance(parsed, dict):
        return None
    info = parsed.get("info")
    if not isinstance(info, dict) or "tokenAmount" not in info:
        return None
    return info
