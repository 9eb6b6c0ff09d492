"""Authorization checks against the vault's delegated allowance."""

from __future__ import annotations

from typing import Optional

from app.core.logging import get_logger
from app.schemas.claim import AuthorizationSnapshot
from app.services.ingestion.normalizer import TOKEN_DECIMALS, from_minor_units
from app.services.settlement.chain_client import ChainClient

logger = get_logger(__name__)


class AuthorizationVerifier:
    """Answers "can the vault move this sender's tokens right now?".

    Never caches: an allowance can be revoked or spent between two calls,
    so every settlement asks the chain again.
    """

    def __init__(
        self,
        chain: ChainClient,
        vault_account: str,
        mint: str,
        decimals: int = TOKEN_DECIMALS,
    ) -> None:
        self.chain = chain
        self.vault_account = vault_account
        self.mint = mint
        self.decimals = decimals

    def check(self, owner: Optional[str]) -> AuthorizationSnapshot:
        """Fetch a fresh snapshot for the sender's settlement account.

        A sender with no linked wallet, or a wallet without a token
        account, gets an all-zero unauthorized snapshot rather than an
        error. RPC failures propagate as ``UpstreamUnavailable``.
        """
        if not owner:
            return AuthorizationSnapshot()

        status = self.chain.get_account_status(owner, self.mint, self.vault_account)
        if not status.exists:
            logger.info("No token account for %s; treating as unauthorized", owner)
            return AuthorizationSnapshot()

        allowance = from_minor_units(status.delegated_allowance, self.decimals)
        return AuthorizationSnapshot(
            token_balance=from_minor_units(status.balance, self.decimals),
            delegated_allowance=allowance,
            is_authorized=status.delegate == self.vault_account and allowance > 0,
        )
