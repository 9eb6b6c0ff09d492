"""Abstract chain client used by authorization checks and settlement."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


class ConfirmationStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class AccountStatus:
    """Token account state, in minor units.

    ``exists`` is False when the owner never opened a token account for
    the mint; balance and allowance are then zero.
    """

    balance: int = 0
    delegated_allowance: int = 0
    delegate: Optional[str] = None
    exists: bool = False


@dataclass(frozen=True)
class Confirmation:
    status: ConfirmationStatus
    error: Optional[str] = None


class ChainClient(ABC):
    """Black-box access to the token ledger.

    Transient RPC failures raise ``UpstreamUnavailable``. A rejected
    transfer at submit time raises ``SettlementFailed``.
    """

    @abstractmethod
    def is_valid_account(self, address: str) -> bool:
        """True if ``address`` is a well-formed account address on this chain."""
        pass

    @abstractmethod
    def get_account_status(self, owner: str, mint: str, delegate: str) -> AccountStatus:
        """Balance and delegation of ``owner``'s token account for ``mint``.

        ``delegate`` is the account whose allowance we care about; the
        returned ``delegate`` says who actually holds the approval.
        """
        pass

    @abstractmethod
    def submit_transfer(
        self,
        source_owner: str,
        destination_owner: str,
        amount: int,
    ) -> str:
        """Submit one transfer of ``amount`` minor units, signed by the vault.

        Returns the settlement reference (transaction signature).
        """
        pass

    @abstractmethod
    def confirm(self, settlement_ref: str, timeout: float) -> Confirmation:
        """Wait up to ``timeout`` seconds for the transfer to confirm."""
        pass
