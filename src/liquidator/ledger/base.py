# src/liquidator/ledger/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from src.liquidator.core.models.enums import TxState
from src.liquidator.core.models.ledger import Account, MarketTable, OracleGuardRails


# -------- transactions --------

@dataclass(frozen=True, slots=True)
class SignedTransaction:
    signature: str
    payload: bytes


@dataclass(frozen=True, slots=True)
class TxStatus:
    state: TxState
    signature: str
    slot: int | None = None
    error: Any = None

    @property
    def confirmed(self) -> bool:
        return self.state == TxState.CONFIRMED


# -------- credential --------

class Signer(Protocol):
    """Opaque signing capability. The core never sees key material."""

    @property
    def pubkey(self) -> str: ...

    def sign(self, instructions: Sequence[Any], blockhash: str) -> SignedTransaction: ...


# -------- base ledger --------

class LedgerClient(ABC):
    """
    Boundary to the remote program.

    Reads MUST be safe to retry. submit_transaction MUST be at-most-once
    effective per signature: re-sending the same signed bytes never executes
    twice.
    """

    name: str

    # ---- reads ----

    @abstractmethod
    def query_accounts(self, page_token: str | None) -> tuple[list[Account], str | None]:
        """One page of user accounts and the token of the next page (None when done)."""
        ...

    @abstractmethod
    def query_markets(self) -> MarketTable:
        ...

    @abstractmethod
    def fetch_account(self, key: str) -> Account:
        """Fresh read of a single account (used to re-validate right before signing)."""
        ...

    @abstractmethod
    def latest_blockhash(self) -> str:
        ...

    @property
    @abstractmethod
    def last_slot(self) -> int:
        """Highest ledger slot seen in any read so far."""
        ...

    @property
    def exchange_paused(self) -> bool:
        """Program-wide pause as of the last market read. Liquidations fail while set."""
        return False

    @property
    def oracle_guard_rails(self) -> OracleGuardRails:
        return OracleGuardRails()

    # ---- instructions ----

    @abstractmethod
    def liquidate_instruction(self, account: Account, markets: MarketTable) -> Any:
        ...

    @abstractmethod
    def settle_funding_instruction(self, account: Account) -> Any:
        ...

    # ---- writes ----

    @abstractmethod
    def submit_transaction(self, signed_tx: SignedTransaction) -> str:
        """
        Send signed bytes, return the signature.
        Raises TransientRpcError / StaleStateError / PermanentSubmissionError.
        """
        ...

    @abstractmethod
    def confirm(self, signature: str, timeout: float) -> TxStatus:
        ...
