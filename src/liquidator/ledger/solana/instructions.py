# src/liquidator/ledger/solana/instructions.py
from __future__ import annotations

import hashlib
from dataclasses import dataclass

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from src.liquidator.core.models.ledger import Account, MarketTable

CLEARING_HOUSE_PROGRAM_ID = "dammHkt7jmytvbS3nHTxQNEcP59aE57nxwV21YdqEDN"
SPL_TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


LIQUIDATE_DISCRIMINATOR = bytes.fromhex("dfb3e27d302e274a")
SETTLE_FUNDING_DISCRIMINATOR = instruction_discriminator("settle_funding_payment")


@dataclass(frozen=True, slots=True)
class ProgramAccounts:
    """Addresses every clearing-house instruction needs, resolved once at startup."""

    program_id: str
    state: str
    markets: str
    collateral_vault: str
    collateral_vault_authority: str
    insurance_vault: str
    insurance_vault_authority: str
    trade_history: str
    liquidation_history: str
    funding_payment_history: str
    liquidator_authority: str
    liquidator_user: str


def _pk(s: str) -> Pubkey:
    return Pubkey.from_string(s)


def _w(s: str) -> AccountMeta:
    return AccountMeta(_pk(s), is_signer=False, is_writable=True)


def _ro(s: str, *, signer: bool = False) -> AccountMeta:
    return AccountMeta(_pk(s), is_signer=signer, is_writable=False)


def liquidate_ix(pa: ProgramAccounts, account: Account, markets: MarketTable) -> Instruction:
    """
    liquidate: fixed account list, then one read-only oracle per open
    position in slot order. No arguments beyond the discriminator.
    """
    metas = [
        _ro(pa.state),
        _ro(pa.liquidator_authority, signer=True),
        _w(pa.liquidator_user),
        _w(account.key),
        _w(pa.collateral_vault),
        _ro(pa.collateral_vault_authority),
        _w(pa.insurance_vault),
        _ro(pa.insurance_vault_authority),
        _ro(SPL_TOKEN_PROGRAM_ID),
        _w(pa.markets),
        _w(account.positions_key),
        _w(pa.trade_history),
        _w(pa.liquidation_history),
        _w(pa.funding_payment_history),
    ]
    for pos in account.positions:
        if pos.base_asset_amount == 0:
            continue
        market = markets[pos.market_index]
        metas.append(_ro(market.oracle))

    return Instruction(_pk(pa.program_id), LIQUIDATE_DISCRIMINATOR, metas)


def settle_funding_ix(pa: ProgramAccounts, account: Account) -> Instruction:
    metas = [
        _ro(pa.state),
        _w(account.key),
        _ro(pa.markets),
        _w(account.positions_key),
        _w(pa.funding_payment_history),
    ]
    return Instruction(_pk(pa.program_id), SETTLE_FUNDING_DISCRIMINATOR, metas)
