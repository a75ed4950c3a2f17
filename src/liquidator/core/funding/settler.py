# src/liquidator/core/funding/settler.py
from __future__ import annotations

import logging
from dataclasses import replace

from src.liquidator.core.errors import LiquidatorError, MarginMathError
from src.liquidator.core.margin import math as m
from src.liquidator.core.models.ledger import Account, MarketTable, Position
from src.liquidator.core.submit.sender import TransactionSender
from src.liquidator.ledger.base import LedgerClient

log = logging.getLogger("liquidator.funding")


def _market_rate(pos: Position, markets: MarketTable) -> tuple[int, int]:
    market = markets.get(pos.market_index)
    if market is None:
        raise MarginMathError(f"unknown market {pos.market_index}")
    return market.cumulative_funding_rate_for(pos.base_asset_amount), market.last_funding_rate_ts


def is_stale(account: Account, markets: MarketTable) -> bool:
    for pos in account.open_positions():
        rate, _ = _market_rate(pos, markets)
        if pos.last_cumulative_funding_rate != rate:
            return True
    return False


def apply_funding(account: Account, markets: MarketTable) -> Account:
    """
    The program's funding settlement applied to a local copy of the account.

    Payments are summed over stale positions and converted to quote
    precision once, truncating toward zero; collateral never goes negative.
    """
    total = 0
    positions: list[Position] = []
    for pos in account.positions:
        if not pos.is_open:
            positions.append(pos)
            continue
        rate, ts = _market_rate(pos, markets)
        if pos.last_cumulative_funding_rate == rate:
            positions.append(pos)
            continue
        total += m.calculate_funding_payment(rate, pos.last_cumulative_funding_rate, pos.base_asset_amount)
        positions.append(replace(pos, last_cumulative_funding_rate=rate, last_funding_rate_ts=ts))

    collateral = m.calculate_updated_collateral(account.collateral, m.funding_payment_to_collateral(total))
    return account.with_settlement(collateral=collateral, positions=tuple(positions))


class FundingSettler:
    """Brings an account's funding bookkeeping current before it is evaluated."""

    def __init__(
        self,
        ledger: LedgerClient,
        sender: TransactionSender | None = None,
        *,
        on_chain: bool = True,
    ):
        self.ledger = ledger
        self.sender = sender
        self.on_chain = bool(on_chain) and sender is not None

    def settle(self, account: Account, markets: MarketTable) -> Account | None:
        """
        Settled account, or None when it must sit out this cycle.

        A current account is returned as is, with no remote call.
        """
        try:
            if not is_stale(account, markets):
                return account
        except MarginMathError as e:
            log.warning("funding check skipped for %s: %s", account.key, e)
            return None

        if self.on_chain:
            try:
                sig = self.sender.send([self.ledger.settle_funding_instruction(account)])
                log.debug("settle funding sent for %s sig=%s", account.key, sig)
            except LiquidatorError as e:
                log.warning("settle funding failed for %s, retry next cycle: %s", account.key, e)
                return None

        try:
            return apply_funding(account, markets)
        except MarginMathError as e:
            log.warning("funding settlement skipped for %s: %s", account.key, e)
            return None
