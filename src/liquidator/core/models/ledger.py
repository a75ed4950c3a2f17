# src/liquidator/core/models/ledger.py
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True, slots=True)
class Position:
    """
    One open slot of a user's positions account.

    Refers to its market by index only; the market itself lives in the
    snapshot's market table.
    """

    market_index: int
    base_asset_amount: int          # signed, AMM_RESERVE_PRECISION
    quote_asset_amount: int         # entry value, QUOTE_PRECISION
    last_cumulative_funding_rate: int
    last_funding_rate_ts: int = 0

    @property
    def is_open(self) -> bool:
        return self.base_asset_amount != 0


@dataclass(frozen=True, slots=True)
class Account:
    key: str
    authority: str
    positions_key: str
    collateral: int                 # QUOTE_PRECISION
    positions: tuple[Position, ...] = ()

    def open_positions(self) -> tuple[Position, ...]:
        return tuple(p for p in self.positions if p.is_open)

    def total_base_abs(self) -> int:
        return sum(abs(p.base_asset_amount) for p in self.positions)

    def with_settlement(self, *, collateral: int, positions: tuple[Position, ...]) -> "Account":
        return replace(self, collateral=collateral, positions=positions)


@dataclass(frozen=True, slots=True)
class Market:
    index: int

    # --- amm ---
    base_asset_reserve: int
    quote_asset_reserve: int
    sqrt_k: int
    peg_multiplier: int
    cumulative_funding_rate_long: int = 0
    cumulative_funding_rate_short: int = 0
    last_funding_rate_ts: int = 0

    # --- oracle ---
    oracle: str = ""
    oracle_price: int | None = None  # MARK_PRICE_PRECISION
    oracle_valid: bool = False

    # --- margin params (bps) ---
    margin_ratio_initial: int = 2000
    margin_ratio_partial: int = 625
    margin_ratio_maintenance: int = 500

    initialized: bool = True

    def cumulative_funding_rate_for(self, base_asset_amount: int) -> int:
        if base_asset_amount > 0:
            return self.cumulative_funding_rate_long
        return self.cumulative_funding_rate_short


@dataclass(frozen=True, slots=True)
class OracleGuardRails:
    """
    The program's oracle guard rails (State account).

    Divergence: max mark/oracle spread for the oracle to count in margin.
    Validity: staleness in slots, minimum price/confidence ratio, and the
    max ratio between the oracle price and its twap in either direction.
    """

    mark_oracle_divergence_numerator: int = 1
    mark_oracle_divergence_denominator: int = 10
    slots_before_stale: int = 1000
    confidence_interval_max_size: int = 4
    too_volatile_ratio: int = 5


MarketTable = Mapping[int, Market]


def freeze_markets(markets: Mapping[int, Market] | list[Market]) -> MarketTable:
    if isinstance(markets, Mapping):
        return MappingProxyType(dict(markets))
    return MappingProxyType({m.index: m for m in markets})


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Point-in-time read of all accounts and markets used for one cycle."""

    slot: int
    accounts: tuple[Account, ...]
    markets: MarketTable
    taken_at: float = field(default_factory=time.time)
    exchange_paused: bool = False

    def __len__(self) -> int:
        return len(self.accounts)
