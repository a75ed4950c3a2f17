# src/liquidator/ledger/solana/layouts.py
"""
Decoders for the clearing-house program accounts and Pyth price accounts.

State and User are borsh (sequential) accounts. Markets and UserPositions are
packed zero-copy arrays; their entry stride is taken from the account length
so only the leading fields of an entry (and the margin params at the tail of
a market) are addressed by offset.
"""
from __future__ import annotations

import base64
import hashlib
import struct
from dataclasses import dataclass

from solders.pubkey import Pubkey

from src.liquidator.core.errors import LiquidatorError
from src.liquidator.core.margin.constants import MARK_PRICE_PRECISION, MAX_MARKETS, MAX_POSITIONS
from src.liquidator.core.margin.math import div_trunc, is_oracle_valid
from src.liquidator.core.models.ledger import Account, Market, OracleGuardRails, Position


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode("utf-8")).digest()[:8]


STATE_DISCRIMINATOR = account_discriminator("State")
USER_DISCRIMINATOR = account_discriminator("User")
USER_POSITIONS_DISCRIMINATOR = account_discriminator("UserPositions")
MARKETS_DISCRIMINATOR = account_discriminator("Markets")

PYTH_MAGIC = 0xA1B2C3D4

# margin params sit before 4 u32 + 4 u128 at the end of each market entry
_MARKET_TAIL = 4 * 4 + 4 * 16


class LayoutError(LiquidatorError):
    """Account bytes do not match the expected layout."""


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def unb64(data: str) -> bytes:
    return base64.b64decode(data)


# ----------------------------------------------------------------------
# reader
# ----------------------------------------------------------------------

class _Reader:
    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.off = offset

    def _take(self, fmt: str):
        size = struct.calcsize(fmt)
        if self.off + size > len(self.data):
            raise LayoutError(f"account data too short: need {self.off + size}, have {len(self.data)}")
        (v,) = struct.unpack_from(fmt, self.data, self.off)
        self.off += size
        return v

    def u8(self) -> int:
        return self._take("<B")

    def u32(self) -> int:
        return self._take("<I")

    def i32(self) -> int:
        return self._take("<i")

    def u64(self) -> int:
        return self._take("<Q")

    def i64(self) -> int:
        return self._take("<q")

    def u128(self) -> int:
        lo, hi = self._take("<Q"), self._take("<Q")
        return lo | (hi << 64)

    def i128(self) -> int:
        v = self.u128()
        return v - (1 << 128) if v >= (1 << 127) else v

    def pubkey(self) -> str:
        if self.off + 32 > len(self.data):
            raise LayoutError("account data too short for pubkey")
        raw = self.data[self.off : self.off + 32]
        self.off += 32
        return str(Pubkey.from_bytes(raw))


def _expect(data: bytes, disc: bytes, what: str) -> None:
    if data[:8] != disc:
        raise LayoutError(f"not a {what} account")


# ----------------------------------------------------------------------
# state
# ----------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class StateAccount:
    admin: str
    exchange_paused: bool
    funding_paused: bool
    collateral_mint: str
    collateral_vault: str
    collateral_vault_authority: str
    deposit_history: str
    trade_history: str
    funding_payment_history: str
    funding_rate_history: str
    liquidation_history: str
    curve_history: str
    insurance_vault: str
    insurance_vault_authority: str
    markets: str
    oracle_guard_rails: OracleGuardRails

def decode_state(data: bytes) -> StateAccount:
    _expect(data, STATE_DISCRIMINATOR, "State")
    r = _Reader(data, 8)

    admin = r.pubkey()
    exchange_paused = bool(r.u8())
    funding_paused = bool(r.u8())
    r.u8()  # admin_controls_prices
    collateral_mint = r.pubkey()
    collateral_vault = r.pubkey()
    collateral_vault_authority = r.pubkey()
    r.u8()  # collateral_vault_nonce
    deposit_history = r.pubkey()
    trade_history = r.pubkey()
    funding_payment_history = r.pubkey()
    funding_rate_history = r.pubkey()
    liquidation_history = r.pubkey()
    curve_history = r.pubkey()
    insurance_vault = r.pubkey()
    insurance_vault_authority = r.pubkey()
    r.u8()  # insurance_vault_nonce
    markets = r.pubkey()

    for _ in range(9):  # margin ratios, liquidation close and penalty fractions
        r.u128()
    r.u64()  # partial_liquidation_liquidator_share_denominator
    r.u64()  # full_liquidation_liquidator_share_denominator

    # fee structure: fee fraction, four discount token tiers, referral discount
    r.u128()
    r.u128()
    for _ in range(4):
        r.u64()
        r.u128()
        r.u128()
    for _ in range(4):
        r.u128()
    r.pubkey()  # whitelist_mint
    r.pubkey()  # discount_mint

    guard_rails = OracleGuardRails(
        mark_oracle_divergence_numerator=r.u128(),
        mark_oracle_divergence_denominator=r.u128(),
        slots_before_stale=r.i64(),
        confidence_interval_max_size=r.u128(),
        too_volatile_ratio=r.i128(),
    )

    return StateAccount(
        admin=admin,
        exchange_paused=exchange_paused,
        funding_paused=funding_paused,
        collateral_mint=collateral_mint,
        collateral_vault=collateral_vault,
        collateral_vault_authority=collateral_vault_authority,
        deposit_history=deposit_history,
        trade_history=trade_history,
        funding_payment_history=funding_payment_history,
        funding_rate_history=funding_rate_history,
        liquidation_history=liquidation_history,
        curve_history=curve_history,
        insurance_vault=insurance_vault,
        insurance_vault_authority=insurance_vault_authority,
        markets=markets,
        oracle_guard_rails=guard_rails,
    )


# ----------------------------------------------------------------------
# user
# ----------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class UserAccount:
    authority: str
    collateral: int
    positions: str


def decode_user(data: bytes) -> UserAccount:
    _expect(data, USER_DISCRIMINATOR, "User")
    r = _Reader(data, 8)
    authority = r.pubkey()
    collateral = r.u128()
    r.i128()  # cumulative_deposits
    r.u128()  # total_fee_paid
    r.u128()  # total_token_discount
    r.u128()  # total_referral_reward
    r.u128()  # total_referee_discount
    positions = r.pubkey()
    return UserAccount(authority=authority, collateral=collateral, positions=positions)


def decode_user_positions(data: bytes) -> tuple[str, tuple[Position, ...]]:
    """(owning user, open positions in slot order)."""
    _expect(data, USER_POSITIONS_DISCRIMINATOR, "UserPositions")
    body = len(data) - 8 - 32
    stride = body // MAX_POSITIONS
    if stride <= 0 or body % MAX_POSITIONS:
        raise LayoutError(f"unexpected UserPositions size {len(data)}")

    user = _Reader(data, 8).pubkey()
    out: list[Position] = []
    for i in range(MAX_POSITIONS):
        r = _Reader(data, 8 + 32 + i * stride)
        market_index = r.u64()
        base = r.i128()
        quote = r.u128()
        last_cum_funding = r.i128()
        r.u128()  # last_cumulative_repeg_rebate
        last_funding_ts = r.i64()
        if base == 0:
            continue
        out.append(
            Position(
                market_index=market_index,
                base_asset_amount=base,
                quote_asset_amount=quote,
                last_cumulative_funding_rate=last_cum_funding,
                last_funding_rate_ts=last_funding_ts,
            )
        )
    return user, tuple(out)


def build_account(key: str, user: UserAccount, positions: tuple[Position, ...]) -> Account:
    return Account(
        key=key,
        authority=user.authority,
        positions_key=user.positions,
        collateral=user.collateral,
        positions=positions,
    )


# ----------------------------------------------------------------------
# markets
# ----------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class RawMarket:
    index: int
    initialized: bool
    oracle: str
    base_asset_reserve: int
    quote_asset_reserve: int
    cumulative_funding_rate_long: int
    cumulative_funding_rate_short: int
    last_funding_rate_ts: int
    sqrt_k: int
    peg_multiplier: int
    last_oracle_price_twap: int
    margin_ratio_initial: int
    margin_ratio_partial: int
    margin_ratio_maintenance: int


def decode_markets(data: bytes) -> list[RawMarket]:
    """Initialized markets only, by index."""
    _expect(data, MARKETS_DISCRIMINATOR, "Markets")
    body = len(data) - 8
    stride = body // MAX_MARKETS
    if stride <= _MARKET_TAIL or body % MAX_MARKETS:
        raise LayoutError(f"unexpected Markets size {len(data)}")

    out: list[RawMarket] = []
    for i in range(MAX_MARKETS):
        start = 8 + i * stride
        r = _Reader(data, start)
        initialized = bool(r.u8())
        if not initialized:
            continue
        r.i128()  # base_asset_amount_long
        r.i128()  # base_asset_amount_short
        r.i128()  # base_asset_amount
        r.u128()  # open_interest

        # --- amm ---
        oracle = r.pubkey()
        r.u8()  # oracle_source
        base_reserve = r.u128()
        quote_reserve = r.u128()
        r.u128()  # cumulative_repeg_rebate_long
        r.u128()  # cumulative_repeg_rebate_short
        cum_long = r.i128()
        cum_short = r.i128()
        r.i128()  # last_funding_rate
        last_funding_ts = r.i64()
        r.i64()   # funding_period
        twap = r.i128()  # last_oracle_price_twap
        r.u128()  # last_mark_price_twap
        r.i64()   # last_mark_price_twap_ts
        sqrt_k = r.u128()
        peg = r.u128()

        t = _Reader(data, start + stride - _MARKET_TAIL)
        mr_initial = t.u32()
        mr_partial = t.u32()
        mr_maintenance = t.u32()

        out.append(
            RawMarket(
                index=i,
                initialized=True,
                oracle=oracle,
                base_asset_reserve=base_reserve,
                quote_asset_reserve=quote_reserve,
                cumulative_funding_rate_long=cum_long,
                cumulative_funding_rate_short=cum_short,
                last_funding_rate_ts=last_funding_ts,
                sqrt_k=sqrt_k,
                peg_multiplier=peg,
                last_oracle_price_twap=twap,
                margin_ratio_initial=mr_initial,
                margin_ratio_partial=mr_partial,
                margin_ratio_maintenance=mr_maintenance,
            )
        )
    return out


# ----------------------------------------------------------------------
# pyth
# ----------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class OraclePrice:
    price: int          # MARK_PRICE_PRECISION
    confidence: int     # MARK_PRICE_PRECISION
    valid_slot: int

    def delay(self, slot: int) -> int:
        return int(slot) - self.valid_slot


def decode_pyth_price(data: bytes) -> OraclePrice:
    if len(data) < 224:
        raise LayoutError("pyth price account too short")
    magic = struct.unpack_from("<I", data, 0)[0]
    if magic != PYTH_MAGIC:
        raise LayoutError("not a pyth account")

    expo = struct.unpack_from("<i", data, 20)[0]
    valid_slot = struct.unpack_from("<Q", data, 40)[0]
    price = struct.unpack_from("<q", data, 208)[0]
    conf = struct.unpack_from("<Q", data, 216)[0]

    precision = 10 ** abs(expo)
    if precision > MARK_PRICE_PRECISION:
        mult, div = 1, precision // MARK_PRICE_PRECISION
    else:
        mult, div = MARK_PRICE_PRECISION // precision, 1
    return OraclePrice(
        price=div_trunc(price * mult, div),
        confidence=conf * mult // div,
        valid_slot=valid_slot,
    )


def to_market(
    raw: RawMarket,
    oracle: OraclePrice | None,
    guard_rails: OracleGuardRails,
    slot: int,
) -> Market:
    """Market as evaluated at `slot`; the oracle is judged by the program's validity rails."""
    valid = oracle is not None and is_oracle_valid(
        oracle.price,
        oracle.confidence,
        oracle.delay(slot),
        raw.last_oracle_price_twap,
        slots_before_stale=guard_rails.slots_before_stale,
        confidence_interval_max_size=guard_rails.confidence_interval_max_size,
        too_volatile_ratio=guard_rails.too_volatile_ratio,
    )
    return Market(
        index=raw.index,
        base_asset_reserve=raw.base_asset_reserve,
        quote_asset_reserve=raw.quote_asset_reserve,
        sqrt_k=raw.sqrt_k,
        peg_multiplier=raw.peg_multiplier,
        cumulative_funding_rate_long=raw.cumulative_funding_rate_long,
        cumulative_funding_rate_short=raw.cumulative_funding_rate_short,
        last_funding_rate_ts=raw.last_funding_rate_ts,
        oracle=raw.oracle,
        oracle_price=oracle.price if oracle is not None else None,
        oracle_valid=valid,
        margin_ratio_initial=raw.margin_ratio_initial,
        margin_ratio_partial=raw.margin_ratio_partial,
        margin_ratio_maintenance=raw.margin_ratio_maintenance,
        initialized=raw.initialized,
    )
