# src/liquidator/core/margin/math.py
"""
Integer arithmetic of the clearing-house program.

Python ints are unbounded, so the program's checked u128/i128/U192 ops become
plain ops plus explicit range checks where the program would fail. Division
follows Rust semantics: unsigned floor for non-negative operands, truncation
toward zero for signed ones (see `div_trunc`).
"""
from __future__ import annotations

from src.liquidator.core.errors import MarginMathError
from src.liquidator.core.margin.constants import (
    AMM_RESERVE_PRECISION,
    AMM_TIMES_PEG_TO_QUOTE_PRECISION_RATIO,
    AMM_TO_QUOTE_PRECISION_RATIO,
    FUNDING_PAYMENT_PRECISION,
    MARK_PRICE_PRECISION,
    MAX_I128,
    MAX_U128,
    PRICE_TO_PEG_PRECISION_RATIO,
    PRICE_TO_QUOTE_PRECISION_RATIO,
)
from src.liquidator.core.models.enums import SwapDirection


def div_trunc(a: int, b: int) -> int:
    """Signed integer division rounding toward zero (Rust i128 `/`)."""
    if b == 0:
        raise MarginMathError("division by zero")
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def _u128(v: int, what: str) -> int:
    if v < 0 or v > MAX_U128:
        raise MarginMathError(f"{what} out of u128 range: {v}")
    return v


def _i128(v: int, what: str) -> int:
    if v < -MAX_I128 - 1 or v > MAX_I128:
        raise MarginMathError(f"{what} out of i128 range: {v}")
    return v


# ----------------------------------------------------------------------
# collateral
# ----------------------------------------------------------------------

def calculate_updated_collateral(collateral: int, pnl: int) -> int:
    if pnl < 0 and -pnl > collateral:
        return 0
    return _u128(collateral + pnl, "collateral")


# ----------------------------------------------------------------------
# amm
# ----------------------------------------------------------------------

def swap_direction_to_close_position(base_asset_amount: int) -> SwapDirection:
    return SwapDirection.ADD if base_asset_amount > 0 else SwapDirection.REMOVE


def calculate_swap_output(
    swap_amount: int,
    input_asset_reserve: int,
    direction: SwapDirection,
    invariant_sqrt: int,
) -> tuple[int, int]:
    """Returns (new_output_reserve, new_input_reserve) on the constant-product curve."""
    invariant = invariant_sqrt * invariant_sqrt

    if direction == SwapDirection.REMOVE and swap_amount > input_asset_reserve:
        raise MarginMathError("trade size too large for reserve")

    if direction == SwapDirection.ADD:
        new_input = input_asset_reserve + swap_amount
    else:
        new_input = input_asset_reserve - swap_amount

    if new_input == 0:
        raise MarginMathError("empty reserve after swap")

    new_output = _u128(invariant // new_input, "output reserve")
    return new_output, new_input


def reserve_to_asset_amount(quote_asset_reserve: int, peg_multiplier: int) -> int:
    return quote_asset_reserve * peg_multiplier // AMM_TIMES_PEG_TO_QUOTE_PRECISION_RATIO


def calculate_quote_asset_amount_swapped(
    quote_reserve_before: int,
    quote_reserve_after: int,
    direction: SwapDirection,
    peg_multiplier: int,
) -> int:
    if direction == SwapDirection.ADD:
        change = quote_reserve_before - quote_reserve_after
    else:
        change = quote_reserve_after - quote_reserve_before
    _u128(change, "quote reserve change")

    amount = reserve_to_asset_amount(change, peg_multiplier)
    # going long base is one quote unit more expensive
    if direction == SwapDirection.REMOVE:
        amount += 1
    return amount


def calculate_pnl(exit_value: int, entry_value: int, direction: SwapDirection) -> int:
    if direction == SwapDirection.ADD:
        return _i128(exit_value - entry_value, "pnl")
    return _i128(entry_value - exit_value, "pnl")


def calculate_base_asset_value_and_pnl(
    base_asset_amount: int,
    quote_asset_amount: int,
    *,
    base_asset_reserve: int,
    quote_asset_reserve: int,
    sqrt_k: int,
    peg_multiplier: int,
) -> tuple[int, int]:
    """Value of closing the position through the AMM and the resulting pnl."""
    if base_asset_amount == 0:
        return 0, 0

    direction = swap_direction_to_close_position(base_asset_amount)
    new_quote_reserve, _ = calculate_swap_output(
        abs(base_asset_amount),
        base_asset_reserve,
        direction,
        sqrt_k,
    )
    value = calculate_quote_asset_amount_swapped(
        quote_asset_reserve,
        new_quote_reserve,
        direction,
        peg_multiplier,
    )
    return value, calculate_pnl(value, quote_asset_amount, direction)


def calculate_mark_price(quote_asset_reserve: int, base_asset_reserve: int, peg_multiplier: int) -> int:
    if base_asset_reserve == 0:
        raise MarginMathError("base reserve is zero")
    return quote_asset_reserve * peg_multiplier * PRICE_TO_PEG_PRECISION_RATIO // base_asset_reserve


# ----------------------------------------------------------------------
# oracle
# ----------------------------------------------------------------------

def calculate_oracle_mark_spread_pct(mark_price: int, oracle_price: int) -> int:
    if oracle_price == 0:
        raise MarginMathError("oracle price is zero")
    return div_trunc((mark_price - oracle_price) * MARK_PRICE_PRECISION, oracle_price)


def is_oracle_valid(
    oracle_price: int,
    oracle_confidence: int,
    oracle_delay: int,
    last_oracle_price_twap: int,
    *,
    slots_before_stale: int,
    confidence_interval_max_size: int,
    too_volatile_ratio: int,
) -> bool:
    """
    Oracle validity as the program decides it.

    Invalid when non-positive, older than `slots_before_stale` slots, when
    price/confidence falls below `confidence_interval_max_size`, or when price
    and twap differ by more than `too_volatile_ratio` in either direction.
    """
    if oracle_price <= 0:
        return False

    too_volatile = (
        div_trunc(oracle_price, max(1, last_oracle_price_twap)) > too_volatile_ratio
        or div_trunc(last_oracle_price_twap, max(1, oracle_price)) > too_volatile_ratio
    )
    conf_too_large = oracle_price // max(1, oracle_confidence) < confidence_interval_max_size
    stale = oracle_delay > slots_before_stale

    return not (stale or too_volatile or conf_too_large)


def use_oracle_price_for_margin(spread_pct: int, numerator: int, denominator: int) -> bool:
    if denominator <= 0:
        return False
    max_divergence = numerator * MARK_PRICE_PRECISION // denominator
    return abs(spread_pct) <= max_divergence


def calculate_slippage(exit_value: int, base_asset_amount: int, mark_price_before: int) -> int:
    exit_price = exit_value * MARK_PRICE_PRECISION * AMM_TO_QUOTE_PRECISION_RATIO // base_asset_amount
    return exit_price - mark_price_before


def calculate_base_asset_value_and_pnl_with_oracle_price(
    base_asset_amount: int,
    quote_asset_amount: int,
    oracle_price: int,
) -> tuple[int, int]:
    if base_asset_amount == 0:
        return 0, 0
    price = oracle_price if oracle_price > 0 else 0
    value = abs(base_asset_amount) * price // (AMM_RESERVE_PRECISION * PRICE_TO_QUOTE_PRECISION_RATIO)
    direction = swap_direction_to_close_position(base_asset_amount)
    return value, calculate_pnl(value, quote_asset_amount, direction)


# ----------------------------------------------------------------------
# funding
# ----------------------------------------------------------------------

def calculate_funding_payment(cumulative_funding_rate: int, last_cumulative_funding_rate: int, base_asset_amount: int) -> int:
    """Funding owed by one position since its last settlement (longs pay shorts on a positive delta)."""
    delta = cumulative_funding_rate - last_cumulative_funding_rate
    delta_sign = 1 if delta > 0 else -1

    magnitude = abs(delta) * abs(base_asset_amount) // MARK_PRICE_PRECISION // FUNDING_PAYMENT_PRECISION
    _u128(magnitude, "funding payment")

    payment_sign = -1 if base_asset_amount > 0 else 1
    return _i128(magnitude * payment_sign * delta_sign, "funding payment")


def funding_payment_to_collateral(funding_payment: int) -> int:
    return div_trunc(funding_payment, AMM_TO_QUOTE_PRECISION_RATIO)
