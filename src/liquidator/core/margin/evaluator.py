# src/liquidator/core/margin/evaluator.py
from __future__ import annotations

from src.liquidator.core.errors import MarginMathError
from src.liquidator.core.margin import math as m
from src.liquidator.core.margin.constants import MARGIN_PRECISION, MAX_U128
from src.liquidator.core.models.candidate import LiquidationCandidate, MarginStatus
from src.liquidator.core.models.enums import LiquidationTier, LiquidationType
from src.liquidator.core.models.ledger import Account, MarketTable, OracleGuardRails
from src.liquidator.core.scheduler.state_machine import CandidateLifecycle


class MarginEvaluator:
    """
    Stateless replica of the program's liquidation-status computation.

    No I/O; the same (account, markets) always gives the same MarginStatus.
    """

    def __init__(self, guard_rails: OracleGuardRails | None = None):
        self.guard_rails = guard_rails or OracleGuardRails()

    def evaluate(self, account: Account, markets: MarketTable) -> MarginStatus:
        base_asset_value = 0
        unrealized_pnl = 0
        adjusted_unrealized_pnl = 0
        partial_requirement = 0
        maintenance_requirement = 0

        for pos in account.positions:
            if pos.base_asset_amount == 0:
                continue

            market = markets.get(pos.market_index)
            if market is None:
                raise MarginMathError(f"account {account.key}: unknown market {pos.market_index}")

            amm_value, amm_pnl = m.calculate_base_asset_value_and_pnl(
                pos.base_asset_amount,
                pos.quote_asset_amount,
                base_asset_reserve=market.base_asset_reserve,
                quote_asset_reserve=market.quote_asset_reserve,
                sqrt_k=market.sqrt_k,
                peg_multiplier=market.peg_multiplier,
            )
            base_asset_value += amm_value
            unrealized_pnl += amm_pnl

            value, pnl = amm_value, amm_pnl
            oracle_choice = self._oracle_value_and_pnl(pos.base_asset_amount, pos.quote_asset_amount, amm_value, market)
            if oracle_choice is not None and oracle_choice[1] > amm_pnl:
                value, pnl = oracle_choice

            adjusted_unrealized_pnl += pnl
            partial_requirement += value * market.margin_ratio_partial
            maintenance_requirement += value * market.margin_ratio_maintenance

        partial_requirement //= MARGIN_PRECISION
        maintenance_requirement //= MARGIN_PRECISION

        total_collateral = m.calculate_updated_collateral(account.collateral, unrealized_pnl)
        adjusted_total_collateral = m.calculate_updated_collateral(account.collateral, adjusted_unrealized_pnl)

        if adjusted_total_collateral < maintenance_requirement:
            liquidation_type = LiquidationType.FULL
        elif adjusted_total_collateral < partial_requirement:
            liquidation_type = LiquidationType.PARTIAL
        else:
            liquidation_type = LiquidationType.NONE

        if base_asset_value == 0:
            margin_ratio = MAX_U128
        else:
            margin_ratio = total_collateral * MARGIN_PRECISION // base_asset_value

        return MarginStatus(
            total_collateral=total_collateral,
            adjusted_total_collateral=adjusted_total_collateral,
            unrealized_pnl=unrealized_pnl,
            adjusted_unrealized_pnl=adjusted_unrealized_pnl,
            base_asset_value=base_asset_value,
            partial_margin_requirement=partial_requirement,
            maintenance_margin_requirement=maintenance_requirement,
            margin_ratio=margin_ratio,
            liquidation_type=liquidation_type,
        )

    def _oracle_value_and_pnl(self, base: int, quote: int, amm_value: int, market) -> tuple[int, int] | None:
        if not market.oracle_valid or market.oracle_price is None or market.oracle_price <= 0:
            return None

        mark_price = m.calculate_mark_price(market.quote_asset_reserve, market.base_asset_reserve, market.peg_multiplier)
        spread_pct = m.calculate_oracle_mark_spread_pct(mark_price, market.oracle_price)
        if not m.use_oracle_price_for_margin(
            spread_pct,
            self.guard_rails.mark_oracle_divergence_numerator,
            self.guard_rails.mark_oracle_divergence_denominator,
        ):
            return None

        slippage = m.calculate_slippage(amm_value, abs(base), mark_price)
        exit_price = market.oracle_price + slippage
        return m.calculate_base_asset_value_and_pnl_with_oracle_price(base, quote, exit_price)


def build_candidate(
    account: Account,
    status: MarginStatus,
    *,
    slot: int,
    tier: LiquidationTier = LiquidationTier.MAINTENANCE,
    safety_margin_bps: int = 0,
    lifecycle: CandidateLifecycle | None = None,
) -> LiquidationCandidate | None:
    """Wrap a status into a candidate. None for accounts without exposure."""
    if not status.has_exposure:
        return None

    if tier == LiquidationTier.PARTIAL:
        requirement = status.partial_margin_requirement
    else:
        requirement = status.maintenance_margin_requirement

    return LiquidationCandidate(
        account=account,
        status=status,
        requirement=requirement,
        maintenance_threshold=status.threshold_bps(requirement),
        slot=int(slot),
        safety_margin_bps=int(safety_margin_bps),
        lifecycle=lifecycle,
    )
