# src/liquidator/core/models/candidate.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.liquidator.core.margin.constants import MARGIN_PRECISION, MAX_U128
from src.liquidator.core.models.enums import LiquidationType, Outcome
from src.liquidator.core.models.ledger import Account

if TYPE_CHECKING:
    from src.liquidator.core.scheduler.state_machine import CandidateLifecycle


@dataclass(frozen=True, slots=True)
class MarginStatus:
    """Output of the evaluator. All values in the program's precisions."""

    total_collateral: int
    adjusted_total_collateral: int
    unrealized_pnl: int
    adjusted_unrealized_pnl: int
    base_asset_value: int
    partial_margin_requirement: int
    maintenance_margin_requirement: int
    margin_ratio: int
    liquidation_type: LiquidationType

    @property
    def has_exposure(self) -> bool:
        return self.base_asset_value > 0

    def threshold_bps(self, requirement: int) -> int:
        """Exposure-weighted threshold ratio of a requirement, in bps."""
        if self.base_asset_value == 0:
            return 0
        return requirement * MARGIN_PRECISION // self.base_asset_value


@dataclass(frozen=True, slots=True)
class LiquidationCandidate:
    """
    Derived from one snapshot; valid only against it.

    The eligibility test is done in the program's own integer form
    (adjusted collateral < requirement), which is "ratio strictly below
    threshold" without the rounding of either ratio.
    """

    account: Account
    status: MarginStatus
    requirement: int
    maintenance_threshold: int      # bps
    slot: int
    safety_margin_bps: int = 0
    computed_at: float = field(default_factory=time.time)
    # set by the engine from discovery on; the submitter carries it to a terminal state
    lifecycle: CandidateLifecycle | None = field(default=None, compare=False, repr=False)

    @property
    def key(self) -> str:
        return self.account.key

    @property
    def margin_ratio(self) -> int:
        return self.status.margin_ratio

    @property
    def base_asset_value(self) -> int:
        return self.status.base_asset_value

    @property
    def is_below_threshold(self) -> bool:
        if not self.status.has_exposure or self.status.margin_ratio == MAX_U128:
            return False
        if self.status.adjusted_total_collateral >= self.requirement:
            return False
        if self.safety_margin_bps > 0:
            return self.margin_ratio + self.safety_margin_bps < self.maintenance_threshold
        return True

    def describe(self) -> str:
        return (
            f"{self.key} ratio={self.margin_ratio / 100:.2f}% "
            f"threshold={self.maintenance_threshold / 100:.2f}% "
            f"type={self.status.liquidation_type.value} slot={self.slot}"
        )


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    account_key: str
    outcome: Outcome
    attempts: int
    margin_ratio: int | None = None
    slot: int | None = None
    signature: str | None = None
    error: str | None = None
    finished_at: float = field(default_factory=time.time)
