# src/liquidator/core/margin/constants.py
"""
Fixed-point precisions of the clearing-house program.

Every quantity on the margin path is an int in one of these precisions,
exactly as stored on chain.
"""
from __future__ import annotations

MARK_PRICE_PRECISION = 10**10
QUOTE_PRECISION = 10**6
AMM_RESERVE_PRECISION = 10**13
BASE_PRECISION = AMM_RESERVE_PRECISION
PEG_PRECISION = 10**3
FUNDING_PAYMENT_PRECISION = 10**4
MARGIN_PRECISION = 10**4  # basis points

AMM_TO_QUOTE_PRECISION_RATIO = AMM_RESERVE_PRECISION // QUOTE_PRECISION  # 1e7
AMM_TIMES_PEG_TO_QUOTE_PRECISION_RATIO = AMM_RESERVE_PRECISION * PEG_PRECISION // QUOTE_PRECISION  # 1e10
PRICE_TO_PEG_PRECISION_RATIO = MARK_PRICE_PRECISION // PEG_PRECISION  # 1e7
PRICE_TO_QUOTE_PRECISION_RATIO = MARK_PRICE_PRECISION // QUOTE_PRECISION  # 1e4

MAX_U128 = 2**128 - 1
MAX_I128 = 2**127 - 1

MAX_POSITIONS = 5
MAX_MARKETS = 64
