from __future__ import annotations
from enum import Enum

class SwapDirection(str, Enum):
    ADD = "ADD"        # closing a long: base goes back into the pool
    REMOVE = "REMOVE"  # closing a short: base comes out of the pool

class LiquidationType(str, Enum):
    NONE = "NONE"
    PARTIAL = "PARTIAL"
    FULL = "FULL"

class LiquidationTier(str, Enum):
    MAINTENANCE = "maintenance"
    PARTIAL = "partial"

class CandidateState(str, Enum):
    DISCOVERED = "DISCOVERED"
    FUNDING_SETTLING = "FUNDING_SETTLING"
    EVALUATED = "EVALUATED"
    INELIGIBLE = "INELIGIBLE"
    QUEUED = "QUEUED"
    SUBMITTING = "SUBMITTING"
    RETRYING = "RETRYING"
    CONFIRMED = "CONFIRMED"
    LOST_RACE = "LOST_RACE"
    ABANDONED = "ABANDONED"

class Outcome(str, Enum):
    CONFIRMED = "CONFIRMED"
    LOST_RACE = "LOST_RACE"
    ABANDONED = "ABANDONED"
    INELIGIBLE = "INELIGIBLE"

class TxState(str, Enum):
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
