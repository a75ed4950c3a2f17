# src/liquidator/core/scheduler/scheduler.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from src.liquidator.core.errors import FatalConfigError
from src.liquidator.core.models.candidate import LiquidationCandidate

log = logging.getLogger("liquidator.scheduler")

PrioritizationPolicy = Callable[[LiquidationCandidate], Any]


def lowest_ratio(c: LiquidationCandidate):
    """Most undercollateralized first."""
    return (c.margin_ratio, c.key)


def largest_exposure(c: LiquidationCandidate):
    return (-c.base_asset_value, c.key)


POLICIES: dict[str, PrioritizationPolicy] = {
    "lowest_ratio": lowest_ratio,
    "largest_exposure": largest_exposure,
}


def policy_by_name(name: str) -> PrioritizationPolicy:
    try:
        return POLICIES[str(name).strip().lower()]
    except KeyError:
        raise FatalConfigError(f"unknown prioritization policy {name!r}, expected one of {sorted(POLICIES)}") from None


class LiquidationScheduler:
    """
    Eligible candidates waiting for submission plus the in-flight set.

    An account is marked in flight in the same critical section that hands
    it out, and unmarked only by release() on a terminal outcome, so at most
    one submission per account exists at any time.
    """

    def __init__(self, policy: PrioritizationPolicy = lowest_ratio):
        self.policy = policy
        self._lock = threading.Lock()
        self._queued: dict[str, LiquidationCandidate] = {}
        self._in_flight: set[str] = set()

    def consider(self, candidate: LiquidationCandidate) -> bool:
        if not candidate.is_below_threshold:
            return False

        key = candidate.key
        with self._lock:
            if key in self._in_flight:
                return False
            queued = self._queued.get(key)
            if queued is not None and queued.slot > candidate.slot:
                return False
            self._queued[key] = candidate

        if queued is None:
            log.debug("queued %s", candidate.describe())
        return True

    def next_batch(self, capacity: int) -> list[LiquidationCandidate]:
        if capacity <= 0:
            return []
        with self._lock:
            ordered = sorted(self._queued.values(), key=self.policy)[:capacity]
            for c in ordered:
                del self._queued[c.key]
                self._in_flight.add(c.key)
        return ordered

    def release(self, account_key: str) -> None:
        with self._lock:
            self._in_flight.discard(account_key)

    def discard(self, account_key: str) -> bool:
        with self._lock:
            return self._queued.pop(account_key, None) is not None

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def queued_count(self) -> int:
        with self._lock:
            return len(self._queued)

    def is_in_flight(self, account_key: str) -> bool:
        with self._lock:
            return account_key in self._in_flight
