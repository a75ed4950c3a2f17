# src/liquidator/core/scheduler/state_machine.py
from __future__ import annotations

from dataclasses import dataclass

from src.liquidator.core.models.enums import CandidateState as S


TERMINAL: frozenset[S] = frozenset({S.CONFIRMED, S.LOST_RACE, S.ABANDONED, S.INELIGIBLE})

TRANSITIONS: dict[S, frozenset[S]] = {
    S.DISCOVERED: frozenset({S.FUNDING_SETTLING, S.EVALUATED}),
    S.FUNDING_SETTLING: frozenset({S.EVALUATED}),
    S.EVALUATED: frozenset({S.INELIGIBLE, S.QUEUED}),
    S.QUEUED: frozenset({S.SUBMITTING, S.INELIGIBLE}),
    S.SUBMITTING: frozenset({S.CONFIRMED, S.LOST_RACE, S.RETRYING, S.ABANDONED, S.INELIGIBLE}),
    S.RETRYING: frozenset({S.SUBMITTING, S.ABANDONED}),
}


@dataclass(frozen=True)
class Decision:
    allow: bool
    reason: str = ""


def should_apply(current: S | str | None, incoming: S | str | None) -> Decision:
    """
    Allow only transitions from the table.
    - terminal states never move
    - no current state means only DISCOVERED may start
    """
    if not incoming:
        return Decision(False, "incoming state is empty")
    inc = S(incoming)

    if not current:
        if inc == S.DISCOVERED:
            return Decision(True, "ok")
        return Decision(False, f"must start at DISCOVERED, got {inc.value}")
    cur = S(current)

    if cur in TERMINAL:
        return Decision(False, f"terminal state blocked: {cur.value} -> {inc.value}")

    if inc not in TRANSITIONS.get(cur, frozenset()):
        return Decision(False, f"transition not allowed: {cur.value} -> {inc.value}")

    return Decision(True, "ok")


class CandidateLifecycle:
    """Tracks the state of one candidate; illegal moves raise ValueError."""

    def __init__(self, account_key: str, state: S = S.DISCOVERED):
        self.account_key = account_key
        self.state = state
        self.history: list[S] = [state]

    def advance(self, incoming: S) -> None:
        d = should_apply(self.state, incoming)
        if not d.allow:
            raise ValueError(f"{self.account_key}: {d.reason}")
        self.state = incoming
        self.history.append(incoming)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL
