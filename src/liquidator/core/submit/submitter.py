# src/liquidator/core/submit/submitter.py
from __future__ import annotations

import logging
import time
from typing import Optional

from src.liquidator.core.errors import (
    LiquidatorError,
    MarginMathError,
    PermanentSubmissionError,
    RaceLostError,
    RpcError,
    StaleStateError,
)
from src.liquidator.core.funding.settler import apply_funding
from src.liquidator.core.margin.evaluator import MarginEvaluator, build_candidate
from src.liquidator.core.models.candidate import LiquidationCandidate, SubmissionResult
from src.liquidator.core.models.enums import CandidateState, LiquidationTier, Outcome, TxState
from src.liquidator.core.models.ledger import MarketTable
from src.liquidator.core.scheduler.state_machine import CandidateLifecycle
from src.liquidator.core.submit.sender import TransactionSender
from src.liquidator.core.utils.backoff import call_with_retry
from src.liquidator.ledger.base import LedgerClient

log = logging.getLogger("liquidator.submit")


class CandidateRefresher:
    """Fresh read of one account and the markets, funding settled locally, re-evaluated."""

    def __init__(
        self,
        ledger: LedgerClient,
        evaluator: MarginEvaluator,
        *,
        tier: LiquidationTier = LiquidationTier.MAINTENANCE,
        safety_margin_bps: int = 0,
        max_retries: int = 5,
        backoff_base_sec: float = 0.5,
        backoff_max_sec: float = 8.0,
    ):
        self.ledger = ledger
        self.evaluator = evaluator
        self.tier = tier
        self.safety_margin_bps = int(safety_margin_bps)
        self.max_retries = int(max_retries)
        self.backoff_base_sec = float(backoff_base_sec)
        self.backoff_max_sec = float(backoff_max_sec)

    def _retry(self, fn, what: str):
        return call_with_retry(
            fn,
            what=what,
            retries=self.max_retries,
            base_sec=self.backoff_base_sec,
            max_sec=self.backoff_max_sec,
        )

    def refresh(self, candidate: LiquidationCandidate) -> tuple[Optional[LiquidationCandidate], MarketTable]:
        """(fresh candidate or None without exposure, markets it was evaluated against)."""
        markets = self._retry(self.ledger.query_markets, "query_markets")
        account = self._retry(lambda: self.ledger.fetch_account(candidate.key), f"fetch_account({candidate.key})")
        settled = apply_funding(account, markets)
        status = self.evaluator.evaluate(settled, markets)
        fresh = build_candidate(
            settled,
            status,
            slot=self.ledger.last_slot,
            tier=self.tier,
            safety_margin_bps=self.safety_margin_bps,
        )
        return fresh, markets


def recheck_outcome(original: LiquidationCandidate, fresh: Optional[LiquidationCandidate]) -> Optional[Outcome]:
    """
    None while the account is still liquidatable.

    A position that shrank since the snapshot means a liquidation landed
    (somebody else's, unless one of ours was still unresolved); otherwise a
    recovered account is simply ineligible now.
    """
    if fresh is not None and fresh.is_below_threshold:
        return None
    remaining = fresh.account.total_base_abs() if fresh is not None else 0
    if remaining < original.account.total_base_abs():
        return Outcome.LOST_RACE
    return Outcome.INELIGIBLE


_TERMINAL_STATE = {
    Outcome.CONFIRMED: CandidateState.CONFIRMED,
    Outcome.LOST_RACE: CandidateState.LOST_RACE,
    Outcome.ABANDONED: CandidateState.ABANDONED,
    Outcome.INELIGIBLE: CandidateState.INELIGIBLE,
}


class TransactionSubmitter:
    """
    Drives one candidate from QUEUED to a terminal outcome.

    Every attempt re-validates against a fresh read before signing. Attempts
    are bounded by max_attempts with exponential delay between them.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        sender: TransactionSender,
        refresher: CandidateRefresher,
        *,
        max_attempts: int = 3,
        retry_backoff_sec: float = 0.5,
        confirm_timeout_sec: float = 30.0,
        reporter=None,
    ):
        self.ledger = ledger
        self.sender = sender
        self.refresher = refresher
        self.max_attempts = max(1, int(max_attempts))
        self.retry_backoff_sec = float(retry_backoff_sec)
        self.confirm_timeout_sec = float(confirm_timeout_sec)
        self.reporter = reporter

    # ------------------------------------------------------------------

    def process(self, candidate: LiquidationCandidate) -> SubmissionResult:
        lc = candidate.lifecycle or CandidateLifecycle(candidate.key, CandidateState.QUEUED)
        result = self._run(candidate, lc)

        lc.advance(_TERMINAL_STATE[result.outcome])
        self._log_result(result)
        if self.reporter is not None:
            self.reporter.report(result)
        return result

    def _run(self, candidate: LiquidationCandidate, lc: CandidateLifecycle) -> SubmissionResult:
        key = candidate.key
        current = candidate
        prefetched: Optional[tuple[Optional[LiquidationCandidate], MarketTable]] = None
        last_error: Optional[str] = None
        sig: Optional[str] = None
        sends = 0
        # sent, but neither confirmed nor failed
        unresolved: list[str] = []

        def result(outcome: Outcome, attempts: int, error: Optional[str] = None) -> SubmissionResult:
            return SubmissionResult(
                account_key=key,
                outcome=outcome,
                attempts=attempts,
                margin_ratio=current.margin_ratio,
                slot=current.slot,
                signature=sig,
                error=error,
            )

        def landed() -> Optional[SubmissionResult]:
            nonlocal sig
            found = self._find_landed(unresolved)
            if found is None:
                return None
            sig = found
            return result(Outcome.CONFIRMED, sends)

        def recheck(fresh: Optional[LiquidationCandidate]) -> Optional[SubmissionResult]:
            """Terminal result when the fresh read ends the candidate, None to go on."""
            nonlocal current
            outcome = recheck_outcome(candidate, fresh)
            if outcome is None:
                return None
            if fresh is not None:
                current = fresh
            # a shrunk or healthy account may be our own earlier transaction landing late
            done = landed()
            if done is not None:
                return done
            if outcome == Outcome.LOST_RACE:
                raise RaceLostError(f"positions of {key} reduced since slot {candidate.slot}")
            return result(outcome, sends)

        for attempt in range(1, self.max_attempts + 1):
            lc.advance(CandidateState.SUBMITTING)
            try:
                fresh, markets = prefetched or self.refresher.refresh(current)
                prefetched = None

                done = recheck(fresh)
                if done is not None:
                    return done
                current = fresh

                ix = self.ledger.liquidate_instruction(current.account, markets)
                sends += 1
                sig = self.sender.send([ix])
                log.info("liquidate sent %s attempt=%d sig=%s", current.describe(), attempt, sig)

                status = self.ledger.confirm(sig, self.confirm_timeout_sec)
                if status.confirmed:
                    return result(Outcome.CONFIRMED, attempt)
                if status.state == TxState.FAILED:
                    if isinstance(status.error, LiquidatorError):
                        raise status.error
                    raise PermanentSubmissionError(f"transaction failed: {status.error}", signature=sig)
                unresolved.append(sig)
                last_error = f"confirmation timeout for {sig}"

            except StaleStateError as e:
                last_error = str(e)
                log.info("stale state for %s (attempt %d): %s", key, attempt, e)
                try:
                    prefetched = self.refresher.refresh(current)
                    done = recheck(prefetched[0])
                except RaceLostError as race:
                    return result(Outcome.LOST_RACE, sends, str(race))
                except LiquidatorError as re:
                    last_error = f"{e}; refresh failed: {re}"
                else:
                    if done is not None:
                        return done

            except RaceLostError as e:
                return result(Outcome.LOST_RACE, sends, str(e))

            except (PermanentSubmissionError, MarginMathError) as e:
                return result(Outcome.ABANDONED, attempt, str(e))

            except RpcError as e:
                # TransientRpcError from send, or read exhaustion in refresh
                if e.signature:
                    unresolved.append(e.signature)
                last_error = str(e)
                log.debug("transient failure for %s (attempt %d): %s", key, attempt, e)

            except LiquidatorError as e:
                last_error = str(e)
                log.warning("attempt %d for %s failed: %s", attempt, key, e)

            if attempt < self.max_attempts:
                lc.advance(CandidateState.RETRYING)
                time.sleep(self.retry_backoff_sec * (2 ** (attempt - 1)))

        return landed() or result(Outcome.ABANDONED, self.max_attempts, f"retry budget exhausted: {last_error}")

    def _find_landed(self, signatures: list[str]) -> Optional[str]:
        """First earlier signature that reached the commitment level after all."""
        for s in signatures:
            try:
                status = self.ledger.confirm(s, 0.0)
            except RpcError as e:
                log.debug("status of %s unknown: %s", s, e)
                continue
            if status.confirmed:
                log.info("earlier transaction %s landed", s)
                return s
        return None

    @staticmethod
    def _log_result(r: SubmissionResult) -> None:
        if r.outcome == Outcome.ABANDONED:
            log.error(
                "liquidation ABANDONED %s attempts=%d sig=%s err=%s",
                r.account_key, r.attempts, r.signature, r.error,
            )
        else:
            log.info(
                "liquidation %s %s attempts=%d sig=%s",
                r.outcome.value, r.account_key, r.attempts, r.signature,
            )
