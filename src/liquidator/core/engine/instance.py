# src/liquidator/core/engine/instance.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from src.liquidator.core.errors import MarginMathError, RpcError
from src.liquidator.core.funding.settler import FundingSettler
from src.liquidator.core.margin.constants import MAX_U128
from src.liquidator.core.margin.evaluator import MarginEvaluator, build_candidate
from src.liquidator.core.models.candidate import LiquidationCandidate
from src.liquidator.core.models.enums import CandidateState, LiquidationTier
from src.liquidator.core.models.ledger import Account, Snapshot
from src.liquidator.core.scan.scanner import AccountScanner
from src.liquidator.core.scheduler.scheduler import LiquidationScheduler
from src.liquidator.core.scheduler.state_machine import CandidateLifecycle
from src.liquidator.core.submit.submitter import TransactionSubmitter


@dataclass(frozen=True, slots=True)
class TickStats:
    slot: int = 0
    accounts: int = 0
    evaluated: int = 0
    excluded: int = 0
    eligible: int = 0
    dispatched: int = 0
    in_flight: int = 0
    min_margin_ratio: Optional[int] = None
    elapsed: float = 0.0
    skipped: bool = False


class LiquidatorInstance:
    """
    The driving loop: scan -> settle funding -> evaluate -> schedule -> submit.

    Evaluation fans out over a bounded pool against one immutable snapshot;
    submissions run on their own pool capped at submit_concurrency.
    """

    def __init__(
        self,
        *,
        scanner: AccountScanner,
        settler: FundingSettler,
        evaluator: MarginEvaluator,
        scheduler: LiquidationScheduler,
        submitter: Optional[TransactionSubmitter],
        tier: LiquidationTier = LiquidationTier.MAINTENANCE,
        safety_margin_bps: int = 0,
        scan_interval_sec: float = 1.0,
        eval_concurrency: int = 8,
        submit_concurrency: int = 4,
        dry_run: bool = False,
        stop_event: Optional[threading.Event] = None,
        name: str = "liquidator",
    ):
        self.logger = logging.getLogger("liquidator.engine.instance")
        self.name = name

        self.scanner = scanner
        self.settler = settler
        self.evaluator = evaluator
        self.scheduler = scheduler
        self.submitter = submitter

        self.tier = tier
        self.safety_margin_bps = int(safety_margin_bps)
        self.scan_interval_sec = float(scan_interval_sec)
        self.submit_concurrency = int(submit_concurrency)
        self.dry_run = bool(dry_run) or submitter is None

        self._stop = stop_event or threading.Event()
        self._eval_pool = ThreadPoolExecutor(max_workers=int(eval_concurrency), thread_name_prefix="eval")
        self._submit_pool = ThreadPoolExecutor(max_workers=self.submit_concurrency, thread_name_prefix="submit")

        self._futures_lock = threading.Lock()
        self._futures: set[Future] = set()

        self.last_stats: Optional[TickStats] = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def start(self) -> threading.Thread:
        """Run the loop on a daemon thread."""
        t = threading.Thread(target=self.run, daemon=True, name=f"Instance-{self.name}")
        t.start()
        return t

    def run(self) -> None:
        self.logger.info(
            "[Instance] running: name=%s tier=%s interval=%.2fs submit_concurrency=%d dry_run=%s",
            self.name,
            self.tier.value,
            self.scan_interval_sec,
            self.submit_concurrency,
            self.dry_run,
        )

        while not self._stop.is_set():
            t0 = time.time()
            try:
                self.tick()
            except Exception:
                # a broken cycle must not kill the agent
                self.logger.exception("[Instance] tick failed")

            wait_s = max(0.0, self.scan_interval_sec - (time.time() - t0))
            self._stop.wait(wait_s)

        self.logger.info("[Instance] loop stopped")

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        self._eval_pool.shutdown(wait=wait)
        pending = self.pending_submissions()
        if pending:
            self.logger.info("[Instance] waiting for %d in-flight submissions", pending)
        self._submit_pool.shutdown(wait=wait)

    def pending_submissions(self) -> int:
        with self._futures_lock:
            return len(self._futures)

    # ------------------------------------------------------------------
    # one cycle
    # ------------------------------------------------------------------

    def tick(self) -> TickStats:
        t0 = time.time()
        try:
            snap = self.scanner.scan()
        except RpcError as e:
            self.logger.warning("scan failed, skipping cycle: %s", e)
            stats = TickStats(elapsed=time.time() - t0, skipped=True, in_flight=self.scheduler.in_flight_count())
            self.last_stats = stats
            return stats

        candidates = self._evaluate(snap)
        evaluated = [c for c in candidates if c is not None]

        eligible = 0
        for c in evaluated:
            if c.is_below_threshold:
                if self.scheduler.consider(c):
                    c.lifecycle.advance(CandidateState.QUEUED)
                    eligible += 1
            else:
                c.lifecycle.advance(CandidateState.INELIGIBLE)
                self.scheduler.discard(c.key)

        if snap.exchange_paused:
            # the program rejects every liquidation while paused; keep the queue for later
            self.logger.warning(
                "exchange paused at slot %d, holding %d queued", snap.slot, self.scheduler.queued_count()
            )
            dispatched = 0
        else:
            dispatched = 0 if self._stop.is_set() else self._dispatch()

        ratios = [c.margin_ratio for c in evaluated if c.margin_ratio != MAX_U128]
        stats = TickStats(
            slot=snap.slot,
            accounts=len(snap.accounts),
            evaluated=len(evaluated),
            excluded=len(snap.accounts) - len(evaluated),
            eligible=eligible,
            dispatched=dispatched,
            in_flight=self.scheduler.in_flight_count(),
            min_margin_ratio=min(ratios) if ratios else None,
            elapsed=time.time() - t0,
        )
        self.last_stats = stats

        self.logger.info(
            "loaded slot %d: %d accounts in %.3fs eligible=%d dispatched=%d in_flight=%d",
            stats.slot,
            stats.accounts,
            stats.elapsed,
            stats.eligible,
            stats.dispatched,
            stats.in_flight,
        )
        if stats.min_margin_ratio is not None:
            self.logger.debug("min margin ratio %.2f%%", stats.min_margin_ratio / 100)
        return stats

    def _evaluate(self, snap: Snapshot) -> list[Optional[LiquidationCandidate]]:
        futures = [self._eval_pool.submit(self._evaluate_one, acc, snap) for acc in snap.accounts]
        return [f.result() for f in futures]

    def _evaluate_one(self, account: Account, snap: Snapshot) -> Optional[LiquidationCandidate]:
        if not account.open_positions():
            # nothing to settle or liquidate
            return None

        lc = CandidateLifecycle(account.key)
        settled = self.settler.settle(account, snap.markets)
        if settled is None:
            return None
        if settled is not account:
            lc.advance(CandidateState.FUNDING_SETTLING)

        try:
            status = self.evaluator.evaluate(settled, snap.markets)
        except MarginMathError as e:
            self.logger.warning("skip %s: %s", account.key, e)
            return None

        lc.advance(CandidateState.EVALUATED)
        return build_candidate(
            settled,
            status,
            slot=snap.slot,
            tier=self.tier,
            safety_margin_bps=self.safety_margin_bps,
            lifecycle=lc,
        )

    def _dispatch(self) -> int:
        if self.dry_run:
            for c in self.scheduler.next_batch(self.scheduler.queued_count()):
                self.logger.warning("[DRY_RUN] would liquidate %s", c.describe())
                self.scheduler.release(c.key)
            return 0

        capacity = self.submit_concurrency - self.scheduler.in_flight_count()
        batch = self.scheduler.next_batch(capacity)
        for c in batch:
            fut = self._submit_pool.submit(self.submitter.process, c)
            with self._futures_lock:
                self._futures.add(fut)
            fut.add_done_callback(lambda f, key=c.key: self._on_submission_done(key, f))
        return len(batch)

    def _on_submission_done(self, account_key: str, fut: Future) -> None:
        self.scheduler.release(account_key)
        with self._futures_lock:
            self._futures.discard(fut)
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            self.logger.error("submission for %s crashed: %r", account_key, exc)
