# src/liquidator/core/scan/scanner.py
from __future__ import annotations

import logging
import threading
import time

from src.liquidator.core.errors import RpcError
from src.liquidator.core.models.ledger import Account, MarketTable, Snapshot
from src.liquidator.core.utils.backoff import call_with_retry
from src.liquidator.ledger.base import LedgerClient

log = logging.getLogger("liquidator.scan")


class AccountScanner:
    """
    Enumerates every user account once per cycle and assembles a Snapshot.

    Read-only: never submits anything. Pages are retried independently on
    transient errors; if any page is exhausted the whole scan fails and no
    partial result is returned.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        max_retries: int = 5,
        backoff_base_sec: float = 0.5,
        backoff_max_sec: float = 8.0,
        stop_event: threading.Event | None = None,
    ):
        self.ledger = ledger
        self.max_retries = int(max_retries)
        self.backoff_base_sec = float(backoff_base_sec)
        self.backoff_max_sec = float(backoff_max_sec)
        self.stop_event = stop_event

    def _retry(self, fn, what: str):
        return call_with_retry(
            fn,
            what=what,
            retries=self.max_retries,
            base_sec=self.backoff_base_sec,
            max_sec=self.backoff_max_sec,
            stop_event=self.stop_event,
        )

    def enumerate_accounts(self) -> tuple[Account, ...]:
        seen_tokens: set[str] = set()
        by_key: dict[str, Account] = {}

        token: str | None = None
        pages = 0
        while True:
            accounts, next_token = self._retry(
                lambda t=token: self.ledger.query_accounts(t),
                f"query_accounts(page={pages})",
            )
            pages += 1

            for acc in accounts:
                # first occurrence wins; a key repeated across pages is the same account
                by_key.setdefault(acc.key, acc)

            if next_token is None:
                break
            if next_token in seen_tokens:
                raise RpcError(f"pagination loop: page token {next_token} returned twice")
            seen_tokens.add(next_token)
            token = next_token

        log.debug("enumerated %d accounts in %d pages", len(by_key), pages)
        return tuple(by_key[k] for k in sorted(by_key))

    def scan(self) -> Snapshot:
        t0 = time.time()
        accounts = self.enumerate_accounts()
        # markets last: their read fixes the slot oracle validity is judged at
        markets: MarketTable = self._retry(self.ledger.query_markets, "query_markets")
        snap = Snapshot(
            slot=self.ledger.last_slot,
            accounts=accounts,
            markets=markets,
            taken_at=t0,
            exchange_paused=self.ledger.exchange_paused,
        )
        log.debug("snapshot slot=%d accounts=%d markets=%d", snap.slot, len(accounts), len(markets))
        return snap
