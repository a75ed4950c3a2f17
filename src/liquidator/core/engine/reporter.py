# src/liquidator/core/engine/reporter.py
from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import List, Optional

from src.liquidator.core.models.candidate import SubmissionResult
from src.liquidator.data.storage.postgres.storage import PostgreSQLStorage, outcome_row
from src.liquidator.notifications.telegram import (
    NOTIFY_OUTCOMES,
    TelegramTarget,
    broadcast_telegram_message,
    format_outcome_message,
)

log = logging.getLogger("liquidator.reporter")


class OutcomeReporter:
    """
    Fans terminal outcomes out to the journal and Telegram.

    Both sinks are best effort: a failure is logged and the loop carries on.
    """

    def __init__(
        self,
        *,
        storage: Optional[PostgreSQLStorage] = None,
        telegram_targets: Optional[List[TelegramTarget]] = None,
        liquidator: Optional[str] = None,
    ):
        self.storage = storage
        self.telegram_targets = list(telegram_targets or [])
        self.liquidator = liquidator

        self._lock = threading.Lock()
        self.counts: Counter = Counter()

    def report(self, result: SubmissionResult) -> None:
        with self._lock:
            self.counts[result.outcome.value] += 1

        if self.storage is not None:
            try:
                self.storage.insert_liquidation_outcome(outcome_row(result, liquidator=self.liquidator))
            except Exception:
                log.exception("journal insert failed for %s", result.account_key)

        if self.telegram_targets and result.outcome in NOTIFY_OUTCOMES:
            text = format_outcome_message(result, liquidator=self.liquidator)
            sent = broadcast_telegram_message(text, targets=self.telegram_targets)
            if sent < len(self.telegram_targets):
                log.warning("telegram delivered to %d/%d targets", sent, len(self.telegram_targets))

    def summary(self) -> dict:
        with self._lock:
            return dict(self.counts)
