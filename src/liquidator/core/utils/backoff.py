# src/liquidator/core/utils/backoff.py
from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, TypeVar

from src.liquidator.core.errors import RpcError, TransientRpcError

log = logging.getLogger("liquidator.utils.backoff")

T = TypeVar("T")


def backoff_delay(attempt: int, *, base_sec: float, max_sec: float, jitter: bool = True) -> float:
    """Exponential delay for the given 1-based attempt, capped, with +-30% jitter."""
    sleep_s = float(base_sec) * (2 ** max(0, attempt - 1))
    sleep_s = min(sleep_s, float(max_sec))
    if jitter:
        sleep_s = sleep_s * (0.7 + 0.6 * random.random())
    return sleep_s


def call_with_retry(
    fn: Callable[[], T],
    *,
    what: str,
    retries: int,
    base_sec: float,
    max_sec: float,
    stop_event: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """
    Run fn(), retrying TransientRpcError up to `retries` extra times.

    Anything else propagates at once. Exhaustion raises RpcError chained to
    the last transient failure.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except TransientRpcError as e:
            attempt += 1
            if attempt > retries:
                raise RpcError(f"{what} failed after {retries} retries: {e}", code=e.code, data=e.data) from e

            sleep_s = backoff_delay(attempt, base_sec=base_sec, max_sec=max_sec)
            log.warning(
                "%s transient error (attempt %d/%d) sleep=%.2fs err=%s",
                what,
                attempt,
                retries,
                sleep_s,
                e,
            )
            if stop_event is not None:
                if stop_event.wait(sleep_s):
                    raise RpcError(f"{what} interrupted by shutdown") from e
            else:
                (sleep or time.sleep)(sleep_s)
