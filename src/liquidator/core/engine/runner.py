# src/liquidator/core/engine/runner.py
from __future__ import annotations

import logging
import signal
import threading

log = logging.getLogger("liquidator.engine.runner")


def install_signal_handlers(stop_event: threading.Event) -> None:
    def _handler(signum, _frame):
        log.warning("signal %s received, stopping", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run_instances(instances, stop_event: threading.Event) -> None:
    """
    Run each instance loop on its own thread until stop_event is set, then
    stop them, letting in-flight submissions finish.
    """
    threads: list[threading.Thread] = []

    for inst in instances:
        threads.append(inst.start())

    # main thread keeps receiving signals
    while not stop_event.wait(0.5):
        if not any(t.is_alive() for t in threads):
            break

    stop_event.set()
    # the current tick finishes first, then the pools drain
    for t in threads:
        t.join()
    for inst in instances:
        inst.stop(wait=True)
