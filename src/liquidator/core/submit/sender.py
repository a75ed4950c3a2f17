# src/liquidator/core/submit/sender.py
from __future__ import annotations

import logging
import threading
from typing import Any, Sequence

from src.liquidator.core.errors import TransientRpcError
from src.liquidator.ledger.base import LedgerClient, Signer

log = logging.getLogger("liquidator.submit.sender")


class TransactionSender:
    """
    Blockhash fetch + sign + send for the single credential.

    The lock serializes these steps per signer so transactions leave in the
    order they were signed; confirmation polling happens outside of it.
    """

    def __init__(self, ledger: LedgerClient, signer: Signer):
        self.ledger = ledger
        self.signer = signer
        self._lock = threading.Lock()

    @property
    def pubkey(self) -> str:
        return self.signer.pubkey

    def send(self, instructions: Sequence[Any]) -> str:
        with self._lock:
            blockhash = self.ledger.latest_blockhash()
            signed = self.signer.sign(instructions, blockhash)
            try:
                sig = self.ledger.submit_transaction(signed)
            except TransientRpcError as e:
                # the bytes may still land, so the signature stays attached
                e.signature = e.signature or signed.signature
                raise
        log.debug("sent %s (blockhash=%s)", sig, blockhash)
        return sig
