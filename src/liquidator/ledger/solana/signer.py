# src/liquidator/ledger/solana/signer.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.transaction import Transaction

from src.liquidator.core.errors import FatalConfigError
from src.liquidator.ledger.base import SignedTransaction

log = logging.getLogger("liquidator.ledger.solana.signer")


def load_keypair(path: str | Path) -> Keypair:
    """Solana CLI keypair file: a JSON array of 64 byte values."""
    p = Path(path).expanduser()
    if not p.exists():
        raise FatalConfigError(f"keypair file not found: {p}")

    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise FatalConfigError(f"keypair file unreadable: {p}: {e}") from e

    if not isinstance(raw, list) or len(raw) != 64:
        raise FatalConfigError(f"keypair file must hold a JSON array of 64 bytes: {p}")

    try:
        return Keypair.from_bytes(bytes(int(b) for b in raw))
    except (TypeError, ValueError) as e:
        raise FatalConfigError(f"invalid keypair bytes in {p}: {e}") from e


class KeypairSigner:
    """Signs legacy transactions with one keypair, which is also the fee payer."""

    def __init__(self, keypair: Keypair):
        self._kp = keypair

    @classmethod
    def from_file(cls, path: str | Path) -> "KeypairSigner":
        signer = cls(load_keypair(path))
        log.info("Loaded signer %s", signer.pubkey)
        return signer

    @property
    def pubkey(self) -> str:
        return str(self._kp.pubkey())

    def sign(self, instructions: Sequence[Instruction], blockhash: str) -> SignedTransaction:
        msg = Message(list(instructions), self._kp.pubkey())
        tx = Transaction([self._kp], msg, Hash.from_string(blockhash))
        return SignedTransaction(signature=str(tx.signatures[0]), payload=bytes(tx))
