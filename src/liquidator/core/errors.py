# src/liquidator/core/errors.py
from __future__ import annotations


class LiquidatorError(Exception):
    """Base class for every error raised by the liquidator."""


class FatalConfigError(LiquidatorError):
    """Missing/invalid credential, endpoint or option. Aborts the process at startup."""


class MarginMathError(LiquidatorError):
    """The program's arithmetic cannot be replicated for an account (bad reference, overflow)."""


# ----------------------------------------------------------------------
# remote ledger
# ----------------------------------------------------------------------

class RpcError(LiquidatorError):
    """RPC call failed. Raised as-is once retries are exhausted."""

    def __init__(self, message: str, *, code: int | None = None, data=None, signature: str | None = None):
        super().__init__(message)
        self.code = code
        self.data = data
        self.signature = signature


class TransientRpcError(RpcError):
    """Timeout, congestion, rate limit, node behind. Safe to retry with backoff."""


# ----------------------------------------------------------------------
# submission outcomes
# ----------------------------------------------------------------------

class SubmissionError(LiquidatorError):
    def __init__(self, message: str, *, signature: str | None = None, detail=None):
        super().__init__(message)
        self.signature = signature
        self.detail = detail


class StaleStateError(SubmissionError):
    """The program rejected the liquidation because the account state moved since the snapshot."""


class RaceLostError(SubmissionError):
    """Another agent reduced the account's positions first. Informational, never retried."""


class PermanentSubmissionError(SubmissionError):
    """Signature/authorization/fee-payer fault. The candidate is abandoned."""
