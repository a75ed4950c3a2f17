# src/liquidator/ledger/solana/rpc.py
from __future__ import annotations

import itertools
import logging
import time
from typing import Any

import requests

from src.liquidator.core.errors import RpcError, TransientRpcError

DEFAULT_ENDPOINT = "https://api.mainnet-beta.solana.com"

log = logging.getLogger("liquidator.ledger.solana.rpc")

# JSON-RPC server error codes that mean "try again shortly"
TRANSIENT_RPC_CODES: frozenset[int] = frozenset(
    {
        -32004,  # block not available for slot
        -32005,  # node is unhealthy / behind
        -32007,  # slot skipped / ledger jump
        -32009,  # slot skipped
        -32014,  # block status not yet available
        -32016,  # minimum context slot has not been reached
    }
)

SEND_TX_PREFLIGHT_FAILURE = -32002
SEND_TX_SIGNATURE_VERIFICATION_FAILURE = -32003


class SolanaRpc:
    """
    Solana JSON-RPC 2.0 client over HTTP, with retry/backoff for 429/5xx and
    network errors. JSON-RPC error objects are mapped to RpcError or
    TransientRpcError and are not retried here.
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        *,
        commitment: str = "processed",
        timeout: float = 45.0,
        http_retries: int = 2,
        backoff_base: float = 0.5,
        session: requests.Session | None = None,
    ):
        self.endpoint = endpoint
        self.commitment = commitment
        self.timeout = float(timeout)
        self.http_retries = int(http_retries)
        self.backoff_base = float(backoff_base)

        self.sess = session or requests.Session()
        self.sess.headers.update({"Content-Type": "application/json"})

        self._ids = itertools.count(1)

    # ---------------------------------------------------------------------
    # CORE REQUEST (WITH BACKOFF)
    # ---------------------------------------------------------------------

    def call(self, method: str, params: list[Any] | None = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params or []),
        }

        last_err: Exception | None = None
        attempts = self.http_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                r = self.sess.post(self.endpoint, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                last_err = e
                sleep = self.backoff_base * attempt
                log.warning(
                    "RPC network error (%s), retry %d/%d, sleep %.1fs | %r",
                    method, attempt, attempts, sleep, e,
                )
                time.sleep(sleep)
                continue

            # --- RATE LIMIT / SERVER ERRORS ---
            if r.status_code == 429 or r.status_code >= 500:
                last_err = TransientRpcError(f"HTTP {r.status_code} {method}", code=r.status_code)
                sleep = self.backoff_base * attempt
                log.warning(
                    "RPC HTTP %d (%s), retry %d/%d, sleep %.1fs",
                    r.status_code, method, attempt, attempts, sleep,
                )
                time.sleep(sleep)
                continue

            if r.status_code >= 400:
                raise RpcError(f"RPC HTTP {r.status_code} {method}: {r.text[:500]}", code=r.status_code)

            try:
                body = r.json()
            except ValueError as e:
                raise TransientRpcError(f"RPC {method}: invalid JSON body: {r.text[:200]}") from e

            err = body.get("error")
            if err:
                raise self._map_error(method, err)

            return body.get("result")

        raise TransientRpcError(
            f"RPC {method} failed after {attempts} attempts | last_err={last_err!r}"
        )

    @staticmethod
    def _map_error(method: str, err: dict) -> RpcError:
        code = err.get("code")
        msg = err.get("message") or ""
        data = err.get("data")
        text = f"RPC {method} error {code}: {msg}"
        if code in TRANSIENT_RPC_CODES:
            return TransientRpcError(text, code=code, data=data)
        return RpcError(text, code=code, data=data)

    # ---------------------------------------------------------------------
    # API METHODS
    # ---------------------------------------------------------------------

    def get_program_account_keys(self, program_id: str, discriminator_b64: str) -> tuple[int, list[str]]:
        """Addresses of all program accounts starting with the discriminator (no data)."""
        res = self.call(
            "getProgramAccounts",
            [
                program_id,
                {
                    "commitment": self.commitment,
                    "encoding": "base64",
                    "withContext": True,
                    "dataSlice": {"offset": 0, "length": 0},
                    "filters": [
                        {"memcmp": {"offset": 0, "bytes": discriminator_b64, "encoding": "base64"}},
                    ],
                },
            ],
        )
        slot = int(((res or {}).get("context") or {}).get("slot") or 0)
        keys = [str(item["pubkey"]) for item in ((res or {}).get("value") or [])]
        return slot, keys

    def get_program_accounts(self, program_id: str, discriminator_b64: str) -> tuple[int, list[tuple[str, str]]]:
        """(slot, [(address, base64 data)]) of program accounts starting with the discriminator."""
        res = self.call(
            "getProgramAccounts",
            [
                program_id,
                {
                    "commitment": self.commitment,
                    "encoding": "base64",
                    "withContext": True,
                    "filters": [
                        {"memcmp": {"offset": 0, "bytes": discriminator_b64, "encoding": "base64"}},
                    ],
                },
            ],
        )
        slot = int(((res or {}).get("context") or {}).get("slot") or 0)
        out = []
        for item in (res or {}).get("value") or []:
            data = (item.get("account") or {}).get("data") or ["", "base64"]
            out.append((str(item["pubkey"]), str(data[0])))
        return slot, out

    def get_multiple_accounts(self, keys: list[str], *, min_context_slot: int | None = None) -> tuple[int, list[str | None]]:
        """(slot, [base64 data or None]) in the order of `keys`."""
        cfg: dict[str, Any] = {"commitment": self.commitment, "encoding": "base64"}
        if min_context_slot:
            cfg["minContextSlot"] = int(min_context_slot)

        res = self.call("getMultipleAccounts", [list(keys), cfg])
        slot = int(((res or {}).get("context") or {}).get("slot") or 0)
        out: list[str | None] = []
        for acc in (res or {}).get("value") or []:
            if not acc:
                out.append(None)
                continue
            data = acc.get("data") or ["", "base64"]
            out.append(str(data[0]))
        return slot, out

    def get_latest_blockhash(self) -> str:
        res = self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        return str(((res or {}).get("value") or {})["blockhash"])

    def send_transaction(self, payload_b64: str, *, skip_preflight: bool = False) -> str:
        return str(
            self.call(
                "sendTransaction",
                [
                    payload_b64,
                    {
                        "encoding": "base64",
                        "skipPreflight": bool(skip_preflight),
                        "preflightCommitment": self.commitment,
                        "maxRetries": 0,
                    },
                ],
            )
        )

    def get_signature_statuses(self, signatures: list[str]) -> list[dict | None]:
        res = self.call("getSignatureStatuses", [list(signatures), {"searchTransactionHistory": False}])
        return list((res or {}).get("value") or [])
