# src/liquidator/ledger/solana/client.py
from __future__ import annotations

import bisect
import logging
import threading
import time
from typing import Any

from solders.instruction import Instruction

from src.liquidator.core.errors import (
    FatalConfigError,
    LiquidatorError,
    PermanentSubmissionError,
    RpcError,
    StaleStateError,
    TransientRpcError,
)
from src.liquidator.core.models.enums import TxState
from src.liquidator.core.models.ledger import Account, MarketTable, OracleGuardRails, freeze_markets
from src.liquidator.ledger.base import LedgerClient, SignedTransaction, TxStatus
from src.liquidator.ledger.solana import layouts as L
from src.liquidator.ledger.solana.instructions import (
    CLEARING_HOUSE_PROGRAM_ID,
    ProgramAccounts,
    liquidate_ix,
    settle_funding_ix,
)
from src.liquidator.ledger.solana.rpc import (
    SEND_TX_PREFLIGHT_FAILURE,
    SEND_TX_SIGNATURE_VERIFICATION_FAILURE,
    SolanaRpc,
)

log = logging.getLogger("liquidator.ledger.solana.client")

MAX_MULTIPLE_ACCOUNTS = 100

SUFFICIENT_COLLATERAL = 4  # program error index, added to error_code_offset

_TRANSIENT_TX_ERRORS = {"BlockhashNotFound", "AlreadyProcessed", "AccountInUse", "WouldExceedMaxBlockCostLimit"}

_CONFIRMATION_LEVELS = {
    "processed": {"processed", "confirmed", "finalized"},
    "confirmed": {"confirmed", "finalized"},
    "finalized": {"finalized"},
}


def _chunks(items: list[str], n: int):
    for i in range(0, len(items), n):
        yield items[i : i + n]


def classify_transaction_error(
    err: Any,
    *,
    error_code_offset: int,
    logs: list[str] | None = None,
    signature: str | None = None,
) -> LiquidatorError:
    """
    Map a Solana TransactionError (as JSON) to the submission taxonomy.

    Custom program error offset+4 (SufficientCollateral) is the program saying
    the target is not liquidatable from the state it sees now.
    """
    if isinstance(err, str):
        if err in _TRANSIENT_TX_ERRORS:
            return TransientRpcError(f"transaction error {err}", data=err)
        return PermanentSubmissionError(f"transaction error {err}", signature=signature, detail=err)

    if isinstance(err, dict) and "InstructionError" in err:
        ix_err = err["InstructionError"]
        inner = ix_err[1] if isinstance(ix_err, list) and len(ix_err) > 1 else ix_err

        if isinstance(inner, dict) and "Custom" in inner:
            code = int(inner["Custom"])
            if code == error_code_offset + SUFFICIENT_COLLATERAL:
                return StaleStateError(
                    f"program error {code}: sufficient collateral", signature=signature, detail=err
                )
            # oracle guard rails (stale/invalid oracle, mark-oracle spread) clear on their own
            if any("oracle" in line.lower() and "error" in line.lower() for line in (logs or [])):
                return TransientRpcError(f"program error {code}: oracle rejected", code=code, data=err)
            return PermanentSubmissionError(f"program error {code}", signature=signature, detail=err)

        return PermanentSubmissionError(f"instruction error {inner}", signature=signature, detail=err)

    return PermanentSubmissionError(f"transaction error {err!r}", signature=signature, detail=err)


class SolanaLedgerClient(LedgerClient):
    """
    LedgerClient over Solana JSON-RPC for the clearing-house program.

    Account enumeration is keyset-paginated: the first page lists all user
    addresses (keys only) once, sorted; every page token is the last key of
    the previous page and the page data is fetched with getMultipleAccounts.
    """

    name = "solana"

    def __init__(
        self,
        rpc: SolanaRpc,
        *,
        program_id: str = CLEARING_HOUSE_PROGRAM_ID,
        page_size: int = 100,
        error_code_offset: int = 6000,
        skip_preflight: bool = False,
        confirm_poll_sec: float = 0.5,
    ):
        if not (0 < int(page_size) <= MAX_MULTIPLE_ACCOUNTS):
            raise FatalConfigError(f"page_size must be within 1..{MAX_MULTIPLE_ACCOUNTS}, got {page_size}")

        self.rpc = rpc
        self.program_id = str(program_id)
        self.page_size = int(page_size)
        self.error_code_offset = int(error_code_offset)
        self.skip_preflight = bool(skip_preflight)
        self.confirm_poll_sec = float(confirm_poll_sec)

        self.program_accounts: ProgramAccounts | None = None
        self._guard_rails = OracleGuardRails()
        self._exchange_paused = False

        self._user_keys: list[str] = []
        self._slot = 0
        self._slot_lock = threading.Lock()

    # ------------------------------------------------------------------
    # slot tracking
    # ------------------------------------------------------------------

    def _observe(self, slot: int) -> int:
        with self._slot_lock:
            if slot > self._slot:
                self._slot = slot
            return self._slot

    @property
    def last_slot(self) -> int:
        with self._slot_lock:
            return self._slot

    @property
    def oracle_guard_rails(self) -> OracleGuardRails:
        return self._guard_rails

    @property
    def exchange_paused(self) -> bool:
        return self._exchange_paused

    def _set_paused(self, paused: bool) -> None:
        if paused != self._exchange_paused:
            log.warning("Exchange %s", "paused" if paused else "resumed")
        self._exchange_paused = paused

    # ------------------------------------------------------------------
    # startup
    # ------------------------------------------------------------------

    def discover(self, authority: str | None) -> ProgramAccounts:
        """
        Resolve state, markets, vaults, histories and the liquidator's own
        user account. Without an authority (dry run) only the program side is
        resolved.
        """
        slot, states = self.rpc.get_program_accounts(self.program_id, L.b64(L.STATE_DISCRIMINATOR))
        self._observe(slot)
        if len(states) != 1:
            raise FatalConfigError(f"expected one State account for {self.program_id}, found {len(states)}")
        state_key, state_data = states[0]
        state = L.decode_state(L.unb64(state_data))
        # guard rails are taken once, at startup
        self._guard_rails = state.oracle_guard_rails
        self._set_paused(state.exchange_paused)

        own = ""
        if authority:
            own = self._find_user(authority)
            if own is None:
                raise FatalConfigError(f"no clearing-house user account for authority {authority}")

        self.program_accounts = ProgramAccounts(
            program_id=self.program_id,
            state=state_key,
            markets=state.markets,
            collateral_vault=state.collateral_vault,
            collateral_vault_authority=state.collateral_vault_authority,
            insurance_vault=state.insurance_vault,
            insurance_vault_authority=state.insurance_vault_authority,
            trade_history=state.trade_history,
            liquidation_history=state.liquidation_history,
            funding_payment_history=state.funding_payment_history,
            liquidator_authority=authority or "",
            liquidator_user=own,
        )
        log.info(
            "Discovered program accounts: state=%s markets=%s liquidator_user=%s guard_rails=%s",
            state_key,
            state.markets,
            own or "-",
            state.oracle_guard_rails,
        )
        return self.program_accounts

    def _find_user(self, authority: str) -> str | None:
        slot, users = self.rpc.get_program_accounts(self.program_id, L.b64(L.USER_DISCRIMINATOR))
        self._observe(slot)
        for key, data in users:
            try:
                user = L.decode_user(L.unb64(data))
            except L.LayoutError:
                continue
            if user.authority == authority:
                return key
        return None

    def _require_program_accounts(self) -> ProgramAccounts:
        if self.program_accounts is None:
            raise FatalConfigError("program accounts not resolved, call discover() first")
        return self.program_accounts

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def query_accounts(self, page_token: str | None) -> tuple[list[Account], str | None]:
        if page_token is None:
            slot, keys = self.rpc.get_program_account_keys(self.program_id, L.b64(L.USER_DISCRIMINATOR))
            self._observe(slot)
            self._user_keys = sorted(set(keys))
            start = 0
        else:
            start = bisect.bisect_right(self._user_keys, page_token)

        page = self._user_keys[start : start + self.page_size]
        next_token = page[-1] if page and start + self.page_size < len(self._user_keys) else None

        return self._load_accounts(page), next_token

    def _load_accounts(self, keys: list[str]) -> list[Account]:
        if not keys:
            return []

        slot, datas = self.rpc.get_multiple_accounts(keys, min_context_slot=self.last_slot)
        self._observe(slot)

        users: list[tuple[str, L.UserAccount]] = []
        for key, data in zip(keys, datas):
            if data is None:
                continue
            try:
                users.append((key, L.decode_user(L.unb64(data))))
            except L.LayoutError as e:
                log.warning("Skip user %s: %s", key, e)

        if not users:
            return []

        pos_keys = [u.positions for _, u in users]
        slot, pos_datas = self.rpc.get_multiple_accounts(pos_keys, min_context_slot=self.last_slot)
        self._observe(slot)

        out: list[Account] = []
        for (key, user), pdata in zip(users, pos_datas):
            if pdata is None:
                log.warning("Skip user %s: positions account %s missing", key, user.positions)
                continue
            try:
                owner, positions = L.decode_user_positions(L.unb64(pdata))
            except L.LayoutError as e:
                log.warning("Skip user %s: %s", key, e)
                continue
            if owner != key:
                log.warning("Skip user %s: positions account %s belongs to %s", key, user.positions, owner)
                continue
            out.append(L.build_account(key, user, positions))
        return out

    def query_markets(self) -> MarketTable:
        pa = self._require_program_accounts()

        slot, datas = self.rpc.get_multiple_accounts([pa.state, pa.markets], min_context_slot=self.last_slot)
        self._observe(slot)
        if len(datas) != 2 or datas[0] is None or datas[1] is None:
            raise RpcError(f"state {pa.state} or markets {pa.markets} account not found")
        self._set_paused(L.decode_state(L.unb64(datas[0])).exchange_paused)
        raw_markets = L.decode_markets(L.unb64(datas[1]))

        oracle_keys = sorted({m.oracle for m in raw_markets})
        oracles: dict[str, L.OraclePrice | None] = {}
        for chunk in _chunks(oracle_keys, MAX_MULTIPLE_ACCOUNTS):
            slot, odatas = self.rpc.get_multiple_accounts(chunk)
            self._observe(slot)
            for key, odata in zip(chunk, odatas):
                if odata is None:
                    oracles[key] = None
                    continue
                try:
                    oracles[key] = L.decode_pyth_price(L.unb64(odata))
                except L.LayoutError as e:
                    log.debug("Oracle %s unusable: %s", key, e)
                    oracles[key] = None

        # validity is judged at the newest slot seen, which becomes the snapshot slot
        clock = self.last_slot
        return freeze_markets(
            [L.to_market(m, oracles.get(m.oracle), self._guard_rails, clock) for m in raw_markets]
        )

    def fetch_account(self, key: str) -> Account:
        accounts = self._load_accounts([key])
        if not accounts:
            raise RpcError(f"user account {key} not found or undecodable")
        return accounts[0]

    def latest_blockhash(self) -> str:
        return self.rpc.get_latest_blockhash()

    # ------------------------------------------------------------------
    # instructions
    # ------------------------------------------------------------------

    def liquidate_instruction(self, account: Account, markets: MarketTable) -> Instruction:
        return liquidate_ix(self._require_program_accounts(), account, markets)

    def settle_funding_instruction(self, account: Account) -> Instruction:
        return settle_funding_ix(self._require_program_accounts(), account)

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def submit_transaction(self, signed_tx: SignedTransaction) -> str:
        try:
            sig = self.rpc.send_transaction(L.b64(signed_tx.payload), skip_preflight=self.skip_preflight)
        except TransientRpcError:
            raise
        except RpcError as e:
            raise self._classify_send_error(e, signed_tx.signature) from e
        return sig or signed_tx.signature

    def _classify_send_error(self, e: RpcError, signature: str) -> LiquidatorError:
        if e.code == SEND_TX_SIGNATURE_VERIFICATION_FAILURE:
            return PermanentSubmissionError(str(e), signature=signature, detail=e.data)

        if e.code == SEND_TX_PREFLIGHT_FAILURE and isinstance(e.data, dict):
            return classify_transaction_error(
                e.data.get("err"),
                error_code_offset=self.error_code_offset,
                logs=e.data.get("logs") or [],
                signature=signature,
            )

        return PermanentSubmissionError(str(e), signature=signature, detail=e.data)

    def confirm(self, signature: str, timeout: float) -> TxStatus:
        """
        Poll getSignatureStatuses until the commitment is reached, the
        transaction fails, or `timeout` elapses. For FAILED the status error
        is the classified exception.
        """
        wanted = _CONFIRMATION_LEVELS.get(self.rpc.commitment, _CONFIRMATION_LEVELS["confirmed"])
        deadline = time.monotonic() + float(timeout)

        while True:
            try:
                statuses = self.rpc.get_signature_statuses([signature])
            except TransientRpcError as e:
                log.debug("confirm %s: status poll failed: %s", signature, e)
                statuses = []

            st = statuses[0] if statuses else None
            if st:
                slot = st.get("slot")
                if slot:
                    self._observe(int(slot))
                if st.get("err"):
                    err = classify_transaction_error(
                        st["err"], error_code_offset=self.error_code_offset, signature=signature
                    )
                    return TxStatus(TxState.FAILED, signature, slot=slot, error=err)
                if (st.get("confirmationStatus") or "processed") in wanted:
                    return TxStatus(TxState.CONFIRMED, signature, slot=slot)

            if time.monotonic() >= deadline:
                return TxStatus(TxState.TIMEOUT, signature)
            time.sleep(self.confirm_poll_sec)
