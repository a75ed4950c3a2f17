import pytest

from src.liquidator.core.errors import FatalConfigError, RpcError, TransientRpcError
from src.liquidator.core.scan.scanner import AccountScanner

from tests.fakes import FakeLedger, make_account, make_market


def _ledger(n: int, page_size: int = 2) -> FakeLedger:
    accounts = [make_account(f"k{i}", collateral=i) for i in range(n)]
    return FakeLedger(accounts, [make_market(0)], page_size=page_size)


@pytest.mark.parametrize("n", [4, 5, 1, 0])
def test_enumerates_every_account_once(n):
    scanner = AccountScanner(_ledger(n), backoff_base_sec=0)

    accounts = scanner.enumerate_accounts()

    assert [a.key for a in accounts] == sorted(f"k{i}" for i in range(n))


def test_scan_assembles_snapshot_at_ledger_slot():
    ledger = _ledger(3)
    ledger.slot = 4242

    snap = AccountScanner(ledger, backoff_base_sec=0).scan()

    assert snap.slot == 4242
    assert len(snap) == 3
    assert 0 in snap.markets
    assert not snap.exchange_paused


def test_snapshot_carries_exchange_pause():
    ledger = _ledger(1)
    ledger.paused = True

    assert AccountScanner(ledger, backoff_base_sec=0).scan().exchange_paused


class _PagedLedger(FakeLedger):
    """Serves a fixed list of (accounts, next_token) pages."""

    def __init__(self, pages):
        super().__init__([], [make_market(0)])
        self.pages = pages
        self.calls: list = []

    def query_accounts(self, page_token):
        self.calls.append(page_token)
        return self.pages[len(self.calls) - 1]


def test_account_repeated_across_pages_is_kept_once():
    a, b, c = (make_account(k, collateral=1) for k in "abc")
    ledger = _PagedLedger([([a, b], "b"), ([b, c], None)])

    accounts = AccountScanner(ledger).enumerate_accounts()

    assert [x.key for x in accounts] == ["a", "b", "c"]
    assert ledger.calls == [None, "b"]


def test_repeated_page_token_is_a_pagination_loop():
    a = make_account("a", collateral=1)
    ledger = _PagedLedger([([a], "a"), ([a], "a")])

    with pytest.raises(RpcError, match="pagination loop"):
        AccountScanner(ledger).enumerate_accounts()


class _FlakyLedger(FakeLedger):
    def __init__(self, failures: int, **kw):
        super().__init__([make_account(k, collateral=1) for k in "abc"], [make_market(0)], **kw)
        self.failures = failures
        self.calls = 0

    def query_accounts(self, page_token):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientRpcError("429 too many requests")
        return super().query_accounts(page_token)


def test_transient_page_failure_is_retried():
    ledger = _FlakyLedger(2)

    accounts = AccountScanner(ledger, max_retries=3, backoff_base_sec=0).enumerate_accounts()

    assert len(accounts) == 3
    assert ledger.calls == 2 + 2  # two failures, then two pages


def test_exhausted_retries_fail_the_whole_scan():
    ledger = _FlakyLedger(10)
    scanner = AccountScanner(ledger, max_retries=2, backoff_base_sec=0)

    with pytest.raises(RpcError) as exc:
        scanner.scan()

    assert not isinstance(exc.value, TransientRpcError)
    assert ledger.calls == 3


def test_non_transient_error_propagates_at_once():
    ledger = _ledger(2)
    ledger.fail_markets = FatalConfigError("no markets")

    with pytest.raises(FatalConfigError):
        AccountScanner(ledger, max_retries=5, backoff_base_sec=0).scan()
