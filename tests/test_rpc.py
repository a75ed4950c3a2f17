import pytest
import requests

from src.liquidator.core.errors import RpcError, TransientRpcError
from src.liquidator.ledger.solana.rpc import SolanaRpc


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, responses):
        self.headers = {}
        self.responses = list(responses)
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _ok(result):
    return FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": result})


def _err(code, message="boom", data=None):
    return FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message, "data": data}})


def _rpc(*responses, retries=2):
    sess = FakeSession(responses)
    return SolanaRpc("http://node", session=sess, http_retries=retries, backoff_base=0, timeout=3), sess


def test_call_builds_json_rpc_payload():
    rpc, sess = _rpc(_ok(42), _ok(43))

    assert rpc.call("getSlot") == 42
    assert rpc.call("getSlot") == 43

    (url, first, timeout), (_, second, _) = sess.posts
    assert url == "http://node"
    assert timeout == 3.0
    assert first["jsonrpc"] == "2.0" and first["method"] == "getSlot" and first["params"] == []
    assert second["id"] == first["id"] + 1
    assert sess.headers["Content-Type"] == "application/json"


def test_rate_limit_and_network_errors_are_retried():
    rpc, sess = _rpc(FakeResponse(429), requests.ConnectionError("reset"), _ok("done"))
    assert rpc.call("getSlot") == "done"
    assert len(sess.posts) == 3


def test_server_errors_exhaust_as_transient():
    rpc, sess = _rpc(FakeResponse(502), FakeResponse(503), FakeResponse(500))
    with pytest.raises(TransientRpcError):
        rpc.call("getSlot")
    assert len(sess.posts) == 3


def test_client_http_error_is_not_retried():
    rpc, sess = _rpc(FakeResponse(403, text="forbidden"))
    with pytest.raises(RpcError) as exc:
        rpc.call("getSlot")
    assert not isinstance(exc.value, TransientRpcError)
    assert exc.value.code == 403
    assert len(sess.posts) == 1


def test_invalid_json_is_transient():
    rpc, _ = _rpc(FakeResponse(200, None, text="<html>"))
    with pytest.raises(TransientRpcError):
        rpc.call("getSlot")


def test_json_rpc_errors_are_mapped():
    rpc, _ = _rpc(_err(-32005, "node is behind"), _err(-32002, "preflight", {"err": "X"}))

    with pytest.raises(TransientRpcError):
        rpc.call("getMultipleAccounts")

    with pytest.raises(RpcError) as exc:
        rpc.call("sendTransaction")
    assert not isinstance(exc.value, TransientRpcError)
    assert exc.value.code == -32002
    assert exc.value.data == {"err": "X"}


def test_get_multiple_accounts_shapes():
    rpc, sess = _rpc(
        _ok({"context": {"slot": 77}, "value": [{"data": ["AQI=", "base64"]}, None]}),
        _ok({"context": {"slot": 78}, "value": []}),
    )

    slot, datas = rpc.get_multiple_accounts(["k1", "k2"], min_context_slot=70)
    assert slot == 77
    assert datas == ["AQI=", None]
    assert sess.posts[0][1]["params"] == [["k1", "k2"], {"commitment": "processed", "encoding": "base64", "minContextSlot": 70}]

    rpc.get_multiple_accounts(["k3"])
    assert "minContextSlot" not in sess.posts[1][1]["params"][1]


def test_program_account_keys_request_no_data():
    rpc, sess = _rpc(_ok({"context": {"slot": 5}, "value": [{"pubkey": "b"}, {"pubkey": "a"}]}))

    slot, keys = rpc.get_program_account_keys("prog", "AAAA")

    assert (slot, keys) == (5, ["b", "a"])
    cfg = sess.posts[0][1]["params"][1]
    assert cfg["dataSlice"] == {"offset": 0, "length": 0}
    assert cfg["filters"][0]["memcmp"]["bytes"] == "AAAA"


def test_send_transaction_params():
    rpc, sess = _rpc(_ok("sig"))

    assert rpc.send_transaction("AAA=", skip_preflight=True) == "sig"

    payload, cfg = sess.posts[0][1]["params"]
    assert payload == "AAA="
    assert cfg["skipPreflight"] is True
    assert cfg["maxRetries"] == 0
