import json

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from src.liquidator.core.errors import FatalConfigError
from src.liquidator.core.models.ledger import Account, Position, freeze_markets
from src.liquidator.ledger.solana.instructions import (
    LIQUIDATE_DISCRIMINATOR,
    SETTLE_FUNDING_DISCRIMINATOR,
    SPL_TOKEN_PROGRAM_ID,
    ProgramAccounts,
    instruction_discriminator,
    liquidate_ix,
    settle_funding_ix,
)
from src.liquidator.ledger.solana.signer import KeypairSigner, load_keypair

from tests.chain_data import pk
from tests.fakes import make_market

PA = ProgramAccounts(
    program_id=pk(200),
    state=pk(201),
    markets=pk(202),
    collateral_vault=pk(203),
    collateral_vault_authority=pk(208),
    insurance_vault=pk(204),
    insurance_vault_authority=pk(209),
    trade_history=pk(205),
    liquidation_history=pk(206),
    funding_payment_history=pk(207),
    liquidator_authority=pk(250),
    liquidator_user=pk(251),
)

ACCOUNT = Account(
    key=pk(10),
    authority=pk(110),
    positions_key=pk(60),
    collateral=1,
    positions=(
        Position(market_index=1, base_asset_amount=10**18, quote_asset_amount=1, last_cumulative_funding_rate=0),
        Position(market_index=0, base_asset_amount=-(10**18), quote_asset_amount=1, last_cumulative_funding_rate=0),
    ),
)

MARKETS = freeze_markets([make_market(0, oracle=pk(240)), make_market(1, oracle=pk(241))])


def _meta(ix, i):
    m = ix.accounts[i]
    return str(m.pubkey), m.is_signer, m.is_writable


def test_liquidate_account_order_and_flags():
    ix = liquidate_ix(PA, ACCOUNT, MARKETS)

    assert ix.program_id == Pubkey.from_string(pk(200))
    assert bytes(ix.data) == LIQUIDATE_DISCRIMINATOR == bytes.fromhex("dfb3e27d302e274a")
    assert [_meta(ix, i) for i in range(len(ix.accounts))] == [
        (pk(201), False, False),
        (pk(250), True, False),
        (pk(251), False, True),
        (pk(10), False, True),
        (pk(203), False, True),
        (pk(208), False, False),
        (pk(204), False, True),
        (pk(209), False, False),
        (SPL_TOKEN_PROGRAM_ID, False, False),
        (pk(202), False, True),
        (pk(60), False, True),
        (pk(205), False, True),
        (pk(206), False, True),
        (pk(207), False, True),
        # one oracle per open position, in position order
        (pk(241), False, False),
        (pk(240), False, False),
    ]


def test_settle_funding_accounts():
    ix = settle_funding_ix(PA, ACCOUNT)

    assert bytes(ix.data) == SETTLE_FUNDING_DISCRIMINATOR == instruction_discriminator("settle_funding_payment")
    assert [_meta(ix, i) for i in range(len(ix.accounts))] == [
        (pk(201), False, False),
        (pk(10), False, True),
        (pk(202), False, False),
        (pk(60), False, True),
        (pk(207), False, True),
    ]


def _write_keypair(tmp_path, data):
    path = tmp_path / "id.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_keypair_file_roundtrip(tmp_path):
    kp = Keypair()
    path = _write_keypair(tmp_path, list(bytes(kp)))

    assert load_keypair(path).pubkey() == kp.pubkey()
    assert KeypairSigner.from_file(path).pubkey == str(kp.pubkey())


@pytest.mark.parametrize("content", [[1, 2, 3], {"a": 1}, [256] * 64])
def test_bad_keypair_file_is_fatal(tmp_path, content):
    with pytest.raises(FatalConfigError):
        load_keypair(_write_keypair(tmp_path, content))


def test_missing_or_unparsable_keypair_is_fatal(tmp_path):
    with pytest.raises(FatalConfigError):
        load_keypair(tmp_path / "missing.json")

    path = tmp_path / "broken.json"
    path.write_text("not json", encoding="utf-8")
    with pytest.raises(FatalConfigError):
        load_keypair(path)


def test_signer_produces_fee_paid_signed_transaction():
    kp = Keypair()
    signer = KeypairSigner(kp)
    blockhash = str(Hash.new_unique())

    signed = signer.sign([settle_funding_ix(PA, ACCOUNT)], blockhash)

    tx = Transaction.from_bytes(signed.payload)
    assert str(tx.signatures[0]) == signed.signature
    assert tx.message.account_keys[0] == kp.pubkey()
    assert str(tx.message.recent_blockhash) == blockhash
