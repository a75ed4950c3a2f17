import pytest

from src.liquidator.core.margin.evaluator import MarginEvaluator
from src.liquidator.core.models.enums import LiquidationType
from src.liquidator.core.models.ledger import OracleGuardRails, freeze_markets
from src.liquidator.ledger.solana import layouts as L

from tests.chain_data import pack_markets, pack_positions, pack_pyth, pack_state, pack_user, pk
from tests.fakes import BASE_RESERVE, PEG, SQRT_K, make_account

Q_1100 = 8_011_000_000_000_000_000


def test_user_roundtrip_fields():
    user = L.decode_user(pack_user(pk(1), 123_456_789, pk(2)))
    assert user.authority == pk(1)
    assert user.collateral == 123_456_789
    assert user.positions == pk(2)


def test_wrong_discriminator_is_rejected():
    data = pack_user(pk(1), 1, pk(2))
    with pytest.raises(L.LayoutError):
        L.decode_state(data)
    with pytest.raises(L.LayoutError):
        L.decode_user(data[:60])


def test_positions_skip_empty_slots_and_keep_sign():
    data = pack_positions(
        pk(3),
        [
            (0, 25 * 10**17, 1_200_000_000, 7, 1700),
            (1, 0, 0, 0, 0),
            (2, -(10**18), 50_000_000, -3, 1800),
        ],
    )

    owner, positions = L.decode_user_positions(data)

    assert owner == pk(3)
    assert [p.market_index for p in positions] == [0, 2]
    assert positions[0].base_asset_amount == 25 * 10**17
    assert positions[0].last_cumulative_funding_rate == 7
    assert positions[0].last_funding_rate_ts == 1700
    assert positions[1].base_asset_amount == -(10**18)
    assert positions[1].last_cumulative_funding_rate == -3


def test_positions_with_odd_size_are_rejected():
    data = pack_positions(pk(3), [])
    with pytest.raises(L.LayoutError):
        L.decode_user_positions(data + b"\x00")


def test_markets_decode_initialized_entries_only():
    data = pack_markets(
        {
            0: dict(oracle=pk(40), base_reserve=10**19, quote_reserve=8 * 10**18, sqrt_k=10**19, peg=1000, cum_long=5, cum_short=-5, last_ts=99),
            3: dict(oracle=pk(43), base_reserve=2, quote_reserve=3, sqrt_k=4, peg=5, margins=(1000, 500, 250)),
        }
    )

    markets = L.decode_markets(data)

    assert [m.index for m in markets] == [0, 3]
    m0, m3 = markets
    assert m0.oracle == pk(40)
    assert (m0.base_asset_reserve, m0.quote_asset_reserve) == (10**19, 8 * 10**18)
    assert (m0.cumulative_funding_rate_long, m0.cumulative_funding_rate_short) == (5, -5)
    assert m0.last_funding_rate_ts == 99
    assert (m0.sqrt_k, m0.peg_multiplier) == (10**19, 1000)
    assert (m0.margin_ratio_initial, m0.margin_ratio_partial, m0.margin_ratio_maintenance) == (2000, 625, 500)
    assert (m3.margin_ratio_partial, m3.margin_ratio_maintenance) == (500, 250)


def test_state_addresses_and_guard_rails():
    keys = {"markets": pk(9), "collateral_vault": pk(4), "insurance_vault": pk(6), "liquidation_history": pk(8)}
    state = L.decode_state(pack_state(keys, divergence=(1, 20), validity=(25, 10, 3)))

    assert state.markets == pk(9)
    assert state.collateral_vault == pk(4)
    assert state.insurance_vault == pk(6)
    assert state.liquidation_history == pk(8)
    assert not state.exchange_paused
    assert state.oracle_guard_rails == OracleGuardRails(
        mark_oracle_divergence_numerator=1,
        mark_oracle_divergence_denominator=20,
        slots_before_stale=25,
        confidence_interval_max_size=10,
        too_volatile_ratio=3,
    )
    assert L.decode_state(pack_state(keys, paused=True)).exchange_paused


def test_pyth_price_is_scaled_to_mark_precision():
    price = L.decode_pyth_price(pack_pyth(12_345_678_900, expo=-8, conf=100_000_000, valid_slot=77))
    assert price.price == 1_234_567_890_000
    assert price.confidence == 10_000_000_000
    assert price.valid_slot == 77
    assert price.delay(100) == 23

    with pytest.raises(L.LayoutError):
        L.decode_pyth_price(b"\x00" * 240)


# $123.456789 at expo -8 and 1e10 mark precision
RAW_PRICE = 12_345_678_900
PRICE = 1_234_567_890_000


def _raw_market(twap: int = PRICE):
    data = pack_markets({0: dict(oracle=pk(40), base_reserve=1, quote_reserve=1, sqrt_k=1, peg=1, twap=twap)})
    return L.decode_markets(data)[0]


@pytest.mark.parametrize(
    "pyth, twap, slot, valid",
    [
        (dict(), PRICE, 1500, True),
        (dict(status=0), PRICE, 1500, True),  # the program ignores the trading status
        (dict(), PRICE, 2000, True),  # delay == slots_before_stale
        (dict(), PRICE, 2001, False),  # stale
        (dict(conf=RAW_PRICE), PRICE, 1500, False),  # price / conf below the max size
        (dict(conf=RAW_PRICE // 4), PRICE, 1500, True),
        (dict(), PRICE // 6, 1500, False),  # too volatile against the twap
        (dict(), PRICE * 6, 1500, False),
        (dict(), PRICE * 5, 1500, True),
        (dict(price=-RAW_PRICE), PRICE, 1500, False),
    ],
)
def test_to_market_applies_oracle_validity_rails(pyth, twap, slot, valid):
    params = dict(price=RAW_PRICE, valid_slot=1000)
    params.update(pyth)
    oracle = L.decode_pyth_price(pack_pyth(params.pop("price"), **params))

    market = L.to_market(_raw_market(twap), oracle, OracleGuardRails(), slot)

    assert market.oracle_valid is valid


def test_to_market_without_oracle():
    market = L.to_market(_raw_market(), None, OracleGuardRails(), 1000)
    assert market.oracle_price is None
    assert not market.oracle_valid


def test_oracle_with_wide_confidence_does_not_rescue_a_sick_account():
    # scenario B (50e6 on a $1100 long); a better oracle would lift it above maintenance
    raw = L.decode_markets(
        pack_markets({0: dict(oracle=pk(40), base_reserve=BASE_RESERVE, quote_reserve=Q_1100, sqrt_k=SQRT_K, peg=PEG, twap=8_800_000_000)})
    )[0]
    account = make_account("B", collateral=50_000_000, quote=1_100_000_000)
    rails = OracleGuardRails()
    evaluator = MarginEvaluator(rails)

    def status(oracle):
        return evaluator.evaluate(account, freeze_markets([L.to_market(raw, oracle, rails, 1000)]))

    amm_only = status(None)
    tight = status(L.decode_pyth_price(pack_pyth(88_000_000, conf=10_000)))
    wide = status(L.decode_pyth_price(pack_pyth(88_000_000, conf=88_000_000)))

    assert amm_only.liquidation_type == LiquidationType.FULL
    assert tight.liquidation_type == LiquidationType.NONE
    assert wide == amm_only
