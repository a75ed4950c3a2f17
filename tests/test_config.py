import pytest

from src.liquidator.config import LiquidatorConfig, load_config
from src.liquidator.core.errors import FatalConfigError
from src.liquidator.core.models.enums import LiquidationTier


def test_defaults_need_a_keypair():
    with pytest.raises(FatalConfigError, match="keypair_path"):
        LiquidatorConfig.from_dict({})

    cfg = LiquidatorConfig.from_dict({"dry_run": True})
    assert cfg.commitment == "processed"
    assert cfg.max_attempts == 3
    assert cfg.tier == LiquidationTier.MAINTENANCE


def test_values_are_coerced_by_default_type():
    cfg = LiquidatorConfig.from_dict(
        {
            "keypair_path": "id.json",
            "page_size": "50",
            "scan_interval_sec": "2",
            "skip_preflight": "yes",
            "settle_funding_on_chain": "off",
            "liquidation_tier": " partial ",
        }
    )

    assert cfg.page_size == 50
    assert cfg.scan_interval_sec == 2.0
    assert cfg.skip_preflight is True
    assert cfg.settle_funding_on_chain is False
    assert cfg.tier == LiquidationTier.PARTIAL


@pytest.mark.parametrize(
    "override",
    [
        {"rpc_endpoint": "ws://node"},
        {"commitment": "recent"},
        {"liquidation_tier": "full"},
        {"prioritization": "random"},
        {"page_size": 0},
        {"page_size": 101},
        {"submit_concurrency": 0},
        {"confirm_timeout_sec": 0},
        {"max_attempts": "three"},
        {"dry_run": "maybe"},
        {"no_such_option": 1},
    ],
)
def test_invalid_options_are_fatal(override):
    with pytest.raises(FatalConfigError):
        LiquidatorConfig.from_dict({"keypair_path": "id.json", **override})


def test_yaml_under_liquidator_key(write_yaml):
    path = write_yaml("cfg.yaml", {"liquidator": {"keypair_path": "k.json", "submit_concurrency": 2}})

    cfg = load_config(path)

    assert cfg.keypair_path == "k.json"
    assert cfg.submit_concurrency == 2


def test_env_var_and_overrides(write_yaml, monkeypatch):
    path = write_yaml("cfg.yaml", {"keypair_path": "k.json", "rpc_endpoint": "https://a"})
    monkeypatch.setenv("LIQUIDATOR_CONFIG", str(path))

    cfg = load_config(rpc_endpoint="https://b", keypair_path=None, dry_run=True)

    assert cfg.rpc_endpoint == "https://b"
    assert cfg.keypair_path == "k.json"
    assert cfg.dry_run is True


def test_missing_or_bad_yaml_is_fatal(tmp_path, write_yaml):
    with pytest.raises(FatalConfigError):
        load_config(tmp_path / "missing.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("liquidator: [unclosed", encoding="utf-8")
    with pytest.raises(FatalConfigError):
        load_config(bad)

    with pytest.raises(FatalConfigError):
        load_config(write_yaml("list.yaml", [1, 2]))
