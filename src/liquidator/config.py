# src/liquidator/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml

from src.liquidator.core.errors import FatalConfigError
from src.liquidator.core.models.enums import LiquidationTier
from src.liquidator.core.scheduler.scheduler import POLICIES
from src.liquidator.ledger.solana.instructions import CLEARING_HOUSE_PROGRAM_ID
from src.liquidator.ledger.solana.rpc import DEFAULT_ENDPOINT

COMMITMENTS = ("processed", "confirmed", "finalized")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FatalConfigError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise FatalConfigError(f"Config file {path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise FatalConfigError("Config root must be a mapping (dict).")
    return data


def _as_bool(x: Any, default: bool) -> bool:
    if x is None:
        return default
    if isinstance(x, bool):
        return x
    if isinstance(x, (int, float)):
        return bool(x)
    s = str(x).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    raise FatalConfigError(f"not a boolean: {x!r}")


def _as_int(name: str, x: Any) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        raise FatalConfigError(f"{name} must be an integer, got {x!r}") from None


def _as_float(name: str, x: Any) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        raise FatalConfigError(f"{name} must be a number, got {x!r}") from None


@dataclass
class LiquidatorConfig:
    # --- ledger ---
    rpc_endpoint: str = DEFAULT_ENDPOINT
    program_id: str = CLEARING_HOUSE_PROGRAM_ID
    keypair_path: str = ""
    commitment: str = "processed"

    # --- rpc ---
    rpc_timeout_sec: float = 45.0
    rpc_max_retries: int = 5
    rpc_backoff_base_sec: float = 0.5
    rpc_backoff_max_sec: float = 8.0
    page_size: int = 100

    # --- loop ---
    scan_interval_sec: float = 1.0
    eval_concurrency: int = 8
    submit_concurrency: int = 4

    # --- submission ---
    max_attempts: int = 3
    retry_backoff_sec: float = 0.5
    confirm_timeout_sec: float = 30.0
    confirm_poll_sec: float = 0.5
    skip_preflight: bool = False

    # --- eligibility ---
    safety_margin_bps: int = 0
    liquidation_tier: str = "maintenance"
    prioritization: str = "lowest_ratio"
    settle_funding_on_chain: bool = True
    error_code_offset: int = 6000

    # --- misc ---
    dry_run: bool = False
    notify_telegram: bool = False

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "LiquidatorConfig":
        fields = cls.__dataclass_fields__
        unknown = sorted(k for k in d if k not in fields)
        if unknown:
            raise FatalConfigError(f"unknown config options: {', '.join(unknown)}")

        defaults = cls()
        params: Dict[str, Any] = {}
        for k in fields:
            if k not in d or d[k] is None:
                continue
            v = d[k]
            default = getattr(defaults, k)
            if isinstance(default, bool):
                params[k] = _as_bool(v, default)
            elif isinstance(default, int):
                params[k] = _as_int(k, v)
            elif isinstance(default, float):
                params[k] = _as_float(k, v)
            else:
                params[k] = str(v).strip()

        cfg = cls(**params)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if not self.rpc_endpoint or not self.rpc_endpoint.startswith(("http://", "https://")):
            raise FatalConfigError(f"rpc_endpoint must be an http(s) URL, got {self.rpc_endpoint!r}")
        if not self.program_id:
            raise FatalConfigError("program_id is required")
        if not self.dry_run and not self.keypair_path:
            raise FatalConfigError("keypair_path is required unless dry_run is set")
        if self.commitment not in COMMITMENTS:
            raise FatalConfigError(f"commitment must be one of {COMMITMENTS}, got {self.commitment!r}")
        if self.liquidation_tier not in {t.value for t in LiquidationTier}:
            raise FatalConfigError(f"liquidation_tier must be maintenance or partial, got {self.liquidation_tier!r}")
        if self.prioritization not in POLICIES:
            raise FatalConfigError(f"prioritization must be one of {sorted(POLICIES)}, got {self.prioritization!r}")
        if not (1 <= self.page_size <= 100):
            raise FatalConfigError("page_size must be within 1..100")

        for name in ("eval_concurrency", "submit_concurrency", "max_attempts"):
            if getattr(self, name) < 1:
                raise FatalConfigError(f"{name} must be >= 1")
        for name in ("rpc_max_retries", "safety_margin_bps"):
            if getattr(self, name) < 0:
                raise FatalConfigError(f"{name} must be >= 0")
        for name in ("scan_interval_sec", "rpc_timeout_sec", "confirm_timeout_sec", "confirm_poll_sec"):
            if getattr(self, name) <= 0:
                raise FatalConfigError(f"{name} must be > 0")

    @property
    def tier(self) -> LiquidationTier:
        return LiquidationTier(self.liquidation_tier)


def load_config(path: str | Path | None = None, **overrides: Any) -> LiquidatorConfig:
    """
    YAML file (argument, else LIQUIDATOR_CONFIG env var, else defaults) with
    non-None overrides applied on top.
    """
    raw: Dict[str, Any] = {}
    cfg_path = str(path or os.environ.get("LIQUIDATOR_CONFIG", "")).strip()
    if cfg_path:
        raw = _load_yaml(Path(cfg_path))
        raw = dict(raw.get("liquidator") or raw)

    for k, v in overrides.items():
        if v is not None:
            raw[k] = v
    return LiquidatorConfig.from_dict(raw)
