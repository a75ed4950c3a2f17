# src/liquidator/run_liquidator.py
from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from typing import Optional, Sequence

from dotenv import load_dotenv

from src.liquidator.config import LiquidatorConfig, load_config
from src.liquidator.core.engine.instance import LiquidatorInstance
from src.liquidator.core.engine.reporter import OutcomeReporter
from src.liquidator.core.engine.runner import install_signal_handlers, run_instances
from src.liquidator.core.errors import FatalConfigError, RpcError
from src.liquidator.core.funding.settler import FundingSettler
from src.liquidator.core.margin.evaluator import MarginEvaluator
from src.liquidator.core.scan.scanner import AccountScanner
from src.liquidator.core.scheduler.scheduler import LiquidationScheduler, policy_by_name
from src.liquidator.core.submit.sender import TransactionSender
from src.liquidator.core.submit.submitter import CandidateRefresher, TransactionSubmitter
from src.liquidator.data.storage.postgres.pool import create_pool
from src.liquidator.data.storage.postgres.storage import PostgreSQLStorage
from src.liquidator.ledger.solana.client import SolanaLedgerClient
from src.liquidator.ledger.solana.layouts import LayoutError
from src.liquidator.ledger.solana.rpc import SolanaRpc
from src.liquidator.ledger.solana.signer import KeypairSigner
from src.liquidator.notifications.telegram import resolve_targets_from_env

log = logging.getLogger("liquidator.run")


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="run_liquidator", description="Clearing-house liquidator agent")
    p.add_argument("-c", "--config", help="YAML config (default: $LIQUIDATOR_CONFIG)")
    p.add_argument("-e", "--endpoint", help="RPC endpoint, overrides rpc_endpoint")
    p.add_argument("-k", "--keypath", help="keypair file, overrides keypair_path")
    p.add_argument("-v", "--verbose", action="store_true", help="DEBUG logging")
    p.add_argument("--dry-run", action="store_true", default=None, help="evaluate only, never submit")
    return p.parse_args(argv)


def _build_reporter(cfg: LiquidatorConfig, liquidator: Optional[str]) -> OutcomeReporter:
    storage = None
    dsn = os.environ.get("PG_DSN", "").strip()
    if dsn:
        storage = PostgreSQLStorage(create_pool(dsn))
        log.info("Outcome journal enabled (PG_DSN)")

    targets = []
    if cfg.notify_telegram:
        targets = resolve_targets_from_env()
        if not targets:
            log.warning("notify_telegram is on but TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID are not set")

    return OutcomeReporter(storage=storage, telegram_targets=targets, liquidator=liquidator)


def build_instance(cfg: LiquidatorConfig, stop_event: threading.Event) -> LiquidatorInstance:
    rpc = SolanaRpc(cfg.rpc_endpoint, commitment=cfg.commitment, timeout=cfg.rpc_timeout_sec)
    ledger = SolanaLedgerClient(
        rpc,
        program_id=cfg.program_id,
        page_size=cfg.page_size,
        error_code_offset=cfg.error_code_offset,
        skip_preflight=cfg.skip_preflight,
        confirm_poll_sec=cfg.confirm_poll_sec,
    )

    signer = KeypairSigner.from_file(cfg.keypair_path) if cfg.keypair_path else None
    authority = signer.pubkey if signer is not None else None
    try:
        ledger.discover(authority)
    except (RpcError, LayoutError) as e:
        raise FatalConfigError(f"cannot resolve program accounts via {cfg.rpc_endpoint}: {e}") from e

    sender = TransactionSender(ledger, signer) if signer is not None else None
    evaluator = MarginEvaluator(ledger.oracle_guard_rails)
    retry = dict(
        max_retries=cfg.rpc_max_retries,
        backoff_base_sec=cfg.rpc_backoff_base_sec,
        backoff_max_sec=cfg.rpc_backoff_max_sec,
    )

    scanner = AccountScanner(ledger, stop_event=stop_event, **retry)
    settler = FundingSettler(ledger, sender, on_chain=cfg.settle_funding_on_chain and not cfg.dry_run)
    scheduler = LiquidationScheduler(policy_by_name(cfg.prioritization))

    submitter = None
    if not cfg.dry_run:
        refresher = CandidateRefresher(
            ledger,
            evaluator,
            tier=cfg.tier,
            safety_margin_bps=cfg.safety_margin_bps,
            **retry,
        )
        submitter = TransactionSubmitter(
            ledger,
            sender,
            refresher,
            max_attempts=cfg.max_attempts,
            retry_backoff_sec=cfg.retry_backoff_sec,
            confirm_timeout_sec=cfg.confirm_timeout_sec,
            reporter=_build_reporter(cfg, signer.pubkey),
        )

    return LiquidatorInstance(
        scanner=scanner,
        settler=settler,
        evaluator=evaluator,
        scheduler=scheduler,
        submitter=submitter,
        tier=cfg.tier,
        safety_margin_bps=cfg.safety_margin_bps,
        scan_interval_sec=cfg.scan_interval_sec,
        eval_concurrency=cfg.eval_concurrency,
        submit_concurrency=cfg.submit_concurrency,
        dry_run=cfg.dry_run,
        stop_event=stop_event,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)

    # .env first, explicit env vars win
    load_dotenv(override=False)

    logging.basicConfig(
        level="DEBUG" if args.verbose else os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    log.info("=== RUN LIQUIDATOR START ===")

    try:
        cfg = load_config(
            args.config,
            rpc_endpoint=args.endpoint,
            keypair_path=args.keypath,
            dry_run=args.dry_run,
        )
        log.info("program id %s endpoint %s", cfg.program_id, cfg.rpc_endpoint)
        log.warning("DRY_RUN=%s (%s)", cfg.dry_run, "NO TRANSACTIONS" if cfg.dry_run else "LIQUIDATIONS ENABLED")

        stop_event = threading.Event()
        instance = build_instance(cfg, stop_event)
    except FatalConfigError as e:
        log.error("fatal configuration error: %s", e)
        return 2

    install_signal_handlers(stop_event)
    run_instances([instance], stop_event)

    reporter = getattr(instance.submitter, "reporter", None)
    if reporter is not None:
        log.info("outcomes: %s", reporter.summary())
    log.info("=== RUN LIQUIDATOR STOP ===")
    return 0


if __name__ == "__main__":
    sys.exit(main())
