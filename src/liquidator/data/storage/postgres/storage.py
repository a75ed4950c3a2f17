# src/liquidator/data/storage/postgres/storage.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from psycopg_pool import ConnectionPool

from src.liquidator.core.models.candidate import SubmissionResult

logger = logging.getLogger("liquidator.storage")


def _ts(unix: float) -> datetime:
    return datetime.fromtimestamp(float(unix), tz=timezone.utc)


def outcome_row(result: SubmissionResult, *, liquidator: str | None = None) -> dict:
    return {
        "account_key": result.account_key,
        "outcome": result.outcome.value,
        "attempts": int(result.attempts),
        "margin_ratio": result.margin_ratio,
        "slot": result.slot,
        "signature": result.signature,
        "error": (result.error or None) and str(result.error)[:2000],
        "liquidator": liquidator,
        "finished_at": _ts(result.finished_at),
    }


class PostgreSQLStorage:
    """
    PostgreSQL journal of terminal liquidation outcomes.
    """

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    # ======================================================================
    # HELPERS
    # ======================================================================

    def _exec_many(self, query: str, rows: list[dict]) -> int:
        if not rows:
            return 0
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.executemany(query, rows)
            conn.commit()
        return len(rows)

    def exec_ddl(self, ddl_sql: str) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(ddl_sql)
            conn.commit()
        logger.info("DDL applied")

    # ======================================================================
    # LIQUIDATION OUTCOMES
    # ======================================================================

    _INSERT_OUTCOME = """
        INSERT INTO liquidation_outcomes (
            account_key, outcome, attempts, margin_ratio, slot,
            signature, error, liquidator, finished_at
        )
        VALUES (
            %(account_key)s, %(outcome)s, %(attempts)s, %(margin_ratio)s, %(slot)s,
            %(signature)s, %(error)s, %(liquidator)s, %(finished_at)s
        )
        ON CONFLICT DO NOTHING
    """

    def insert_liquidation_outcome(self, row: Mapping[str, Any]) -> int:
        return self._exec_many(self._INSERT_OUTCOME, [dict(row)])

