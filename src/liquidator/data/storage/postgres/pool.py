# src/liquidator/data/storage/postgres/pool.py
from __future__ import annotations

from psycopg_pool import ConnectionPool


def create_pool(dsn: str, *, max_size: int = 4, name: str = "liquidator-journal") -> ConnectionPool:
    """Pool for the outcome journal; only submission workers write to it."""
    return ConnectionPool(
        conninfo=dsn,
        min_size=1,
        max_size=max_size,
        name=name,
        open=True,
        kwargs={"autocommit": False, "prepare_threshold": 0},
    )
