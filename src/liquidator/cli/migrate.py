# src/liquidator/cli/migrate.py
from pathlib import Path
import logging
import os

from dotenv import load_dotenv

from src.liquidator.data.storage.postgres.pool import create_pool
from src.liquidator.data.storage.postgres.storage import PostgreSQLStorage

DDL_PATH = Path(__file__).resolve().parents[1] / "data" / "storage" / "postgres" / "ddl.sql"


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    dsn = os.getenv("PG_DSN")
    if not dsn:
        raise SystemExit("PG_DSN env var is required")

    pool = create_pool(dsn)
    store = PostgreSQLStorage(pool)

    ddl_sql = DDL_PATH.read_text(encoding="utf-8")
    store.exec_ddl(ddl_sql)
    pool.close()


if __name__ == "__main__":
    main()
