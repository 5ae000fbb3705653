# app/db/init_db.py
from __future__ import annotations

import argparse
import logging

from sqlalchemy import inspect

from app.core.logging import setup_logging
from app.db.session import engine
from app.db.base import Base

logger = logging.getLogger(__name__)


def run(fresh: bool = False) -> None:
    if fresh:
        logger.warning("Dropping ALL ledger tables (dev only) ...")
        Base.metadata.drop_all(bind=engine)

    logger.info("Creating all missing tables ...")
    Base.metadata.create_all(bind=engine)

    logger.info("Existing tables: %s", sorted(inspect(engine).get_table_names()))


if __name__ == "__main__":
    setup_logging()
    parser = argparse.ArgumentParser(
        description="Initialize ledger DB (create tables).")
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Drop & recreate all tables (DEV ONLY).",
    )
    args = parser.parse_args()
    run(fresh=args.fresh)
