#!/usr/bin/env python3
"""Database bootstrap: wait for the database, then `alembic upgrade head`.

If migrations fail, fail fast (don't start with an unknown schema).
"""
import logging
import os
import sys
import time

from alembic import command
from alembic.config import Config

from core.database import check_db_connection

logger = logging.getLogger(__name__)


def get_alembic_config() -> Config:
    here = os.path.dirname(os.path.abspath(__file__))
    return Config(os.path.join(here, "alembic.ini"))


def wait_for_db(max_attempts: int = 30, delay_s: float = 2.0) -> bool:
    for attempt in range(1, max_attempts + 1):
        if check_db_connection():
            return True
        logger.info(f"Database not ready (attempt {attempt}/{max_attempts}), retrying in {delay_s}s")
        time.sleep(delay_s)
    return False


def main() -> int:
    if not wait_for_db():
        logger.error("Database never became ready; aborting migrations")
        return 1
    command.upgrade(get_alembic_config(), "head")
    logger.info("Migrations applied")
    return 0


if __name__ == "__main__":
    sys.exit(main())
