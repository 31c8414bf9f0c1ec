from __future__ import annotations

import structlog
from alembic import command
from alembic.config import Config

from gearguard.infra.logging import setup_logging

logger = structlog.get_logger(__name__)


def run_upgrade_head() -> None:
    config = Config("alembic.ini")
    logger.info("migrations.upgrade", target="head")
    command.upgrade(config, "head")


if __name__ == "__main__":
    setup_logging()
    run_upgrade_head()
