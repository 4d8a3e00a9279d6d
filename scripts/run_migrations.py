#!/usr/bin/env python
"""Apply pending Alembic migrations (run before starting the API)."""

import logging
import sys
from pathlib import Path

# Add parent directory to path
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from alembic.config import Config
from alembic import command

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def run_migrations() -> bool:
    """Upgrade the library schema to head."""
    try:
        logger.info("Applying library schema migrations")
        command.upgrade(Config(str(ROOT / "alembic.ini")), "head")
        logger.info("Library schema is up to date")
        return True
    except Exception as e:
        logger.error(f"Migration failed: {e}", exc_info=True)
        return False


if __name__ == "__main__":
    sys.exit(0 if run_migrations() else 1)
