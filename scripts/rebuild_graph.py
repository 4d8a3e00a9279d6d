#!/usr/bin/env python
"""Rebuild the book similarity graph from the database.

Recomputes all edges, stores them in book_edges and prints the report.
A running API picks the new edges up on its next startup or nightly rebuild.

Usage:
    python scripts/rebuild_graph.py
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

# Add app to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import get_settings
from app.core.engine import get_engine
from app.db.database import async_session, init_db
from app.ingestion.snapshot_loader import rebuild_and_persist

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


async def main():
    settings = get_settings()
    await init_db()

    report = await rebuild_and_persist(get_engine(), async_session, settings.embedding_model)
    print(json.dumps(report.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
