#!/usr/bin/env python
"""Compute missing or stale book embeddings.

Embeds every book whose text changed since its stored embedding (or that
has none) and writes the vectors to book_embeddings. Books the provider
fails on are skipped and retried on the next run.

Usage:
    python scripts/embed_books.py [--all]
"""

import argparse
import asyncio
import hashlib
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add app to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from app.config import get_settings
from app.core.embedding_client import EmbeddingClient, item_to_embedding_text, refresh_item_embedding
from app.core.engine import get_engine
from app.db.database import async_session, init_db
from app.db.models import BookEmbedding
from app.ingestion.snapshot_loader import load_catalog

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


async def main(force: bool = False) -> int:
    settings = get_settings()
    await init_db()

    engine = get_engine()
    client = EmbeddingClient()
    if not await client.check_health():
        logger.error(f"Embedding provider at {client.base_url} is not reachable")
        return 1

    async with async_session() as db:
        catalog = await load_catalog(db)
        result = await db.execute(
            select(BookEmbedding.book_id, BookEmbedding.text_hash, BookEmbedding.model)
        )
        stored = {book_id: (h, model) for book_id, h, model in result.all()}

    embedded = failed = skipped = 0
    try:
        for item in catalog:
            digest = text_hash(item_to_embedding_text(item))
            if not force and stored.get(item.id) == (digest, settings.embedding_model):
                skipped += 1
                continue

            vector = await refresh_item_embedding(engine.vectors, client, item)
            if vector is None:
                failed += 1
                continue

            async with async_session() as db:
                row = await db.get(BookEmbedding, item.id)
                if row is None:
                    row = BookEmbedding(book_id=item.id)
                    db.add(row)
                row.vector = vector
                row.model = settings.embedding_model
                row.text_hash = digest
                row.computed_at = datetime.utcnow()
                await db.commit()
            embedded += 1
    finally:
        await client.close()

    logger.info(f"Embeddings: {embedded} computed, {skipped} up to date, {failed} failed")
    return 0 if failed == 0 else 2


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--all", action="store_true", help="Re-embed every book")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(force=args.all)))
