"""
Load the engine's in-memory state from the database.

Startup publishes the stored edge set (or rebuilds when none is stored yet).
The admin rebuild endpoint and the nightly job call rebuild_and_persist().
"""

import asyncio
import logging
from collections import defaultdict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import Book, BookCoOccurrence, BookEmbedding, BookRating, BookTag
from app.ingestion.graph_builder import (
    RebuildReport,
    load_edges,
    persist_edges,
    rebuild_graph,
    save_rebuild_metadata,
)
from app.services.catalog import Catalog, Item
from app.services.recommendation_service import RecommendationEngine
from app.services.similarity_graph import GraphSnapshot, SimilarityGraph

logger = logging.getLogger(__name__)

# One rebuild at a time; a second request waits for the first to finish
_rebuild_lock = asyncio.Lock()


async def load_catalog(db: AsyncSession) -> Catalog:
    """Books with their tags and the reader's ratings."""
    tags: dict[int, set[str]] = defaultdict(set)
    result = await db.execute(select(BookTag.book_id, BookTag.tag))
    for book_id, tag in result.all():
        tags[book_id].add(tag.strip().casefold())

    result = await db.execute(select(BookRating.book_id, BookRating.rating))
    ratings = {book_id: rating for book_id, rating in result.all()}

    result = await db.execute(select(Book).order_by(Book.id))
    items = [
        Item(
            id=book.id,
            title=book.title,
            author=book.author,
            series=book.series,
            series_index=book.series_index,
            tags=frozenset(t for t in tags.get(book.id, ()) if t),
            rating=ratings.get(book.id),
            description=book.description,
        )
        for book in result.scalars().all()
    ]
    logger.info(f"Loaded catalog: {len(items)} books, {len(ratings)} rated")
    return Catalog(items)


async def load_embeddings(db: AsyncSession, model: str | None = None) -> dict[int, list[float]]:
    """Stored embeddings, optionally only those from one model."""
    query = select(BookEmbedding.book_id, BookEmbedding.vector)
    if model:
        query = query.where(BookEmbedding.model == model)
    result = await db.execute(query)
    return {book_id: vector for book_id, vector in result.all() if vector}


async def load_cooccurrence(db: AsyncSession) -> dict[tuple[int, int], float]:
    result = await db.execute(
        select(BookCoOccurrence.book_id, BookCoOccurrence.similar_book_id, BookCoOccurrence.score)
    )
    return {(a, b): float(score) for a, b, score in result.all() if score > 0}


def _refresh_vectors(
    engine: RecommendationEngine,
    catalog: Catalog,
    embeddings: dict[int, list[float]],
) -> None:
    """Load fresh embeddings and drop vectors of books no longer in the catalog."""
    engine.vectors.load(embeddings)
    stale = [i for i in engine.vectors.ids() if i not in catalog]
    for item_id in stale:
        engine.vectors.remove(item_id)
    if stale:
        logger.info(f"Dropped {len(stale)} embeddings of books no longer in the catalog")


async def load_snapshot(
    engine: RecommendationEngine,
    session_factory: async_sessionmaker,
    embedding_model: str | None = None,
) -> GraphSnapshot:
    """
    Load catalog, embeddings and stored edges and publish them.

    With no stored edges the graph is rebuilt and persisted first.
    """
    async with session_factory() as db:
        catalog = await load_catalog(db)
        embeddings = await load_embeddings(db, embedding_model)
        edges = await load_edges(db)

    _refresh_vectors(engine, catalog, embeddings)

    if not edges and len(catalog) > 1:
        logger.info("No stored edges, building the graph from scratch")
        await rebuild_and_persist(engine, session_factory, embedding_model, catalog=catalog)
        return engine.store.current()

    # Stored edges may reference books deleted since the last rebuild
    known = [e for e in edges if e.source in catalog and e.target in catalog]
    if len(known) < len(edges):
        logger.warning(f"Dropped {len(edges) - len(known)} stored edges to books no longer in the catalog")

    graph = SimilarityGraph.from_edges(known, nodes=catalog.ids())
    return engine.store.publish(catalog, graph)


async def rebuild_and_persist(
    engine: RecommendationEngine,
    session_factory: async_sessionmaker,
    embedding_model: str | None = None,
    catalog: Catalog | None = None,
) -> RebuildReport:
    """
    Reload catalog and embeddings, rebuild the graph off the event loop,
    persist and publish it.

    Embeddings are re-read every time since embed_books.py writes them
    from another process.
    """
    async with _rebuild_lock:
        async with session_factory() as db:
            if catalog is None:
                catalog = await load_catalog(db)
            embeddings = await load_embeddings(db, embedding_model)
            cooccurrence = await load_cooccurrence(db)

        _refresh_vectors(engine, catalog, embeddings)

        config = engine.config
        report, edges = await asyncio.to_thread(
            rebuild_graph,
            catalog,
            engine.vectors,
            engine.store,
            cooccurrence,
            config.fusion,
            config.min_edge_weight,
            config.max_edges_per_item,
        )

        async with session_factory() as db:
            await persist_edges(db, edges)
            await save_rebuild_metadata(db, report)

    return report
