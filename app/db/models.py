"""
SQLAlchemy ORM models for the personal library.

============================================================================
DATABASE = PERSISTENCE ONLY
============================================================================
Requests are served from the in-memory snapshot (see app/config.py). These
tables are read when a snapshot is built and written by the graph rebuild:

- Book / BookTag / BookRating: the catalog and the reader's own ratings
- BookEmbedding: content vectors from the embedding provider
- BookEdge: the fused similarity graph produced by the last rebuild
- BookCoOccurrence: externally computed "readers also liked" similarity
- SystemMetadata: last rebuild time and stats

Data flow: library import -> THIS DATABASE -> snapshot loader -> engine
============================================================================
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Float, Text, DateTime,
    ForeignKey, JSON, Index, SmallInteger, CheckConstraint, UniqueConstraint,
)

from app.db.database import Base


class Book(Base):
    """A book in the library."""

    __tablename__ = "books"

    id = Column(Integer, primary_key=True)
    title = Column(String(500), nullable=False)
    author = Column(String(300))
    series = Column(String(300))
    series_index = Column(Float)  # 1, 2, 2.5 (novellas between volumes)
    description = Column(Text)
    cover_path = Column(String(500))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_books_author", "author"),
        Index("idx_books_series", "series", "series_index"),
    )


class BookTag(Base):
    """Book-tag assignment."""

    __tablename__ = "book_tags"

    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), primary_key=True)
    tag = Column(String(100), primary_key=True)

    __table_args__ = (
        Index("idx_book_tags_tag", "tag"),
    )


class BookRating(Base):
    """The reader's rating of a book (1-5)."""

    __tablename__ = "book_ratings"

    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), primary_key=True)
    rating = Column(SmallInteger, nullable=False)
    rated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_book_ratings_range"),
    )


class BookEmbedding(Base):
    """Content embedding of a book."""

    __tablename__ = "book_embeddings"

    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), primary_key=True)
    vector = Column(JSON, nullable=False)  # list[float]
    model = Column(String(100), nullable=False)
    text_hash = Column(String(64))  # sha256 of the embedded text, skip re-embedding when unchanged
    computed_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class BookEdge(Base):
    """A typed, weighted edge of the similarity graph. Stored once per pair and type."""

    __tablename__ = "book_edges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    target_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    edge_type = Column(String(20), nullable=False)  # content/author/series/tag/user
    weight = Column(Float, nullable=False)
    signals = Column(JSON)  # {edge_type: value} that fused into weight
    computed_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("source_id", "target_id", "edge_type", name="uq_book_edges_pair_type"),
        CheckConstraint("source_id <> target_id", name="ck_book_edges_no_self_loop"),
        CheckConstraint("weight >= 0 AND weight <= 1", name="ck_book_edges_weight_range"),
        Index("idx_book_edges_source", "source_id"),
        Index("idx_book_edges_target", "target_id"),
    )


class BookCoOccurrence(Base):
    """Books frequently liked by the same readers (external collaborative signal)."""

    __tablename__ = "book_cooccurrence"

    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), primary_key=True)
    similar_book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), primary_key=True)
    score = Column(Float, nullable=False)  # 0-1
    reader_count = Column(Integer, nullable=False, default=0)
    computed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_book_cooccur_book", "book_id"),
    )


class SystemMetadata(Base):
    """Key/value system info (last rebuild, rebuild stats)."""

    __tablename__ = "system_metadata"

    key = Column(String(100), primary_key=True)
    value = Column(Text)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
