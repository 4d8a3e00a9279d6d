"""Add library catalog, embedding and similarity graph tables.

Revision ID: 001_add_library_tables
Revises:
Create Date: 2026-10-17

This migration adds:
- books, book_tags, book_ratings for the catalog
- book_embeddings for content vectors
- book_edges for the fused similarity graph
- book_cooccurrence for the external "readers also liked" signal
- system_metadata for rebuild bookkeeping
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_add_library_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'books',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('author', sa.String(300), nullable=True),
        sa.Column('series', sa.String(300), nullable=True),
        sa.Column('series_index', sa.Float, nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('cover_path', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
    )
    op.create_index('idx_books_author', 'books', ['author'])
    op.create_index('idx_books_series', 'books', ['series', 'series_index'])

    op.create_table(
        'book_tags',
        sa.Column('book_id', sa.Integer, sa.ForeignKey('books.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tag', sa.String(100), primary_key=True),
    )
    op.create_index('idx_book_tags_tag', 'book_tags', ['tag'])

    op.create_table(
        'book_ratings',
        sa.Column('book_id', sa.Integer, sa.ForeignKey('books.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('rating', sa.SmallInteger, nullable=False),
        sa.Column('rated_at', sa.DateTime, nullable=True),
        sa.CheckConstraint('rating BETWEEN 1 AND 5', name='ck_book_ratings_range'),
    )

    op.create_table(
        'book_embeddings',
        sa.Column('book_id', sa.Integer, sa.ForeignKey('books.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('vector', sa.JSON, nullable=False),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('text_hash', sa.String(64), nullable=True),
        sa.Column('computed_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'book_edges',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('source_id', sa.Integer, sa.ForeignKey('books.id', ondelete='CASCADE'), nullable=False),
        sa.Column('target_id', sa.Integer, sa.ForeignKey('books.id', ondelete='CASCADE'), nullable=False),
        sa.Column('edge_type', sa.String(20), nullable=False),
        sa.Column('weight', sa.Float, nullable=False),
        sa.Column('signals', sa.JSON, nullable=True),
        sa.Column('computed_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('source_id', 'target_id', 'edge_type', name='uq_book_edges_pair_type'),
        sa.CheckConstraint('source_id <> target_id', name='ck_book_edges_no_self_loop'),
        sa.CheckConstraint('weight >= 0 AND weight <= 1', name='ck_book_edges_weight_range'),
    )
    op.create_index('idx_book_edges_source', 'book_edges', ['source_id'])
    op.create_index('idx_book_edges_target', 'book_edges', ['target_id'])

    op.create_table(
        'book_cooccurrence',
        sa.Column('book_id', sa.Integer, sa.ForeignKey('books.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('similar_book_id', sa.Integer, sa.ForeignKey('books.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('score', sa.Float, nullable=False),
        sa.Column('reader_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('computed_at', sa.DateTime, nullable=False),
    )
    op.create_index('idx_book_cooccur_book', 'book_cooccurrence', ['book_id'])

    op.create_table(
        'system_metadata',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', sa.Text, nullable=True),
        sa.Column('updated_at', sa.DateTime, nullable=True),
    )


def downgrade() -> None:
    op.drop_table('system_metadata')
    op.drop_table('book_cooccurrence')
    op.drop_table('book_edges')
    op.drop_table('book_embeddings')
    op.drop_table('book_ratings')
    op.drop_table('book_tags')
    op.drop_table('books')
