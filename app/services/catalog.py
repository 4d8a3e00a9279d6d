"""
In-memory catalog snapshot.

The engine reads items from here, never from the database. A Catalog is
built once per snapshot and not modified afterwards.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from app.core.exceptions import UnknownItemError

logger = logging.getLogger(__name__)


def normalize_key(value: Optional[str]) -> Optional[str]:
    """Case/whitespace-insensitive key for author and series matching. Empty -> None."""
    if value is None:
        return None
    key = " ".join(value.split()).casefold()
    return key or None


@dataclass(frozen=True)
class Item:
    """A book in the personal library."""

    id: int
    title: str
    author: Optional[str] = None
    series: Optional[str] = None
    series_index: Optional[float] = None
    tags: frozenset[str] = field(default_factory=frozenset)
    rating: Optional[int] = None  # 1-5, user's own rating
    description: Optional[str] = None

    @property
    def author_key(self) -> Optional[str]:
        return normalize_key(self.author)

    @property
    def series_key(self) -> Optional[str]:
        return normalize_key(self.series)


class Catalog:
    """Immutable id -> Item mapping with author/series lookups."""

    def __init__(self, items: Iterable[Item]):
        self._items: dict[int, Item] = {}
        by_author: dict[str, list[int]] = {}
        by_series: dict[str, list[int]] = {}

        for item in items:
            if item.id in self._items:
                logger.warning(f"Duplicate catalog item {item.id}, keeping the first one")
                continue
            self._items[item.id] = item
            if item.author_key:
                by_author.setdefault(item.author_key, []).append(item.id)
            if item.series_key:
                by_series.setdefault(item.series_key, []).append(item.id)

        self._by_author = {k: tuple(sorted(v)) for k, v in by_author.items()}
        self._by_series = {
            k: tuple(sorted(v, key=lambda i: (self._items[i].series_index is None,
                                              self._items[i].series_index or 0.0, i)))
            for k, v in by_series.items()
        }

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: int) -> bool:
        return item_id in self._items

    def __iter__(self):
        return iter(self._items.values())

    def ids(self) -> list[int]:
        return sorted(self._items)

    def get(self, item_id: int) -> Optional[Item]:
        return self._items.get(item_id)

    def require(self, item_id: int) -> Item:
        """Get an item or raise UnknownItemError."""
        item = self._items.get(item_id)
        if item is None:
            raise UnknownItemError(item_id)
        return item

    def by_author(self, author: Optional[str]) -> list[Item]:
        key = normalize_key(author)
        if not key:
            return []
        return [self._items[i] for i in self._by_author.get(key, ())]

    def by_series(self, series: Optional[str]) -> list[Item]:
        """Items of a series ordered by series position (unknown positions last)."""
        key = normalize_key(series)
        if not key:
            return []
        return [self._items[i] for i in self._by_series.get(key, ())]

    def highly_rated(self, min_rating: int) -> list[int]:
        return sorted(
            item.id for item in self._items.values()
            if item.rating is not None and item.rating >= min_rating
        )
