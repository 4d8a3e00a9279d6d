"""
Embedding store with brute-force cosine nearest-neighbor search.

Vectors are kept as normalized numpy arrays so a KNN query is a single
matrix-vector product. Personal libraries are a few thousand books at most,
which keeps exhaustive search well inside interactive latency.

Writes (upsert/remove) are serialized per item id. Reads work on the
immutable (ids, matrix) pair published by the last write and never lock.
"""

import logging
import threading
from collections import defaultdict
from typing import Iterable, Mapping, Optional, Sequence

import numpy as np

from app.core.exceptions import InvalidParameterError

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 for mismatched lengths or when either vector has zero norm,
    never divides by zero. Clipped to [-1, 1] against rounding drift.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0

    norm_product = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm_product <= 0.0:
        return 0.0

    return float(np.clip(np.dot(va, vb) / norm_product, -1.0, 1.0))


class VectorIndex:
    """In-memory embedding index: one vector per item id."""

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self._vectors: dict[int, np.ndarray] = {}  # raw vectors
        # Published read view: (ids, unit-normalized rows, row norms)
        self._view: tuple[np.ndarray, np.ndarray, np.ndarray] = self._empty_view()
        self._write_lock = threading.Lock()  # guards _vectors/_view publication
        self._id_locks: dict[int, threading.Lock] = defaultdict(threading.Lock)
        self._id_locks_guard = threading.Lock()

    def _empty_view(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        dim = self.dimension or 0
        return (
            np.zeros(0, dtype=np.int64),
            np.zeros((0, dim), dtype=np.float64),
            np.zeros(0, dtype=np.float64),
        )

    def _lock_for(self, item_id: int) -> threading.Lock:
        with self._id_locks_guard:
            return self._id_locks[item_id]

    def _validate(self, vector: Sequence[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float64)
        if arr.ndim != 1 or arr.size == 0:
            raise InvalidParameterError("vector", f"shape {arr.shape}", "expected a non-empty 1-D vector")
        if self.dimension is not None and arr.size != self.dimension:
            raise InvalidParameterError(
                "vector", f"{arr.size} dims", f"expected {self.dimension} dimensions"
            )
        if not np.all(np.isfinite(arr)):
            raise InvalidParameterError("vector", "non-finite values", "embedding contains NaN/inf")
        return arr

    def _publish(self) -> None:
        """Rebuild the read view from _vectors. Caller holds _write_lock."""
        if not self._vectors:
            self._view = self._empty_view()
            return

        ids = np.fromiter(sorted(self._vectors), dtype=np.int64)
        matrix = np.vstack([self._vectors[int(i)] for i in ids])
        norms = np.linalg.norm(matrix, axis=1)
        safe = np.where(norms > 0, norms, 1.0)
        self._view = (ids, matrix / safe[:, None], norms)

    def upsert(self, item_id: int, vector: Sequence[float]) -> None:
        """Insert or replace the embedding for an item."""
        arr = self._validate(vector)
        with self._lock_for(item_id):
            with self._write_lock:
                if self.dimension is None:
                    self.dimension = arr.size
                self._vectors[item_id] = arr
                self._publish()

    def remove(self, item_id: int) -> bool:
        """Drop an item's embedding. Returns False if it had none."""
        with self._lock_for(item_id):
            with self._write_lock:
                if self._vectors.pop(item_id, None) is None:
                    return False
                self._publish()
                return True

    def load(self, vectors: Mapping[int, Sequence[float]]) -> int:
        """Bulk load embeddings, skipping malformed ones. Returns count loaded."""
        loaded = 0
        with self._write_lock:
            for item_id, vector in vectors.items():
                try:
                    arr = self._validate(vector)
                except InvalidParameterError as e:
                    logger.warning(f"Skipping embedding for item {item_id}: {e}")
                    continue
                if self.dimension is None:
                    self.dimension = arr.size
                self._vectors[item_id] = arr
                loaded += 1
            self._publish()
        logger.info(f"Loaded {loaded} embeddings into vector index")
        return loaded

    def __len__(self) -> int:
        return len(self._view[0])

    def __contains__(self, item_id: int) -> bool:
        return item_id in self._vectors

    def ids(self) -> list[int]:
        return sorted(self._vectors)

    def get(self, item_id: int) -> Optional[np.ndarray]:
        vector = self._vectors.get(item_id)
        return None if vector is None else vector.copy()

    def similarity(self, a: int, b: int) -> float:
        """Cosine similarity between two indexed items, 0.0 if either is missing."""
        va = self._vectors.get(a)
        vb = self._vectors.get(b)
        if va is None or vb is None:
            return 0.0
        return cosine_similarity(va, vb)

    def knn(
        self,
        query: Sequence[float],
        k: int,
        exclude: Iterable[int] = (),
        self_id: Optional[int] = None,
    ) -> list[tuple[int, float]]:
        """
        Find the k nearest items to a query vector by cosine similarity.

        Args:
            query: Query embedding
            k: Maximum number of results
            exclude: Item ids to skip
            self_id: Id of the item the query came from (never returned)

        Returns:
            Up to k (item_id, similarity) pairs, similarity descending,
            ties broken by ascending id
        """
        if k <= 0:
            return []

        ids, unit_rows, _ = self._view
        if ids.size == 0:
            return []

        q = np.asarray(query, dtype=np.float64)
        if q.ndim != 1 or q.size != unit_rows.shape[1]:
            logger.warning(f"KNN query has {q.size} dims, index has {unit_rows.shape[1]}")
            return []

        q_norm = float(np.linalg.norm(q))
        if q_norm > 0:
            sims = np.clip(unit_rows @ (q / q_norm), -1.0, 1.0)
        else:
            sims = np.zeros(ids.size, dtype=np.float64)

        skip = set(exclude)
        if self_id is not None:
            skip.add(self_id)

        if skip:
            mask = ~np.isin(ids, np.fromiter(skip, dtype=np.int64, count=len(skip)))
            ids = ids[mask]
            sims = sims[mask]

        # lexsort: last key is primary -> similarity desc, then id asc
        order = np.lexsort((ids, -sims))[:k]
        return [(int(ids[i]), float(sims[i])) for i in order]

    def knn_for_item(self, item_id: int, k: int, exclude: Iterable[int] = ()) -> list[tuple[int, float]]:
        """KNN against an indexed item's own embedding. Empty if the item has none."""
        vector = self._vectors.get(item_id)
        if vector is None:
            return []
        return self.knn(vector, k, exclude=exclude, self_id=item_id)

    def average_vector(
        self,
        ids: Iterable[int],
        weights: Optional[Mapping[int, float]] = None,
    ) -> Optional[np.ndarray]:
        """
        Componentwise mean of the given items' embeddings (user profile vector).

        Items without an embedding are skipped. With weights (e.g. ratings),
        the mean is weighted; if the usable weights sum to <= 0 the plain mean
        is used. The result is L2-normalized when its norm is positive.

        Returns None when none of the ids has an embedding.
        """
        rows = []
        row_weights = []
        for item_id in ids:
            vector = self._vectors.get(item_id)
            if vector is None:
                continue
            rows.append(vector)
            row_weights.append(float(weights.get(item_id, 1.0)) if weights else 1.0)

        if not rows:
            return None

        matrix = np.vstack(rows)
        w = np.asarray(row_weights, dtype=np.float64)
        if weights and w.sum() > 0:
            average = (matrix * w[:, None]).sum(axis=0) / w.sum()
        else:
            average = matrix.mean(axis=0)

        norm = float(np.linalg.norm(average))
        if norm > 0:
            average = average / norm
        return average
