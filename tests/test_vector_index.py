import numpy as np
import pytest

from app.core.exceptions import InvalidParameterError
from app.services.vector_index import VectorIndex, cosine_similarity


def test_cosine_similarity_is_symmetric_and_bounded():
    a = [0.3, -1.2, 4.0]
    b = [2.0, 0.5, -0.1]
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))
    assert -1.0 <= cosine_similarity(a, b) <= 1.0


def test_cosine_self_similarity_is_one():
    assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)


def test_cosine_zero_vector_and_length_mismatch_are_zero():
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0


def _index() -> VectorIndex:
    index = VectorIndex(dimension=3)
    index.upsert(1, [1.0, 0.0, 0.0])
    index.upsert(2, [0.9, 0.1, 0.0])
    index.upsert(3, [0.0, 1.0, 0.0])
    index.upsert(4, [0.9, 0.1, 0.0])  # same direction as 2
    index.upsert(5, [-1.0, 0.0, 0.0])
    return index


def test_knn_returns_at_most_k_descending_without_duplicates():
    results = _index().knn([1.0, 0.0, 0.0], k=3)
    assert len(results) == 3
    ids = [i for i, _ in results]
    sims = [s for _, s in results]
    assert len(set(ids)) == len(ids)
    assert sims == sorted(sims, reverse=True)
    assert ids[0] == 1


def test_knn_breaks_ties_by_ascending_id():
    results = _index().knn([0.9, 0.1, 0.0], k=2, exclude=[1])
    assert [i for i, _ in results] == [2, 4]


def test_knn_for_item_never_returns_the_item_itself():
    ids = [i for i, _ in _index().knn_for_item(1, k=10)]
    assert 1 not in ids
    assert len(ids) == 4


def test_knn_respects_exclusions_and_empty_index():
    assert 2 not in [i for i, _ in _index().knn([1.0, 0.0, 0.0], k=5, exclude=[2])]
    assert VectorIndex().knn([1.0, 0.0], k=3) == []


def test_upsert_rejects_wrong_dimension_and_non_finite_values():
    index = VectorIndex(dimension=3)
    with pytest.raises(InvalidParameterError):
        index.upsert(1, [1.0, 2.0])
    with pytest.raises(InvalidParameterError):
        index.upsert(1, [1.0, float("nan"), 0.0])
    assert 1 not in index


def test_upsert_replaces_and_remove_drops_vector():
    index = _index()
    index.upsert(3, [1.0, 0.0, 0.0])
    assert index.similarity(1, 3) == pytest.approx(1.0)
    assert index.remove(3) is True
    assert index.remove(3) is False
    assert 3 not in [i for i, _ in index.knn([1.0, 0.0, 0.0], k=10)]


def test_load_skips_malformed_vectors():
    index = VectorIndex(dimension=2)
    loaded = index.load({1: [1.0, 0.0], 2: [1.0], 3: [0.0, 1.0]})
    assert loaded == 2
    assert len(index) == 2
    assert 2 not in index


def test_average_vector_is_normalized_and_weighted():
    index = VectorIndex(dimension=2)
    index.upsert(1, [1.0, 0.0])
    index.upsert(2, [0.0, 1.0])

    plain = index.average_vector([1, 2])
    assert np.linalg.norm(plain) == pytest.approx(1.0)
    assert plain[0] == pytest.approx(plain[1])

    weighted = index.average_vector([1, 2], weights={1: 5.0, 2: 1.0})
    assert weighted[0] > weighted[1]


def test_average_vector_without_embeddings_is_none():
    assert VectorIndex().average_vector([1, 2]) is None
