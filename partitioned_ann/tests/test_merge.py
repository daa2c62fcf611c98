"""
Unit Tests: Top-k Heap and Global Merge

Tests:
    - Bounded selection in both metric directions
    - Tie-break by ascending candidate id
    - Permutation invariance of the merge
    - Agreement with a global sort
"""

import itertools

import numpy as np
import pytest

from partitioned_ann.core.types import CandidateRow, Match, MetricType, PartialResult
from partitioned_ann.index.exact import ExactSearchEngine, exact_top_k
from partitioned_ann.index.topk import TopKHeap, rank_matches
from partitioned_ann.query.merge import merge_all, merge_top_k


def partial(*pairs):
    return PartialResult(matches=tuple(Match(cid, score) for cid, score in pairs))


class TestTopKHeap:
    """Tests for the bounded heap."""

    def test_keeps_best_similarity(self):
        heap = TopKHeap(k=2, higher_is_better=True)
        for cid, score in [("a", 0.1), ("b", 0.9), ("c", 0.5), ("d", 0.7)]:
            heap.push(cid, score)

        assert [m.candidate_id for m in heap.result()] == ["b", "d"]

    def test_keeps_best_distance(self):
        heap = TopKHeap(k=2, higher_is_better=False)
        for cid, score in [("a", 0.1), ("b", 0.9), ("c", 0.5), ("d", 0.7)]:
            heap.push(cid, score)

        assert [m.candidate_id for m in heap.result()] == ["a", "c"]

    def test_ties_by_ascending_id(self):
        """Test equal scores order by candidate id ascending."""
        heap = TopKHeap(k=3, higher_is_better=True)
        for cid in [5, 3, 9, 1]:
            heap.push(cid, 0.5)

        assert [m.candidate_id for m in heap.result()] == [1, 3, 5]

    def test_ties_at_the_boundary_admit_smaller_id(self):
        heap = TopKHeap(k=1, higher_is_better=False)
        heap.push(7, 1.0)
        heap.push(2, 1.0)

        assert heap.result() == (Match(2, 1.0),)

    def test_invalid_k(self):
        with pytest.raises(ValueError):
            TopKHeap(k=0, higher_is_better=True)

    def test_rank_matches(self):
        ranked = rank_matches([Match("x", 3.0), Match("y", 1.0), Match("z", 2.0)], 2, MetricType.L2)

        assert [m.candidate_id for m in ranked] == ["y", "z"]


class TestMergeTopK:
    """Tests for the global merge."""

    def test_merge_picks_global_best(self):
        partials = [
            partial((1, 0.9), (2, 0.5)),
            partial((10, 0.95), (11, 0.1)),
            partial((20, 0.6)),
        ]
        merged = merge_top_k("q", partials, k=3, metric=MetricType.COSINE)

        assert merged.query_id == "q"
        assert merged.ids == [10, 1, 20]

    def test_merge_distance_direction(self):
        partials = [partial((1, 0.2), (2, 3.0)), partial((3, 0.1))]
        merged = merge_top_k("q", partials, k=2, metric=MetricType.L2)

        assert merged.ids == [3, 1]

    def test_permutation_invariance_with_ties(self):
        """Test dispatch order never changes the merged result."""
        partials = [
            partial((4, 0.8), (8, 0.5)),
            partial((2, 0.8), (6, 0.5)),
            partial((1, 0.5), (3, 0.3)),
        ]
        expected = merge_top_k("q", partials, k=4, metric=MetricType.COSINE)

        for perm in itertools.permutations(partials):
            assert merge_top_k("q", list(perm), k=4, metric=MetricType.COSINE) == expected
        assert expected.ids == [2, 4, 1, 6]

    def test_matches_global_sort(self):
        """Test merge equals sorting every candidate, for random partials."""
        rng = np.random.default_rng(3)
        scores = np.round(rng.random(60), 2)  # rounding forces ties
        ids = list(range(60))
        chunks = [ids[i:i + 15] for i in range(0, 60, 15)]
        k = 7

        partials = [
            PartialResult(matches=rank_matches([Match(i, float(scores[i])) for i in chunk], k, MetricType.COSINE))
            for chunk in chunks
        ]
        merged = merge_top_k("q", partials, k, MetricType.COSINE)
        expected = sorted(ids, key=lambda i: (-scores[i], i))[:k]

        assert merged.ids == expected

    def test_merge_all_keeps_query_order(self):
        fragments = [
            {"b": partial((1, 0.1)), "a": partial((2, 0.2))},
            {"a": partial((3, 0.3))},
        ]
        merged = merge_all(["a", "b", "c"], fragments, k=5, metric=MetricType.COSINE)

        assert [m.query_id for m in merged] == ["a", "b", "c"]
        assert merged[0].ids == [3, 2]
        assert merged[2].matches == ()


class TestExactEngine:
    """Tests for the exact fallback."""

    def test_self_match_cosine(self):
        """Test every candidate is its own best match with score 1.0."""
        rng = np.random.default_rng(11)
        vectors = rng.standard_normal((25, 6)).astype(np.float32)
        rows = [CandidateRow(i, vectors[i].tolist()) for i in range(25)]
        engine = ExactSearchEngine(MetricType.COSINE, 6)

        results = engine.search(rows, {i: vectors[i] for i in range(25)}, k=1)

        for i in range(25):
            assert results[i].matches[0].candidate_id == i
            np.testing.assert_allclose(results[i].matches[0].score, 1.0, atol=1e-5)

    def test_empty_partition(self):
        result = exact_top_k(np.zeros(3), [], np.empty((0, 3)), 5, MetricType.L2)

        assert len(result) == 0
