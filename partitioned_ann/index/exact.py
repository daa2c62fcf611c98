"""
Exact Fallback Engine

Brute-force scoring of every query against every candidate of one
partition, keeping the local top-k with the same ordering contract as the
global merge. Output is a PartialResult per query row, indistinguishable
from an index probe's, which is what allows mixing index-backed and exact
partitions inside one query.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import numpy as np

from partitioned_ann.core.types import CandidateRow, MetricType, PartialResult
from partitioned_ann.index.distance import metric_for
from partitioned_ann.index.topk import TopKHeap


def stack_vectors(rows: Sequence[CandidateRow], dimension: int) -> np.ndarray:
    """(n, d) float32 matrix of row embeddings."""
    if not rows:
        return np.empty((0, dimension), dtype=np.float32)
    return np.asarray([r.vector for r in rows], dtype=np.float32).reshape(len(rows), dimension)


def exact_top_k(
    query_vector: np.ndarray,
    ids: Sequence[Any],
    vectors: np.ndarray,
    k: int,
    metric: MetricType,
) -> PartialResult:
    """Top-k of one query over an (n, d) candidate matrix."""
    if len(ids) == 0:
        return PartialResult()
    kernel = metric_for(metric)
    scores = kernel.score(query_vector, vectors)
    heap = TopKHeap(k, kernel.higher_is_better)
    for cid, score in zip(ids, scores):
        heap.push(cid, score)
    return PartialResult(matches=heap.result())


class ExactSearchEngine:
    """
    Exact search over one partition's rows.

    The candidate matrix is stacked once and reused for every query row.
    """

    __slots__ = ("_metric", "_dimension")

    def __init__(self, metric: MetricType, dimension: int) -> None:
        self._metric = metric
        self._dimension = dimension

    def search(
        self,
        rows: Sequence[CandidateRow],
        queries: Mapping[Any, np.ndarray],
        k: int,
    ) -> dict[Any, PartialResult]:
        ids = [r.candidate_id for r in rows]
        vectors = stack_vectors(rows, self._dimension)
        return {
            query_id: exact_top_k(vector, ids, vectors, k, self._metric)
            for query_id, vector in queries.items()
        }
