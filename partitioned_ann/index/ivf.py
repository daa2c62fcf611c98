"""
IVF (Inverted File) Index Type

Build:
    1. Seeded k-means (Lloyd iterations) over the partition matrix using the
       index metric for assignment
    2. Each row is stored in the list of its best centroid

Probe:
    1. Score the query against all centroids
    2. Scan the `num_probes` best lists exhaustively (exact scores)

With num_probes >= num_lists the probe is exact. Builds are deterministic
for a fixed seed and row order, so rebuilding unchanged data reproduces
identical results.

Options:
    num_lists (build): number of k-means lists, default 16 (capped at n)
    max_iterations (build): Lloyd iterations, default 10
    seed (build): k-means initialisation seed, default 0
    num_probes (runtime): lists scanned per query, default 4
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import numpy as np

from partitioned_ann.core.types import Match, MetricType, PartitionRows
from partitioned_ann.index.distance import metric_for, normalize_vector
from partitioned_ann.index.exact import exact_top_k
from partitioned_ann.index.topk import TopKHeap

DEFAULT_NUM_LISTS = 16
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_NUM_PROBES = 4

_BUILD_OPTIONS = frozenset({"num_lists", "max_iterations", "seed"})


@dataclass(frozen=True, slots=True)
class InvertedList:
    ids: tuple[Any, ...]
    vectors: np.ndarray


@dataclass(frozen=True, slots=True)
class IVFArtifact:
    centroids: np.ndarray
    lists: tuple[InvertedList, ...]
    metric: MetricType

    @property
    def num_lists(self) -> int:
        return len(self.lists)

    @property
    def count(self) -> int:
        return sum(len(lst.ids) for lst in self.lists)


def _assign(vectors: np.ndarray, centroids: np.ndarray, metric: MetricType) -> np.ndarray:
    """Index of the best centroid for every row."""
    if metric is MetricType.L2:
        sq = (
            np.sum(vectors * vectors, axis=1, keepdims=True)
            - 2.0 * vectors @ centroids.T
            + np.sum(centroids * centroids, axis=1)
        )
        return np.argmin(sq, axis=1)
    if metric is MetricType.COSINE:
        return np.argmax(normalize_vector(vectors) @ normalize_vector(centroids).T, axis=1)
    return np.argmax(vectors @ centroids.T, axis=1)


def train_centroids(
    vectors: np.ndarray,
    num_lists: int,
    metric: MetricType,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    seed: int = 0,
) -> np.ndarray:
    """
    Seeded Lloyd's k-means.

    Empty clusters keep their previous centroid.
    """
    n = vectors.shape[0]
    rng = np.random.default_rng(seed)
    centroids = vectors[np.sort(rng.choice(n, size=num_lists, replace=False))].copy()
    for _ in range(max_iterations):
        labels = _assign(vectors, centroids, metric)
        updated = centroids.copy()
        for c in range(num_lists):
            members = vectors[labels == c]
            if len(members):
                updated[c] = members.mean(axis=0)
        if metric is MetricType.COSINE:
            updated = normalize_vector(updated)
        if np.allclose(updated, centroids):
            centroids = updated
            break
        centroids = updated
    return centroids.astype(np.float32)


class IVFIndexType:
    """Inverted-file index over k-means lists."""

    name = "ivf"

    def validate_options(self, options: Mapping[str, Any]) -> Optional[str]:
        from partitioned_ann.index.plugins import check_int_option

        unknown = set(options) - _BUILD_OPTIONS
        if unknown:
            return f"unknown ivf options {sorted(unknown)}"
        for key, minimum in (("num_lists", 1), ("max_iterations", 0), ("seed", 0)):
            if error := check_int_option(options, key, minimum):
                return error
        return None

    def build(self, rows: PartitionRows, options: Mapping[str, Any]) -> IVFArtifact:
        vectors = np.ascontiguousarray(rows.vectors, dtype=np.float32)
        if len(rows) == 0:
            return IVFArtifact(
                centroids=np.empty((0, rows.dimension), dtype=np.float32),
                lists=(),
                metric=rows.metric,
            )
        num_lists = min(int(options.get("num_lists", DEFAULT_NUM_LISTS)), len(rows))
        centroids = train_centroids(
            vectors,
            num_lists,
            rows.metric,
            max_iterations=int(options.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
            seed=int(options.get("seed", 0)),
        )
        labels = _assign(vectors, centroids, rows.metric)
        lists = []
        for c in range(num_lists):
            member_idx = np.flatnonzero(labels == c)
            member_vectors = vectors[member_idx]
            member_vectors.setflags(write=False)
            lists.append(InvertedList(
                ids=tuple(rows.ids[i] for i in member_idx),
                vectors=member_vectors,
            ))
        centroids.setflags(write=False)
        return IVFArtifact(centroids=centroids, lists=tuple(lists), metric=rows.metric)

    def probe(
        self,
        artifact: IVFArtifact,
        query_vector: np.ndarray,
        runtime_options: Mapping[str, Any],
        k: int,
    ) -> Sequence[Match]:
        if artifact.num_lists == 0:
            return ()
        num_probes = max(1, int(runtime_options.get("num_probes", DEFAULT_NUM_PROBES)))
        kernel = metric_for(artifact.metric)
        centroid_scores = kernel.score(query_vector, artifact.centroids)
        chosen = TopKHeap(min(num_probes, artifact.num_lists), kernel.higher_is_better)
        for list_no, score in enumerate(centroid_scores):
            chosen.push(list_no, score)

        heap = TopKHeap(k, kernel.higher_is_better)
        for probe in chosen.result():
            lst = artifact.lists[probe.candidate_id]
            if lst.ids:
                heap.extend(exact_top_k(query_vector, lst.ids, lst.vectors, k, artifact.metric).matches)
        return heap.result()
