"""
HNSW (Hierarchical Navigable Small World) Index Type

Algorithm Details:
    - Layered graph; upper layers are sparse express lanes
    - Layer probability: P(l) = exp(-l * ml), ml = 1 / ln(M)
    - Neighbor selection via diversity heuristic
    - Greedy beam search for queries (ef_search)

Scores inside the graph are "goodness" values (higher is better for every
metric; L2 distances are negated) so one max-heap discipline serves all
metrics. Probe results are converted back to natural metric units.

The level generator is seeded, so rebuilding the same rows in the same
order yields an identical graph.

Options:
    M (build): links per node, default 16
    ef_construction (build): build beam width, default 100
    seed (build): level generator seed, default 42
    ef_search (runtime): search beam width, default 64
"""

from __future__ import annotations

import heapq
import math
import random
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import numpy as np

from partitioned_ann.core.types import Match, MetricType, PartitionRows
from partitioned_ann.index.distance import metric_for, normalize_vector
from partitioned_ann.index.topk import TopKHeap

DEFAULT_M = 16
DEFAULT_EF_CONSTRUCTION = 100
DEFAULT_EF_SEARCH = 64
MAX_LEVEL = 16

_BUILD_OPTIONS = frozenset({"M", "ef_construction", "seed"})


# =============================================================================
# HNSW NODE
# =============================================================================
@dataclass(slots=True)
class GraphNode:
    """Graph node; links[layer] holds row indices."""
    row: int
    level: int
    links: list[list[int]]


# =============================================================================
# HNSW GRAPH
# =============================================================================
class HNSWGraph:
    """
    Immutable-after-build HNSW graph over one partition.

    Built single-threaded by the builder; probes only read, so concurrent
    probes need no locking.
    """

    __slots__ = (
        "_ids",
        "_vectors",
        "_metric",
        "_nodes",
        "_entry_point",
        "_max_level",
        "_M",
        "_ef_construction",
        "_ml",
        "_rng",
    )

    def __init__(
        self,
        metric: MetricType,
        dimension: int,
        M: int = DEFAULT_M,
        ef_construction: int = DEFAULT_EF_CONSTRUCTION,
        seed: int = 42,
    ) -> None:
        self._ids: list[Any] = []
        self._vectors = np.empty((0, dimension), dtype=np.float32)
        self._metric = metric
        self._nodes: list[GraphNode] = []
        self._entry_point: Optional[int] = None
        self._max_level = 0
        self._M = M
        self._ef_construction = ef_construction
        self._ml = 1.0 / math.log(max(M, 2))
        self._rng = random.Random(seed)

    @property
    def count(self) -> int:
        return len(self._nodes)

    @property
    def metric(self) -> MetricType:
        return self._metric

    # =========================================================================
    # LEVEL GENERATION
    # =========================================================================
    def _draw_level(self) -> int:
        level = 0
        while self._rng.random() < math.exp(-(level + 1) * self._ml) and level < MAX_LEVEL:
            level += 1
        return level

    # =========================================================================
    # SCORING
    # =========================================================================
    def _goodness(self, query: np.ndarray, rows: list[int]) -> np.ndarray:
        """Higher-is-better scores of query against the given rows."""
        if not rows:
            return np.array([])
        candidates = self._vectors[rows]
        if self._metric is MetricType.L2:
            diff = candidates - query
            return -np.sqrt(np.einsum("ij,ij->i", diff, diff))
        # Cosine vectors are stored normalized, so both reduce to a dot product
        return candidates @ query

    def _prepare(self, vector: np.ndarray) -> np.ndarray:
        vector = np.asarray(vector, dtype=np.float32)
        if self._metric is MetricType.COSINE:
            vector = normalize_vector(vector)
        return vector

    # =========================================================================
    # PER-LAYER BEAM SEARCH
    # =========================================================================
    def _beam_search(
        self,
        query: np.ndarray,
        entry_points: list[int],
        ef: int,
        layer: int,
    ) -> list[tuple[float, int]]:
        """
        Beam search on one layer.

        Returns:
            (goodness, row) pairs, best first, at most ef
        """
        seen = set(entry_points)
        initial = self._goodness(query, entry_points)

        candidates = [(-float(s), row) for s, row in zip(initial, entry_points)]
        heapq.heapify(candidates)
        results = [(float(s), row) for s, row in zip(initial, entry_points)]
        heapq.heapify(results)

        while candidates:
            neg_score, current = heapq.heappop(candidates)
            if len(results) >= ef and -neg_score < results[0][0]:
                break

            node = self._nodes[current]
            if layer >= len(node.links):
                continue
            fresh = [n for n in node.links[layer] if n not in seen]
            if not fresh:
                continue
            seen.update(fresh)

            for score, neighbor in zip(self._goodness(query, fresh), fresh):
                score = float(score)
                if len(results) < ef or score > results[0][0]:
                    heapq.heappush(candidates, (-score, neighbor))
                    heapq.heappush(results, (score, neighbor))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted(results, key=lambda x: (-x[0], x[1]))

    # =========================================================================
    # LINK PRUNING
    # =========================================================================
    def _prune_links(self, candidates: list[tuple[float, int]], M: int) -> list[int]:
        """
        Pick M neighbors, skipping near-duplicates of already selected ones,
        then topping up with the best remaining candidates.
        """
        ordered = sorted(candidates, key=lambda x: (-x[0], x[1]))
        if len(ordered) <= M:
            return [row for _, row in ordered]

        selected: list[int] = []
        diverse = self._metric is MetricType.COSINE
        for _, row in ordered:
            if len(selected) >= M:
                break
            vec = self._vectors[row]
            if not diverse or all(float(np.dot(vec, self._vectors[s])) <= 0.99 for s in selected):
                selected.append(row)

        if len(selected) < M:
            chosen = set(selected)
            for _, row in ordered:
                if row not in chosen:
                    selected.append(row)
                    chosen.add(row)
                    if len(selected) >= M:
                        break
        return selected

    # =========================================================================
    # BUILD
    # =========================================================================
    def add_all(self, ids: Sequence[Any], vectors: np.ndarray) -> None:
        """Insert rows in order."""
        prepared = np.asarray(vectors, dtype=np.float32)
        if self._metric is MetricType.COSINE:
            prepared = normalize_vector(prepared)
        self._vectors = np.ascontiguousarray(prepared).reshape(len(ids), self._vectors.shape[1])
        self._ids = list(ids)
        for row in range(len(self._ids)):
            self._insert(row)
        self._vectors.setflags(write=False)

    def _insert(self, row: int) -> None:
        vec = self._vectors[row]
        level = self._draw_level()
        node = GraphNode(row=row, level=level, links=[[] for _ in range(level + 1)])
        self._nodes.append(node)

        if self._entry_point is None:
            self._entry_point = row
            self._max_level = level
            return

        entry = [self._entry_point]
        for layer in range(self._max_level, level, -1):
            found = self._beam_search(vec, entry, 1, layer)
            if found:
                entry = [found[0][1]]

        for layer in range(min(level, self._max_level), -1, -1):
            found = self._beam_search(vec, entry, self._ef_construction, layer)
            M = self._M * 2 if layer == 0 else self._M
            neighbors = self._prune_links(found, M)
            node.links[layer] = neighbors

            for neighbor in neighbors:
                linked = self._nodes[neighbor]
                if layer >= len(linked.links):
                    continue
                linked.links[layer].append(row)
                if len(linked.links[layer]) > M:
                    links = linked.links[layer]
                    scores = self._goodness(self._vectors[neighbor], links)
                    linked.links[layer] = self._prune_links(
                        [(float(s), n) for s, n in zip(scores, links)], M
                    )
            if neighbors:
                entry = neighbors

        if level > self._max_level:
            self._max_level = level
            self._entry_point = row

    # =========================================================================
    # SEARCH
    # =========================================================================
    def search(self, query: np.ndarray, k: int, ef_search: int = DEFAULT_EF_SEARCH) -> tuple[Match, ...]:
        """
        k best rows for the query, in natural metric units.

        Descends greedily to layer 0, then widens the beam to ef_search.
        """
        if self._entry_point is None:
            return ()
        q = self._prepare(query)
        entry = [self._entry_point]
        for layer in range(self._max_level, 0, -1):
            found = self._beam_search(q, entry, 1, layer)
            if found:
                entry = [found[0][1]]
        found = self._beam_search(q, entry, max(k, ef_search), 0)

        # Re-score with the shared kernel so index and exact scores agree
        rows = [row for _, row in found]
        kernel = metric_for(self._metric)
        natural = kernel.score(query, self._vectors[rows]) if rows else []
        heap = TopKHeap(k, kernel.higher_is_better)
        for row, score in zip(rows, natural):
            heap.push(self._ids[row], score)
        return heap.result()


# =============================================================================
# PLUGIN
# =============================================================================
class HNSWIndexType:
    """Graph-based ANN index type."""

    name = "hnsw"

    def validate_options(self, options: Mapping[str, Any]) -> Optional[str]:
        from partitioned_ann.index.plugins import check_int_option

        unknown = set(options) - _BUILD_OPTIONS
        if unknown:
            return f"unknown hnsw options {sorted(unknown)}"
        for key, minimum in (("M", 2), ("ef_construction", 1), ("seed", 0)):
            if error := check_int_option(options, key, minimum):
                return error
        return None

    def build(self, rows: PartitionRows, options: Mapping[str, Any]) -> HNSWGraph:
        graph = HNSWGraph(
            metric=rows.metric,
            dimension=rows.dimension,
            M=int(options.get("M", DEFAULT_M)),
            ef_construction=int(options.get("ef_construction", DEFAULT_EF_CONSTRUCTION)),
            seed=int(options.get("seed", 42)),
        )
        graph.add_all(rows.ids, rows.vectors)
        return graph

    def probe(
        self,
        artifact: HNSWGraph,
        query_vector: np.ndarray,
        runtime_options: Mapping[str, Any],
        k: int,
    ) -> Sequence[Match]:
        ef_search = int(runtime_options.get("ef_search", DEFAULT_EF_SEARCH))
        return artifact.search(query_vector, k, ef_search=ef_search)
