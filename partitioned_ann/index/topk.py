"""
Bounded Top-k Selection

Ordering contract shared by every producer of ranked results:
    1. Better score first, in the metric's preferred direction
    2. Equal scores ordered by candidate id ascending

The heap root is always the WORST retained entry, so admitting a new entry
is a single comparison against heap[0]. Output is independent of push
order.

Complexity: O(n log k) for n pushes.
"""

from __future__ import annotations

import heapq
from typing import Any, Iterable

from partitioned_ann.core.types import Match, MetricType
from partitioned_ann.index.distance import metric_for


class _Rank:
    """
    Heap key: compares "worse" as smaller.

    Lower goodness is worse; among equal goodness the larger candidate id
    is worse (ascending id wins ties).
    """

    __slots__ = ("goodness", "candidate_id")

    def __init__(self, goodness: float, candidate_id: Any) -> None:
        self.goodness = goodness
        self.candidate_id = candidate_id

    def __lt__(self, other: "_Rank") -> bool:
        if self.goodness != other.goodness:
            return self.goodness < other.goodness
        return self.candidate_id > other.candidate_id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, _Rank):
            return NotImplemented
        return self.goodness == other.goodness and self.candidate_id == other.candidate_id


class TopKHeap:
    """
    Bounded heap retaining the k best (candidate id, score) pairs.

    Usage:
        heap = TopKHeap(k=10, higher_is_better=True)
        for cid, score in zip(ids, scores):
            heap.push(cid, score)
        best = heap.result()
    """

    __slots__ = ("_k", "_higher_is_better", "_heap")

    def __init__(self, k: int, higher_is_better: bool) -> None:
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")
        self._k = k
        self._higher_is_better = higher_is_better
        self._heap: list[tuple[_Rank, Match]] = []

    def push(self, candidate_id: Any, score: float) -> None:
        score = float(score)
        rank = _Rank(score if self._higher_is_better else -score, candidate_id)
        if len(self._heap) < self._k:
            heapq.heappush(self._heap, (rank, Match(candidate_id, score)))
        elif self._heap[0][0] < rank:
            heapq.heapreplace(self._heap, (rank, Match(candidate_id, score)))

    def extend(self, matches: Iterable[Match]) -> None:
        for m in matches:
            self.push(m.candidate_id, m.score)

    def result(self) -> tuple[Match, ...]:
        """Retained matches, best first."""
        ordered = sorted(self._heap, key=lambda entry: entry[0], reverse=True)
        return tuple(match for _, match in ordered)

    def __len__(self) -> int:
        return len(self._heap)


def rank_matches(matches: Iterable[Match], k: int, metric: MetricType) -> tuple[Match, ...]:
    """Best k of an arbitrary match sequence under the ordering contract."""
    heap = TopKHeap(k, metric_for(metric).higher_is_better)
    heap.extend(matches)
    return heap.result()
