"""
Global Top-k Merge

Combines the per-fragment PartialResults of one query row into the global
top-k. The merge is the single synchronization point of a search: it runs
only once every fragment has reported, since any partition may hold the
globally best candidate.

Complexity: O(P * k * log k) for P partial results of length <= k,
independent of per-partition candidate counts.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from partitioned_ann.core.types import MergedResult, MetricType, PartialResult
from partitioned_ann.index.distance import metric_for
from partitioned_ann.index.topk import TopKHeap


def merge_top_k(
    query_id: Any,
    partials: Sequence[PartialResult],
    k: int,
    metric: MetricType,
) -> MergedResult:
    """
    Merge partial results into the global top-k.

    Ties are broken by ascending candidate id, so the result does not
    depend on the order partials arrive in.
    """
    heap = TopKHeap(k, metric_for(metric).higher_is_better)
    for partial in partials:
        heap.extend(partial.matches)
    return MergedResult(query_id=query_id, matches=heap.result())


def merge_all(
    query_ids: Sequence[Any],
    partials_by_fragment: Sequence[Mapping[Any, PartialResult]],
    k: int,
    metric: MetricType,
) -> tuple[MergedResult, ...]:
    """Merge every query row; query order follows `query_ids`."""
    return tuple(
        merge_top_k(
            qid,
            [fragment[qid] for fragment in partials_by_fragment if qid in fragment],
            k,
            metric,
        )
        for qid in query_ids
    )
