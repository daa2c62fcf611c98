"""
Query Module: Rewrite, Scatter/Gather Execution and Top-k Merge
"""

from partitioned_ann.query.merge import merge_all, merge_top_k
from partitioned_ann.query.rewriter import PartitionDecision, QueryRewriter, decide_partition
from partitioned_ann.query.executor import CancellationToken, SearchExecutor

__all__ = [
    "merge_all",
    "merge_top_k",
    "PartitionDecision",
    "QueryRewriter",
    "decide_partition",
    "CancellationToken",
    "SearchExecutor",
]
