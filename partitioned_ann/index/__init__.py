"""
Index Module: Distance Kernels, Exact Search and Index-Type Plugins

Provides:
    - Distance metric registry (cosine, L2, inner product)
    - Bounded top-k selection shared by every ranked producer
    - Exact fallback engine
    - Plugins: flat, ivf, hnsw
"""

from partitioned_ann.index.distance import (
    DistanceMetric,
    get_metric,
    metric_for,
    normalize_vector,
    parse_metric,
)
from partitioned_ann.index.topk import TopKHeap, rank_matches
from partitioned_ann.index.exact import ExactSearchEngine, exact_top_k
from partitioned_ann.index.plugins import (
    available_index_types,
    get_index_type,
    register_index_type,
)

__all__ = [
    # Distance
    "DistanceMetric",
    "get_metric",
    "metric_for",
    "normalize_vector",
    "parse_metric",
    # Top-k
    "TopKHeap",
    "rank_matches",
    # Exact
    "ExactSearchEngine",
    "exact_top_k",
    # Plugins
    "available_index_types",
    "get_index_type",
    "register_index_type",
]
