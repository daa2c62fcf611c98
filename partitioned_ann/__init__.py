"""
partitioned_ann: Partitioned ANN Vector Index Lifecycle & Distributed Top-k Search

Features:
    - Per-partition ANN index builds (flat, IVF, HNSW) with a catalog-guarded
      state machine and fenced build leases
    - Staleness tracking against per-partition data versions
    - Per-partition index vs exact routing, so partially indexed tables
      still return exact-equivalent results
    - Thread-pool scatter/gather with a deterministic global top-k merge

Usage:
    from partitioned_ann import VectorSearchSession, PartitionPredicate

    session = VectorSearchSession()
    session.store.create_table(schema)
    session.create_vector_index(
        "docs_idx", "docs", "doc_id", "embedding",
        partitioned_by=["ds"],
        updating_for=PartitionPredicate.between("ds", "2026-01-01", "2026-01-03"),
    )
    response = session.vector_search("docs", "doc_id", "embedding", {"q": vector}, k=10)
"""

from __future__ import annotations

__version__ = "0.1.0"

from partitioned_ann.core.types import (
    MetricType,
    PartitionPredicate,
    PartitionState,
    PartitionValue,
    ScalarType,
    TableSchema,
    VectorIndexDefinition,
    VectorType,
)
from partitioned_ann.core.errors import (
    Err,
    Ok,
    Result,
    StaleIndexUsed,
    VectorIndexError,
)
from partitioned_ann.core.config import ServiceConfig, SessionPolicy


def __getattr__(name: str):
    """Lazy import of the session stack."""
    if name == "VectorSearchSession":
        from partitioned_ann.session import VectorSearchSession
        return VectorSearchSession
    if name == "InMemoryTableStore":
        from partitioned_ann.storage.memory import InMemoryTableStore
        return InMemoryTableStore
    if name == "CancellationToken":
        from partitioned_ann.query.executor import CancellationToken
        return CancellationToken
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "__version__",
    # Types
    "MetricType",
    "PartitionPredicate",
    "PartitionState",
    "PartitionValue",
    "ScalarType",
    "TableSchema",
    "VectorIndexDefinition",
    "VectorType",
    # Errors
    "Err",
    "Ok",
    "Result",
    "StaleIndexUsed",
    "VectorIndexError",
    # Config
    "ServiceConfig",
    "SessionPolicy",
    # Lazy
    "VectorSearchSession",
    "InMemoryTableStore",
    "CancellationToken",
]
