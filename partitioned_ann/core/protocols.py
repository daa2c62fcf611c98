"""
Protocol Definitions: Collaborators Consumed by the Index Core

Defines structural interfaces for:
    - TableMetadataService: schema, partitions and per-partition data versions
    - RowReader: candidate (id, vector) rows per partition
    - IndexTypePlugin: index-type-specific build/probe capability
"""

from __future__ import annotations

from abc import abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

if TYPE_CHECKING:
    import numpy as np

    from partitioned_ann.core.errors import NotFound, Result
    from partitioned_ann.core.types import (
        CandidateRow,
        Match,
        MetricType,
        PartitionRows,
        PartitionValue,
        TableSchema,
    )


# =============================================================================
# TABLE / PARTITION METADATA
# =============================================================================
@runtime_checkable
class TableMetadataService(Protocol):
    """
    Partition metadata of the underlying table store.

    Data versions are monotonically increasing per partition; any write to a
    partition bumps its version.
    """

    @abstractmethod
    def describe_table(self, table: str) -> "Result[TableSchema, NotFound]":
        """Schema including partition keys and column types."""
        ...

    @abstractmethod
    def partition_versions(self, table: str) -> "Result[dict[PartitionValue, int], NotFound]":
        """Current data version of every partition of the table."""
        ...


# =============================================================================
# ROW STORAGE
# =============================================================================
@runtime_checkable
class RowReader(Protocol):
    """Reads candidate rows; shared by the builder and exact fallback."""

    @abstractmethod
    def read_rows(
        self,
        table: str,
        partition: "PartitionValue",
        id_column: str,
        vector_column: str,
    ) -> "Result[list[CandidateRow], NotFound]":
        """Full current snapshot of (id, vector) rows of one partition."""
        ...


# =============================================================================
# INDEX-TYPE PLUGIN
# =============================================================================
@runtime_checkable
class IndexTypePlugin(Protocol):
    """
    Capability interface every ANN algorithm satisfies.

    Implementations:
        - FlatIndexType: exhaustive baseline
        - IVFIndexType: inverted-file (k-means lists) probe
        - HNSWIndexType: graph-based beam search

    Artifacts are opaque to the core and must be treated as read-only once
    built, since probes run concurrently.
    """

    @property
    def name(self) -> str:
        """Tag stored in VectorIndexDefinition.index_type."""
        ...

    @abstractmethod
    def validate_options(self, options: Mapping[str, Any]) -> Optional[str]:
        """None if build options are acceptable, otherwise the reason."""
        ...

    @abstractmethod
    def build(self, rows: "PartitionRows", options: Mapping[str, Any]) -> Any:
        """Build an artifact from validated partition rows."""
        ...

    @abstractmethod
    def probe(
        self,
        artifact: Any,
        query_vector: "np.ndarray",
        runtime_options: Mapping[str, Any],
        k: int,
    ) -> Sequence["Match"]:
        """Ranked best-first (id, score) candidates, at most k."""
        ...
