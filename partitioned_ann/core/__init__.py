"""
Core Module: Types, Errors, Configuration and Collaborator Protocols

Depends on nothing else in the package; numpy is only needed at type-check
time here.
"""

from partitioned_ann.core.types import (
    IndexId,
    IndexPartitionState,
    MetricType,
    PartitionPredicate,
    PartitionState,
    PartitionValue,
    SearchPlan,
    SearchRequest,
    VectorIndexDefinition,
)
from partitioned_ann.core.errors import (
    Err,
    ErrorCode,
    Ok,
    Result,
    StaleIndexUsed,
    VectorIndexError,
)
from partitioned_ann.core.config import (
    BuilderConfig,
    ExecutorConfig,
    ServiceConfig,
    SessionPolicy,
)
from partitioned_ann.core.protocols import (
    IndexTypePlugin,
    RowReader,
    TableMetadataService,
)

__all__ = [
    # Types
    "IndexId",
    "IndexPartitionState",
    "MetricType",
    "PartitionPredicate",
    "PartitionState",
    "PartitionValue",
    "SearchPlan",
    "SearchRequest",
    "VectorIndexDefinition",
    # Errors
    "Err",
    "ErrorCode",
    "Ok",
    "Result",
    "StaleIndexUsed",
    "VectorIndexError",
    # Config
    "BuilderConfig",
    "ExecutorConfig",
    "ServiceConfig",
    "SessionPolicy",
    # Protocols
    "IndexTypePlugin",
    "RowReader",
    "TableMetadataService",
]
