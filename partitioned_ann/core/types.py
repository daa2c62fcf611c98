"""
Core Type Definitions: Partitioned Vector Index Primitives

Data model shared by the catalog, builder, rewriter and executor:
    - PartitionValue / PartitionPredicate: partition identity and pruning
    - VectorIndexDefinition / IndexPartitionState: catalog records
    - SearchRequest / plan fragments / results: the search path

Thread Safety:
    - Every record here is immutable (frozen=True); catalog transitions
      replace records instead of mutating them, so snapshots can be
      shared across threads without locking.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Sequence,
    Union,
)
from uuid import uuid4

if TYPE_CHECKING:
    import numpy as np

    from partitioned_ann.core.errors import VectorIndexError


# =============================================================================
# METRIC TYPES
# =============================================================================
class MetricType(Enum):
    """Distance/similarity metrics for vector comparison."""
    COSINE = "cosine"           # Cosine similarity
    L2 = "l2"                   # Euclidean distance
    INNER_PRODUCT = "ip"        # Inner product (dot product)


# =============================================================================
# PARTITION IDENTITY
# =============================================================================
@dataclass(frozen=True, slots=True)
class PartitionValue:
    """
    Partition key values as ordered (column, value) pairs.

    The empty value is the sentinel for unpartitioned indexes and covers
    the whole defining predicate range.
    """
    items: tuple[tuple[str, Any], ...] = ()

    @classmethod
    def of(cls, **values: Any) -> "PartitionValue":
        """PartitionValue.of(ds="2026-01-01")"""
        return cls(items=tuple(values.items()))

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], keys: Optional[Sequence[str]] = None) -> "PartitionValue":
        order = list(keys) if keys is not None else list(values)
        return cls(items=tuple((k, values[k]) for k in order))

    @property
    def is_sentinel(self) -> bool:
        return not self.items

    @property
    def columns(self) -> tuple[str, ...]:
        return tuple(k for k, _ in self.items)

    def get(self, column: str, default: Any = None) -> Any:
        for k, v in self.items:
            if k == column:
                return v
        return default

    def project(self, keys: Sequence[str]) -> "PartitionValue":
        """Project a base-table partition onto index partition keys."""
        values = dict(self.items)
        return PartitionValue(items=tuple((k, values[k]) for k in keys))

    def sort_key(self) -> tuple[str, ...]:
        return tuple(f"{k}={v}" for k, v in self.items)

    def __str__(self) -> str:
        if self.is_sentinel:
            return "<unpartitioned>"
        return "/".join(f"{k}={v}" for k, v in self.items)


UNPARTITIONED = PartitionValue()

# Sorted (base partition, data version) pairs observed at build time
VersionVector = tuple[tuple[PartitionValue, int], ...]


def version_vector(versions: Mapping[PartitionValue, int]) -> VersionVector:
    """Canonical, order-independent version vector."""
    return tuple(sorted(versions.items(), key=lambda kv: kv[0].sort_key()))


def describe_versions(vector: VersionVector) -> tuple[tuple[str, int], ...]:
    return tuple((str(p), v) for p, v in vector)


# =============================================================================
# PARTITION PREDICATES
# =============================================================================
_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "=": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


@dataclass(frozen=True, slots=True)
class PartitionClause:
    """Single comparison on a partition key column."""
    column: str
    op: str
    values: tuple[Any, ...]

    def evaluate(self, value: Any) -> bool:
        if self.op == "in":
            return value in self.values
        if self.op == "between":
            low, high = self.values
            return low <= value <= high
        return _COMPARATORS[self.op](value, self.values[0])


@dataclass(frozen=True, slots=True)
class PartitionPredicate:
    """
    Conjunction of clauses over partition key columns.

    Clauses over columns a PartitionValue does not carry are not evaluated,
    so the unpartitioned sentinel matches every predicate.

    Example:
        where = PartitionPredicate.between("ds", "2026-01-01", "2026-01-04")
    """
    clauses: tuple[PartitionClause, ...] = ()

    @classmethod
    def eq(cls, column: str, value: Any) -> "PartitionPredicate":
        return cls(clauses=(PartitionClause(column, "=", (value,)),))

    @classmethod
    def isin(cls, column: str, values: Iterable[Any]) -> "PartitionPredicate":
        return cls(clauses=(PartitionClause(column, "in", tuple(values)),))

    @classmethod
    def between(cls, column: str, low: Any, high: Any) -> "PartitionPredicate":
        return cls(clauses=(PartitionClause(column, "between", (low, high)),))

    @classmethod
    def compare(cls, column: str, op: str, value: Any) -> "PartitionPredicate":
        if op not in _COMPARATORS:
            raise ValueError(f"Unsupported partition comparison: {op}")
        return cls(clauses=(PartitionClause(column, op, (value,)),))

    @classmethod
    def for_partition(cls, partition: PartitionValue) -> "PartitionPredicate":
        return cls(clauses=tuple(PartitionClause(k, "=", (v,)) for k, v in partition.items))

    def __and__(self, other: "PartitionPredicate") -> "PartitionPredicate":
        return PartitionPredicate(clauses=self.clauses + other.clauses)

    @property
    def columns(self) -> frozenset[str]:
        return frozenset(c.column for c in self.clauses)

    def matches(self, partition: PartitionValue) -> bool:
        values = dict(partition.items)
        for clause in self.clauses:
            if clause.column in values and not clause.evaluate(values[clause.column]):
                return False
        return True

    def __str__(self) -> str:
        parts = []
        for c in self.clauses:
            if c.op == "between":
                parts.append(f"{c.column} BETWEEN {c.values[0]!r} AND {c.values[1]!r}")
            elif c.op == "in":
                parts.append(f"{c.column} IN {list(c.values)!r}")
            else:
                parts.append(f"{c.column} {c.op} {c.values[0]!r}")
        return " AND ".join(parts) or "TRUE"


# =============================================================================
# TABLE SCHEMA (FROM THE METADATA SERVICE)
# =============================================================================
@dataclass(frozen=True, slots=True)
class VectorType:
    """Fixed-dimension embedding column type."""
    dimension: int
    element_type: str = "float32"


@dataclass(frozen=True, slots=True)
class ScalarType:
    name: str


ColumnType = Union[VectorType, ScalarType]


@dataclass(frozen=True)
class TableSchema:
    name: str
    columns: Mapping[str, ColumnType]
    partition_keys: tuple[str, ...] = ()

    def column_type(self, column: str) -> Optional[ColumnType]:
        return self.columns.get(column)


@dataclass(frozen=True, slots=True)
class CandidateRow:
    """One (id, embedding) row read from a partition."""
    candidate_id: Any
    vector: Sequence[float]


# =============================================================================
# INDEX DEFINITION
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class IndexId:
    """Catalog-assigned identifier of a vector index."""
    value: str

    @classmethod
    def generate(cls) -> "IndexId":
        return cls(value=f"vidx-{uuid4().hex[:12]}")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class VectorIndexDefinition:
    """
    Immutable definition of a vector index over one table column.

    Attributes:
        name: Index name, unique within the table namespace
        table: Owning table
        id_column: Candidate-id column (uniqueness is the caller's concern)
        vector_column: Fixed-dimension embedding column
        metric: Distance metric the index is built for
        index_type: Plugin tag selecting build/probe routines
        options: Opaque index-type-specific build options
        partition_keys: Subset of the table's partition keys ((): unpartitioned)
        defining_predicate: Scope of the unpartitioned sentinel (UPDATING FOR)
        created_at: Creation timestamp
    """
    name: str
    table: str
    id_column: str
    vector_column: str
    metric: MetricType = MetricType.COSINE
    index_type: str = "ivf"
    options: Mapping[str, Any] = field(default_factory=dict)
    partition_keys: tuple[str, ...] = ()
    defining_predicate: Optional[PartitionPredicate] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_partitioned(self) -> bool:
        return bool(self.partition_keys)

    def index_partition_of(self, base_partition: PartitionValue) -> PartitionValue:
        """Index partition a base-table partition maps to."""
        if not self.partition_keys:
            return UNPARTITIONED
        return base_partition.project(self.partition_keys)

    def in_scope(self, base_partition: PartitionValue) -> bool:
        """Whether a base partition belongs to the index's build scope."""
        if self.partition_keys or self.defining_predicate is None:
            return True
        return self.defining_predicate.matches(base_partition)


# =============================================================================
# PARTITION BUILD STATE
# =============================================================================
class PartitionState(Enum):
    """Lifecycle of one index partition (see catalog.state_machine)."""
    UNBUILT = "unbuilt"
    BUILDING = "building"
    READY = "ready"
    STALE = "stale"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class BuildLease:
    """
    Lease held by the single in-flight build of a partition.

    fencing_token is globally monotonic; a commit carrying an older token
    than the partition's current lease is rejected.
    """
    index_id: IndexId
    partition: PartitionValue
    holder: str
    fencing_token: int
    acquired_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class IndexPartitionState:
    """
    Build state of one (index, partition value) pair.

    revision increments on every transition and is the compare-and-swap
    token for optimistic transitions (e.g. READY -> STALE).
    """
    index_id: IndexId
    partition: PartitionValue
    state: PartitionState = PartitionState.UNBUILT
    data_version: VersionVector = ()
    artifact_handle: Optional[str] = None
    last_build_at: Optional[datetime] = None
    last_error: Optional["VectorIndexError"] = None
    lease: Optional[BuildLease] = None
    revision: int = 0

    @property
    def covered_partitions(self) -> tuple[PartitionValue, ...]:
        """Base-table partitions the current artifact was built from."""
        return tuple(p for p, _ in self.data_version)


# =============================================================================
# SEARCH REQUEST
# =============================================================================
@dataclass(frozen=True, slots=True)
class CandidateRelation:
    """Table providing candidate (id, vector) rows."""
    table: str
    id_column: str
    vector_column: str


@dataclass(frozen=True, slots=True)
class QueryRow:
    query_id: Any
    vector: Sequence[float]


@dataclass(frozen=True, slots=True)
class QueryRelation:
    """
    Query vectors, either inline rows or read from a table.

    Exactly one of rows / table must be set.
    """
    rows: tuple[QueryRow, ...] = ()
    table: Optional[str] = None
    id_column: Optional[str] = None
    vector_column: Optional[str] = None
    predicate: Optional[PartitionPredicate] = None

    @classmethod
    def inline(cls, vectors: Union[Mapping[Any, Sequence[float]], Sequence[Sequence[float]]]) -> "QueryRelation":
        if isinstance(vectors, Mapping):
            return cls(rows=tuple(QueryRow(qid, tuple(v)) for qid, v in vectors.items()))
        return cls(rows=tuple(QueryRow(i, tuple(v)) for i, v in enumerate(vectors)))

    @classmethod
    def from_table(
        cls,
        table: str,
        id_column: str,
        vector_column: str,
        predicate: Optional[PartitionPredicate] = None,
    ) -> "QueryRelation":
        return cls(table=table, id_column=id_column, vector_column=vector_column, predicate=predicate)

    @property
    def is_inline(self) -> bool:
        return self.table is None


@dataclass(frozen=True, slots=True)
class IndexHint:
    """Session/query-level index selection plus runtime probe options."""
    index_name: str
    runtime_options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SearchRequest:
    """
    Vector search request, compiled once per query.

    Attributes:
        candidates: Candidate relation descriptor
        queries: Query relation descriptor
        metric: Requested distance metric
        k: Results per query row (positive)
        hint: Optional index selection hint
        predicate: Optional predicate restricting candidate partitions
    """
    candidates: CandidateRelation
    queries: QueryRelation
    metric: MetricType = MetricType.COSINE
    k: int = 10
    hint: Optional[IndexHint] = None
    predicate: Optional[PartitionPredicate] = None

    def validate(self, max_k: int = 10_000) -> Optional[str]:
        """
        Validate request parameters.

        Returns:
            None if valid, error message string if invalid
        """
        if self.k < 1:
            return f"k must be >= 1, got {self.k}"
        if self.k > max_k:
            return f"k must be <= {max_k}, got {self.k}"
        if self.queries.is_inline:
            if not self.queries.rows:
                return "query relation has no rows"
            dims = {len(r.vector) for r in self.queries.rows}
            if len(dims) != 1:
                return f"query vectors have mixed dimensions {sorted(dims)}"
        elif not (self.queries.id_column and self.queries.vector_column):
            return "table query relation needs id_column and vector_column"
        return None

    @property
    def query_dimension(self) -> Optional[int]:
        if self.queries.is_inline and self.queries.rows:
            return len(self.queries.rows[0].vector)
        return None


# =============================================================================
# PHYSICAL PLAN
# =============================================================================
@dataclass(frozen=True, slots=True)
class IndexProbe:
    """Probe a built artifact covering one index partition."""
    index_name: str
    index_type: str
    partition: PartitionValue
    artifact_handle: str
    covered: tuple[PartitionValue, ...]
    runtime_options: Mapping[str, Any] = field(default_factory=dict)
    stale: bool = False

    @property
    def label(self) -> str:
        return f"index-probe[{self.partition}]"


@dataclass(frozen=True, slots=True)
class ExactScan:
    """Brute-force scan of one base-table partition."""
    partition: PartitionValue

    @property
    def label(self) -> str:
        return f"exact-scan[{self.partition}]"


PlanFragment = Union[IndexProbe, ExactScan]


@dataclass(frozen=True)
class SearchPlan:
    """Physical plan produced by the rewriter; read-only after creation."""
    request: SearchRequest
    fragments: tuple[PlanFragment, ...]
    resolved_partitions: tuple[PartitionValue, ...]
    index_name: Optional[str] = None
    dimension: Optional[int] = None
    warnings: tuple[Any, ...] = ()

    @property
    def index_partitions(self) -> tuple[PartitionValue, ...]:
        """Base partitions served by index probes."""
        return tuple(p for f in self.fragments if isinstance(f, IndexProbe) for p in f.covered)

    @property
    def exact_partitions(self) -> tuple[PartitionValue, ...]:
        return tuple(f.partition for f in self.fragments if isinstance(f, ExactScan))

    def explain(self) -> list[str]:
        lines = [f"index={self.index_name or '<none>'} k={self.request.k} metric={self.request.metric.value}"]
        for f in self.fragments:
            if isinstance(f, IndexProbe):
                covered = ", ".join(str(p) for p in f.covered)
                suffix = " (STALE)" if f.stale else ""
                lines.append(f"  {f.label} covers [{covered}]{suffix}")
            else:
                lines.append(f"  {f.label}")
        return lines


# =============================================================================
# RESULTS
# =============================================================================
@dataclass(frozen=True, slots=True)
class Match:
    """(candidate id, score) pair in the metric's natural units."""
    candidate_id: Any
    score: float


@dataclass(frozen=True, slots=True)
class PartialResult:
    """Best-first matches of one plan fragment for one query row (len <= k)."""
    matches: tuple[Match, ...] = ()

    def __len__(self) -> int:
        return len(self.matches)


@dataclass(frozen=True, slots=True)
class MergedResult:
    """Global top-k for one query row."""
    query_id: Any
    matches: tuple[Match, ...] = ()

    @property
    def ids(self) -> list[Any]:
        return [m.candidate_id for m in self.matches]

    @property
    def scores(self) -> list[float]:
        return [m.score for m in self.matches]

    def __len__(self) -> int:
        return len(self.matches)


@dataclass(frozen=True)
class SearchMetadata:
    """Execution metadata surfaced to the caller, including stale warnings."""
    query_id: str
    index_name: Optional[str]
    fragments: tuple[str, ...]
    index_partitions: tuple[str, ...]
    exact_partitions: tuple[str, ...]
    warnings: tuple[Any, ...] = ()
    elapsed_ms: float = 0.0

    @property
    def used_stale_index(self) -> bool:
        from partitioned_ann.core.errors import StaleIndexUsed
        return any(isinstance(w, StaleIndexUsed) for w in self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_id": self.query_id,
            "index_name": self.index_name,
            "fragments": list(self.fragments),
            "index_partitions": list(self.index_partitions),
            "exact_partitions": list(self.exact_partitions),
            "warnings": [str(w) for w in self.warnings],
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass(frozen=True)
class SearchResponse:
    results: tuple[MergedResult, ...]
    metadata: SearchMetadata

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def for_query(self, query_id: Any) -> MergedResult:
        for r in self.results:
            if r.query_id == query_id:
                return r
        raise KeyError(query_id)

    def to_rows(self) -> list[dict[str, Any]]:
        """Flatten to (query_id, candidate_id, score, rank) rows."""
        return [
            {"query_id": r.query_id, "candidate_id": m.candidate_id, "score": m.score, "rank": rank}
            for r in self.results
            for rank, m in enumerate(r.matches)
        ]


@dataclass(frozen=True, slots=True)
class PartitionRows:
    """Validated build input: ids plus an (n, d) float32 matrix."""
    partition: PartitionValue
    ids: tuple[Any, ...]
    vectors: "np.ndarray"
    metric: MetricType
    dimension: int

    def __len__(self) -> int:
        return len(self.ids)
