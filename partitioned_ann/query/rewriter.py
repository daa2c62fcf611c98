"""
Query Rewriter: Per-Partition Index vs Exact Routing

Compiles a SearchRequest into a SearchPlan. The routing decision is made
per base-table partition, so one query may probe the index for some
partitions and exact-scan the rest (incremental backfill).

Decision policy (decide_partition, in priority order):
    1. exactness demanded, or no usable index   -> EXACT_SCAN
    2. READY                                    -> USE_INDEX
    3. STALE and stale reads allowed            -> USE_STALE_INDEX (annotated)
    4. anything else                            -> EXACT_SCAN

Coverage rule:
    An index partition may cover several base partitions (coarser
    partition keys, or the unpartitioned sentinel). Its artifact is only
    probed when every base partition it was built from is part of the
    query's resolved set; otherwise it would return candidates the
    predicate excludes. Resolved partitions the artifact does not cover
    are exact-scanned.

The plan reflects catalog state at compile time and is not re-checked
during execution.
"""

from __future__ import annotations

from collections import defaultdict
from enum import Enum
from typing import Any, Mapping, Optional

from partitioned_ann.catalog.catalog import IndexCatalog, IndexEntry
from partitioned_ann.catalog.staleness import StalenessReport, StalenessTracker
from partitioned_ann.core.config import SessionPolicy
from partitioned_ann.core.errors import (
    DimensionOrMetricIncompatible,
    Err,
    InvalidRequest,
    Ok,
    Result,
    StaleIndexUsed,
    VectorIndexError,
)
from partitioned_ann.core.protocols import TableMetadataService
from partitioned_ann.core.types import (
    ExactScan,
    IndexHint,
    IndexPartitionState,
    IndexProbe,
    PartitionState,
    PartitionValue,
    PlanFragment,
    SearchPlan,
    SearchRequest,
    VectorType,
    describe_versions,
)
from partitioned_ann.observability.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# PURE DECISION FUNCTION
# =============================================================================
class PartitionDecision(Enum):
    USE_INDEX = "use_index"
    USE_STALE_INDEX = "use_stale_index"
    EXACT_SCAN = "exact_scan"

    @property
    def uses_index(self) -> bool:
        return self is not PartitionDecision.EXACT_SCAN


def decide_partition(
    state: Optional[PartitionState],
    policy: SessionPolicy,
    index_available: bool,
) -> PartitionDecision:
    """
    Route one partition given its catalog state and the session policy.

    `state` is None when the catalog has no record for the partition.
    """
    if policy.exact_only or not index_available or state is None:
        return PartitionDecision.EXACT_SCAN
    if state is PartitionState.READY:
        return PartitionDecision.USE_INDEX
    if state is PartitionState.STALE and policy.allow_stale_reads:
        return PartitionDecision.USE_STALE_INDEX
    return PartitionDecision.EXACT_SCAN


# =============================================================================
# REWRITER
# =============================================================================
class QueryRewriter:
    """
    Compiles search requests into physical plans.

    Usage:
        rewriter = QueryRewriter(catalog, metadata, tracker)
        plan = rewriter.rewrite(request, SessionPolicy()).unwrap()
        print("\\n".join(plan.explain()))
    """

    __slots__ = ("_catalog", "_metadata", "_tracker", "_max_k")

    def __init__(
        self,
        catalog: IndexCatalog,
        metadata: TableMetadataService,
        tracker: StalenessTracker,
        max_k: int = 10_000,
    ) -> None:
        self._catalog = catalog
        self._metadata = metadata
        self._tracker = tracker
        self._max_k = max_k

    def rewrite(
        self,
        request: SearchRequest,
        policy: SessionPolicy,
    ) -> Result[SearchPlan, VectorIndexError]:
        if reason := request.validate(self._max_k):
            return Err(InvalidRequest.because(reason))

        candidates = request.candidates
        schema_result = self._metadata.describe_table(candidates.table)
        if schema_result.is_err():
            return schema_result
        schema = schema_result.unwrap()
        if schema.column_type(candidates.id_column) is None:
            return Err(InvalidRequest.because(f"unknown id column '{candidates.id_column}'"))
        vector_type = schema.column_type(candidates.vector_column)
        if not isinstance(vector_type, VectorType):
            return Err(InvalidRequest.because(f"column '{candidates.vector_column}' is not a vector column"))
        if request.predicate is not None:
            unknown = sorted(request.predicate.columns - set(schema.partition_keys))
            if unknown:
                return Err(InvalidRequest.because(
                    f"predicate references non-partition columns {unknown} of table '{candidates.table}'"
                ))

        versions_result = self._metadata.partition_versions(candidates.table)
        if versions_result.is_err():
            return versions_result
        resolved = sorted(
            (p for p in versions_result.unwrap() if request.predicate is None or request.predicate.matches(p)),
            key=PartitionValue.sort_key,
        )

        hint = request.hint or policy.index_hint
        selected = self._select_index(request, hint, policy)
        if selected.is_err():
            return selected
        entry = selected.unwrap()

        query_dim = request.query_dimension
        if entry is not None and query_dim is not None and query_dim != entry.dimension:
            return Err(DimensionOrMetricIncompatible.dimension(entry.name, entry.dimension, query_dim))
        if query_dim is not None and query_dim != vector_type.dimension:
            return Err(InvalidRequest.because(
                f"query dimension {query_dim} disagrees with column '{candidates.vector_column}' "
                f"dimension {vector_type.dimension}"
            ))

        if entry is None:
            fragments: list[PlanFragment] = [ExactScan(p) for p in resolved]
            warnings: list[StaleIndexUsed] = []
        else:
            runtime_options = dict(hint.runtime_options) if hint is not None else {}
            planned = self._plan_with_index(entry, resolved, policy, runtime_options)
            if planned.is_err():
                return planned
            fragments, warnings = planned.unwrap()

        plan = SearchPlan(
            request=request,
            fragments=tuple(fragments),
            resolved_partitions=tuple(resolved),
            index_name=entry.name if entry is not None else None,
            dimension=vector_type.dimension,
            warnings=tuple(warnings),
        )
        logger.debug(
            "Search plan compiled",
            index=plan.index_name,
            index_fragments=sum(isinstance(f, IndexProbe) for f in plan.fragments),
            exact_fragments=len(plan.exact_partitions),
            stale=len(warnings),
        )
        return Ok(plan)

    # =========================================================================
    # INDEX SELECTION
    # =========================================================================
    def _select_index(
        self,
        request: SearchRequest,
        hint: Optional[IndexHint],
        policy: SessionPolicy,
    ) -> Result[Optional[IndexEntry], VectorIndexError]:
        """
        Hinted index if given, else the oldest index on the column whose
        metric matches the request. None means exact search everywhere.
        """
        if policy.exact_only:
            return Ok(None)

        candidates = request.candidates
        if hint is not None:
            found = self._catalog.describe(hint.index_name, table=candidates.table)
            if found.is_err():
                return found
            entry = found.unwrap()
            if entry.definition.vector_column != candidates.vector_column:
                return Err(InvalidRequest.because(
                    f"index '{entry.name}' is defined on column '{entry.definition.vector_column}', "
                    f"not '{candidates.vector_column}'"
                ))
            if entry.definition.metric is not request.metric:
                return Err(DimensionOrMetricIncompatible.metric(
                    entry.name, entry.definition.metric.value, request.metric.value
                ))
            return Ok(entry)

        entries = self._catalog.find_indexes(candidates.table, candidates.vector_column)
        if not entries:
            return Ok(None)
        for entry in entries:
            if entry.definition.metric is request.metric:
                return Ok(entry)
        first = entries[0]
        return Err(DimensionOrMetricIncompatible.metric(
            first.name, first.definition.metric.value, request.metric.value
        ))

    # =========================================================================
    # PER-PARTITION ROUTING
    # =========================================================================
    def _plan_with_index(
        self,
        entry: IndexEntry,
        resolved: list[PartitionValue],
        policy: SessionPolicy,
        runtime_options: Mapping[str, Any],
    ) -> Result[tuple[list[PlanFragment], list[StaleIndexUsed]], VectorIndexError]:
        report_result = self._tracker.check(entry.index_id)
        if report_result.is_err():
            return report_result
        report: StalenessReport = report_result.unwrap()

        states_result = self._catalog.get_partition_states(entry.index_id)
        if states_result.is_err():
            return states_result
        states: dict[PartitionValue, IndexPartitionState] = {s.partition: s for s in states_result.unwrap()}

        definition = entry.definition
        resolved_set = set(resolved)
        groups: dict[PartitionValue, list[PartitionValue]] = defaultdict(list)
        fragments: list[PlanFragment] = []
        warnings: list[StaleIndexUsed] = []

        for base in resolved:
            if definition.in_scope(base):
                groups[definition.index_partition_of(base)].append(base)
            else:
                fragments.append(ExactScan(base))

        for index_partition in sorted(groups, key=PartitionValue.sort_key):
            bases = groups[index_partition]
            state = states.get(index_partition)
            decision = decide_partition(
                state.state if state is not None else None,
                policy,
                index_available=state is not None and state.artifact_handle is not None,
            )
            covered = set(state.covered_partitions) if state is not None else set()

            if not decision.uses_index or not covered or not covered <= resolved_set:
                fragments.extend(ExactScan(b) for b in bases)
                continue

            stale = decision is PartitionDecision.USE_STALE_INDEX
            fragments.append(IndexProbe(
                index_name=entry.name,
                index_type=definition.index_type,
                partition=index_partition,
                artifact_handle=state.artifact_handle,
                covered=tuple(sorted(covered, key=PartitionValue.sort_key)),
                runtime_options=dict(runtime_options),
                stale=stale,
            ))
            fragments.extend(ExactScan(b) for b in bases if b not in covered)
            if stale:
                warnings.append(StaleIndexUsed(
                    index_name=entry.name,
                    partition=str(index_partition),
                    built_version=describe_versions(state.data_version),
                    current_version=describe_versions(report.current_versions.get(index_partition, ())),
                ))

        return Ok((fragments, warnings))
