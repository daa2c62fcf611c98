"""
Vector Search Session: DDL/DML and Search Surface

Programmatic counterpart of:
    CREATE VECTOR INDEX <name> ON TABLE <table>(<id_col>, <vector_col>)
        WITH (index_type=.., distance_metric=.., index_options=.., partitioned_by=[..])
        [UPDATING FOR <partition predicate>]
    UPDATE VECTOR INDEX <name> [WHERE <partition predicate>]
    VECTOR_SEARCH(candidate_id, candidate_vector, query_vector, metric, k)
    vector_search table function (named parameters, flat rows)
    SET OPTION vector_index = <name>(<runtime options>)

Components return Result values; the session raises the carried
VectorIndexError so callers get ordinary exceptions.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from partitioned_ann.build.artifacts import ArtifactStore
from partitioned_ann.build.builder import BuildReport, PartitionIndexBuilder, UpdateTarget
from partitioned_ann.catalog.catalog import IndexCatalog, IndexEntry
from partitioned_ann.catalog.staleness import StalenessReport, StalenessTracker
from partitioned_ann.core.config import ServiceConfig, SessionPolicy
from partitioned_ann.core.errors import InvalidDefinition, InvalidRequest
from partitioned_ann.core.protocols import RowReader, TableMetadataService
from partitioned_ann.core.types import (
    CandidateRelation,
    IndexHint,
    IndexId,
    IndexPartitionState,
    PartitionPredicate,
    PartitionValue,
    QueryRelation,
    SearchPlan,
    SearchRequest,
    SearchResponse,
    VectorIndexDefinition,
)
from partitioned_ann.index.distance import parse_metric
from partitioned_ann.observability.logging import get_logger
from partitioned_ann.query.executor import CancellationToken, SearchExecutor
from partitioned_ann.query.rewriter import QueryRewriter
from partitioned_ann.storage.memory import InMemoryTableStore

logger = get_logger(__name__)

QueriesArg = Union[QueryRelation, Mapping[Any, Sequence[float]], Sequence[Sequence[float]]]
WhereArg = Union[PartitionPredicate, PartitionValue, Mapping[str, Any], None]


@dataclass(frozen=True)
class IndexCreation:
    """Outcome of create_vector_index; report is set when UPDATING FOR built partitions."""
    index_id: IndexId
    definition: VectorIndexDefinition
    report: Optional[BuildReport] = None


def _where(where: WhereArg) -> UpdateTarget:
    if where is None or isinstance(where, (PartitionPredicate, PartitionValue)):
        return where
    return PartitionValue.from_mapping(where)


def _predicate(where: WhereArg) -> Optional[PartitionPredicate]:
    target = _where(where)
    if isinstance(target, PartitionValue):
        return PartitionPredicate.for_partition(target)
    return target


class VectorSearchSession:
    """
    Entry point wiring catalog, builder, rewriter and executor together.

    Example:
        session = VectorSearchSession()
        session.store.create_table(schema)
        session.create_vector_index(
            "docs_idx", "docs", "doc_id", "embedding",
            index_type="ivf", distance_metric="cosine", partitioned_by=["ds"],
            updating_for=PartitionPredicate.between("ds", "2026-01-01", "2026-01-03"),
        )
        response = session.vector_search("docs", "doc_id", "embedding", {"q1": query}, k=10)
    """

    def __init__(
        self,
        store: Optional[InMemoryTableStore] = None,
        config: Optional[ServiceConfig] = None,
        metadata: Optional[TableMetadataService] = None,
        reader: Optional[RowReader] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ServiceConfig()
        if error := self._config.validate():
            raise ValueError(f"Invalid configuration: {error}")

        self._store = store or InMemoryTableStore()
        self._metadata = metadata or self._store
        self._reader = reader or self._store
        self._policy = self._config.policy

        self._artifacts = ArtifactStore(clock=clock)
        self._catalog = IndexCatalog(self._metadata, clock=clock)
        self._tracker = StalenessTracker(self._catalog, self._metadata)
        self._builder = PartitionIndexBuilder(
            self._catalog, self._metadata, self._reader, self._artifacts, self._config.builder
        )
        self._rewriter = QueryRewriter(
            self._catalog, self._metadata, self._tracker, max_k=self._config.executor.max_k
        )
        self._executor = SearchExecutor(
            self._metadata, self._reader, self._artifacts, self._config.executor
        )

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------
    @property
    def store(self) -> InMemoryTableStore:
        return self._store

    @property
    def catalog(self) -> IndexCatalog:
        return self._catalog

    @property
    def builder(self) -> PartitionIndexBuilder:
        return self._builder

    @property
    def policy(self) -> SessionPolicy:
        return self._policy

    @policy.setter
    def policy(self, policy: SessionPolicy) -> None:
        self._policy = policy

    # -------------------------------------------------------------------------
    # DDL / DML
    # -------------------------------------------------------------------------
    def create_vector_index(
        self,
        name: str,
        table: str,
        id_column: str,
        vector_column: str,
        index_type: str = "ivf",
        distance_metric: str = "cosine",
        index_options: Optional[Mapping[str, Any]] = None,
        partitioned_by: Sequence[str] = (),
        updating_for: WhereArg = None,
    ) -> IndexCreation:
        """
        Define an index; with `updating_for`, build the resolved partitions.

        For an unpartitioned index `updating_for` becomes the defining
        predicate scoping the single sentinel partition.

        Raises:
            InvalidDefinition: bad keys, columns, metric, type or options
            AlreadyExists: name already used on the table
        """
        metric = parse_metric(distance_metric)
        if metric.is_err():
            raise InvalidDefinition.because(name, f"unrecognized distance metric {distance_metric!r}")

        definition = VectorIndexDefinition(
            name=name,
            table=table,
            id_column=id_column,
            vector_column=vector_column,
            metric=metric.unwrap(),
            index_type=index_type,
            options=dict(index_options or {}),
            partition_keys=tuple(partitioned_by),
            defining_predicate=_predicate(updating_for),
        )
        index_id = self._catalog.define(definition).unwrap_or_raise()

        report = None
        if updating_for is not None:
            report = self._builder.update(index_id, _predicate(updating_for)).unwrap_or_raise()
        return IndexCreation(index_id=index_id, definition=definition, report=report)

    def update_vector_index(self, name: str, where: WhereArg = None) -> BuildReport:
        """
        Rebuild index partitions.

        A partition value forces that partition, a predicate forces every
        matching partition, no filter rebuilds every known partition.
        """
        return self._builder.update(name, _where(where)).unwrap_or_raise()

    def set_option(self, option: str, value: Any = None, **runtime_options: Any) -> SessionPolicy:
        """
        Session options consumed by the rewriter and executor only.

            set_option("vector_index", "docs_idx", num_probes=8)
            set_option("vector_index", None)          # clear the hint
            set_option("exact_search", True)
            set_option("allow_stale_reads", True)
        """
        if option == "vector_index":
            self._policy = self._policy.with_index(value, **runtime_options) if value else self._policy.without_index()
        elif option == "exact_search":
            self._policy = replace(self._policy, exact_only=bool(value))
        elif option == "allow_stale_reads":
            self._policy = replace(self._policy, allow_stale_reads=bool(value))
        else:
            raise InvalidRequest.because(f"unknown session option {option!r}")
        logger.debug("Session option set", option=option, value=value)
        return self._policy

    # -------------------------------------------------------------------------
    # SEARCH
    # -------------------------------------------------------------------------
    def _request(
        self,
        table: str,
        id_column: str,
        vector_column: str,
        queries: QueriesArg,
        metric: str,
        k: int,
        where: WhereArg,
        index: Optional[str],
        options: Optional[Mapping[str, Any]],
    ) -> SearchRequest:
        parsed = parse_metric(metric).unwrap_or_raise()
        relation = queries if isinstance(queries, QueryRelation) else QueryRelation.inline(queries)
        hint = IndexHint(index, dict(options or {})) if index else None
        return SearchRequest(
            candidates=CandidateRelation(table, id_column, vector_column),
            queries=relation,
            metric=parsed,
            k=k,
            hint=hint,
            predicate=_predicate(where),
        )

    def plan(self, request: SearchRequest) -> SearchPlan:
        return self._rewriter.rewrite(request, self._policy).unwrap_or_raise()

    def execute(self, request: SearchRequest, token: Optional[CancellationToken] = None) -> SearchResponse:
        plan = self.plan(request)
        return self._executor.execute(plan, token).unwrap_or_raise()

    def vector_search(
        self,
        table: str,
        id_column: str,
        vector_column: str,
        queries: QueriesArg,
        metric: str = "cosine",
        k: int = 10,
        where: WhereArg = None,
        index: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
        token: Optional[CancellationToken] = None,
    ) -> SearchResponse:
        """Aggregate form: one MergedResult per query row."""
        request = self._request(table, id_column, vector_column, queries, metric, k, where, index, options)
        return self.execute(request, token)

    def vector_search_table(
        self,
        *,
        candidate_table: str,
        candidate_id_column: str,
        candidate_vector_column: str,
        query_table: Optional[str] = None,
        query_id_column: Optional[str] = None,
        query_vector_column: Optional[str] = None,
        query_where: WhereArg = None,
        queries: Optional[QueriesArg] = None,
        k: int = 10,
        metric: str = "cosine",
        where: WhereArg = None,
        index: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
        token: Optional[CancellationToken] = None,
    ) -> list[dict[str, Any]]:
        """Table-function form: flat (query_id, candidate_id, score, rank) rows."""
        if query_table is not None:
            relation: QueriesArg = QueryRelation.from_table(
                query_table, query_id_column, query_vector_column, _predicate(query_where)
            )
        elif queries is not None:
            relation = queries
        else:
            raise InvalidRequest.because("either query_table or queries is required")
        response = self.vector_search(
            candidate_table, candidate_id_column, candidate_vector_column, relation,
            metric=metric, k=k, where=where, index=index, options=options, token=token,
        )
        return response.to_rows()

    def explain(
        self,
        table: str,
        id_column: str,
        vector_column: str,
        queries: QueriesArg,
        metric: str = "cosine",
        k: int = 10,
        where: WhereArg = None,
        index: Optional[str] = None,
    ) -> list[str]:
        request = self._request(table, id_column, vector_column, queries, metric, k, where, index, None)
        return self.plan(request).explain()

    # -------------------------------------------------------------------------
    # MAINTENANCE
    # -------------------------------------------------------------------------
    def list_vector_indexes(self, table: Optional[str] = None) -> list[IndexEntry]:
        return self._catalog.list_indexes(table)

    def partition_states(self, name: str, where: WhereArg = None) -> tuple[IndexPartitionState, ...]:
        return self._catalog.get_partition_states(name, _predicate(where)).unwrap_or_raise()

    def check_staleness(self, name: str) -> StalenessReport:
        return self._tracker.check(name).unwrap_or_raise()

    def recover_builds(self) -> list[IndexPartitionState]:
        return self._builder.recover()

    def vacuum(self) -> list[str]:
        return self._builder.vacuum()
