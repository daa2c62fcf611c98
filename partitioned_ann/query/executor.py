"""
Distributed Search Executor

Executes a SearchPlan with scatter/gather:
    1. Scatter: one task per plan fragment (index probe or exact scan) on
       a thread pool; each returns <= k matches per query row
    2. Gather: wait for every fragment; the global merge is the single
       synchronization point
    3. Merge: bounded top-k per query row (see query.merge)

Failure semantics:
    - Any failed task fails the whole query with PartitionTaskFailed; a
      top-k computed from fewer partitions than planned is never returned
    - Caller cancellation propagates to all outstanding tasks, which stop
      at their next check and contribute nothing (SearchCancelled)
    - An optional per-query timeout cancels the same way (SearchTimeout)

Tasks share no mutable state; each builds its own PartialResults and the
merge reads them only after all tasks finished.
"""

from __future__ import annotations

import contextvars
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Any, Optional
from uuid import uuid4

import numpy as np

from partitioned_ann.build.artifacts import ArtifactStore
from partitioned_ann.core.config import ExecutorConfig
from partitioned_ann.core.errors import (
    DimensionMismatch,
    DimensionOrMetricIncompatible,
    Err,
    InvalidRequest,
    OffendingRow,
    Ok,
    PartitionTaskFailed,
    Result,
    SearchCancelled,
    SearchTimeout,
    VectorIndexError,
)
from partitioned_ann.core.protocols import RowReader, TableMetadataService
from partitioned_ann.core.types import (
    ExactScan,
    IndexProbe,
    PartialResult,
    PartitionValue,
    PlanFragment,
    QueryRelation,
    SearchMetadata,
    SearchPlan,
    SearchResponse,
)
from partitioned_ann.index.distance import vector_dimension
from partitioned_ann.index.exact import ExactSearchEngine
from partitioned_ann.index.plugins import get_index_type
from partitioned_ann.index.topk import rank_matches
from partitioned_ann.observability.logging import StructuredLogger, get_logger
from partitioned_ann.query.merge import merge_all

logger = get_logger(__name__)

_POLL_INTERVAL_S = 0.01

QueryVectors = dict[Any, np.ndarray]
FragmentOutput = Optional[dict[Any, PartialResult]]


# =============================================================================
# CANCELLATION
# =============================================================================
class CancellationToken:
    """
    Cooperative cancellation flag shared by a search and its tasks.

    A child token is cancelled when either it or its parent is.
    """

    __slots__ = ("_event", "_parent")

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)


# =============================================================================
# EXECUTOR
# =============================================================================
class SearchExecutor:
    """
    Runs compiled plans against artifacts and candidate rows.

    Usage:
        executor = SearchExecutor(store, store, artifacts, ExecutorConfig())
        response = executor.execute(plan).unwrap()
        for result in response:
            print(result.query_id, result.ids)
    """

    __slots__ = ("_metadata", "_reader", "_artifacts", "_config")

    def __init__(
        self,
        metadata: TableMetadataService,
        reader: RowReader,
        artifacts: ArtifactStore,
        config: Optional[ExecutorConfig] = None,
    ) -> None:
        self._metadata = metadata
        self._reader = reader
        self._artifacts = artifacts
        self._config = config or ExecutorConfig()

    def execute(
        self,
        plan: SearchPlan,
        token: Optional[CancellationToken] = None,
    ) -> Result[SearchResponse, VectorIndexError]:
        search_id = f"search-{uuid4().hex[:12]}"
        started = time.perf_counter()

        with StructuredLogger.context(search_id=search_id):
            queries_result = self._load_queries(plan)
            if queries_result.is_err():
                return queries_result
            query_ids, queries = queries_result.unwrap()

            gathered = self._scatter_gather(search_id, plan, queries, token or CancellationToken())
            if gathered.is_err():
                return gathered

            request = plan.request
            results = merge_all(query_ids, gathered.unwrap(), request.k, request.metric)
            metadata = SearchMetadata(
                query_id=search_id,
                index_name=plan.index_name,
                fragments=tuple(f.label for f in plan.fragments),
                index_partitions=tuple(str(p) for p in plan.index_partitions),
                exact_partitions=tuple(str(p) for p in plan.exact_partitions),
                warnings=plan.warnings,
                elapsed_ms=(time.perf_counter() - started) * 1000.0,
            )
            for warning in plan.warnings:
                logger.warning(str(warning), index=warning.index_name, partition=warning.partition)
            logger.info(
                "Search completed",
                queries=len(query_ids),
                fragments=len(plan.fragments),
                elapsed_ms=round(metadata.elapsed_ms, 3),
            )
            return Ok(SearchResponse(results=results, metadata=metadata))

    # =========================================================================
    # QUERY LOADING
    # =========================================================================
    def _load_queries(self, plan: SearchPlan) -> Result[tuple[list[Any], QueryVectors], VectorIndexError]:
        relation: QueryRelation = plan.request.queries
        if relation.is_inline:
            pairs = [(row.query_id, row.vector) for row in relation.rows]
        else:
            versions = self._metadata.partition_versions(relation.table)
            if versions.is_err():
                return versions
            pairs = []
            for partition in sorted(versions.unwrap(), key=PartitionValue.sort_key):
                if relation.predicate is not None and not relation.predicate.matches(partition):
                    continue
                read = self._reader.read_rows(relation.table, partition, relation.id_column, relation.vector_column)
                if read.is_err():
                    return read
                pairs.extend((row.candidate_id, row.vector) for row in read.unwrap())

        expected = plan.dimension
        query_ids: list[Any] = []
        queries: QueryVectors = {}
        for query_id, vector in pairs:
            actual = vector_dimension(vector)
            if expected is not None and actual != expected:
                if plan.index_name is not None:
                    return Err(DimensionOrMetricIncompatible.dimension(plan.index_name, expected, actual))
                return Err(InvalidRequest.because(
                    f"query {query_id!r} has dimension {actual}, expected {expected}"
                ))
            if query_id in queries:
                return Err(InvalidRequest.because(f"duplicate query id {query_id!r}"))
            query_ids.append(query_id)
            queries[query_id] = np.asarray(vector, dtype=np.float32)
        return Ok((query_ids, queries))

    # =========================================================================
    # SCATTER / GATHER
    # =========================================================================
    def _scatter_gather(
        self,
        search_id: str,
        plan: SearchPlan,
        queries: QueryVectors,
        caller_token: CancellationToken,
    ) -> Result[list[dict[Any, PartialResult]], VectorIndexError]:
        if not plan.fragments or not queries:
            return Ok([])

        token = caller_token.child()
        timeout_ms = self._config.timeout_ms
        deadline = time.monotonic() + timeout_ms / 1000.0 if timeout_ms is not None else None

        pool = ThreadPoolExecutor(
            max_workers=min(self._config.max_workers, len(plan.fragments)),
            thread_name_prefix="vector-search",
        )
        futures: dict[Future, int] = {}
        try:
            for position, fragment in enumerate(plan.fragments):
                ctx = contextvars.copy_context()
                future = pool.submit(ctx.run, self._run_fragment, plan, fragment, queries, token)
                futures[future] = position

            outputs: list[FragmentOutput] = [None] * len(plan.fragments)
            pending = set(futures)
            while pending:
                if caller_token.cancelled:
                    token.cancel()
                    logger.warning("Search cancelled by caller", outstanding=len(pending))
                    return Err(SearchCancelled.by_caller(search_id, len(pending)))
                if deadline is not None and time.monotonic() >= deadline:
                    token.cancel()
                    logger.warning("Search timed out", outstanding=len(pending), timeout_ms=timeout_ms)
                    return Err(SearchTimeout.after(search_id, timeout_ms))

                done, pending = wait(pending, timeout=_POLL_INTERVAL_S, return_when=FIRST_EXCEPTION)
                for future in done:
                    fragment = plan.fragments[futures[future]]
                    failure = self._task_failure(fragment, future)
                    if failure is not None:
                        token.cancel()
                        logger.error(
                            "Partition task failed",
                            fragment=fragment.label,
                            error=str(failure.cause),
                        )
                        return Err(failure)
                    outputs[futures[future]] = future.result().unwrap()

            if caller_token.cancelled or any(output is None for output in outputs):
                return Err(SearchCancelled.by_caller(search_id, 0))
            return Ok([output for output in outputs if output is not None])
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _task_failure(fragment: PlanFragment, future: Future) -> Optional[PartitionTaskFailed]:
        exc = future.exception()
        if exc is not None:
            return PartitionTaskFailed.task(fragment.label, exc)
        outcome = future.result()
        if outcome.is_err():
            return PartitionTaskFailed.task(fragment.label, outcome.error)
        return None

    # =========================================================================
    # FRAGMENT TASKS
    # =========================================================================
    def _run_fragment(
        self,
        plan: SearchPlan,
        fragment: PlanFragment,
        queries: QueryVectors,
        token: CancellationToken,
    ) -> Result[FragmentOutput, VectorIndexError]:
        if token.cancelled:
            return Ok(None)
        if isinstance(fragment, IndexProbe):
            return self._probe(plan, fragment, queries, token)
        return self._exact_scan(plan, fragment, queries, token)

    def _probe(
        self,
        plan: SearchPlan,
        fragment: IndexProbe,
        queries: QueryVectors,
        token: CancellationToken,
    ) -> Result[FragmentOutput, VectorIndexError]:
        plugin = get_index_type(fragment.index_type)
        if plugin.is_err():
            return plugin
        artifact = self._artifacts.get(fragment.artifact_handle)
        if artifact.is_err():
            return artifact

        request = plan.request
        partials: dict[Any, PartialResult] = {}
        for query_id, vector in queries.items():
            if token.cancelled:
                return Ok(None)
            matches = plugin.unwrap().probe(artifact.unwrap(), vector, fragment.runtime_options, request.k)
            partials[query_id] = PartialResult(matches=rank_matches(matches, request.k, request.metric))
        return Ok(partials)

    def _exact_scan(
        self,
        plan: SearchPlan,
        fragment: ExactScan,
        queries: QueryVectors,
        token: CancellationToken,
    ) -> Result[FragmentOutput, VectorIndexError]:
        candidates = plan.request.candidates
        read = self._reader.read_rows(
            candidates.table, fragment.partition, candidates.id_column, candidates.vector_column
        )
        if read.is_err():
            return read
        rows = read.unwrap()

        offending = [
            OffendingRow(row.candidate_id, str(fragment.partition), plan.dimension, vector_dimension(row.vector))
            for row in rows
            if vector_dimension(row.vector) != plan.dimension
        ]
        if offending:
            return Err(DimensionMismatch.rows(str(fragment.partition), offending))
        if token.cancelled:
            return Ok(None)

        engine = ExactSearchEngine(plan.request.metric, plan.dimension)
        return Ok(engine.search(rows, queries, plan.request.k))
