"""
Partition Index Builder

Build Algorithm (per index partition):
    1. Acquire the build lease: catalog CAS into BUILDING
    2. Read the current versions of the covered base partitions
    3. Read the full row snapshot of those partitions
    4. Validate every embedding's dimension (all offenders are reported)
    5. Invoke the index-type plugin's build()
    6. Publish the artifact, then commit READY with the version vector
       observed in step 2 (single commit point, fenced by the lease)

Versions are read before rows, so a write racing the build can only make
the stored version older than the data, which the staleness tracker
then reports as STALE. Never the reverse.

Builds of different partitions run in parallel. Builds never block
searches: a plan compiled before a commit keeps probing the artifact it
resolved, which stays readable until purged.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from partitioned_ann.build.artifacts import ArtifactStore
from partitioned_ann.catalog.catalog import IndexCatalog, IndexEntry, IndexKey
from partitioned_ann.catalog.staleness import group_base_partitions
from partitioned_ann.core.config import BuilderConfig
from partitioned_ann.core.errors import (
    BuildConflict,
    BuildFailed,
    DimensionMismatch,
    Err,
    InvalidRequest,
    LeaseExpired,
    NotFound,
    OffendingRow,
    Ok,
    Result,
    VectorIndexError,
)
from partitioned_ann.core.protocols import IndexTypePlugin, RowReader, TableMetadataService
from partitioned_ann.core.types import (
    UNPARTITIONED,
    BuildLease,
    CandidateRow,
    IndexPartitionState,
    PartitionPredicate,
    PartitionRows,
    PartitionValue,
    VersionVector,
    version_vector,
)
from partitioned_ann.index.distance import vector_dimension
from partitioned_ann.index.exact import stack_vectors
from partitioned_ann.index.plugins import get_index_type
from partitioned_ann.observability.logging import StructuredLogger, get_logger

logger = get_logger(__name__)

UpdateTarget = Union[PartitionValue, PartitionPredicate, None]


@dataclass(frozen=True)
class BuildReport:
    """Summary of a multi-partition build."""
    index_name: str
    built: tuple[PartitionValue, ...] = ()
    failed: tuple[tuple[PartitionValue, VectorIndexError], ...] = ()
    conflicted: tuple[PartitionValue, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def errors(self) -> list[VectorIndexError]:
        return [error for _, error in self.failed]

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "built": [str(p) for p in self.built],
            "failed": [f"{p}: {e}" for p, e in self.failed],
            "conflicted": [str(p) for p in self.conflicted],
        }


class PartitionIndexBuilder:
    """
    Orchestrates index-partition builds against the catalog.

    Usage:
        builder = PartitionIndexBuilder(catalog, store, store, ArtifactStore())
        state = builder.build_partition("docs_idx", PartitionValue.of(ds="2026-01-01")).unwrap()
        report = builder.update("docs_idx").unwrap()
    """

    __slots__ = ("_catalog", "_metadata", "_reader", "_artifacts", "_config")

    def __init__(
        self,
        catalog: IndexCatalog,
        metadata: TableMetadataService,
        reader: RowReader,
        artifacts: ArtifactStore,
        config: Optional[BuilderConfig] = None,
    ) -> None:
        self._catalog = catalog
        self._metadata = metadata
        self._reader = reader
        self._artifacts = artifacts
        self._config = config or BuilderConfig()

    @property
    def artifacts(self) -> ArtifactStore:
        return self._artifacts

    # =========================================================================
    # SINGLE PARTITION
    # =========================================================================
    def build_partition(
        self,
        key: IndexKey,
        partition: PartitionValue,
        force: bool = True,
    ) -> Result[IndexPartitionState, VectorIndexError]:
        """
        Build one index partition end to end.

        Returns:
            Ok(IndexPartitionState) in READY on success
            Err(BuildConflict) if another build holds the partition
            Err(DimensionMismatch | BuildFailed | ...) after recording FAILED
        """
        entry_result = self._catalog.describe(key)
        if entry_result.is_err():
            return entry_result
        entry = entry_result.unwrap()
        if not entry.definition.is_partitioned:
            partition = UNPARTITIONED

        plugin_result = get_index_type(entry.definition.index_type)
        if plugin_result.is_err():
            return plugin_result

        if entry.definition.is_partitioned:
            covered = self._covered_partitions(entry, partition)
            if covered.is_err():
                return covered
            # No catalog row is created for a partition the table does not have
            if not covered.unwrap():
                return Err(NotFound.table_partition(entry.definition.table, str(partition)))

        lease_result = self._catalog.record_build_start(
            entry.index_id,
            partition,
            self._config.holder_id,
            self._config.lease_ttl_ms,
            force=force,
        )
        if lease_result.is_err():
            return lease_result
        lease = lease_result.unwrap()

        with StructuredLogger.context(index=entry.name, partition=str(partition), fencing_token=lease.fencing_token):
            try:
                built = self._build_and_commit(entry, plugin_result.unwrap(), lease)
            except Exception as exc:
                logger.error("Partition build raised", error=f"{type(exc).__name__}: {exc}")
                built = Err(BuildFailed.unexpected(str(partition), exc))
            if built.is_ok():
                return built

            error = built.error
            if not isinstance(error, LeaseExpired):
                recorded = self._catalog.record_build_failure(lease, error)
                if recorded.is_err():
                    logger.warning("Could not record build failure", error=str(recorded.error))
            return built

    def _build_and_commit(
        self,
        entry: IndexEntry,
        plugin: IndexTypePlugin,
        lease: BuildLease,
    ) -> Result[IndexPartitionState, VectorIndexError]:
        definition = entry.definition

        covered = self._covered_partitions(entry, lease.partition)
        if covered.is_err():
            return covered
        if definition.is_partitioned and not covered.unwrap():
            return Err(NotFound.table_partition(definition.table, str(lease.partition)))
        observed: VersionVector = version_vector(covered.unwrap())

        rows: list[CandidateRow] = []
        for base, _ in observed:
            read = self._reader.read_rows(definition.table, base, definition.id_column, definition.vector_column)
            if read.is_err():
                return read
            rows.extend(read.unwrap())

        heartbeat = self._catalog.heartbeat(lease, self._config.lease_ttl_ms)
        if heartbeat.is_err():
            return heartbeat
        lease = heartbeat.unwrap()

        offending = [
            OffendingRow(row.candidate_id, str(lease.partition), entry.dimension, vector_dimension(row.vector))
            for row in rows
            if vector_dimension(row.vector) != entry.dimension
        ]
        if offending:
            return Err(DimensionMismatch.rows(str(lease.partition), offending))

        partition_rows = PartitionRows(
            partition=lease.partition,
            ids=tuple(row.candidate_id for row in rows),
            vectors=stack_vectors(rows, entry.dimension),
            metric=definition.metric,
            dimension=entry.dimension,
        )
        try:
            artifact = plugin.build(partition_rows, definition.options)
        except Exception as exc:
            return Err(BuildFailed.plugin_error(definition.index_type, str(lease.partition), exc))

        handle = self._artifacts.publish(entry.index_id, lease.partition, artifact)
        commit = self._catalog.record_build_success(lease, handle, observed)
        if commit.is_err():
            self._artifacts.release(handle)
            return commit

        superseded = commit.unwrap().superseded_handle
        if superseded is not None:
            self._artifacts.retire(superseded)
        logger.info("Partition index ready", rows=len(partition_rows), covered=len(observed))
        return Ok(commit.unwrap().state)

    def _covered_partitions(
        self,
        entry: IndexEntry,
        partition: PartitionValue,
    ) -> Result[dict[PartitionValue, int], VectorIndexError]:
        """Current base partitions (with versions) that feed one index partition."""
        versions_result = self._metadata.partition_versions(entry.definition.table)
        if versions_result.is_err():
            return versions_result
        groups = group_base_partitions(entry.definition, versions_result.unwrap())
        return Ok(dict(groups.get(partition, {})))

    # =========================================================================
    # MANY PARTITIONS
    # =========================================================================
    def build_many(
        self,
        key: IndexKey,
        partitions: Sequence[PartitionValue],
        force: bool = True,
    ) -> Result[BuildReport, VectorIndexError]:
        """Build partitions in parallel; per-partition errors land in the report."""
        entry_result = self._catalog.describe(key)
        if entry_result.is_err():
            return entry_result
        entry = entry_result.unwrap()

        unique = sorted(set(partitions), key=PartitionValue.sort_key)
        if not unique:
            return Ok(BuildReport(index_name=entry.name))

        workers = min(self._config.max_workers, len(unique))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="index-build") as pool:
            outcomes = list(pool.map(lambda p: (p, self.build_partition(entry.index_id, p, force)), unique))

        built: list[PartitionValue] = []
        failed: list[tuple[PartitionValue, VectorIndexError]] = []
        conflicted: list[PartitionValue] = []
        for partition, outcome in outcomes:
            if outcome.is_ok():
                built.append(partition)
            elif isinstance(outcome.error, BuildConflict):
                conflicted.append(partition)
            else:
                failed.append((partition, outcome.error))

        report = BuildReport(
            index_name=entry.name,
            built=tuple(built),
            failed=tuple(failed),
            conflicted=tuple(conflicted),
        )
        logger.info(
            "Build batch finished",
            index=entry.name,
            built=len(built),
            failed=len(failed),
            conflicted=len(conflicted),
        )
        return Ok(report)

    def resolve_targets(self, entry: IndexEntry, where: UpdateTarget = None) -> Result[list[PartitionValue], VectorIndexError]:
        """
        Index partitions an update rebuilds.

        - unpartitioned index: always the sentinel
        - explicit partition value: that partition
        - predicate: index partitions of the matching base partitions, plus
          catalog-known partitions matching it
        - no filter: every partition known to the catalog
        """
        definition = entry.definition
        if where is not None:
            schema_result = self._metadata.describe_table(definition.table)
            if schema_result.is_err():
                return schema_result
            unknown = sorted(set(where.columns) - set(schema_result.unwrap().partition_keys))
            if unknown:
                return Err(InvalidRequest.because(
                    f"update target references non-partition columns {unknown} of table '{definition.table}'"
                ))
        if not definition.is_partitioned:
            return Ok([UNPARTITIONED])
        if isinstance(where, PartitionValue):
            absent = [k for k in definition.partition_keys if k not in where.columns]
            if absent:
                return Err(InvalidRequest.because(f"partition {where} lacks index partition keys {absent}"))
            return Ok([where.project(definition.partition_keys)])

        states_result = self._catalog.get_partition_states(entry.index_id, where)
        if states_result.is_err():
            return states_result
        targets = {s.partition for s in states_result.unwrap()}

        if where is not None:
            versions_result = self._metadata.partition_versions(definition.table)
            if versions_result.is_err():
                return versions_result
            targets.update(group_base_partitions(definition, versions_result.unwrap(), where))
        return Ok(sorted(targets, key=PartitionValue.sort_key))

    def update(self, key: IndexKey, where: UpdateTarget = None) -> Result[BuildReport, VectorIndexError]:
        """Forced rebuild of the partitions selected by `where`."""
        entry_result = self._catalog.describe(key)
        if entry_result.is_err():
            return entry_result
        entry = entry_result.unwrap()
        targets = self.resolve_targets(entry, where)
        if targets.is_err():
            return targets
        return self.build_many(entry.index_id, targets.unwrap(), force=True)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================
    def recover(self) -> list[IndexPartitionState]:
        """Recovery sweep for builders that died holding a lease."""
        return self._catalog.recover_expired_builds()

    def vacuum(self) -> list[str]:
        """Purge superseded artifacts past the retention grace period."""
        return self._artifacts.purge_retired(self._config.artifact_retention_s)
