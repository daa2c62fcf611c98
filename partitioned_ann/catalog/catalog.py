"""
Index Catalog: Source of Truth for Vector Index Definitions and Build State

Holds an arena of IndexPartitionState records keyed by
(index id, partition value). Records are immutable; every transition is a
compare-and-swap under a short-lived lock: the expected prior state (and,
for builds, the lease fencing token) is checked and the record replaced in
one step. The lock is never held across a build or a search.

Build leases:
    record_build_start issues a lease with a globally monotonic fencing
    token. Commits and failures must present the current token; the
    recovery sweep reverts BUILDING partitions whose lease expired to
    FAILED, which also fences out the stale builder.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from partitioned_ann.catalog.state_machine import Trigger, next_state, start_trigger
from partitioned_ann.core.errors import (
    AlreadyExists,
    BuildConflict,
    BuildFailed,
    Err,
    InvalidDefinition,
    InvalidRequest,
    LeaseExpired,
    NotFound,
    Ok,
    Result,
    VectorIndexError,
)
from partitioned_ann.core.protocols import TableMetadataService
from partitioned_ann.core.types import (
    UNPARTITIONED,
    BuildLease,
    IndexId,
    IndexPartitionState,
    PartitionPredicate,
    PartitionState,
    PartitionValue,
    VectorIndexDefinition,
    VectorType,
    VersionVector,
)
from partitioned_ann.index.distance import get_metric
from partitioned_ann.index.plugins import get_index_type
from partitioned_ann.observability.logging import get_logger

IndexKey = Union[IndexId, str]

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class IndexEntry:
    """Catalog record of a defined index."""
    index_id: IndexId
    definition: VectorIndexDefinition
    dimension: int

    @property
    def name(self) -> str:
        return self.definition.name


@dataclass(frozen=True, slots=True)
class BuildCommit:
    """Outcome of a successful commit; the superseded artifact may be retired."""
    state: IndexPartitionState
    superseded_handle: Optional[str]


class IndexCatalog:
    """
    Durable-metadata facade for vector indexes (in-memory arena).

    Usage:
        catalog = IndexCatalog(metadata_service)
        index_id = catalog.define(definition).unwrap()
        lease = catalog.record_build_start(index_id, partition, "worker-1", 60_000).unwrap()
        ...
        catalog.record_build_success(lease, handle, version).unwrap()

    Thread Safety:
        All methods are safe for concurrent use.
    """

    __slots__ = (
        "_metadata",
        "_clock",
        "_lock",
        "_entries",
        "_by_name",
        "_states",
        "_fencing_counter",
    )

    def __init__(
        self,
        metadata: TableMetadataService,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._metadata = metadata
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[IndexId, IndexEntry] = {}
        self._by_name: dict[tuple[str, str], IndexId] = {}
        self._states: dict[tuple[IndexId, PartitionValue], IndexPartitionState] = {}
        self._fencing_counter = 0

    # =========================================================================
    # DEFINITIONS
    # =========================================================================
    def define(self, definition: VectorIndexDefinition) -> Result[IndexId, VectorIndexError]:
        """
        Register a new index definition.

        Returns:
            Ok(IndexId) on success
            Err(AlreadyExists) on a name collision within the table
            Err(InvalidDefinition) for bad keys, column types, metric or options
        """
        validated = self._validate(definition)
        if validated.is_err():
            return validated
        dimension = validated.unwrap()

        with self._lock:
            name_key = (definition.table, definition.name)
            if name_key in self._by_name:
                return Err(AlreadyExists.index(definition.table, definition.name))
            index_id = IndexId.generate()
            self._entries[index_id] = IndexEntry(index_id, definition, dimension)
            self._by_name[name_key] = index_id
            if not definition.is_partitioned:
                self._states[(index_id, UNPARTITIONED)] = IndexPartitionState(index_id, UNPARTITIONED)

        logger.info(
            "Vector index defined",
            index=definition.name,
            index_id=index_id,
            table=definition.table,
            index_type=definition.index_type,
            metric=definition.metric.value,
            partition_keys=",".join(definition.partition_keys),
        )
        return Ok(index_id)

    def _validate(self, d: VectorIndexDefinition) -> Result[int, VectorIndexError]:
        """Dimension of the embedding column if the definition is acceptable."""
        if not d.name or not d.name.strip():
            return Err(InvalidDefinition.because(d.name, "index name must be non-empty"))

        schema_result = self._metadata.describe_table(d.table)
        if schema_result.is_err():
            return schema_result
        schema = schema_result.unwrap()

        if schema.column_type(d.id_column) is None:
            return Err(InvalidDefinition.because(d.name, f"unknown id column '{d.id_column}'"))
        vector_type = schema.column_type(d.vector_column)
        if not isinstance(vector_type, VectorType) or vector_type.dimension < 1:
            return Err(InvalidDefinition.because(
                d.name,
                f"column '{d.vector_column}' is not a fixed-dimension vector",
                column_type=repr(vector_type),
            ))

        if get_metric(d.metric).is_err():
            return Err(InvalidDefinition.because(d.name, f"unrecognized distance metric {d.metric!r}"))

        if len(set(d.partition_keys)) != len(d.partition_keys):
            return Err(InvalidDefinition.because(d.name, "duplicate partition keys"))
        extra = [k for k in d.partition_keys if k not in schema.partition_keys]
        if extra:
            return Err(InvalidDefinition.because(
                d.name,
                f"partition keys {extra} are not partition keys of table '{d.table}'",
                table_partition_keys=list(schema.partition_keys),
            ))
        if d.defining_predicate is not None:
            bad = sorted(d.defining_predicate.columns - set(schema.partition_keys))
            if bad:
                return Err(InvalidDefinition.because(d.name, f"predicate references non-partition columns {bad}"))

        plugin_result = get_index_type(d.index_type)
        if plugin_result.is_err():
            return Err(InvalidDefinition.because(d.name, f"unknown index type {d.index_type!r}"))
        if reason := plugin_result.unwrap().validate_options(d.options):
            return Err(InvalidDefinition.because(d.name, f"malformed index options: {reason}"))

        return Ok(vector_type.dimension)

    def describe(self, key: IndexKey, table: Optional[str] = None) -> Result[IndexEntry, VectorIndexError]:
        """Catalog entry by id, by name, or by name within a table."""
        with self._lock:
            if isinstance(key, IndexId):
                entry = self._entries.get(key)
                return Ok(entry) if entry else Err(NotFound.index(key))
            if table is not None:
                index_id = self._by_name.get((table, key))
                return Ok(self._entries[index_id]) if index_id else Err(NotFound.index(f"{table}.{key}"))
            matches = [self._entries[i] for (_, name), i in self._by_name.items() if name == key]
        if not matches:
            return Err(NotFound.index(key))
        if len(matches) > 1:
            return Err(InvalidRequest.because(
                f"index name '{key}' is ambiguous across tables",
                tables=sorted(m.definition.table for m in matches),
            ))
        return Ok(matches[0])

    def lookup(self, key: IndexKey, table: Optional[str] = None) -> Result[VectorIndexDefinition, VectorIndexError]:
        return self.describe(key, table).map(lambda entry: entry.definition)

    def find_indexes(self, table: str, vector_column: str) -> list[IndexEntry]:
        """Indexes on a table/column pair, oldest first."""
        with self._lock:
            found = [
                e for e in self._entries.values()
                if e.definition.table == table and e.definition.vector_column == vector_column
            ]
        return sorted(found, key=lambda e: (e.definition.created_at, e.definition.name))

    def list_indexes(self, table: Optional[str] = None) -> list[IndexEntry]:
        with self._lock:
            entries = list(self._entries.values())
        if table is not None:
            entries = [e for e in entries if e.definition.table == table]
        return sorted(entries, key=lambda e: (e.definition.table, e.definition.name))

    # =========================================================================
    # PARTITION STATE SNAPSHOTS
    # =========================================================================
    def get_partition_states(
        self,
        key: IndexKey,
        predicate: Optional[PartitionPredicate] = None,
    ) -> Result[tuple[IndexPartitionState, ...], VectorIndexError]:
        """Point-in-time snapshot of an index's partition states."""
        entry_result = self.describe(key)
        if entry_result.is_err():
            return entry_result
        index_id = entry_result.unwrap().index_id
        with self._lock:
            states = [s for (iid, _), s in self._states.items() if iid == index_id]
        if predicate is not None:
            states = [s for s in states if predicate.matches(s.partition)]
        return Ok(tuple(sorted(states, key=lambda s: s.partition.sort_key())))

    def get_partition_state(self, index_id: IndexId, partition: PartitionValue) -> Optional[IndexPartitionState]:
        with self._lock:
            return self._states.get((index_id, partition))

    # =========================================================================
    # BUILD TRANSITIONS (COMPARE-AND-SWAP)
    # =========================================================================
    def record_build_start(
        self,
        index_id: IndexId,
        partition: PartitionValue,
        holder: str,
        ttl_ms: int,
        force: bool = True,
    ) -> Result[BuildLease, VectorIndexError]:
        """
        Atomically move a partition into BUILDING and issue its lease.

        Returns:
            Ok(BuildLease) when this caller now owns the build
            Err(BuildConflict) when a build is already in flight
            Err(BuildFailed) when the state does not permit a start
                (READY without force)
        """
        with self._lock:
            entry = self._entries.get(index_id)
            if entry is None:
                return Err(NotFound.index(index_id))
            key = (index_id, partition)
            current = self._states.get(key) or IndexPartitionState(index_id, partition)

            if current.state is PartitionState.BUILDING:
                holder_id = current.lease.holder if current.lease else "<unknown>"
                conflict = BuildConflict.in_flight(entry.name, str(partition), holder_id)
                logger.warning("Build rejected: already in flight", index=entry.name, partition=partition, holder=holder_id)
                return Err(conflict)

            trigger = start_trigger(current.state, force)
            if trigger is None:
                return Err(BuildFailed.invalid_transition(str(partition), current.state.name, "BUILDING"))

            now = self._clock()
            self._fencing_counter += 1
            lease = BuildLease(
                index_id=index_id,
                partition=partition,
                holder=holder,
                fencing_token=self._fencing_counter,
                acquired_at=now,
                expires_at=now + ttl_ms / 1000.0,
            )
            self._states[key] = replace(
                current,
                state=PartitionState.BUILDING,
                lease=lease,
                revision=current.revision + 1,
            )

        logger.info(
            "Build started",
            index=entry.name,
            partition=partition,
            trigger=trigger.value,
            fencing_token=lease.fencing_token,
            holder=holder,
        )
        return Ok(lease)

    def _owned(self, lease: BuildLease, now: float) -> Result[IndexPartitionState, LeaseExpired]:
        """Current record if `lease` still owns the build. Caller holds the lock."""
        current = self._states.get((lease.index_id, lease.partition))
        if (
            current is None
            or current.state is not PartitionState.BUILDING
            or current.lease is None
            or current.lease.fencing_token != lease.fencing_token
            or current.lease.is_expired(now)
        ):
            return Err(LeaseExpired.for_partition(str(lease.partition), lease.fencing_token))
        return Ok(current)

    def heartbeat(self, lease: BuildLease, ttl_ms: int) -> Result[BuildLease, LeaseExpired]:
        """Extend a live lease; Err once the lease has been lost."""
        with self._lock:
            now = self._clock()
            owned = self._owned(lease, now)
            if owned.is_err():
                return owned
            current = owned.unwrap()
            renewed = replace(current.lease, expires_at=now + ttl_ms / 1000.0)
            self._states[(lease.index_id, lease.partition)] = replace(current, lease=renewed)
        return Ok(renewed)

    def record_build_success(
        self,
        lease: BuildLease,
        artifact_handle: str,
        data_version: VersionVector,
    ) -> Result[BuildCommit, VectorIndexError]:
        """Single commit point: BUILDING -> READY with artifact and version."""
        with self._lock:
            owned = self._owned(lease, self._clock())
            if owned.is_err():
                return owned
            current = owned.unwrap()
            target = next_state(current.state, Trigger.BUILD_SUCCESS)
            committed = replace(
                current,
                state=target,
                data_version=data_version,
                artifact_handle=artifact_handle,
                last_build_at=datetime.now(timezone.utc),
                last_error=None,
                lease=None,
                revision=current.revision + 1,
            )
            self._states[(lease.index_id, lease.partition)] = committed

        logger.info(
            "Build committed",
            index_id=lease.index_id,
            partition=lease.partition,
            fencing_token=lease.fencing_token,
            artifact=artifact_handle,
        )
        return Ok(BuildCommit(state=committed, superseded_handle=current.artifact_handle))

    def record_build_failure(
        self,
        lease: BuildLease,
        error: VectorIndexError,
    ) -> Result[IndexPartitionState, VectorIndexError]:
        """BUILDING -> FAILED, retaining the error for inspection."""
        with self._lock:
            owned = self._owned(lease, self._clock())
            if owned.is_err():
                return owned
            current = owned.unwrap()
            failed = replace(
                current,
                state=next_state(current.state, Trigger.BUILD_FAILURE),
                last_error=error,
                lease=None,
                revision=current.revision + 1,
            )
            self._states[(lease.index_id, lease.partition)] = failed

        logger.error(
            "Build failed",
            index_id=lease.index_id,
            partition=lease.partition,
            error_code=error.code.name,
            error=error.message,
        )
        return Ok(failed)

    def mark_stale(
        self,
        index_id: IndexId,
        partition: PartitionValue,
        expected_revision: int,
    ) -> Result[bool, VectorIndexError]:
        """
        READY -> STALE if the record is still at `expected_revision`.

        Returns Ok(False) when the record moved on (lost the race).
        """
        with self._lock:
            current = self._states.get((index_id, partition))
            if current is None:
                return Err(NotFound.partition(str(index_id), str(partition)))
            if current.revision != expected_revision:
                return Ok(False)
            target = next_state(current.state, Trigger.DATA_CHANGED)
            if target is None:
                return Ok(False)
            self._states[(index_id, partition)] = replace(
                current, state=target, revision=current.revision + 1
            )
        logger.info("Partition marked stale", index_id=index_id, partition=partition)
        return Ok(True)

    def recover_expired_builds(self, now: Optional[float] = None) -> list[IndexPartitionState]:
        """
        Recovery sweep: BUILDING partitions with an expired lease -> FAILED.

        Covers builders that crashed mid-build; their later commits are
        rejected because the lease no longer matches.
        """
        now = self._clock() if now is None else now
        recovered: list[IndexPartitionState] = []
        with self._lock:
            for key, current in list(self._states.items()):
                if current.state is not PartitionState.BUILDING or current.lease is None:
                    continue
                if not current.lease.is_expired(now):
                    continue
                failed = replace(
                    current,
                    state=next_state(current.state, Trigger.LEASE_EXPIRED),
                    last_error=LeaseExpired.for_partition(str(current.partition), current.lease.fencing_token),
                    lease=None,
                    revision=current.revision + 1,
                )
                self._states[key] = failed
                recovered.append(failed)

        for state in recovered:
            logger.warning("Expired build lease reverted to FAILED", index_id=state.index_id, partition=state.partition)
        return recovered
