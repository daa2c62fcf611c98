"""
Staleness Tracker

Compares the version vector stored with every built index partition
against the current versions reported by the table metadata service.
A READY partition whose vector no longer matches is moved to STALE with a
compare-and-swap on its revision; losing that race is harmless, since the
winner either rebuilt the partition or already marked it.

Base partitions whose index partition the catalog has never seen (new
data) are reported as missing and classified UNBUILT; the tracker never
registers them.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Optional

from partitioned_ann.catalog.catalog import IndexCatalog, IndexKey
from partitioned_ann.core.errors import Err, Ok, Result, VectorIndexError
from partitioned_ann.core.protocols import TableMetadataService
from partitioned_ann.core.types import (
    PartitionPredicate,
    PartitionState,
    PartitionValue,
    VectorIndexDefinition,
    VersionVector,
    describe_versions,
    version_vector,
)
from partitioned_ann.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StalenessReport:
    """
    Classification of an index's partitions at one point in time.

    fresh/stale/building/failed hold index partition values; missing holds
    base-table partitions without a built index partition.
    """
    index_name: str
    fresh: tuple[PartitionValue, ...] = ()
    stale: tuple[PartitionValue, ...] = ()
    newly_stale: tuple[PartitionValue, ...] = ()
    missing: tuple[PartitionValue, ...] = ()
    building: tuple[PartitionValue, ...] = ()
    failed: tuple[PartitionValue, ...] = ()
    current_versions: dict[PartitionValue, VersionVector] = field(default_factory=dict)

    @property
    def is_fresh(self) -> bool:
        return not (self.stale or self.missing or self.building or self.failed)

    def classify(self, partition: PartitionValue) -> PartitionState:
        """State class of an index partition as seen by this report."""
        if partition in self.fresh:
            return PartitionState.READY
        if partition in self.stale:
            return PartitionState.STALE
        if partition in self.building:
            return PartitionState.BUILDING
        if partition in self.failed:
            return PartitionState.FAILED
        return PartitionState.UNBUILT

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "fresh": [str(p) for p in self.fresh],
            "stale": [str(p) for p in self.stale],
            "newly_stale": [str(p) for p in self.newly_stale],
            "missing": [str(p) for p in self.missing],
            "building": [str(p) for p in self.building],
            "failed": [str(p) for p in self.failed],
        }


def group_base_partitions(
    definition: VectorIndexDefinition,
    versions: dict[PartitionValue, int],
    predicate: Optional[PartitionPredicate] = None,
) -> dict[PartitionValue, dict[PartitionValue, int]]:
    """Current in-scope base partitions grouped by index partition."""
    groups: dict[PartitionValue, dict[PartitionValue, int]] = defaultdict(dict)
    for base, version in versions.items():
        if not definition.in_scope(base):
            continue
        if predicate is not None and not predicate.matches(base):
            continue
        groups[definition.index_partition_of(base)][base] = version
    return dict(groups)


class StalenessTracker:
    """
    Detects data-version drift between artifacts and their partitions.

    Usage:
        tracker = StalenessTracker(catalog, metadata_service)
        report = tracker.check("docs_idx").unwrap()
        for partition in report.newly_stale:
            ...
    """

    __slots__ = ("_catalog", "_metadata")

    def __init__(self, catalog: IndexCatalog, metadata: TableMetadataService) -> None:
        self._catalog = catalog
        self._metadata = metadata

    def check(self, key: IndexKey) -> Result[StalenessReport, VectorIndexError]:
        entry_result = self._catalog.describe(key)
        if entry_result.is_err():
            return entry_result
        entry = entry_result.unwrap()
        definition = entry.definition

        versions_result = self._metadata.partition_versions(definition.table)
        if versions_result.is_err():
            return versions_result
        groups = group_base_partitions(definition, versions_result.unwrap())

        states_result = self._catalog.get_partition_states(entry.index_id)
        if states_result.is_err():
            return states_result

        fresh: list[PartitionValue] = []
        stale: list[PartitionValue] = []
        newly_stale: list[PartitionValue] = []
        missing: list[PartitionValue] = []
        building: list[PartitionValue] = []
        failed: list[PartitionValue] = []
        current_versions = {p: version_vector(bases) for p, bases in groups.items()}
        seen: set[PartitionValue] = set()

        for state in states_result.unwrap():
            seen.add(state.partition)
            current = current_versions.get(state.partition, ())

            if state.state is PartitionState.READY and state.data_version != current:
                marked = self._catalog.mark_stale(entry.index_id, state.partition, state.revision)
                if marked.is_err():
                    return Err(marked.error)
                if marked.unwrap():
                    stale.append(state.partition)
                    newly_stale.append(state.partition)
                    logger.info(
                        "Data version drift detected",
                        index=definition.name,
                        partition=state.partition,
                        built=dict(describe_versions(state.data_version)),
                        current=dict(describe_versions(current)),
                    )
                    continue
                # Lost the race to a build or another check; report what is there now
                state = self._catalog.get_partition_state(entry.index_id, state.partition)
                if state is None:
                    continue

            if state.state is PartitionState.READY:
                if state.data_version == current:
                    fresh.append(state.partition)
                else:
                    stale.append(state.partition)
            elif state.state is PartitionState.STALE:
                stale.append(state.partition)
            elif state.state is PartitionState.BUILDING:
                building.append(state.partition)
            elif state.state is PartitionState.FAILED:
                failed.append(state.partition)
            else:
                missing.extend(sorted(groups.get(state.partition, {}), key=PartitionValue.sort_key))

        for partition, bases in groups.items():
            if partition not in seen:
                missing.extend(bases)

        return Ok(StalenessReport(
            index_name=definition.name,
            fresh=tuple(fresh),
            stale=tuple(stale),
            newly_stale=tuple(newly_stale),
            missing=tuple(sorted(missing, key=PartitionValue.sort_key)),
            building=tuple(building),
            failed=tuple(failed),
            current_versions=current_versions,
        ))
