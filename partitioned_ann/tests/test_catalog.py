"""
Unit Tests: Partition State Machine and Index Catalog

Tests:
    - Valid / invalid lifecycle transitions
    - define / lookup round trip and definition validation
    - At-most-one build in flight under concurrent triggers
    - Lease fencing, heartbeat and the recovery sweep
"""

import threading

import pytest

from partitioned_ann.catalog.catalog import IndexCatalog
from partitioned_ann.catalog.state_machine import (
    Trigger,
    available_triggers,
    can_transition,
    next_state,
    start_trigger,
)
from partitioned_ann.core.errors import (
    AlreadyExists,
    BuildConflict,
    BuildFailed,
    InvalidDefinition,
    InvalidRequest,
    LeaseExpired,
    NotFound,
)
from partitioned_ann.core.types import (
    UNPARTITIONED,
    MetricType,
    PartitionPredicate,
    PartitionState,
    TableSchema,
    VectorIndexDefinition,
)
from partitioned_ann.tests.conftest import day, docs_schema


def definition(name="docs_idx", **overrides):
    values = dict(
        name=name,
        table="docs",
        id_column="doc_id",
        vector_column="embedding",
        metric=MetricType.COSINE,
        index_type="ivf",
        options={"num_lists": 4},
        partition_keys=("ds",),
    )
    values.update(overrides)
    return VectorIndexDefinition(**values)


class TestStateMachine:
    """Tests for partition lifecycle transitions."""

    @pytest.mark.parametrize("state", [PartitionState.UNBUILT, PartitionState.STALE, PartitionState.FAILED])
    def test_start_from_buildable_states(self, state):
        assert next_state(state, Trigger.BUILD_START) is PartitionState.BUILDING

    def test_building_is_never_reentered(self):
        assert start_trigger(PartitionState.BUILDING, force=True) is None
        assert not can_transition(PartitionState.BUILDING, Trigger.BUILD_START)

    def test_ready_rebuilds_only_when_forced(self):
        assert start_trigger(PartitionState.READY, force=False) is None
        assert start_trigger(PartitionState.READY, force=True) is Trigger.FORCE_REBUILD

    def test_building_outcomes(self):
        assert next_state(PartitionState.BUILDING, Trigger.BUILD_SUCCESS) is PartitionState.READY
        assert next_state(PartitionState.BUILDING, Trigger.BUILD_FAILURE) is PartitionState.FAILED
        assert next_state(PartitionState.BUILDING, Trigger.LEASE_EXPIRED) is PartitionState.FAILED

    def test_only_ready_goes_stale(self):
        assert next_state(PartitionState.READY, Trigger.DATA_CHANGED) is PartitionState.STALE
        assert next_state(PartitionState.UNBUILT, Trigger.DATA_CHANGED) is None
        assert next_state(PartitionState.FAILED, Trigger.DATA_CHANGED) is None

    def test_available_triggers(self):
        assert available_triggers(PartitionState.READY) == [Trigger.DATA_CHANGED, Trigger.FORCE_REBUILD]


class TestDefine:
    """Tests for index definition."""

    def test_lookup_round_trip(self, store):
        """Test lookup(define(d)) == d, by id and by name."""
        catalog = IndexCatalog(store)
        d = definition()

        index_id = catalog.define(d).unwrap()

        assert catalog.lookup(index_id).unwrap() == d
        assert catalog.lookup("docs_idx").unwrap() == d
        assert catalog.describe(index_id).unwrap().dimension == 8

    def test_name_collision(self, store):
        catalog = IndexCatalog(store)
        catalog.define(definition()).unwrap()

        result = catalog.define(definition(index_type="hnsw", options={}))

        assert isinstance(result.error, AlreadyExists)

    @pytest.mark.parametrize("overrides,fragment", [
        ({"partition_keys": ("region",)}, "partition keys"),
        ({"partition_keys": ("ds", "ds")}, "duplicate"),
        ({"vector_column": "title"}, "fixed-dimension vector"),
        ({"id_column": "missing"}, "unknown id column"),
        ({"index_type": "scann"}, "unknown index type"),
        ({"options": {"num_lists": 0}}, "malformed index options"),
        ({"options": {"bogus": 1}}, "malformed index options"),
        ({"partition_keys": (), "defining_predicate": PartitionPredicate.eq("title", "x")}, "non-partition"),
    ])
    def test_invalid_definitions_are_not_persisted(self, store, overrides, fragment):
        """Test every rejected definition leaves the catalog untouched."""
        catalog = IndexCatalog(store)

        result = catalog.define(definition(**overrides))

        assert isinstance(result.error, InvalidDefinition)
        assert fragment in result.error.message
        assert isinstance(catalog.lookup("docs_idx").error, NotFound)

    def test_unknown_table(self, store):
        result = IndexCatalog(store).define(definition(table="nope"))

        assert isinstance(result.error, NotFound)

    def test_unpartitioned_gets_sentinel(self, store):
        catalog = IndexCatalog(store)
        index_id = catalog.define(definition(partition_keys=())).unwrap()

        states = catalog.get_partition_states(index_id).unwrap()

        assert [s.partition for s in states] == [UNPARTITIONED]
        assert states[0].state is PartitionState.UNBUILT

    def test_find_indexes_oldest_first(self, store):
        catalog = IndexCatalog(store)
        catalog.define(definition("first")).unwrap()
        catalog.define(definition("second", index_type="flat", options={})).unwrap()

        names = [e.name for e in catalog.find_indexes("docs", "embedding")]

        assert names == ["first", "second"]
        assert catalog.find_indexes("docs", "other") == []

    def test_ambiguous_bare_name(self, store):
        other = docs_schema()
        store.create_table(TableSchema(name="docs_b", columns=other.columns, partition_keys=("ds",))).unwrap()
        catalog = IndexCatalog(store)
        catalog.define(definition()).unwrap()
        catalog.define(definition(table="docs_b")).unwrap()

        assert isinstance(catalog.lookup("docs_idx").error, InvalidRequest)
        assert catalog.lookup("docs_idx", table="docs_b").unwrap().table == "docs_b"


class TestBuildTransitions:
    """Tests for CAS transitions and leases."""

    def test_start_success_records_version(self, store):
        catalog = IndexCatalog(store)
        index_id = catalog.define(definition()).unwrap()

        lease = catalog.record_build_start(index_id, day(1), "w1", ttl_ms=60_000).unwrap()
        commit = catalog.record_build_success(lease, "artifact://x", ((day(1), 7),)).unwrap()

        assert commit.state.state is PartitionState.READY
        assert commit.state.data_version == ((day(1), 7),)
        assert commit.state.covered_partitions == (day(1),)
        assert commit.superseded_handle is None

    def test_second_start_conflicts(self, store):
        catalog = IndexCatalog(store)
        index_id = catalog.define(definition()).unwrap()
        catalog.record_build_start(index_id, day(1), "w1", ttl_ms=60_000).unwrap()

        result = catalog.record_build_start(index_id, day(1), "w2", ttl_ms=60_000)

        assert isinstance(result.error, BuildConflict)
        assert result.error.context["holder"] == "w1"

    def test_concurrent_starts_admit_exactly_one(self, store):
        """Test concurrent rebuild triggers yield exactly one BUILDING transition."""
        catalog = IndexCatalog(store)
        index_id = catalog.define(definition()).unwrap()
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def trigger(worker):
            barrier.wait()
            result = catalog.record_build_start(index_id, day(2), f"w{worker}", ttl_ms=60_000)
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=trigger, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(r.is_ok() for r in outcomes) == 1
        assert all(isinstance(r.error, BuildConflict) for r in outcomes if r.is_err())

    def test_ready_without_force_is_rejected(self, store):
        catalog = IndexCatalog(store)
        index_id = catalog.define(definition()).unwrap()
        lease = catalog.record_build_start(index_id, day(1), "w1", ttl_ms=60_000).unwrap()
        catalog.record_build_success(lease, "h1", ((day(1), 1),)).unwrap()

        result = catalog.record_build_start(index_id, day(1), "w1", ttl_ms=60_000, force=False)

        assert isinstance(result.error, BuildFailed)

    def test_failure_retains_error(self, store):
        catalog = IndexCatalog(store)
        index_id = catalog.define(definition()).unwrap()
        lease = catalog.record_build_start(index_id, day(1), "w1", ttl_ms=60_000).unwrap()
        error = BuildFailed.plugin_error("ivf", str(day(1)), RuntimeError("boom"))

        failed = catalog.record_build_failure(lease, error).unwrap()

        assert failed.state is PartitionState.FAILED
        assert failed.last_error is error
        # FAILED -> BUILDING retry is allowed
        assert catalog.record_build_start(index_id, day(1), "w1", ttl_ms=60_000).is_ok()

    def test_mark_stale_requires_current_revision(self, store):
        catalog = IndexCatalog(store)
        index_id = catalog.define(definition()).unwrap()
        lease = catalog.record_build_start(index_id, day(1), "w1", ttl_ms=60_000).unwrap()
        ready = catalog.record_build_success(lease, "h1", ((day(1), 1),)).unwrap().state

        assert catalog.mark_stale(index_id, day(1), ready.revision - 1).unwrap() is False
        assert catalog.mark_stale(index_id, day(1), ready.revision).unwrap() is True
        assert catalog.get_partition_state(index_id, day(1)).state is PartitionState.STALE


class TestLeases:
    """Tests for lease expiry, fencing and recovery."""

    def test_recovery_sweep_reverts_expired_builds(self, store, clock):
        catalog = IndexCatalog(store, clock=clock)
        index_id = catalog.define(definition()).unwrap()
        lease = catalog.record_build_start(index_id, day(1), "crashed", ttl_ms=1_000).unwrap()

        assert catalog.recover_expired_builds() == []
        clock.advance(2.0)
        recovered = catalog.recover_expired_builds()

        assert [s.partition for s in recovered] == [day(1)]
        assert recovered[0].state is PartitionState.FAILED
        assert isinstance(recovered[0].last_error, LeaseExpired)
        # The crashed builder can no longer commit
        assert isinstance(catalog.record_build_success(lease, "late", ()).error, LeaseExpired)

    def test_newer_lease_fences_older(self, store, clock):
        catalog = IndexCatalog(store, clock=clock)
        index_id = catalog.define(definition()).unwrap()
        old = catalog.record_build_start(index_id, day(1), "a", ttl_ms=1_000).unwrap()
        clock.advance(2.0)
        catalog.recover_expired_builds()
        new = catalog.record_build_start(index_id, day(1), "b", ttl_ms=1_000).unwrap()

        assert new.fencing_token > old.fencing_token
        assert isinstance(catalog.record_build_success(old, "stale", ()).error, LeaseExpired)
        assert catalog.record_build_success(new, "fresh", ()).is_ok()

    def test_heartbeat_extends_lease(self, store, clock):
        catalog = IndexCatalog(store, clock=clock)
        index_id = catalog.define(definition()).unwrap()
        lease = catalog.record_build_start(index_id, day(1), "a", ttl_ms=1_000).unwrap()

        clock.advance(0.8)
        renewed = catalog.heartbeat(lease, ttl_ms=1_000).unwrap()
        clock.advance(0.8)

        assert renewed.expires_at > lease.expires_at
        assert catalog.recover_expired_builds() == []
        assert catalog.record_build_success(lease, "h", ()).is_ok()
