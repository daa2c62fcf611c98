"""
Unit Tests: Query Rewriter

Tests:
    - Per-partition decision table
    - Mixed index / exact plans for incremental backfill
    - Coverage rule for artifacts spanning several base partitions
    - Index selection, metric and dimension compatibility
    - Stale reads are annotated, never silent
"""

import itertools

import pytest

from partitioned_ann.build.artifacts import ArtifactStore
from partitioned_ann.build.builder import PartitionIndexBuilder
from partitioned_ann.catalog.catalog import IndexCatalog
from partitioned_ann.catalog.staleness import StalenessTracker
from partitioned_ann.core.config import SessionPolicy
from partitioned_ann.core.errors import (
    DimensionOrMetricIncompatible,
    InvalidRequest,
    NotFound,
    StaleIndexUsed,
)
from partitioned_ann.core.types import (
    UNPARTITIONED,
    CandidateRelation,
    ExactScan,
    IndexHint,
    IndexProbe,
    MetricType,
    PartitionPredicate,
    PartitionState,
    QueryRelation,
    SearchRequest,
    VectorIndexDefinition,
)
from partitioned_ann.query.rewriter import PartitionDecision, QueryRewriter, decide_partition
from partitioned_ann.tests.conftest import DIM, day, load_days

FIRST_THREE = PartitionPredicate.between("ds", "2026-01-01", "2026-01-03")
ALL_FOUR = PartitionPredicate.between("ds", "2026-01-01", "2026-01-04")


class Harness:
    """Catalog, builder and rewriter over the shared store."""

    def __init__(self, store):
        self.store = store
        self.catalog = IndexCatalog(store)
        self.builder = PartitionIndexBuilder(self.catalog, store, store, ArtifactStore())
        self.rewriter = QueryRewriter(self.catalog, store, StalenessTracker(self.catalog, store))

    def define(self, name="docs_idx", metric=MetricType.COSINE, partition_keys=("ds",), **kwargs):
        return self.catalog.define(VectorIndexDefinition(
            name=name,
            table="docs",
            id_column="doc_id",
            vector_column="embedding",
            metric=metric,
            index_type="flat",
            options={},
            partition_keys=partition_keys,
            **kwargs,
        )).unwrap()

    def rewrite(self, policy=None, **request_args):
        return self.rewriter.rewrite(request(**request_args), policy or SessionPolicy())


def request(dimension=DIM, metric=MetricType.COSINE, k=5, where=None, hint=None):
    return SearchRequest(
        candidates=CandidateRelation("docs", "doc_id", "embedding"),
        queries=QueryRelation.inline({"q": [0.1] * dimension}),
        metric=metric,
        k=k,
        hint=hint,
        predicate=where,
    )


@pytest.fixture
def harness(store):
    return Harness(store)


class TestDecidePartition:
    """Tests for the pure routing function."""

    @pytest.mark.parametrize(
        "state,exact_only,allow_stale,available",
        list(itertools.product(
            list(PartitionState) + [None], [False, True], [False, True], [False, True],
        )),
    )
    def test_decision_table(self, state, exact_only, allow_stale, available):
        policy = SessionPolicy(exact_only=exact_only, allow_stale_reads=allow_stale)

        decision = decide_partition(state, policy, available)

        if exact_only or not available:
            assert decision is PartitionDecision.EXACT_SCAN
        elif state is PartitionState.READY:
            assert decision is PartitionDecision.USE_INDEX
        elif state is PartitionState.STALE and allow_stale:
            assert decision is PartitionDecision.USE_STALE_INDEX
        else:
            assert decision is PartitionDecision.EXACT_SCAN

    @pytest.mark.parametrize("state", [PartitionState.UNBUILT, PartitionState.BUILDING, PartitionState.FAILED])
    def test_unusable_states_never_use_index(self, state):
        policy = SessionPolicy(allow_stale_reads=True)

        assert not decide_partition(state, policy, index_available=True).uses_index


class TestRouting:
    """Tests for per-partition plans."""

    def test_no_index_is_all_exact(self, harness):
        plan = harness.rewrite().unwrap()

        assert plan.index_name is None
        assert plan.exact_partitions == (day(1), day(2), day(3))

    def test_mixed_plan_for_backfill(self, harness):
        """Test built partitions are probed and the new partition is scanned."""
        index_id = harness.define()
        harness.builder.update(index_id, FIRST_THREE).unwrap()
        load_days(harness.store, (4,))

        plan = harness.rewrite(where=ALL_FOUR).unwrap()

        assert plan.index_name == "docs_idx"
        assert plan.index_partitions == (day(1), day(2), day(3))
        assert plan.exact_partitions == (day(4),)
        assert plan.resolved_partitions == (day(1), day(2), day(3), day(4))
        assert plan.warnings == ()

    def test_predicate_limits_partitions(self, harness):
        index_id = harness.define()
        harness.builder.update(index_id, FIRST_THREE).unwrap()

        plan = harness.rewrite(where=PartitionPredicate.eq("ds", "2026-01-02")).unwrap()

        assert plan.resolved_partitions == (day(2),)
        assert plan.index_partitions == (day(2),)

    def test_exact_only_policy(self, harness):
        index_id = harness.define()
        harness.builder.update(index_id, FIRST_THREE).unwrap()

        plan = harness.rewrite(policy=SessionPolicy(exact_only=True)).unwrap()

        assert plan.index_name is None
        assert all(isinstance(f, ExactScan) for f in plan.fragments)

    def test_runtime_options_reach_probes(self, harness):
        index_id = harness.define()
        harness.builder.update(index_id, FIRST_THREE).unwrap()
        policy = SessionPolicy().with_index("docs_idx", num_probes=3)

        plan = harness.rewrite(policy=policy).unwrap()

        probes = [f for f in plan.fragments if isinstance(f, IndexProbe)]
        assert len(probes) == 3
        assert all(p.runtime_options == {"num_probes": 3} for p in probes)


class TestCoverage:
    """Tests for artifacts spanning several base partitions."""

    @pytest.fixture
    def unpartitioned(self, harness):
        index_id = harness.define(
            partition_keys=(),
            defining_predicate=PartitionPredicate.between("ds", "2026-01-01", "2026-01-02"),
        )
        harness.builder.update(index_id).unwrap()
        return harness

    def test_probe_when_all_covered_partitions_resolved(self, unpartitioned):
        plan = unpartitioned.rewrite(where=FIRST_THREE).unwrap()

        probes = [f for f in plan.fragments if isinstance(f, IndexProbe)]
        assert [p.partition for p in probes] == [UNPARTITIONED]
        assert probes[0].covered == (day(1), day(2))
        assert plan.exact_partitions == (day(3),)

    def test_exact_when_predicate_splits_artifact(self, unpartitioned):
        """Test an artifact covering excluded partitions is never probed."""
        plan = unpartitioned.rewrite(where=PartitionPredicate.eq("ds", "2026-01-01")).unwrap()

        assert plan.index_partitions == ()
        assert plan.exact_partitions == (day(1),)


class TestSelection:
    """Tests for index selection and compatibility checks."""

    def test_metric_mismatch(self, harness):
        harness.define()

        result = harness.rewrite(metric=MetricType.L2)

        assert isinstance(result.error, DimensionOrMetricIncompatible)

    def test_metric_mismatch_allowed_when_exact(self, harness):
        harness.define()

        plan = harness.rewrite(policy=SessionPolicy(exact_only=True), metric=MetricType.L2).unwrap()

        assert plan.index_name is None

    def test_matching_metric_preferred(self, harness):
        harness.define("cos_idx")
        harness.define("l2_idx", metric=MetricType.L2)

        plan = harness.rewrite(metric=MetricType.L2).unwrap()

        assert plan.index_name == "l2_idx"

    def test_hint_not_found(self, harness):
        harness.define()

        result = harness.rewrite(hint=IndexHint("nope"))

        assert isinstance(result.error, NotFound)

    def test_query_dimension_against_index(self, harness):
        harness.define()

        result = harness.rewrite(dimension=3)

        assert isinstance(result.error, DimensionOrMetricIncompatible)
        assert result.error.context["expected"] == DIM

    def test_query_dimension_without_index(self, harness):
        result = harness.rewrite(dimension=3)

        assert isinstance(result.error, InvalidRequest)

    @pytest.mark.parametrize("k", [0, -1])
    def test_non_positive_k(self, harness, k):
        assert isinstance(harness.rewrite(k=k).error, InvalidRequest)

    def test_unknown_table(self, harness):
        bad = SearchRequest(
            candidates=CandidateRelation("missing", "doc_id", "embedding"),
            queries=QueryRelation.inline([[0.0] * DIM]),
        )

        assert isinstance(harness.rewriter.rewrite(bad, SessionPolicy()).error, NotFound)

    @pytest.mark.parametrize("column", ["dss", "title"])
    def test_predicate_on_non_partition_column(self, harness, column):
        """Test a filter the partitions cannot evaluate is rejected, not ignored."""
        harness.define()

        result = harness.rewrite(where=PartitionPredicate.eq(column, "2026-01-01"))

        assert isinstance(result.error, InvalidRequest)
        assert column in str(result.error)


class TestStaleReads:
    """Tests for STALE partition handling."""

    @pytest.fixture
    def stale(self, harness):
        index_id = harness.define()
        harness.builder.update(index_id, FIRST_THREE).unwrap()
        harness.store.insert_rows("docs", {"ds": "2026-01-01"}, [{"doc_id": 1, "embedding": [1.0] * DIM}]).unwrap()
        return harness

    def test_stale_partition_scanned_by_default(self, stale):
        plan = stale.rewrite().unwrap()

        assert plan.exact_partitions == (day(1),)
        assert plan.index_partitions == (day(2), day(3))
        assert plan.warnings == ()

    def test_stale_read_is_annotated(self, stale):
        plan = stale.rewrite(policy=SessionPolicy(allow_stale_reads=True)).unwrap()

        probe = next(f for f in plan.fragments if isinstance(f, IndexProbe) and f.partition == day(1))
        assert probe.stale
        assert len(plan.warnings) == 1
        warning = plan.warnings[0]
        assert isinstance(warning, StaleIndexUsed)
        assert warning.partition == str(day(1))
        assert warning.built_version != warning.current_version
        assert "(STALE)" in "\n".join(plan.explain())
