"""
Integration Tests: Vector Search Session

Tests:
    - Incremental backfill: indexed + unindexed partitions equal exact search
    - Self-match for every built-in index type
    - Table-function output shape
    - Session options and surfaced stale warnings
"""

import numpy as np
import pytest

from partitioned_ann.core.config import ServiceConfig, SessionPolicy
from partitioned_ann.core.errors import AlreadyExists, InvalidDefinition, InvalidRequest, NotFound
from partitioned_ann.core.types import PartitionPredicate, PartitionState
from partitioned_ann.session import VectorSearchSession
from partitioned_ann.tests.conftest import DIM, ROWS_PER_PARTITION, day, load_days

FIRST_THREE = PartitionPredicate.between("ds", "2026-01-01", "2026-01-03")
ALL_FOUR = PartitionPredicate.between("ds", "2026-01-01", "2026-01-04")


def random_queries(n=5, seed=99):
    rng = np.random.default_rng(seed)
    return {f"q{i}": rng.standard_normal(DIM).tolist() for i in range(n)}


@pytest.fixture
def session(store):
    return VectorSearchSession(store=store)


def create_index(session, index_type="ivf", options=None, updating_for=FIRST_THREE):
    if options is None:
        options = {"num_lists": 4, "seed": 3} if index_type == "ivf" else {}
    return session.create_vector_index(
        "docs_idx", "docs", "doc_id", "embedding",
        index_type=index_type,
        distance_metric="cosine",
        index_options=options,
        partitioned_by=["ds"],
        updating_for=updating_for,
    )


class TestIncrementalBackfill:
    """Tests for searches spanning indexed and unindexed partitions."""

    def test_mixed_search_equals_exact(self, session, store):
        """Test exhaustive probes plus exact fallback reproduce exact search."""
        created = create_index(session)
        assert created.report.built == (day(1), day(2), day(3))
        load_days(store, (4,))
        queries = random_queries()

        session.set_option("vector_index", "docs_idx", num_probes=4)
        mixed = session.vector_search("docs", "doc_id", "embedding", queries, k=10, where=ALL_FOUR)
        session.set_option("exact_search", True)
        exact = session.vector_search("docs", "doc_id", "embedding", queries, k=10, where=ALL_FOUR)

        assert mixed.metadata.index_partitions == tuple(str(day(n)) for n in (1, 2, 3))
        assert mixed.metadata.exact_partitions == (str(day(4)),)
        assert exact.metadata.index_name is None
        for query_id in queries:
            assert mixed.for_query(query_id).ids == exact.for_query(query_id).ids
            np.testing.assert_allclose(
                mixed.for_query(query_id).scores, exact.for_query(query_id).scores, rtol=1e-5
            )

    def test_update_backfills_new_partition(self, session, store):
        create_index(session)
        load_days(store, (4,))

        report = session.update_vector_index("docs_idx", {"ds": "2026-01-04"})
        response = session.vector_search("docs", "doc_id", "embedding", random_queries(1), where=ALL_FOUR)

        assert report.built == (day(4),)
        assert response.metadata.exact_partitions == ()
        assert len(response.metadata.index_partitions) == 4

    def test_explain(self, session, store):
        create_index(session)
        load_days(store, (4,))

        lines = session.explain("docs", "doc_id", "embedding", random_queries(1), k=3, where=ALL_FOUR)

        assert lines[0] == "index=docs_idx k=3 metric=cosine"
        assert sum("index-probe" in line for line in lines) == 3
        assert any(f"exact-scan[{day(4)}]" in line for line in lines)


class TestSelfMatch:
    """Tests that every row finds itself through each index type."""

    @pytest.mark.parametrize("index_type", ["flat", "ivf", "hnsw"])
    def test_self_match(self, session, store, index_type):
        create_index(session, index_type=index_type)
        rows = store.read_rows("docs", day(2), "doc_id", "embedding").unwrap()[:10]
        queries = {row.candidate_id: row.vector for row in rows}

        response = session.vector_search("docs", "doc_id", "embedding", queries, k=1)

        assert response.metadata.exact_partitions == ()
        for result in response:
            assert result.ids == [result.query_id]
            np.testing.assert_allclose(result.scores[0], 1.0, atol=1e-5)


class TestTableFunction:
    """Tests for the flat (query_id, candidate_id, score, rank) form."""

    def test_rows_from_query_table(self, session):
        create_index(session)

        rows = session.vector_search_table(
            candidate_table="docs",
            candidate_id_column="doc_id",
            candidate_vector_column="embedding",
            query_table="docs",
            query_id_column="doc_id",
            query_vector_column="embedding",
            query_where={"ds": "2026-01-03"},
            k=3,
            where=PartitionPredicate.isin("ds", ["2026-01-01", "2026-01-02"]),
        )

        assert len(rows) == ROWS_PER_PARTITION * 3
        assert set(rows[0]) == {"query_id", "candidate_id", "score", "rank"}
        assert [r["rank"] for r in rows[:3]] == [0, 1, 2]
        assert all(r["candidate_id"] < 3000 for r in rows)

    def test_requires_queries(self, session):
        with pytest.raises(InvalidRequest):
            session.vector_search_table(
                candidate_table="docs",
                candidate_id_column="doc_id",
                candidate_vector_column="embedding",
            )


class TestOptionsAndErrors:
    """Tests for session options and raised errors."""

    def test_set_option(self, session):
        policy = session.set_option("vector_index", "docs_idx", ef_search=32)
        assert policy.index_hint.runtime_options == {"ef_search": 32}

        assert session.set_option("vector_index", None).index_hint is None
        assert session.set_option("allow_stale_reads", True).allow_stale_reads

        with pytest.raises(InvalidRequest):
            session.set_option("use_gpu", True)

    def test_unknown_metric(self, session):
        with pytest.raises(InvalidDefinition):
            session.create_vector_index("idx", "docs", "doc_id", "embedding", distance_metric="hamming")

    def test_duplicate_index(self, session):
        create_index(session, updating_for=None)

        with pytest.raises(AlreadyExists):
            create_index(session, updating_for=None)

    def test_list_indexes(self, session):
        create_index(session, updating_for=None)

        assert [e.name for e in session.list_vector_indexes()] == ["docs_idx"]
        assert session.list_vector_indexes("other_table") == []

    def test_unknown_hint(self, session):
        with pytest.raises(NotFound):
            session.vector_search("docs", "doc_id", "embedding", random_queries(1), index="missing")

    def test_where_on_unknown_partition_column(self, session):
        create_index(session)

        with pytest.raises(InvalidRequest):
            session.vector_search("docs", "doc_id", "embedding", random_queries(1), where={"dss": "2026-01-01"})
        with pytest.raises(InvalidRequest):
            session.update_vector_index("docs_idx", PartitionPredicate.eq("dss", "2026-01-01"))

    def test_invalid_config(self, store):
        config = ServiceConfig(policy=SessionPolicy(), log_level="LOUD")

        with pytest.raises(ValueError):
            VectorSearchSession(store=store, config=config)


class TestStaleSurface:
    """Tests for stale reads reaching the caller."""

    def test_stale_warning_in_metadata(self, session, store):
        create_index(session)
        store.insert_rows("docs", {"ds": "2026-01-02"}, [{"doc_id": 7, "embedding": [1.0] * DIM}]).unwrap()
        session.set_option("allow_stale_reads", True)

        response = session.vector_search("docs", "doc_id", "embedding", random_queries(2))

        assert response.metadata.used_stale_index
        assert any(str(day(2)) in w for w in response.metadata.to_dict()["warnings"])
        states = {s.partition: s.state for s in session.partition_states("docs_idx")}
        assert states[day(2)] is PartitionState.STALE

    def test_default_policy_scans_stale_partition(self, session, store):
        create_index(session)
        store.insert_rows("docs", {"ds": "2026-01-02"}, [{"doc_id": 7, "embedding": [1.0] * DIM}]).unwrap()

        response = session.vector_search("docs", "doc_id", "embedding", {"q": [1.0] * DIM}, k=1)

        assert not response.metadata.used_stale_index
        assert response.metadata.exact_partitions == (str(day(2)),)
        # The new row is only visible through the exact scan
        assert response.for_query("q").ids == [7]

    def test_check_staleness_and_maintenance(self, session, store):
        create_index(session)
        load_days(store, (4,))

        report = session.check_staleness("docs_idx")

        assert report.missing == (day(4),)
        assert session.recover_builds() == []
        assert session.vacuum() == []
