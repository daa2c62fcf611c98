"""Shared fixtures: a small partitioned table with deterministic embeddings."""

from typing import Iterable

import numpy as np
import pytest

from partitioned_ann.core.types import PartitionValue, ScalarType, TableSchema, VectorType
from partitioned_ann.storage.memory import InMemoryTableStore

DIM = 8
ROWS_PER_PARTITION = 40


def day(n: int) -> PartitionValue:
    return PartitionValue.of(ds=f"2026-01-0{n}")


def docs_schema(dimension: int = DIM) -> TableSchema:
    return TableSchema(
        name="docs",
        columns={
            "doc_id": ScalarType("int64"),
            "embedding": VectorType(dimension),
            "title": ScalarType("string"),
            "ds": ScalarType("date"),
        },
        partition_keys=("ds",),
    )


def load_days(
    store: InMemoryTableStore,
    days: Iterable[int],
    rows: int = ROWS_PER_PARTITION,
    dimension: int = DIM,
    seed: int = 0,
) -> None:
    """Insert `rows` random rows into each ds=2026-01-0N partition; ids are N*1000+i."""
    for n in days:
        rng = np.random.default_rng(seed + n)
        store.insert_rows(
            "docs",
            {"ds": f"2026-01-0{n}"},
            [
                {"doc_id": n * 1000 + i, "embedding": rng.standard_normal(dimension).tolist()}
                for i in range(rows)
            ],
        ).unwrap()


class FakeClock:
    """Manually advanced clock for lease tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store() -> InMemoryTableStore:
    s = InMemoryTableStore()
    s.create_table(docs_schema()).unwrap()
    load_days(s, (1, 2, 3))
    return s


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
