"""
In-Memory Table Store

Reference implementation of the two storage collaborators the index core
consumes (TableMetadataService and RowReader), for tests, demos and
embedding in single-process applications.

Every write to a partition bumps its data version from a store-wide
monotonic counter, so versions only ever grow.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Union

from partitioned_ann.core.errors import Err, InvalidRequest, NotFound, Ok, Result
from partitioned_ann.core.types import CandidateRow, PartitionValue, TableSchema

PartitionSpec = Union[PartitionValue, Mapping[str, Any]]


@dataclass
class _PartitionData:
    """Rows of one partition plus its data version."""
    rows: list[dict[str, Any]] = field(default_factory=list)
    version: int = 0


class InMemoryTableStore:
    """
    Partitioned tables held in process memory.

    Example:
        store = InMemoryTableStore()
        store.create_table(TableSchema(
            name="docs",
            columns={"doc_id": ScalarType("int64"), "embedding": VectorType(4), "ds": ScalarType("date")},
            partition_keys=("ds",),
        ))
        store.insert_rows("docs", {"ds": "2026-01-01"}, [{"doc_id": 1, "embedding": [0.1, 0.2, 0.3, 0.4]}])

    Thread Safety:
        All operations are protected by an RLock; reads return copies.
    """

    __slots__ = ("_lock", "_schemas", "_partitions", "_version_counter")

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._schemas: dict[str, TableSchema] = {}
        self._partitions: dict[str, dict[PartitionValue, _PartitionData]] = {}
        self._version_counter = 0

    # -------------------------------------------------------------------------
    # DDL
    # -------------------------------------------------------------------------
    def create_table(self, schema: TableSchema) -> Result[TableSchema, InvalidRequest]:
        with self._lock:
            if schema.name in self._schemas:
                return Err(InvalidRequest.because(f"table '{schema.name}' already exists"))
            self._schemas[schema.name] = schema
            self._partitions[schema.name] = {}
        return Ok(schema)

    def _partition_value(self, schema: TableSchema, partition: PartitionSpec) -> Result[PartitionValue, InvalidRequest]:
        values = dict(partition.items) if isinstance(partition, PartitionValue) else dict(partition)
        if set(values) != set(schema.partition_keys):
            return Err(InvalidRequest.because(
                f"partition {values} does not match partition keys {list(schema.partition_keys)} of '{schema.name}'"
            ))
        return Ok(PartitionValue.from_mapping(values, schema.partition_keys))

    # -------------------------------------------------------------------------
    # DML
    # -------------------------------------------------------------------------
    def insert_rows(
        self,
        table: str,
        partition: PartitionSpec,
        rows: Iterable[Mapping[str, Any]],
    ) -> Result[int, Any]:
        """
        Append rows to a partition, creating it if needed.

        Returns:
            Ok(new data version of the partition)
        """
        with self._lock:
            schema = self._schemas.get(table)
            if schema is None:
                return Err(NotFound.table(table))
            pv_result = self._partition_value(schema, partition)
            if pv_result.is_err():
                return pv_result
            pv = pv_result.unwrap()
            data = self._partitions[table].setdefault(pv, _PartitionData())
            data.rows.extend(dict(row) for row in rows)
            self._version_counter += 1
            data.version = self._version_counter
            return Ok(data.version)

    def drop_partition(self, table: str, partition: PartitionSpec) -> Result[bool, Any]:
        with self._lock:
            schema = self._schemas.get(table)
            if schema is None:
                return Err(NotFound.table(table))
            pv_result = self._partition_value(schema, partition)
            if pv_result.is_err():
                return pv_result
            return Ok(self._partitions[table].pop(pv_result.unwrap(), None) is not None)

    # -------------------------------------------------------------------------
    # TableMetadataService
    # -------------------------------------------------------------------------
    def describe_table(self, table: str) -> Result[TableSchema, NotFound]:
        with self._lock:
            schema = self._schemas.get(table)
        return Ok(schema) if schema is not None else Err(NotFound.table(table))

    def partition_versions(self, table: str) -> Result[dict[PartitionValue, int], NotFound]:
        with self._lock:
            partitions = self._partitions.get(table)
            if partitions is None:
                return Err(NotFound.table(table))
            return Ok({pv: data.version for pv, data in partitions.items()})

    # -------------------------------------------------------------------------
    # RowReader
    # -------------------------------------------------------------------------
    def read_rows(
        self,
        table: str,
        partition: PartitionValue,
        id_column: str,
        vector_column: str,
    ) -> Result[list[CandidateRow], NotFound]:
        with self._lock:
            partitions = self._partitions.get(table)
            if partitions is None:
                return Err(NotFound.table(table))
            data = partitions.get(partition)
            if data is None:
                return Err(NotFound.table_partition(table, str(partition)))
            return Ok([
                CandidateRow(row.get(id_column), row.get(vector_column))
                for row in data.rows
            ])
