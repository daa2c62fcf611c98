"""Partition index builds and artifact storage."""

from partitioned_ann.build.artifacts import ArtifactStore
from partitioned_ann.build.builder import BuildReport, PartitionIndexBuilder

__all__ = ["ArtifactStore", "BuildReport", "PartitionIndexBuilder"]
