"""Index catalog, partition state machine and staleness tracking."""

from partitioned_ann.catalog.catalog import BuildCommit, IndexCatalog, IndexEntry
from partitioned_ann.catalog.state_machine import Trigger, next_state
from partitioned_ann.catalog.staleness import StalenessReport, StalenessTracker

__all__ = [
    "BuildCommit",
    "IndexCatalog",
    "IndexEntry",
    "Trigger",
    "next_state",
    "StalenessReport",
    "StalenessTracker",
]
