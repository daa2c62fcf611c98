from partitioned_ann.storage.memory import InMemoryTableStore

__all__ = ["InMemoryTableStore"]
