"""
Artifact Store

Holds built index artifacts behind opaque handles. Handles are published
before the catalog commit and are never reused, so a plan compiled against
an older handle keeps probing a consistent artifact while a rebuild
commits a new one.

Superseded artifacts are retired rather than dropped; purge_retired()
removes them once the retention grace period has passed.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional
from uuid import uuid4

from partitioned_ann.core.errors import Err, NotFound, Ok, Result
from partitioned_ann.core.types import IndexId, PartitionValue
from partitioned_ann.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class StoredArtifact:
    handle: str
    index_id: IndexId
    partition: PartitionValue
    artifact: Any
    published_at: float
    retired_at: Optional[float] = None


class ArtifactStore:
    """
    Thread-safe in-memory artifact registry.

    Artifacts are immutable once published; readers take no lock beyond
    the dictionary lookup.
    """

    __slots__ = ("_lock", "_artifacts", "_clock")

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.Lock()
        self._artifacts: dict[str, StoredArtifact] = {}
        self._clock = clock

    def publish(self, index_id: IndexId, partition: PartitionValue, artifact: Any) -> str:
        handle = f"artifact://{index_id}/{partition}/{uuid4().hex[:12]}"
        with self._lock:
            self._artifacts[handle] = StoredArtifact(
                handle=handle,
                index_id=index_id,
                partition=partition,
                artifact=artifact,
                published_at=self._clock(),
            )
        return handle

    def get(self, handle: str) -> Result[Any, NotFound]:
        with self._lock:
            stored = self._artifacts.get(handle)
        if stored is None:
            return Err(NotFound.artifact(handle))
        return Ok(stored.artifact)

    def retire(self, handle: str) -> bool:
        """Mark a superseded artifact for purging; it stays readable until then."""
        with self._lock:
            stored = self._artifacts.get(handle)
            if stored is None or stored.retired_at is not None:
                return False
            self._artifacts[handle] = replace(stored, retired_at=self._clock())
        logger.debug("Artifact retired", handle=handle)
        return True

    def release(self, handle: str) -> None:
        """Drop an artifact immediately (e.g. published but never committed)."""
        with self._lock:
            self._artifacts.pop(handle, None)

    def purge_retired(self, older_than_s: float) -> list[str]:
        """Remove artifacts retired more than `older_than_s` seconds ago."""
        cutoff = self._clock() - older_than_s
        with self._lock:
            purged = [
                h for h, stored in self._artifacts.items()
                if stored.retired_at is not None and stored.retired_at <= cutoff
            ]
            for handle in purged:
                del self._artifacts[handle]
        if purged:
            logger.info("Purged retired artifacts", count=len(purged))
        return purged

    def __contains__(self, handle: str) -> bool:
        with self._lock:
            return handle in self._artifacts

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)
