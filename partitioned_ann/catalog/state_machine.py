"""
Index Partition State Machine

States:
    UNBUILT  -> No artifact has ever been built
    BUILDING -> Exactly one build in flight (lease held)
    READY    -> Artifact reflects the partition's current data version
    STALE    -> Artifact exists but the data version has moved on
    FAILED   -> Last build failed; error retained for inspection

Transitions:
    UNBUILT  -> BUILDING : BUILD_START
    STALE    -> BUILDING : BUILD_START
    FAILED   -> BUILDING : BUILD_START (retry)
    READY    -> BUILDING : FORCE_REBUILD (explicit update)
    BUILDING -> READY    : BUILD_SUCCESS (single commit point)
    BUILDING -> FAILED   : BUILD_FAILURE
    BUILDING -> FAILED   : LEASE_EXPIRED (recovery sweep)
    READY    -> STALE    : DATA_CHANGED

BUILDING is never re-entered from BUILDING; a start request against an
in-flight build is a conflict, not a transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from partitioned_ann.core.types import PartitionState


class Trigger(Enum):
    BUILD_START = "build_start"
    FORCE_REBUILD = "force_rebuild"
    BUILD_SUCCESS = "build_success"
    BUILD_FAILURE = "build_failure"
    LEASE_EXPIRED = "lease_expired"
    DATA_CHANGED = "data_changed"


@dataclass(frozen=True, slots=True)
class PartitionTransition:
    from_state: PartitionState
    to_state: PartitionState
    trigger: Trigger


VALID_TRANSITIONS: frozenset[PartitionTransition] = frozenset({
    PartitionTransition(PartitionState.UNBUILT, PartitionState.BUILDING, Trigger.BUILD_START),
    PartitionTransition(PartitionState.STALE, PartitionState.BUILDING, Trigger.BUILD_START),
    PartitionTransition(PartitionState.FAILED, PartitionState.BUILDING, Trigger.BUILD_START),
    PartitionTransition(PartitionState.READY, PartitionState.BUILDING, Trigger.FORCE_REBUILD),
    PartitionTransition(PartitionState.BUILDING, PartitionState.READY, Trigger.BUILD_SUCCESS),
    PartitionTransition(PartitionState.BUILDING, PartitionState.FAILED, Trigger.BUILD_FAILURE),
    PartitionTransition(PartitionState.BUILDING, PartitionState.FAILED, Trigger.LEASE_EXPIRED),
    PartitionTransition(PartitionState.READY, PartitionState.STALE, Trigger.DATA_CHANGED),
})

_BY_SOURCE: dict[tuple[PartitionState, Trigger], PartitionState] = {
    (t.from_state, t.trigger): t.to_state for t in VALID_TRANSITIONS
}


def next_state(current: PartitionState, trigger: Trigger) -> Optional[PartitionState]:
    """Target state, or None if the trigger is not valid from `current`."""
    return _BY_SOURCE.get((current, trigger))


def can_transition(current: PartitionState, trigger: Trigger) -> bool:
    return (current, trigger) in _BY_SOURCE


def start_trigger(current: PartitionState, force: bool) -> Optional[Trigger]:
    """
    Trigger that moves `current` into BUILDING, if any.

    READY only rebuilds when forced; BUILDING never does.
    """
    if can_transition(current, Trigger.BUILD_START):
        return Trigger.BUILD_START
    if force and can_transition(current, Trigger.FORCE_REBUILD):
        return Trigger.FORCE_REBUILD
    return None


def available_triggers(current: PartitionState) -> list[Trigger]:
    return sorted(
        (t.trigger for t in VALID_TRANSITIONS if t.from_state is current),
        key=lambda trig: trig.value,
    )
