"""Lifecycle states of a tracking issue and their serialization as GitHub labels."""

from enum import Enum
from typing import Sequence

from fork_sync_manager.lifecycle.exceptions import LifecycleIntegrityError
from fork_sync_manager.utils.constants import (
    CASCADE_ACTIVE_LABEL,
    CASCADE_BLOCKED_LABEL,
    CASCADE_FAILED_LABEL,
    HUMAN_REQUIRED_LABEL,
    VALIDATED_LABEL,
)
from fork_sync_manager.utils.github import extract_label_names
from fork_sync_manager.utils.types import LabelType


class LifecycleState(str, Enum):
    """Primary state of a tracking issue."""

    HUMAN_REQUIRED = "human_required"
    CASCADE_ACTIVE = "cascade_active"
    CASCADE_BLOCKED = "cascade_blocked"
    CASCADE_FAILED = "cascade_failed"
    RECOVERY_READY = "recovery_ready"
    VALIDATED = "validated"
    CLOSED = "closed"


PRIMARY_LABELS: frozenset[str] = frozenset(
    {
        HUMAN_REQUIRED_LABEL,
        CASCADE_ACTIVE_LABEL,
        CASCADE_BLOCKED_LABEL,
        CASCADE_FAILED_LABEL,
        VALIDATED_LABEL,
    }
)
"""Labels that encode the lifecycle state; every other label on the issue is ignored."""

STATE_LABELS: dict[LifecycleState, frozenset[str]] = {
    LifecycleState.HUMAN_REQUIRED: frozenset({HUMAN_REQUIRED_LABEL}),
    LifecycleState.CASCADE_ACTIVE: frozenset({CASCADE_ACTIVE_LABEL}),
    LifecycleState.CASCADE_BLOCKED: frozenset({CASCADE_BLOCKED_LABEL}),
    LifecycleState.CASCADE_FAILED: frozenset({CASCADE_FAILED_LABEL, HUMAN_REQUIRED_LABEL}),
    # A human signals that a failure is resolved by removing human-required.
    LifecycleState.RECOVERY_READY: frozenset({CASCADE_FAILED_LABEL}),
    LifecycleState.VALIDATED: frozenset({VALIDATED_LABEL}),
    LifecycleState.CLOSED: frozenset(),
}

TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.HUMAN_REQUIRED: frozenset({LifecycleState.CASCADE_ACTIVE}),
    LifecycleState.CASCADE_ACTIVE: frozenset({LifecycleState.CASCADE_BLOCKED, LifecycleState.CASCADE_FAILED, LifecycleState.VALIDATED}),
    LifecycleState.CASCADE_BLOCKED: frozenset({LifecycleState.CASCADE_ACTIVE}),
    LifecycleState.CASCADE_FAILED: frozenset({LifecycleState.RECOVERY_READY}),
    LifecycleState.RECOVERY_READY: frozenset({LifecycleState.CASCADE_ACTIVE, LifecycleState.CASCADE_FAILED}),
    LifecycleState.VALIDATED: frozenset({LifecycleState.CLOSED}),
    LifecycleState.CLOSED: frozenset(),
}

HUMAN_DRIVEN_TRANSITIONS: frozenset[tuple[LifecycleState, LifecycleState]] = frozenset(
    {(LifecycleState.CASCADE_FAILED, LifecycleState.RECOVERY_READY)}
)
"""Transitions performed by a person editing labels, never by the orchestrator."""


def validate_transition_table() -> None:
    """Check that the label serialization and the transition table are consistent.

    Raises:
        LifecycleIntegrityError: If a state lacks labels or transitions, two states share a label set,
            CLOSED can be reached from anything but VALIDATED, or a state is unreachable.
    """
    missing = set(LifecycleState) - set(STATE_LABELS) or set(LifecycleState) - set(TRANSITIONS)
    if missing:
        raise LifecycleIntegrityError(None, set(), f"states without labels or transitions: {sorted(state.value for state in missing)}")

    seen: dict[frozenset[str], LifecycleState] = {}
    for state, labels in STATE_LABELS.items():
        if state is not LifecycleState.CLOSED and not labels:
            raise LifecycleIntegrityError(None, set(), f"{state.value} has no label serialization")
        if not labels <= PRIMARY_LABELS:
            raise LifecycleIntegrityError(None, set(labels), f"{state.value} uses non-primary labels")
        if labels in seen:
            raise LifecycleIntegrityError(None, set(labels), f"{state.value} and {seen[labels].value} share a label set")
        seen[labels] = state

    for source, targets in TRANSITIONS.items():
        if LifecycleState.CLOSED in targets and source is not LifecycleState.VALIDATED:
            raise LifecycleIntegrityError(None, set(), f"CLOSED is reachable from {source.value}")
    if TRANSITIONS[LifecycleState.CLOSED]:
        raise LifecycleIntegrityError(None, set(), "CLOSED must be terminal")

    reachable = {LifecycleState.HUMAN_REQUIRED}
    frontier = [LifecycleState.HUMAN_REQUIRED]
    while frontier:
        for target in TRANSITIONS[frontier.pop()]:
            if target not in reachable:
                reachable.add(target)
                frontier.append(target)
    unreachable = set(LifecycleState) - reachable
    if unreachable:
        raise LifecycleIntegrityError(None, set(), f"unreachable states: {sorted(state.value for state in unreachable)}")


validate_transition_table()


def labels_for_state(state: LifecycleState) -> frozenset[str]:
    """Labels that serialize a lifecycle state."""
    return STATE_LABELS[state]


def state_from_labels(labels: Sequence[LabelType] | None, is_closed: bool = False, issue_number: int | None = None) -> LifecycleState:
    """Deserialize the lifecycle state of a tracking issue.

    Raises:
        LifecycleIntegrityError: If the primary labels on an open issue match no state.
    """
    if is_closed:
        return LifecycleState.CLOSED
    names = extract_label_names(labels)
    primary = frozenset(names & PRIMARY_LABELS)
    for state, state_labels in STATE_LABELS.items():
        if state_labels and primary == state_labels:
            return state
    if not primary:
        raise LifecycleIntegrityError(issue_number, names, "no lifecycle label present")
    raise LifecycleIntegrityError(issue_number, names, "lifecycle labels do not form a valid state")


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    """Whether the lifecycle allows moving from ``current`` to ``target``."""
    return target in TRANSITIONS[current]


def label_changes(current: LifecycleState, target: LifecycleState) -> tuple[list[str], list[str]]:
    """Labels to add and remove to move an issue from ``current`` to ``target``."""
    current_labels = STATE_LABELS[current]
    target_labels = STATE_LABELS[target]
    return sorted(target_labels - current_labels), sorted(current_labels - target_labels)
