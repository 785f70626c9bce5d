"""
Deployment lifecycle state machine.

    pending -> planning -> applying -> applied | failed
    pending -> destroying -> destroyed | failed

Any non-terminal status may also be forced to ``failed`` (load errors,
cancellation). ``applied``, ``failed`` and ``destroyed`` are terminal: a
later provisioning request creates a new deployment instead of mutating a
terminal one. A destroy request first resets the deployment to ``pending``.
"""

from enum import Enum
from typing import Dict, FrozenSet, Union

from iacstudio.errors import InvalidTransitionError


class DeploymentStatus(Enum):
    """Deployment status values (stored as their string value)."""

    PENDING = "pending"
    PLANNING = "planning"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"


TERMINAL_STATUSES: FrozenSet[DeploymentStatus] = frozenset({
    DeploymentStatus.APPLIED,
    DeploymentStatus.FAILED,
    DeploymentStatus.DESTROYED,
})

ACTIVE_STATUSES: FrozenSet[DeploymentStatus] = frozenset({
    DeploymentStatus.PENDING,
    DeploymentStatus.PLANNING,
    DeploymentStatus.APPLYING,
    DeploymentStatus.DESTROYING,
})

ALLOWED_TRANSITIONS: Dict[DeploymentStatus, FrozenSet[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset({
        DeploymentStatus.PLANNING,
        DeploymentStatus.DESTROYING,
        DeploymentStatus.FAILED,
    }),
    DeploymentStatus.PLANNING: frozenset({
        DeploymentStatus.APPLYING,
        DeploymentStatus.FAILED,
    }),
    DeploymentStatus.APPLYING: frozenset({
        DeploymentStatus.APPLIED,
        DeploymentStatus.FAILED,
    }),
    DeploymentStatus.DESTROYING: frozenset({
        DeploymentStatus.DESTROYED,
        DeploymentStatus.FAILED,
    }),
    DeploymentStatus.APPLIED: frozenset(),
    DeploymentStatus.FAILED: frozenset(),
    DeploymentStatus.DESTROYED: frozenset(),
}


def coerce_status(status: Union[str, DeploymentStatus]) -> DeploymentStatus:
    """Accept either the enum or its stored string value."""
    if isinstance(status, DeploymentStatus):
        return status
    try:
        return DeploymentStatus(status)
    except ValueError:
        raise InvalidTransitionError(f"unknown deployment status: {status}")


def is_terminal(status: Union[str, DeploymentStatus]) -> bool:
    """True for applied, failed and destroyed."""
    return coerce_status(status) in TERMINAL_STATUSES


def can_transition(
    current: Union[str, DeploymentStatus],
    target: Union[str, DeploymentStatus],
) -> bool:
    """Check whether ``current -> target`` is an edge of the lifecycle."""
    return coerce_status(target) in ALLOWED_TRANSITIONS[coerce_status(current)]


def validate_transition(
    current: Union[str, DeploymentStatus],
    target: Union[str, DeploymentStatus],
) -> DeploymentStatus:
    """
    Validate a status change.

    Returns:
        The target status as an enum

    Raises:
        InvalidTransitionError: If the lifecycle does not allow the change
    """
    current_status = coerce_status(current)
    target_status = coerce_status(target)
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(
            f"invalid status transition: {current_status.value} -> {target_status.value}",
            meta={"from": current_status.value, "to": target_status.value},
        )
    return target_status
