"""
Request State Manager
=====================

Finite state machine governing every service request status change.  The
coordinator consults ``validate_transition`` before issuing the conditional
update that applies a change.

State machine overview::

    pending --> accepted --> in_progress --> completed
       |            |
       +------------+--> cancelled

``completed`` and ``cancelled`` are terminal.

Guards enforce that only the right actor can trigger certain transitions:
the client, assigned technician or an admin may cancel; only technicians
(or the system on their behalf) accept, start and complete work.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from dispatch.models.service_request import RequestStatus


class ActorType(str, enum.Enum):
    CLIENT = "client"
    TECHNICIAN = "technician"
    SYSTEM = "system"
    ADMIN = "admin"


@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None


VALID_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.PENDING: {
        RequestStatus.ACCEPTED,
        RequestStatus.CANCELLED,
    },
    RequestStatus.ACCEPTED: {
        RequestStatus.IN_PROGRESS,
        RequestStatus.COMPLETED,
        RequestStatus.CANCELLED,
    },
    RequestStatus.IN_PROGRESS: {
        RequestStatus.COMPLETED,
    },
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
}

TERMINAL_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.COMPLETED,
    RequestStatus.CANCELLED,
})

_TECHNICIAN_ACTORS: frozenset[ActorType] = frozenset({
    ActorType.TECHNICIAN,
    ActorType.SYSTEM,
    ActorType.ADMIN,
})


def _format(statuses: set[RequestStatus]) -> str:
    return ", ".join(s.value for s in sorted(statuses, key=lambda s: s.value)) or "none"


def validate_transition(
    current_status: RequestStatus,
    new_status: RequestStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate whether a request status transition is allowed.

    Checks two layers:
    1. Is the transition structurally valid per the state machine?
    2. Does the actor type have permission for this specific transition?
    """
    if current_status in TERMINAL_STATUSES:
        return TransitionResult(
            allowed=False,
            reason=f"Request is already '{current_status.value}'; it cannot change any more.",
        )

    allowed_targets = VALID_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Invalid transition: '{current_status.value}' -> '{new_status.value}'. "
                f"Allowed transitions from '{current_status.value}': "
                f"{_format(allowed_targets)}."
            ),
        )

    if new_status in (
        RequestStatus.ACCEPTED,
        RequestStatus.IN_PROGRESS,
        RequestStatus.COMPLETED,
    ) and actor_type not in _TECHNICIAN_ACTORS:
        return TransitionResult(
            allowed=False,
            reason=f"Only a technician can move a request to '{new_status.value}'.",
        )

    return TransitionResult(allowed=True)


def get_valid_transitions(
    current_status: RequestStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> list[RequestStatus]:
    """Statuses the actor can move to from ``current_status`` (for UI hints)."""
    return sorted(
        (
            target
            for target in VALID_TRANSITIONS.get(current_status, set())
            if validate_transition(current_status, target, actor_type).allowed
        ),
        key=lambda s: s.value,
    )
