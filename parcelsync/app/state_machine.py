"""Parcel status state machine."""

from typing import Any, Optional

from ..exceptions import IllegalTransition, MissingRequiredField
from .models import ParcelStatus

TRANSITIONS: dict[ParcelStatus, frozenset[ParcelStatus]] = {
    ParcelStatus.BOOKED: frozenset({ParcelStatus.ASSIGNED}),
    ParcelStatus.ASSIGNED: frozenset({ParcelStatus.PICKED_UP, ParcelStatus.CANCELLED}),
    ParcelStatus.PICKED_UP: frozenset({ParcelStatus.IN_TRANSIT, ParcelStatus.FAILED}),
    ParcelStatus.IN_TRANSIT: frozenset({ParcelStatus.DELIVERED, ParcelStatus.FAILED}),
    ParcelStatus.DELIVERED: frozenset(),
    ParcelStatus.FAILED: frozenset({ParcelStatus.ASSIGNED, ParcelStatus.CANCELLED}),
    ParcelStatus.CANCELLED: frozenset(),
}

# Forward progress used by the timeline; FAILED and CANCELLED are off this path
PROGRESS_ORDER: tuple[ParcelStatus, ...] = (
    ParcelStatus.BOOKED,
    ParcelStatus.ASSIGNED,
    ParcelStatus.PICKED_UP,
    ParcelStatus.IN_TRANSIT,
    ParcelStatus.DELIVERED,
)

STATUS_LABELS: dict[ParcelStatus, str] = {
    ParcelStatus.BOOKED: "Booked",
    ParcelStatus.ASSIGNED: "Agent Assigned",
    ParcelStatus.PICKED_UP: "Picked Up",
    ParcelStatus.IN_TRANSIT: "In Transit",
    ParcelStatus.DELIVERED: "Delivered",
    ParcelStatus.FAILED: "Failed",
    ParcelStatus.CANCELLED: "Cancelled",
}

NOTE_REQUIRED = frozenset({ParcelStatus.FAILED})


def coerce_status(value: Any) -> ParcelStatus:
    """Return ``value`` as a ParcelStatus.

    Raises:
        ValueError: If the value names no known status
    """
    if isinstance(value, ParcelStatus):
        return value
    return ParcelStatus(str(value).strip().upper())


def available_transitions(current: ParcelStatus) -> frozenset[ParcelStatus]:
    """Return the statuses an agent may move a parcel to."""
    return TRANSITIONS[coerce_status(current)]


def is_terminal(status: ParcelStatus) -> bool:
    return not available_transitions(status)


def requires_note(target: ParcelStatus) -> bool:
    return coerce_status(target) in NOTE_REQUIRED


def progress_index(status: Optional[ParcelStatus]) -> int:
    """Position of ``status`` on the forward path, or -1 when off it."""
    try:
        return PROGRESS_ORDER.index(status)
    except ValueError:
        return -1


def validate_transition(
    current: ParcelStatus, target: ParcelStatus, note: Optional[str] = None
) -> ParcelStatus:
    """Check a status submission before anything is sent.

    Args:
        current: Status the parcel is in now
        target: Status the agent wants to move to
        note: Free text entered with the submission

    Returns:
        The target as a ParcelStatus

    Raises:
        IllegalTransition: If ``target`` is not reachable from ``current``
        MissingRequiredField: If ``target`` needs a note and none was given
    """
    current = coerce_status(current)
    try:
        target = coerce_status(target)
    except ValueError as err:
        raise IllegalTransition(current, target) from err

    if target not in available_transitions(current):
        raise IllegalTransition(current, target)
    if requires_note(target) and not (note and note.strip()):
        raise MissingRequiredField("note", target)
    return target
