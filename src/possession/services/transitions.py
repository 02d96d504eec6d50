"""Possession status transition table.

Pure functions over PossessionStatus; no I/O. The lifecycle service is the
only writer of ``status`` and consults this table for every change.

    REQUESTED   -> SURVEYED, CANCELLED, ON_HOLD
    SURVEYED    -> READY, CANCELLED, ON_HOLD
    READY       -> HANDED_OVER, CANCELLED, ON_HOLD
    HANDED_OVER -> (terminal)
    CANCELLED   -> REQUESTED
    ON_HOLD     -> REQUESTED, SURVEYED, CANCELLED
"""

from __future__ import annotations

from types import MappingProxyType

from possession.db.models.base import PossessionStatus
from possession.services.errors import IllegalTransitionError

_S = PossessionStatus

VALID_TRANSITIONS: MappingProxyType[PossessionStatus, frozenset[PossessionStatus]] = (
    MappingProxyType(
        {
            _S.REQUESTED: frozenset({_S.SURVEYED, _S.CANCELLED, _S.ON_HOLD}),
            _S.SURVEYED: frozenset({_S.READY, _S.CANCELLED, _S.ON_HOLD}),
            _S.READY: frozenset({_S.HANDED_OVER, _S.CANCELLED, _S.ON_HOLD}),
            _S.HANDED_OVER: frozenset(),
            _S.CANCELLED: frozenset({_S.REQUESTED}),
            _S.ON_HOLD: frozenset({_S.REQUESTED, _S.SURVEYED, _S.CANCELLED}),
        }
    )
)

# Statuses in which the plot is considered taken
ACTIVE_STATUSES = frozenset({_S.REQUESTED, _S.SURVEYED, _S.READY, _S.ON_HOLD})

STATUS_DISPLAY_NAMES = MappingProxyType(
    {
        _S.REQUESTED: "Requested",
        _S.SURVEYED: "Surveyed",
        _S.READY: "Ready for Handover",
        _S.HANDED_OVER: "Handed Over",
        _S.CANCELLED: "Cancelled",
        _S.ON_HOLD: "On Hold",
    }
)

STATUS_COLORS = MappingProxyType(
    {
        _S.REQUESTED: "blue",
        _S.SURVEYED: "orange",
        _S.READY: "green",
        _S.HANDED_OVER: "purple",
        _S.CANCELLED: "red",
        _S.ON_HOLD: "yellow",
    }
)

# Enumeration order used for display and for reporting zero-fills
STATUS_ORDER: tuple[PossessionStatus, ...] = tuple(PossessionStatus)


def allowed_next_statuses(status: PossessionStatus) -> list[PossessionStatus]:
    """Legal next statuses, in enumeration order.

    Args:
        status: Current status.

    Returns:
        Statuses reachable in one step (empty for terminal statuses).
    """
    allowed = VALID_TRANSITIONS[status]
    return [s for s in STATUS_ORDER if s in allowed]


def is_valid_transition(from_status: PossessionStatus, to_status: PossessionStatus) -> bool:
    """Check whether one status may follow another.

    A transition to the same status is always valid and means "no change".
    """
    if from_status == to_status:
        return True
    return to_status in VALID_TRANSITIONS[from_status]


def is_terminal_status(status: PossessionStatus) -> bool:
    """Terminal statuses admit no outgoing transitions."""
    return not VALID_TRANSITIONS[status]


def is_active_status(status: PossessionStatus) -> bool:
    """Active records block a new possession request for the same plot."""
    return status in ACTIVE_STATUSES


def ensure_transition(from_status: PossessionStatus, to_status: PossessionStatus) -> None:
    """Raise IllegalTransitionError unless the transition is allowed."""
    if not is_valid_transition(from_status, to_status):
        raise IllegalTransitionError(
            from_status, to_status, allowed=allowed_next_statuses(from_status)
        )


def display_name(status: PossessionStatus) -> str:
    return STATUS_DISPLAY_NAMES[status]


def status_color(status: PossessionStatus) -> str:
    return STATUS_COLORS[status]
