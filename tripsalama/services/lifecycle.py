"""
Ride state machine.

    pending -> accepted -> [driver_arriving ->] in_progress -> completed

A ride can be cancelled from any state before ``in_progress``.
``accepted`` is only reachable through driver assignment, which also sets
the driver and vehicle on the ride.
"""
from tripsalama.errors import IllegalTransitionError, InvalidInputError
from tripsalama.schemas.schemas import RideStatusEnum

S = RideStatusEnum

VALID_TRANSITIONS: dict[RideStatusEnum, frozenset[RideStatusEnum]] = {
    S.pending: frozenset({S.accepted, S.cancelled}),
    S.accepted: frozenset({S.driver_arriving, S.in_progress, S.cancelled}),
    S.driver_arriving: frozenset({S.in_progress, S.cancelled}),
    S.in_progress: frozenset({S.completed}),
    S.completed: frozenset(),
    S.cancelled: frozenset(),
}

# Column stamped with the transition time when a ride enters the state
TIMESTAMP_COLUMNS: dict[RideStatusEnum, str] = {
    S.accepted: "accepted_at",
    S.in_progress: "started_at",
    S.completed: "completed_at",
    S.cancelled: "cancelled_at",
}

TERMINAL_STATES = frozenset({S.completed, S.cancelled})
PASSENGER_ACTIVE_STATES = (S.pending, S.accepted, S.driver_arriving, S.in_progress)
DRIVER_ACTIVE_STATES = (S.accepted, S.driver_arriving, S.in_progress)


def parse_status(value: str) -> RideStatusEnum:
    try:
        return RideStatusEnum(value)
    except ValueError:
        raise InvalidInputError(f"Unknown ride status: {value!r}")


def is_valid_transition(current: str, target: str) -> bool:
    return parse_status(target) in VALID_TRANSITIONS[parse_status(current)]


def ensure_transition(current: str, target: str) -> RideStatusEnum:
    """Raise IllegalTransitionError unless ``current -> target`` is allowed."""
    source, dest = parse_status(current), parse_status(target)
    if dest not in VALID_TRANSITIONS[source]:
        raise IllegalTransitionError(source.value, dest.value)
    return dest
