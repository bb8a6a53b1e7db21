"""
Order delivery state machine. One call = one tick; no I/O.

pending -> confirmed -> preparing -> picked_up (xN, courier moves) -> delivered.
Courier position is a straight line between vendor and destination, not a road route.
"""
from dataclasses import dataclass

PENDING = "pending"
CONFIRMED = "confirmed"
PREPARING = "preparing"
PICKED_UP = "picked_up"
DELIVERED = "delivered"
CANCELLED = "cancelled"

STATUS_SEQUENCE: list[str] = [PENDING, CONFIRMED, PREPARING, PICKED_UP, DELIVERED]
TERMINAL_STATUSES: frozenset[str] = frozenset({DELIVERED, CANCELLED})

DEFAULT_STEP = 0.05

# Current status -> status after one tick (picked_up may also stay picked_up)
NEXT_STATUS: dict[str, str] = {
    PENDING: CONFIRMED,
    CONFIRMED: PREPARING,
    PREPARING: PICKED_UP,
    PICKED_UP: DELIVERED,
}

_ARRIVAL_EPSILON = 1e-9


class PreconditionViolation(Exception):
    """Raised when the machine is fed a status or coordinates it cannot advance from."""


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class Transition:
    status: str
    progress: float | None
    courier_position: Coordinates | None = None

    @property
    def moved(self) -> bool:
        return self.courier_position is not None


def is_terminal(status: str | None) -> bool:
    return status in TERMINAL_STATUSES


def is_valid_transition(current_state: str | None, new_state: str) -> bool:
    """True if new_state is one forward step from current_state, or an in-transit tick."""
    if current_state == PICKED_UP and new_state == PICKED_UP:
        return True
    return NEXT_STATUS.get(current_state) == new_state


def interpolate(origin: Coordinates, destination: Coordinates, progress: float) -> Coordinates:
    """Point at `progress` along the straight line origin -> destination."""
    if progress <= 0:
        return origin
    if progress >= 1:
        return destination
    return Coordinates(
        lat=origin.lat + (destination.lat - origin.lat) * progress,
        lng=origin.lng + (destination.lng - origin.lng) * progress,
    )


def _clamp(progress: float | None) -> float:
    if not progress:
        return 0.0
    return min(max(float(progress), 0.0), 1.0)


def advance(
    status: str,
    progress: float | None,
    origin: Coordinates | None,
    destination: Coordinates | None,
    step: float = DEFAULT_STEP,
) -> Transition:
    """
    Compute the next state of an order.
    Terminal statuses are a no-op: the input comes back unchanged with no position.
    Raises PreconditionViolation for unknown statuses, a non-positive step, or
    missing coordinates on an edge that needs them.
    """
    if is_terminal(status):
        return Transition(status=status, progress=progress)
    if status not in NEXT_STATUS:
        raise PreconditionViolation(f"unknown order status {status!r}")
    if step <= 0:
        raise PreconditionViolation(f"step must be positive, got {step!r}")

    if status in (PENDING, CONFIRMED):
        return Transition(status=NEXT_STATUS[status], progress=0.0)

    if status == PREPARING:
        if origin is None:
            raise PreconditionViolation("vendor origin is required to start transit")
        return Transition(status=PICKED_UP, progress=0.0, courier_position=origin)

    # picked_up
    if origin is None or destination is None:
        raise PreconditionViolation("origin and destination are required while in transit")
    next_progress = _clamp(progress) + step
    if next_progress >= 1 - _ARRIVAL_EPSILON:
        return Transition(status=DELIVERED, progress=1.0, courier_position=destination)
    return Transition(
        status=PICKED_UP,
        progress=next_progress,
        courier_position=interpolate(origin, destination, next_progress),
    )
