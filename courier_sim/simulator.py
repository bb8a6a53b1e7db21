"""
Simulation drivers: both advance orders through order_state.advance and write via db.apply_tick.
- Pull mode: one named order, one tick, on request. Errors propagate to the caller.
- Sweep mode: every open order, one tick each. Per-order errors are logged, the sweep goes on.
"""
import logging
from dataclasses import dataclass

from courier_sim import db
from courier_sim.config import settings
from courier_sim.metrics import (
    courier_assignments_total,
    notifications_emitted_total,
    open_orders,
    order_tick_failures_total,
    orders_advanced_total,
)
from courier_sim.notifications import build_notification
from courier_sim.order_state import (
    PICKED_UP,
    PREPARING,
    Coordinates,
    PreconditionViolation,
    advance,
    is_terminal,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulationState:
    status: str
    progress: float
    courier_lat: float | None = None
    courier_lng: float | None = None


@dataclass
class SweepReport:
    processed: int = 0
    advanced: int = 0
    skipped: int = 0  # row moved under us (another tick won the race)
    failed: int = 0


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, PreconditionViolation):
        return "precondition"
    if isinstance(exc, db.StaleOrderError):
        return "stale"
    if isinstance(exc, db.InvalidTransitionError):
        return "invalid_transition"
    if isinstance(exc, db.OrderNotFoundError):
        return "not_found"
    return "persistence"


async def _find_courier(pool, order_id: str) -> str | None:
    """Best-effort: a failed lookup never blocks pickup."""
    try:
        return await db.find_available_courier(pool)
    except Exception:
        logger.exception("Courier lookup failed for order_id=%s, picking up unassigned", order_id)
        return None


async def advance_order(pool, order: db.OrderRecord, step: float | None = None) -> SimulationState:
    """
    Advance one order by one tick and persist it (status, progress, courier position,
    courier assignment at pickup, notification on status change) in one transaction.
    Terminal orders come back unchanged and nothing is written.
    """
    if is_terminal(order.status):
        return SimulationState(order.status, order.progress, order.courier_lat, order.courier_lng)

    step = settings.courier_speed if step is None else step
    try:
        transition = advance(order.status, order.progress, order.origin, order.destination, step)

        fields: dict = {"status": transition.status, "progress": transition.progress}
        if transition.courier_position is not None:
            fields["courier_lat"] = transition.courier_position.lat
            fields["courier_lng"] = transition.courier_position.lng

        if order.status == PREPARING and not order.courier_id:
            courier_id = await _find_courier(pool, order.id)
            if courier_id:
                fields["courier_id"] = courier_id
            else:
                logger.info("No courier available for order_id=%s, picking up unassigned", order.id)

        notification = None
        if transition.status != order.status:
            notification = build_notification(order.user_id, order.id, transition.status)

        await db.apply_tick(
            pool,
            order.id,
            order.status,
            fields,
            notification=notification,
            expected_progress=order.progress if order.status == PICKED_UP else None,
        )
    except Exception as e:
        order_tick_failures_total.labels(reason=_failure_reason(e)).inc()
        raise

    orders_advanced_total.labels(status=transition.status).inc()
    if notification is not None:
        notifications_emitted_total.labels(status=transition.status).inc()
    if "courier_id" in fields:
        courier_assignments_total.inc()

    if transition.status == PICKED_UP and order.status == PICKED_UP:
        logger.info("Order %s: IN TRANSIT (%d%%)", order.id, round(transition.progress * 100))
    else:
        logger.info("Order %s: %s -> %s", order.id, order.status, transition.status)

    position = transition.courier_position
    return SimulationState(
        status=transition.status,
        progress=transition.progress,
        courier_lat=position.lat if position else order.courier_lat,
        courier_lng=position.lng if position else order.courier_lng,
    )


async def advance_order_pull(
    pool,
    order_id: str,
    current_status: str,
    origin: Coordinates | None,
    destination: Coordinates | None,
    current_progress: float = 0.0,
    step: float | None = None,
) -> SimulationState:
    """
    Pull mode: advance `order_id` one tick from the state the caller last saw.
    Not idempotent; each call moves the order one step further. If the row no longer
    matches current_status/current_progress, db.StaleOrderError is raised and nothing is written.
    Missing coordinates come from the order row (vendor location, delivery point),
    then from the configured defaults if the row has none either.
    """
    existing = await db.load_order(pool, order_id)
    if existing is None:
        raise db.OrderNotFoundError(order_id)

    origin = origin or existing.origin
    destination = destination or existing.destination
    if origin is None:
        origin = Coordinates(settings.fallback_origin_lat, settings.fallback_origin_lng)
    if destination is None:
        destination = Coordinates(settings.fallback_destination_lat, settings.fallback_destination_lng)

    order = db.OrderRecord(
        id=order_id,
        user_id=existing.user_id,
        status=current_status,
        progress=current_progress if current_status == PICKED_UP else 0.0,
        origin=origin,
        destination=destination,
        courier_id=existing.courier_id,
        courier_lat=existing.courier_lat,
        courier_lng=existing.courier_lng,
    )
    return await advance_order(pool, order, step)


async def run_sweep(pool, step: float | None = None) -> SweepReport:
    """
    One pass over all open orders, one tick each, in order.
    A failing order is logged and left as-is; it is still open, so the next sweep retries it.
    Failure to load the open orders propagates.
    """
    orders = await db.load_open_orders(pool)
    open_orders.set(len(orders))
    report = SweepReport(processed=len(orders))
    if not orders:
        return report

    logger.info("Processing %d open order(s) ...", len(orders))
    for order in orders:
        try:
            await advance_order(pool, order, step)
            report.advanced += 1
        except db.StaleOrderError as e:
            report.skipped += 1
            logger.warning(
                "Order %s moved since it was loaded (now %s), skipped this tick",
                order.id,
                e.current_state,
            )
        except Exception as e:
            report.failed += 1
            logger.exception("Failed to advance order %s (status=%s): %s", order.id, order.status, e)
    return report
