from typing import Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from courier_sim import db
from courier_sim.config import settings
from courier_sim.order_state import Coordinates, PreconditionViolation, is_terminal
from courier_sim.simulator import advance_order_pull

router = APIRouter(prefix="/orders", tags=["orders"])

OrderStatus = Literal[
    "pending",
    "confirmed",
    "preparing",
    "picked_up",
    "delivered",
    "cancelled",
]


class Point(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class AdvanceOrderBody(BaseModel):
    current_status: OrderStatus = Field(..., description="Status the caller last saw")
    origin: Point | None = Field(default=None, description="Vendor location")
    destination: Point | None = Field(default=None, description="Delivery location")
    current_progress: float = Field(default=0.0, ge=0, le=1, description="Transit progress the caller last saw")


class SimulationStateResponse(BaseModel):
    status: OrderStatus
    courier_lat: float | None = None
    courier_lng: float | None = None
    progress: float


def _coords(point: Point | None) -> Coordinates | None:
    return Coordinates(lat=point.lat, lng=point.lng) if point is not None else None


@router.post("/{order_id}/advance", response_model=SimulationStateResponse)
async def advance(order_id: str, body: AdvanceOrderBody) -> SimulationStateResponse:
    """
    Pull mode: advance one order by one tick and return its new state.
    Not idempotent. 409 if the order moved since the caller's snapshot or is already
    delivered/cancelled; poll /tracking and retry from the fresh state.
    """
    if not settings.pull_mode_enabled:
        raise HTTPException(status_code=403, detail="pull mode is disabled; orders are advanced by the sweep worker")
    if is_terminal(body.current_status):
        raise HTTPException(status_code=409, detail=f"order is already {body.current_status}")

    pool = await db.get_pool()
    try:
        state = await advance_order_pull(
            pool,
            order_id,
            body.current_status,
            _coords(body.origin),
            _coords(body.destination),
            body.current_progress,
        )
    except db.OrderNotFoundError:
        raise HTTPException(status_code=404, detail="order not found")
    except db.StaleOrderError as e:
        raise HTTPException(status_code=409, detail={"error": "stale_order", "current_status": e.current_state})
    except db.InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail={"error": "invalid_transition", "current_status": e.current_state})
    except PreconditionViolation as e:
        raise HTTPException(status_code=422, detail=str(e))

    return SimulationStateResponse(
        status=state.status,
        courier_lat=state.courier_lat,
        courier_lng=state.courier_lng,
        progress=state.progress,
    )


@router.get("/{order_id}/tracking", response_model=SimulationStateResponse)
async def tracking(order_id: str) -> SimulationStateResponse:
    """Current persisted state of an order, as written by the last tick."""
    pool = await db.get_pool()
    order = await db.load_order(pool, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="order not found")
    return SimulationStateResponse(
        status=order.status,
        courier_lat=order.courier_lat,
        courier_lng=order.courier_lng,
        progress=order.progress,
    )
