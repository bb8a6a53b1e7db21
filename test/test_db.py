import asyncio
import json

import pytest

from courier_sim import db
from courier_sim.notifications import build_notification
from courier_sim.order_state import Coordinates

from _helper import RecordingConnection, RecordingPool


def apply(conn, *args, **kwargs):
    return asyncio.run(db.apply_tick(RecordingPool(conn), *args, **kwargs))


def test_apply_tick_updates_whitelisted_fields_in_column_order():
    conn = RecordingConnection(row={"status": "picked_up", "progress": 0.5})

    apply(
        conn,
        "ord",
        "picked_up",
        {"courier_lng": -118.4375, "progress": 0.75, "courier_lat": 34.015, "status": "picked_up"},
        expected_progress=0.5,
    )

    kinds = [kind for kind, _, _ in conn.calls]
    assert kinds == ["begin", "fetchrow", "execute", "commit"]
    assert "FOR UPDATE" in conn.calls[1][1]
    (query, args), = conn.executed("UPDATE orders")
    assert "SET status = $2, progress = $3, courier_lat = $4, courier_lng = $5, updated_at = NOW()" in query
    assert args == ("ord", "picked_up", 0.75, 34.015, -118.4375)


def test_apply_tick_inserts_notification_in_same_transaction():
    conn = RecordingConnection(row={"status": "preparing", "progress": 0})
    notification = build_notification("user-1", "ord", "picked_up")

    apply(
        conn,
        "ord",
        "preparing",
        {"status": "picked_up", "progress": 0.0, "courier_id": "courier-7"},
        notification=notification,
    )

    kinds = [kind for kind, _, _ in conn.calls]
    assert kinds == ["begin", "fetchrow", "execute", "execute", "commit"]
    (update, update_args), = conn.executed("UPDATE orders")
    assert "courier_id = $4" in update
    assert update_args == ("ord", "picked_up", 0.0, "courier-7")
    (_, insert_args), = conn.executed("INSERT INTO notifications")
    assert insert_args[:4] == ("user-1", "order", "Out for Delivery", "Courier is on the way to your location.")
    assert json.loads(insert_args[4]) == {"order_id": "ord", "status": "picked_up"}


def test_apply_tick_rejects_unknown_fields_before_touching_the_database():
    conn = RecordingConnection(row={"status": "pending", "progress": 0})

    with pytest.raises(ValueError):
        apply(conn, "ord", "pending", {"status": "confirmed", "total": 10})
    assert conn.calls == []


def test_apply_tick_missing_order():
    conn = RecordingConnection(row=None)

    with pytest.raises(db.OrderNotFoundError):
        apply(conn, "missing", "pending", {"status": "confirmed"})
    assert conn.executed("UPDATE") == []
    assert conn.calls[-1][0] == "rollback"


def test_stale_status_leaves_no_update():
    conn = RecordingConnection(row={"status": "confirmed", "progress": 0})

    with pytest.raises(db.StaleOrderError) as exc:
        apply(conn, "ord", "pending", {"status": "confirmed"}, notification=build_notification("u", "ord", "confirmed"))

    assert exc.value.current_state == "confirmed"
    assert conn.executed("UPDATE") == []
    assert conn.executed("INSERT") == []
    assert conn.calls[-1][0] == "rollback"


def test_stale_progress_leaves_no_update():
    conn = RecordingConnection(row={"status": "picked_up", "progress": 0.6})

    with pytest.raises(db.StaleOrderError) as exc:
        apply(conn, "ord", "picked_up", {"status": "picked_up", "progress": 0.25}, expected_progress=0.2)

    assert exc.value.current_progress == 0.6
    assert conn.executed("UPDATE") == []


def test_progress_within_float_noise_is_not_stale():
    conn = RecordingConnection(row={"status": "picked_up", "progress": 0.1 + 0.2})

    apply(conn, "ord", "picked_up", {"status": "picked_up", "progress": 0.35}, expected_progress=0.3)

    assert len(conn.executed("UPDATE orders")) == 1


def test_invalid_transition_leaves_no_update_or_notification():
    conn = RecordingConnection(row={"status": "pending", "progress": 0})

    with pytest.raises(db.InvalidTransitionError) as exc:
        apply(
            conn,
            "ord",
            "pending",
            {"status": "delivered"},
            notification=build_notification("user-1", "ord", "delivered"),
        )

    assert (exc.value.current_state, exc.value.attempted_state) == ("pending", "delivered")
    assert conn.executed("UPDATE") == []
    assert conn.executed("INSERT INTO notifications") == []
    assert conn.calls[-1][0] == "rollback"


def _row(**overrides):
    row = {
        "id": "ord",
        "user_id": "user-1",
        "status": "picked_up",
        "progress": 0.25,
        "courier_id": "courier-7",
        "courier_lat": 34.005,
        "courier_lng": -118.4125,
        "delivery_lat": 34.02,
        "delivery_lng": -118.45,
        "vendor_lat": 34.0,
        "vendor_lng": -118.4,
    }
    row.update(overrides)
    return row


def test_load_open_orders_excludes_terminal_statuses_and_maps_rows():
    conn = RecordingConnection(rows=[_row(), _row(id="new", status="pending", progress=None, vendor_lat=None)])

    orders = asyncio.run(db.load_open_orders(RecordingPool(conn)))

    _, query, args = conn.calls[0]
    assert "<> ALL($1::varchar[])" in query
    assert args == (["cancelled", "delivered"],)
    first, second = orders
    assert first.origin == Coordinates(34.0, -118.4)
    assert first.destination == Coordinates(34.02, -118.45)
    assert first.progress == 0.25
    assert first.courier_id == "courier-7"
    assert second.progress == 0.0
    assert second.origin is None


def test_load_order():
    conn = RecordingConnection(row=_row(delivery_lat=None))

    order = asyncio.run(db.load_order(RecordingPool(conn), "ord"))

    assert conn.calls[0][2] == ("ord",)
    assert order.id == "ord"
    assert order.destination is None


def test_load_order_missing():
    conn = RecordingConnection(row=None)
    assert asyncio.run(db.load_order(RecordingPool(conn), "missing")) is None


def test_find_available_courier_asks_for_courier_role():
    conn = RecordingConnection(row={"id": "courier-7"})

    assert asyncio.run(db.find_available_courier(RecordingPool(conn))) == "courier-7"
    assert "role = 'courier'" in conn.calls[0][1]
