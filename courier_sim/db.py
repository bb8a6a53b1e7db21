"""
Async Postgres: orders (with vendor origin), profiles (courier lookup), notifications.
Every simulator write is one transaction: lock order row, check it has not moved
since it was read, apply the partial update, insert the notification.
"""
import json
from dataclasses import dataclass

import asyncpg

from courier_sim.config import settings
from courier_sim.notifications import Notification
from courier_sim.order_state import TERMINAL_STATUSES, Coordinates, is_valid_transition

_pool: asyncpg.Pool | None = None

# Columns the simulator is allowed to write
UPDATABLE_FIELDS = ("status", "progress", "courier_lat", "courier_lng", "courier_id")

_PROGRESS_TOLERANCE = 1e-9


class OrderNotFoundError(Exception):
    """Raised when the order row does not exist."""


class StaleOrderError(Exception):
    """Raised when the order row changed since it was read (another tick got there first)."""
    def __init__(self, current_state: str | None = None, current_progress: float | None = None):
        self.current_state = current_state
        self.current_progress = current_progress
        super().__init__(current_state)


class InvalidTransitionError(Exception):
    """Raised when the requested status is not one step forward. Transaction will roll back."""
    def __init__(self, current_state: str | None = None, attempted_state: str | None = None):
        self.current_state = current_state
        self.attempted_state = attempted_state
        super().__init__(f"{current_state} -> {attempted_state}")


@dataclass(frozen=True)
class OrderRecord:
    id: str
    user_id: str | None
    status: str
    progress: float
    origin: Coordinates | None
    destination: Coordinates | None
    courier_id: str | None = None
    courier_lat: float | None = None
    courier_lng: float | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id VARCHAR(255) PRIMARY KEY,
                role VARCHAR(20) NOT NULL DEFAULT 'user',
                full_name TEXT,
                created_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS vendors (
                id VARCHAR(255) PRIMARY KEY,
                name TEXT NOT NULL,
                location_lat DOUBLE PRECISION,
                location_lng DOUBLE PRECISION,
                created_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(255) PRIMARY KEY,
                user_id VARCHAR(255) REFERENCES profiles(id),
                vendor_id VARCHAR(255) REFERENCES vendors(id),
                courier_id VARCHAR(255) REFERENCES profiles(id),
                status VARCHAR(20) NOT NULL DEFAULT 'pending',
                progress DOUBLE PRECISION NOT NULL DEFAULT 0,
                courier_lat DOUBLE PRECISION,
                courier_lng DOUBLE PRECISION,
                delivery_lat DOUBLE PRECISION,
                delivery_lng DOUBLE PRECISION,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_status
            ON orders(status);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id BIGSERIAL PRIMARY KEY,
                user_id VARCHAR(255) NOT NULL REFERENCES profiles(id),
                type VARCHAR(50) NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                is_read BOOLEAN NOT NULL DEFAULT FALSE,
                metadata JSONB,
                created_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_notifications_user_id
            ON notifications(user_id);
        """)


_ORDER_SELECT = """
    SELECT o.id, o.user_id, o.status, o.progress, o.courier_id,
           o.courier_lat, o.courier_lng, o.delivery_lat, o.delivery_lng,
           v.location_lat AS vendor_lat, v.location_lng AS vendor_lng
    FROM orders o
    LEFT JOIN vendors v ON v.id = o.vendor_id
"""


def _coords(lat, lng) -> Coordinates | None:
    if lat is None or lng is None:
        return None
    return Coordinates(lat=float(lat), lng=float(lng))


def _to_record(row) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        user_id=row["user_id"],
        status=row["status"],
        progress=float(row["progress"] or 0),
        origin=_coords(row["vendor_lat"], row["vendor_lng"]),
        destination=_coords(row["delivery_lat"], row["delivery_lng"]),
        courier_id=row["courier_id"],
        courier_lat=row["courier_lat"],
        courier_lng=row["courier_lng"],
    )


async def load_open_orders(pool: asyncpg.Pool) -> list[OrderRecord]:
    """All orders not delivered/cancelled, with vendor origin, oldest first."""
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            _ORDER_SELECT + " WHERE o.status <> ALL($1::varchar[]) ORDER BY o.created_at ASC;",
            sorted(TERMINAL_STATUSES),
        )
    return [_to_record(r) for r in rows]


async def load_order(pool: asyncpg.Pool, order_id: str) -> OrderRecord | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(_ORDER_SELECT + " WHERE o.id = $1;", order_id)
    return _to_record(row) if row is not None else None


async def find_available_courier(pool: asyncpg.Pool) -> str | None:
    """Any profile with the courier role, or None."""
    async with pool.acquire() as conn:
        return await conn.fetchval(
            "SELECT id FROM profiles WHERE role = 'courier' ORDER BY created_at ASC LIMIT 1;"
        )


async def apply_tick(
    pool: asyncpg.Pool,
    order_id: str,
    expected_status: str,
    fields: dict,
    notification: Notification | None = None,
    expected_progress: float | None = None,
) -> None:
    """
    Write one simulator tick in a single transaction.
    - SELECT order FOR UPDATE; StaleOrderError if status (or progress, when given) moved since read.
    - Validate the status change, then partial UPDATE of the whitelisted fields.
    - Insert the notification, if any, in the same transaction.
    """
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"not updatable: {sorted(unknown)}")
    new_status = fields.get("status", expected_status)

    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                "SELECT status, progress FROM orders WHERE id = $1 FOR UPDATE;",
                order_id,
            )
            if row is None:
                raise OrderNotFoundError(order_id)

            current_state = row["status"]
            current_progress = float(row["progress"] or 0)
            if current_state != expected_status:
                raise StaleOrderError(current_state, current_progress)
            if expected_progress is not None and abs(current_progress - expected_progress) > _PROGRESS_TOLERANCE:
                raise StaleOrderError(current_state, current_progress)
            if not is_valid_transition(current_state, new_status):
                raise InvalidTransitionError(current_state, new_status)

            columns = [name for name in UPDATABLE_FIELDS if name in fields]
            assignments = [f"{name} = ${i}" for i, name in enumerate(columns, start=2)]
            assignments.append("updated_at = NOW()")
            await conn.execute(
                f"UPDATE orders SET {', '.join(assignments)} WHERE id = $1;",
                order_id,
                *(fields[name] for name in columns),
            )

            if notification is not None:
                await conn.execute(
                    """
                    INSERT INTO notifications (user_id, type, title, message, metadata)
                    VALUES ($1, $2, $3, $4, $5::jsonb);
                    """,
                    notification.user_id,
                    notification.type,
                    notification.title,
                    notification.message,
                    json.dumps(notification.metadata),
                )
