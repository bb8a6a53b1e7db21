"""
Prometheus metrics: order ticks (both drivers), notifications, sweep loop health.
"""
from prometheus_client import Counter, Gauge, Histogram, generate_latest

# Ticks that were written, by resulting status
orders_advanced_total = Counter(
    "orders_advanced_total",
    "Total simulator ticks persisted, by resulting order status",
    ["status"],
)
order_tick_failures_total = Counter(
    "order_tick_failures_total",
    "Total order ticks that were not persisted",
    ["reason"],
)
notifications_emitted_total = Counter(
    "notifications_emitted_total",
    "Total order notifications written, by new status",
    ["status"],
)
courier_assignments_total = Counter(
    "courier_assignments_total",
    "Total couriers assigned at pickup",
)

# Sweep loop
sweep_ticks_total = Counter(
    "sweep_ticks_total",
    "Total sweeps run over open orders",
)
sweep_ticks_skipped_total = Counter(
    "sweep_ticks_skipped_total",
    "Total sweep ticks skipped (overrun or lock held by another worker)",
    ["reason"],
)
sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Wall-clock duration of one sweep",
)
open_orders = Gauge(
    "open_orders",
    "Orders not yet delivered or cancelled, as seen by the last sweep",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
