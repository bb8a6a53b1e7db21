"""
Customer notifications for order status changes. Rows go to the notifications table
inside the same transaction as the order update (see db.apply_tick).
"""
from dataclasses import dataclass, field

from courier_sim.order_state import CONFIRMED, DELIVERED, PICKED_UP, PREPARING

NOTIFICATION_TYPE = "order"

# New status -> (title, message)
TEMPLATES: dict[str, tuple[str, str]] = {
    CONFIRMED: ("Order Confirmed", "Vendor is preparing your items."),
    PREPARING: ("Order Preparing", "Vendor has started preparing your order."),
    PICKED_UP: ("Out for Delivery", "Courier is on the way to your location."),
    DELIVERED: ("Order Delivered", "Package has been dropped off. Enjoy!"),
}


@dataclass(frozen=True)
class Notification:
    user_id: str
    title: str
    message: str
    type: str = NOTIFICATION_TYPE
    metadata: dict = field(default_factory=dict)


def build_notification(user_id: str | None, order_id: str, status: str) -> Notification | None:
    """Notification for an order that just moved into `status`, or None if nobody to tell."""
    template = TEMPLATES.get(status)
    if template is None or not user_id:
        return None
    title, message = template
    return Notification(
        user_id=user_id,
        title=title,
        message=message,
        metadata={"order_id": order_id, "status": status},
    )
