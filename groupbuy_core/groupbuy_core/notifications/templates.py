"""Notification text rendering.

Text is rendered when the event is enqueued, so a queued payload never
changes between retries even if the order moves on.
"""

from __future__ import annotations

from typing import Any

from groupbuy_core.models.order import NotificationTarget, NotificationTrigger, OrderStatus

_CUSTOMER_STATUS_TEXT: dict[OrderStatus, str] = {
    OrderStatus.PAID: "Payment received for order {ref}. We will let you know when it ships.",
    OrderStatus.SHIPPING: "Order {ref} is on its way.{carrier}",
    OrderStatus.COMPLETED: "Order {ref} is complete. Thank you for joining this group buy!",
    OrderStatus.CANCELLED: "Order {ref} has been cancelled.{reason}",
}


def short_ref(order_id: str) -> str:
    """Human-friendly order reference (first block of the UUID)."""
    return order_id.split("-", 1)[0].upper()


def format_amount(amount: int) -> str:
    return f"{amount:,}"


def render(
    target: NotificationTarget,
    trigger: NotificationTrigger,
    *,
    order_id: str,
    status: OrderStatus,
    total_amount: int,
    details: dict[str, Any] | None = None,
) -> str:
    details = details or {}
    ref = short_ref(order_id)

    if target is NotificationTarget.HOST:
        if trigger is NotificationTrigger.ORDER_CREATED:
            return f"New order {ref}: {details.get('item_count', 0)} item(s), total {format_amount(total_amount)}."
        return f"Order {ref} is now {status.value}."

    template = _CUSTOMER_STATUS_TEXT.get(status, "Order {ref} is now " + status.value + ".")
    carrier = f" Tracking: {details['carrier_reference']}." if details.get("carrier_reference") else ""
    reason = f" Reason: {details['reason']}." if details.get("reason") else ""
    return template.format(ref=ref, carrier=carrier, reason=reason)
